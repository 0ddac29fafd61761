"""Graph build options and type-safe graph configuration with hashing and serialization."""

from __future__ import annotations

import enum
import hashlib
import json
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any


class BuildOptions(enum.Flag):
    """Optional bookkeeping added to a graph at construction time."""
    NONE = 0
    ADD_LOAD_ASSIGNS = enum.auto()
    ADD_RESET_ASSIGNS = enum.auto()
    VARIABLE_ASSIGNS = ADD_LOAD_ASSIGNS | ADD_RESET_ASSIGNS


@dataclass(frozen=True)
class GraphConfig:
    """Immutable graph construction configuration.

    Args:
        batch_size: Batch size for a batch graph (None = no batch dimension)
        build_options: Load / reset assignment options
        seed: Seed for the random initialization of variables
    """
    batch_size: int | None = None
    build_options: BuildOptions = BuildOptions.NONE
    seed: int = 0

    @property
    def batch_graph(self) -> bool:
        return self.batch_size is not None


def _encode(value: Any) -> Any:
    if isinstance(value, enum.Flag):
        return [member.name for member in type(value) if member.value and member in value and _is_single(member)]
    return value


def _is_single(member: enum.Flag) -> bool:
    return member.value & (member.value - 1) == 0


def config_to_dict(config: Any) -> dict:
    """
    Convert a dataclass config to a dictionary, handling nested configs.

    Flag enums are stored as lists of member names.

    Args:
        config: Dataclass instance

    Returns:
        Dictionary representation
    """
    if hasattr(config, '__dataclass_fields__'):
        result = {}
        for field in fields(config):
            value = getattr(config, field.name)
            if hasattr(value, '__dataclass_fields__'):
                result[field.name] = config_to_dict(value)
            else:
                result[field.name] = _encode(value)
        return result
    return config


def config_hash(config: Any) -> str:
    """
    Compute deterministic hash of a configuration.

    Args:
        config: Dataclass configuration

    Returns:
        8-character hex hash
    """
    json_str = json.dumps(config_to_dict(config), sort_keys=True, default=str)
    return hashlib.sha256(json_str.encode()).hexdigest()[:8]


def save_config(config: Any, path: str | Path) -> None:
    """Save configuration to JSON file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, 'w') as f:
        json.dump(config_to_dict(config), f, indent=2, default=str)


def graph_config_from_dict(config_dict: dict) -> GraphConfig:
    options = BuildOptions.NONE
    for member_name in config_dict.get('build_options', []):
        options |= BuildOptions[member_name]
    return GraphConfig(
        batch_size=config_dict.get('batch_size'),
        build_options=options,
        seed=config_dict.get('seed', 0),
    )


def load_config(path: str | Path) -> GraphConfig:
    """
    Load a GraphConfig from JSON file.

    Args:
        path: JSON file path

    Returns:
        GraphConfig instance
    """
    with open(path, 'r') as f:
        config_dict = json.load(f)

    return graph_config_from_dict(config_dict)


class LearningOptimizer(enum.Enum):
    """Update rule applied to a learning variable's gradient."""
    STOCHASTIC_GRADIENT_DESCENT = "sgd"
    ADAM = "adam"
