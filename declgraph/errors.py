"""Error taxonomy for graph declaration, construction and execution.

Every failure raised by declgraph derives from DeclGraphError, grouped as:
- GraphDeclarationError: structural mistakes in the node list
- ResolutionError: a name or previous output could not be resolved
- ShapeError: incompatible or unknown tensor shapes
- ConfigurationError: an option is invalid for the node it was set on
- RunError: a mode could not be run with the given inputs
- PersistenceError: variable data could not be extracted or loaded
- DataSetError: a sample or batch request does not fit the data set
"""

from __future__ import annotations


UNNAMED = "* Unnamed *"
UNNAMED_PREVIOUS = "*Unnamed - last node*"


class DeclGraphError(Exception):
    """Base class for all declgraph errors."""


# ============================================================================
# Structural
# ============================================================================

class GraphDeclarationError(DeclGraphError):
    """The node list violates a structural rule."""


class TargetNodesMustBeNamedError(GraphDeclarationError):
    def __init__(self, node_type: str):
        super().__init__(f"{node_type} node marked as a target must have a name")
        self.node_type = node_type


class NodeCannotBeTargetError(GraphDeclarationError):
    def __init__(self, node_type: str, name: str | None):
        super().__init__(f"{node_type} node '{name or UNNAMED}' cannot be a target")
        self.node_type = node_type
        self.name = name


class MoreThanOneLearningNodeError(GraphDeclarationError):
    def __init__(self):
        super().__init__("Only one Learning node is allowed in a graph")


class VariableLearningNodeMustBeNamedError(GraphDeclarationError):
    def __init__(self):
        super().__init__(
            "A Learning node with a variable learning rate must be named, "
            "the name is used to feed the rate"
        )


class NameNotUniqueError(GraphDeclarationError):
    def __init__(self, name: str):
        super().__init__(f"Tensor name '{name}' is already used in the graph")
        self.name = name


class UnreferencedNodeError(GraphDeclarationError):
    def __init__(self, node_type: str, name: str | None):
        super().__init__(
            f"Node: {node_type} name: {name or UNNAMED} is not referenced "
            f"by another node and is not a target"
        )
        self.node_type = node_type
        self.name = name


class NoTargetsInGraphError(GraphDeclarationError):
    def __init__(self, mode: str | None = None):
        if mode is None:
            message = "Graph has no target tensors"
        else:
            message = f"Graph has no target tensors for mode '{mode}'"
        super().__init__(message)
        self.mode = mode


class NoConfiguredTargetTensorsError(GraphDeclarationError):
    def __init__(self, node_type: str, name: str | None):
        super().__init__(
            f"{node_type} node '{name or UNNAMED}' is a target but has no "
            f"tensors configured to be targeted"
        )
        self.node_type = node_type
        self.name = name


# ============================================================================
# Resolution
# ============================================================================

class ResolutionError(DeclGraphError):
    """A reference could not be resolved to a tensor."""


class NamedTensorNotFoundError(ResolutionError):
    def __init__(self, name: str):
        super().__init__(f"No tensor named '{name}' found in graph")
        self.name = name


class NoPreviousNodeError(ResolutionError):
    def __init__(self):
        super().__init__("Input omitted but there is no previous node output to use")


class SubGraphPlaceHolderNotInInputMapError(ResolutionError):
    def __init__(self, name: str):
        super().__init__(f"SubGraphPlaceHolder '{name}' has no entry in the input map")
        self.name = name


class ReferencedDataTensorNotFoundError(ResolutionError):
    def __init__(self, reference: str):
        super().__init__(f"Data tensor '{reference}' not found in the data tensor map")
        self.reference = reference


# ============================================================================
# Shapes
# ============================================================================

class ShapeError(DeclGraphError, ValueError):
    """A tensor shape is unknown or incompatible."""


class UnknownShapeError(ShapeError):
    def __init__(self, name: str | None):
        super().__init__(f"Shape of tensor '{name or UNNAMED}' could not be determined")
        self.name = name


class BinaryShapesDontMatchError(ShapeError):
    def __init__(self, first: str | None, second: str | None):
        self.first = first or UNNAMED_PREVIOUS
        self.second = second or UNNAMED_PREVIOUS
        super().__init__(
            f"Input shapes of '{self.first}' and '{self.second}' do not match"
        )


class TernaryShapesDontMatchError(ShapeError):
    def __init__(self, first: str | None, second: str | None, third: str | None):
        self.first = first or UNNAMED_PREVIOUS
        self.second = second or UNNAMED_PREVIOUS
        self.third = third or UNNAMED_PREVIOUS
        super().__init__(
            f"Input shapes of '{self.first}', '{self.second}' and "
            f"'{self.third}' do not match"
        )


class InputShapeError(ShapeError):
    """Input shape invalid for the operation; message carries the detail."""


class EntryRequiredForEachDimensionError(ShapeError):
    def __init__(self, what: str):
        super().__init__(f"{what} requires one entry for each dimension")


class DoesNotContainDimensionError(ShapeError):
    def __init__(self, axis: int, rank: int):
        super().__init__(f"Tensor of rank {rank} does not contain dimension {axis}")
        self.axis = axis
        self.rank = rank


class InvalidShapeError(ShapeError):
    """Shape cannot be used for the requested construction."""


# ============================================================================
# Configuration
# ============================================================================

class ConfigurationError(DeclGraphError, ValueError):
    """An option or modifier is invalid for the node it was applied to."""


class NaNPropagationNotSupportedError(ConfigurationError):
    def __init__(self, operation: str):
        super().__init__(f"NaN propagation is not supported for {operation} reductions")


class MultipleDimensionsNotSupportedError(ConfigurationError):
    def __init__(self, operation: str):
        super().__init__(f"{operation} supports only a single axis")


class InvalidValueError(ConfigurationError):
    """A parameter value is outside its valid range."""


# ============================================================================
# Running
# ============================================================================

class RunError(DeclGraphError):
    """A mode could not be run."""


class PlaceHolderInputNotFoundError(RunError):
    def __init__(self, name: str, mode: str):
        super().__init__(f"No input tensor given for placeholder '{name}' needed by mode '{mode}'")
        self.name = name
        self.mode = mode


class PlaceHolderShapeMismatchError(RunError):
    def __init__(self, name: str, expected: tuple[int, ...], actual: tuple[int, ...]):
        super().__init__(
            f"Input for placeholder '{name}' has shape {list(actual)}, "
            f"expected {list(expected)}"
        )
        self.name = name


class GraphNotBuiltForOperationError(RunError):
    def __init__(self, operation: str):
        super().__init__(f"Graph was not built with the options needed for: {operation}")
        self.operation = operation


class ResultTensorNotFoundError(RunError):
    def __init__(self, name: str):
        super().__init__(f"Result tensor '{name}' not found in the run results")
        self.name = name


# ============================================================================
# Persistence
# ============================================================================

class PersistenceError(DeclGraphError):
    """Variable data could not be extracted or loaded."""


class NoLearningVariablesInGraphError(PersistenceError):
    def __init__(self):
        super().__init__("Graph has no learning variables")


class SavedCountMismatchError(PersistenceError):
    def __init__(self, saved: int, expected: int):
        super().__init__(
            f"Saved data has {saved} variables, graph load list has {expected}"
        )
        self.saved = saved
        self.expected = expected


class SavedVariableNotFoundError(PersistenceError):
    def __init__(self, name: str):
        super().__init__(f"Saved variable '{name}' is not in the graph load list")
        self.name = name


# ============================================================================
# Data sets
# ============================================================================

class DataSetError(DeclGraphError):
    """A sample or batch request does not fit the data set."""


class SampleMismatchError(DataSetError, ValueError):
    def __init__(self, part: str, expected: object, actual: object):
        super().__init__(f"Sample {part} is {actual}, data set expects {expected}")
        self.part = part


class InvalidSampleIndexError(DataSetError, IndexError):
    def __init__(self, index: int, count: int):
        super().__init__(f"Sample index {index} is outside the data set of {count} samples")
        self.index = index
