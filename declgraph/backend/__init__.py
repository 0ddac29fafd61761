"""Build-then-run program over JAX."""

from declgraph.backend.program import Program, SymbolicTensor

__all__ = ["Program", "SymbolicTensor"]
