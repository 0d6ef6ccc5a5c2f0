"""
Module: prismslice
------------------
JAX engine for PRISM compact scattering matrices: Kirkland potential
kernels, parallel potential slicing, transmission functions and batched
plane-wave propagation.

Submodules
----------
- `types`:
    Data structures, factory functions and exceptions
- `simul`:
    Potential slicing, beam selection and S-matrix construction
- `logging_config`:
    Console and file logging setup for applications
"""

from . import simul, types
from .logging_config import setup_logging
from .simul import (build_compact_matrix, compute_potential,
                    xyz_to_compact_matrix)
from .types import make_atom_list, make_simulation_params

__all__: list[str] = [
    "build_compact_matrix",
    "compute_potential",
    "make_atom_list",
    "make_simulation_params",
    "setup_logging",
    "simul",
    "types",
    "xyz_to_compact_matrix",
]
