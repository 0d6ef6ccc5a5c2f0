"""
Module: prismslice.types
------------------------
Data structures, factory functions and exceptions shared by the
simulation modules.

Submodules
----------
- `prism_types`:
    PyTree containers for atoms, parameters, potentials, spectral grids,
    beam selections and the compact scattering matrix
- `errors`:
    Exception classes for configuration, resource and worker failures
"""

from .errors import ConfigurationError, ResourceError, WorkerError
from .prism_types import (ALGORITHMS, KIRKLAND_ELEMENTS, TILT_MODES, AtomList,
                          BeamSelection, CompactSMatrix, PotentialKernels,
                          PotentialVolume, SimulationParams, SpectralGrid,
                          WorkRange,
                          make_atom_list, make_potential_volume,
                          make_simulation_params, non_jax_number,
                          scalar_float, scalar_int, scalar_numeric)

__all__: list[str] = [
    "ALGORITHMS",
    "KIRKLAND_ELEMENTS",
    "TILT_MODES",
    "AtomList",
    "BeamSelection",
    "CompactSMatrix",
    "ConfigurationError",
    "PotentialKernels",
    "PotentialVolume",
    "ResourceError",
    "SimulationParams",
    "SpectralGrid",
    "WorkRange",
    "WorkerError",
    "make_atom_list",
    "make_potential_volume",
    "make_simulation_params",
    "non_jax_number",
    "scalar_float",
    "scalar_int",
    "scalar_numeric",
]
