"""
Module: prismslice.simul
------------------------
Potential slicing and plane-wave propagation for PRISM compact
scattering matrices and HRTEM tilt series.

Submodules
----------
- `preprocessing`:
    Kirkland parameters, atomic symbols, XYZ model reading and tiling
- `atom_potentials`:
    Projected and 3-D single atom potentials and the kernel table
- `slicer`:
    Slice assignment and the parallel potential computation
- `coordinates`:
    Spectral grid, antialiasing mask, propagators and beam selection
- `forward`:
    Wavelength, interaction parameter and transmission functions
- `dispatch`:
    Work dispatcher, worker pool and progress counting
- `propagate`:
    Transform plans and batched plane-wave propagation
- `smatrix`:
    Compact S-matrix orchestrator
- `workflows`:
    End-to-end model to S-matrix chaining
"""

from .atom_potentials import (bessel_k0, build_kernel_table, kernel_support,
                              projected_potential, projected_potential_3d)
from .coordinates import (antialias_mask, beam_selection_policy,
                          downsample_indices, make_spectral_grid, select_beams,
                          select_beams_regular, select_beams_tilt)
from .dispatch import (DispatcherState, ProgressTracker, WorkDispatcher,
                       run_workers)
from .forward import interaction_sigma, transmission_volume, wavelength_ang
from .preprocessing import (atomic_symbol, kirkland_params,
                            kirkland_potentials, parse_xyz, tile_atoms)
from .propagate import (TransformPlan, plan_lock, propagate_beams,
                        propagation_batch_size)
from .slicer import (AtomLayout, accumulate_slice, compute_potential,
                     prepare_layout, slice_atoms)
from .smatrix import build_compact_matrix
from .workflows import xyz_to_compact_matrix

__all__: list[str] = [
    "AtomLayout",
    "DispatcherState",
    "ProgressTracker",
    "TransformPlan",
    "WorkDispatcher",
    "accumulate_slice",
    "antialias_mask",
    "atomic_symbol",
    "beam_selection_policy",
    "bessel_k0",
    "build_compact_matrix",
    "build_kernel_table",
    "compute_potential",
    "downsample_indices",
    "interaction_sigma",
    "kernel_support",
    "kirkland_params",
    "kirkland_potentials",
    "make_spectral_grid",
    "parse_xyz",
    "plan_lock",
    "prepare_layout",
    "projected_potential",
    "projected_potential_3d",
    "propagate_beams",
    "propagation_batch_size",
    "run_workers",
    "select_beams",
    "select_beams_regular",
    "select_beams_tilt",
    "slice_atoms",
    "tile_atoms",
    "transmission_volume",
    "wavelength_ang",
    "xyz_to_compact_matrix",
]
