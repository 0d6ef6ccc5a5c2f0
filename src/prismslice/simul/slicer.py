"""
Module: simul.slicer
--------------------
Potential slicer: assigns atoms to slices and accumulates the species
kernels into one projected potential per slice.

Slices are processed in parallel. Every slice is handed to exactly one
worker by a `WorkDispatcher`, and each worker writes only the slices it
was given, so the shared output buffer needs no lock. Random draws for
occupancy and thermal displacement come from a key folded from the base
seed and the slice index, which makes the result independent of the
number of workers and of their scheduling.

Functions
---------
- `slice_atoms`:
    Slice index of every atom, counted from the top of the cell
- `prepare_layout`:
    Cartesian positions and per-slice membership of the atoms
- `accumulate_slice`:
    Projected potential of one slice
- `compute_potential`:
    Projected potential of every slice

Internal Functions
------------------
These functions are not exported and are used internally by the module.

- `_round_half_away`:
    Rounds half-integers away from zero
- `_accumulate`:
    Jitted kernel accumulation with toroidal wrapping
"""

import logging
from functools import partial

import jax
import jax.numpy as jnp
import numpy as np
from beartype import beartype
from beartype.typing import NamedTuple, Optional, Tuple
from jaxtyping import Array, Bool, Float, Int, jaxtyped

from prismslice.types import (PotentialKernels, PotentialVolume,
                              ResourceError, SimulationParams,
                              make_potential_volume, scalar_float)

from .atom_potentials import build_kernel_table
from .dispatch import (ProgressCallback, ProgressTracker, WorkDispatcher,
                       run_workers)

jax.config.update("jax_enable_x64", True)

logger = logging.getLogger(__name__)


class AtomLayout(NamedTuple):
    """
    Description
    -----------
    Atoms arranged for the slicer. `members[s]` lists the atoms of slice s
    in their original order, padded to a common length; padded entries
    are False in `valid`.

    Attributes
    ----------
    - `x`, `y` (Float[Array, "N"]):
        Cartesian position in Angstroms
    - `species_index` (Int[Array, "N"]):
        Row of the atom's species in the kernel table
    - `thermal_sigma` (Float[Array, "N"]):
        Thermal displacement in Angstroms
    - `occupancy` (Float[Array, "N"]):
        Site occupancy
    - `plane` (Int[Array, "N"]):
        Slice index of every atom
    - `members` (Int[Array, "S M"]):
        Atom indices of every slice
    - `valid` (Bool[Array, "S M"]):
        False for padding entries of `members`
    """

    x: Float[Array, "N"]
    y: Float[Array, "N"]
    species_index: Int[Array, "N"]
    thermal_sigma: Float[Array, "N"]
    occupancy: Float[Array, "N"]
    plane: Int[Array, "N"]
    members: Int[Array, "S M"]
    valid: Bool[Array, "S M"]

    @property
    def num_planes(self) -> int:
        return int(self.members.shape[0])


def _round_half_away(values: Float[Array, "..."]) -> Float[Array, "..."]:
    return jnp.sign(values) * jnp.floor(jnp.abs(values) + 0.5)


@jaxtyped(typechecker=beartype)
def slice_atoms(
    z_coords: Float[Array, "N"], slice_thickness: scalar_float
) -> Tuple[Int[Array, "N"], int]:
    """
    Description
    -----------
    Assigns each atom to the slice round((z_max - z) / dz + 0.5) - 1,
    rounding halves away from zero, so slice 0 holds the tallest atom.

    Parameters
    ----------
    - `z_coords` (Float[Array, "N"]):
        Atom heights in Angstroms
    - `slice_thickness` (scalar_float):
        Slice thickness dz in Angstroms

    Returns
    -------
    - `plane` (Int[Array, "N"]):
        Slice index of every atom
    - `num_planes` (int):
        Largest slice index plus one
    """
    z_max = jnp.max(z_coords)
    plane: Int[Array, "N"] = (
        _round_half_away((z_max - z_coords) / slice_thickness + 0.5) - 1
    ).astype(jnp.int32)
    num_planes: int = int(jnp.max(plane)) + 1
    return plane, num_planes


@beartype
def prepare_layout(params: SimulationParams, kernels: PotentialKernels) -> AtomLayout:
    """
    Description
    -----------
    Converts fractional positions to Angstroms, assigns slices and groups
    the atoms of every slice.

    Parameters
    ----------
    - `params` (SimulationParams):
        Simulation parameters
    - `kernels` (PotentialKernels):
        Kernel table covering every species of the atom list

    Returns
    -------
    - `layout` (AtomLayout):
        Atoms arranged by slice
    """
    atoms = params.atoms
    x = atoms.positions[:, 0] * params.cell_dims[2]
    y = atoms.positions[:, 1] * params.cell_dims[1]
    z = atoms.positions[:, 2] * params.cell_dims[0]
    plane, num_planes = slice_atoms(z, params.slice_thickness)
    species_index = jnp.searchsorted(
        kernels.atomic_numbers, atoms.atomic_numbers
    ).astype(jnp.int32)

    plane_np = np.asarray(plane)
    counts = np.bincount(plane_np, minlength=num_planes)
    width = max(int(counts.max()), 1)
    members = np.zeros((num_planes, width), dtype=np.int32)
    valid = np.zeros((num_planes, width), dtype=bool)
    for s in range(num_planes):
        atom_ids = np.flatnonzero(plane_np == s)
        members[s, : atom_ids.size] = atom_ids
        valid[s, : atom_ids.size] = True
    logger.info(
        "Assigned %d atoms to %d slices of %.3f Angstrom",
        plane_np.size,
        num_planes,
        params.slice_thickness,
    )
    return AtomLayout(
        x=x,
        y=y,
        species_index=species_index,
        thermal_sigma=atoms.thermal_sigma,
        occupancy=atoms.occupancy,
        plane=plane,
        members=jnp.asarray(members),
        valid=jnp.asarray(valid),
    )


@partial(
    jax.jit,
    static_argnames=("image_size", "include_thermal_effects", "include_occupancy"),
)
def _accumulate(
    key: Array,
    atom_ids: Int[Array, "M"],
    x: Float[Array, "M"],
    y: Float[Array, "M"],
    species_index: Int[Array, "M"],
    thermal_sigma: Float[Array, "M"],
    occupancy: Float[Array, "M"],
    valid: Bool[Array, "M"],
    kernels: Float[Array, "K ky kx"],
    xvec: Int[Array, "kx"],
    yvec: Int[Array, "ky"],
    pixel_size: Float[Array, "2"],
    image_size: Tuple[int, int],
    include_thermal_effects: bool,
    include_occupancy: bool,
) -> Float[Array, "H W"]:
    height, width = image_size
    # per-atom streams keyed by atom id, independent of the padded width
    atom_keys = jax.vmap(jax.random.fold_in, in_axes=(None, 0))(key, atom_ids)
    atom_keys = jax.vmap(jax.random.split)(atom_keys)
    keep = valid
    if include_occupancy:
        draws = jax.vmap(jax.random.uniform)(atom_keys[:, 0])
        keep = keep & (draws <= occupancy)
    if include_thermal_effects:
        offsets = jax.vmap(lambda k: jax.random.normal(k, (2,)))(atom_keys[:, 1])
        offsets = offsets * thermal_sigma[:, None]
        x = x + offsets[:, 0]
        y = y + offsets[:, 1]
    col = _round_half_away(x / pixel_size[1]).astype(jnp.int32)
    row = _round_half_away(y / pixel_size[0]).astype(jnp.int32)
    cols = (xvec[jnp.newaxis, :] + col[:, jnp.newaxis]) % width
    rows = (yvec[jnp.newaxis, :] + row[:, jnp.newaxis]) % height
    contributions = kernels[species_index] * keep[:, jnp.newaxis, jnp.newaxis]
    potential = jnp.zeros((height, width), dtype=kernels.dtype)
    return potential.at[rows[:, :, jnp.newaxis], cols[:, jnp.newaxis, :]].add(
        contributions
    )


@beartype
def accumulate_slice(
    slice_index: int,
    layout: AtomLayout,
    kernels: PotentialKernels,
    params: SimulationParams,
) -> Float[Array, "H W"]:
    """
    Description
    -----------
    Computes the projected potential of one slice by adding the kernel of
    every atom of the slice at its wrapped pixel position.

    Parameters
    ----------
    - `slice_index` (int):
        Slice to compute
    - `layout` (AtomLayout):
        Atoms arranged by slice
    - `kernels` (PotentialKernels):
        Kernel table
    - `params` (SimulationParams):
        Simulation parameters

    Returns
    -------
    - `potential` (Float[Array, "H W"]):
        Projected potential of the slice

    Flow
    ----
    - Fold the slice index into the base seed, then each atom id into the
      slice key
    - Gather the atoms of the slice
    - Drop atoms whose uniform draw exceeds their occupancy, if enabled
    - Displace atoms by sigma times a normal draw, if enabled
    - Round positions to pixels and add the kernels modulo the image size
    """
    key = jax.random.fold_in(jax.random.PRNGKey(params.random_seed), slice_index)
    atom_ids = layout.members[slice_index]
    return _accumulate(
        key,
        atom_ids,
        layout.x[atom_ids],
        layout.y[atom_ids],
        layout.species_index[atom_ids],
        layout.thermal_sigma[atom_ids],
        layout.occupancy[atom_ids],
        layout.valid[slice_index],
        kernels.kernels,
        kernels.xvec,
        kernels.yvec,
        params.pixel_size,
        image_size=(int(params.image_size[0]), int(params.image_size[1])),
        include_thermal_effects=params.include_thermal_effects,
        include_occupancy=params.include_occupancy,
    )


@beartype
def compute_potential(
    params: SimulationParams, progress: Optional[ProgressCallback] = None
) -> PotentialVolume:
    """
    Description
    -----------
    Computes the projected potential of every slice with
    `params.num_threads` workers. The result depends only on the atoms,
    the seed and the thermal and occupancy switches.

    Parameters
    ----------
    - `params` (SimulationParams):
        Simulation parameters
    - `progress` (Optional[ProgressCallback]):
        Called with (completed, total) after each slice

    Returns
    -------
    - `volume` (PotentialVolume):
        Potential indexed [slice, row, col]

    Raises
    ------
    - ConfigurationError:
        If a species has no Kirkland parameters
    - ResourceError:
        If the potential buffer cannot be allocated
    - WorkerError:
        If a worker fails

    Flow
    ----
    - Build the kernel table and the slice layout
    - Allocate the shared [S, H, W] buffer
    - Workers take one slice at a time from the dispatcher and write it
    - Wrap the buffer in a PotentialVolume
    """
    kernels = build_kernel_table(params)
    layout = prepare_layout(params, kernels)
    num_planes = layout.num_planes
    height, width = int(params.image_size[0]), int(params.image_size[1])
    try:
        volume = np.zeros((num_planes, height, width), dtype=np.float64)
    except MemoryError as err:
        raise ResourceError(
            f"Cannot allocate the potential volume of shape "
            f"({num_planes}, {height}, {width})"
        ) from err

    dispatcher = WorkDispatcher(0, num_planes)
    tracker = ProgressTracker(progress, num_planes)

    def worker(worker_id: int) -> None:
        while True:
            work = dispatcher.get_work(1)
            if work is None:
                break
            for slice_index in range(work.start, work.stop):
                volume[slice_index] = np.asarray(
                    accumulate_slice(slice_index, layout, kernels, params)
                )
                tracker.advance()
        logger.debug("Potential worker %d finished", worker_id)

    num_workers = min(params.num_threads, num_planes)
    logger.info(
        "Computing %d potential slices of %d x %d pixels on %d threads",
        num_planes,
        height,
        width,
        num_workers,
    )
    run_workers(num_workers, worker, dispatcher)
    return make_potential_volume(
        jnp.asarray(volume), params.slice_thickness, params.pixel_size
    )
