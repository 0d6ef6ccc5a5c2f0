"""
Module: types.prism_types
-------------------------
Data structures and type definitions for PRISM potential slicing and
compact scattering-matrix construction.

Type Aliases
------------
- `scalar_numeric`:
    Type alias for numeric types (int, float or Num array)
    Num Array has 0 dimensions
- `scalar_float`:
    Type alias for float or Float array of 0 dimensions
- `scalar_int`:
    Type alias for int or Integer array of 0 dimensions
- `non_jax_number`:
    Type alias for non-JAX numeric types (int, float)

Classes
-------
- `AtomList`:
    A named tuple for atoms in the tiled cell with fractional coordinates,
    thermal vibration amplitudes and site occupancies
- `SimulationParams`:
    A named tuple aggregating every parameter of a simulation together with
    the derived sampling (image size and pixel size)
- `PotentialKernels`:
    A named tuple holding one projected potential kernel per unique species
- `PotentialVolume`:
    A named tuple for the stack of projected potential slices
- `SpectralGrid`:
    A named tuple for spectral coordinates, antialiasing mask, propagators
    and the down-sampling index vectors
- `BeamSelection`:
    A named tuple for the selected plane waves and their raster ordering
- `CompactSMatrix`:
    A named tuple for the compact scattering matrix and its output sampling
- `WorkRange`:
    A half-open interval of slice or beam indices handed to one worker

Factory Functions
-----------------
- `make_atom_list`:
    Creates an AtomList instance with runtime type checking
- `make_simulation_params`:
    Creates a validated SimulationParams instance and derives the sampling
- `make_potential_volume`:
    Creates a PotentialVolume instance with runtime type checking

Note
----
Always use these factory functions instead of directly instantiating the
NamedTuple classes to ensure proper runtime type checking of the contents.
"""

import math
from pathlib import Path

import jax
import jax.numpy as jnp
from beartype import beartype
from beartype.typing import NamedTuple, Optional, Tuple, TypeAlias, Union
from jax.tree_util import register_pytree_node_class
from jaxtyping import Array, Bool, Complex, Float, Int, Num, jaxtyped

from .errors import ConfigurationError

jax.config.update("jax_enable_x64", True)

scalar_numeric: TypeAlias = Union[int, float, Num[Array, ""]]
scalar_float: TypeAlias = Union[float, Float[Array, ""]]
scalar_int: TypeAlias = Union[int, Int[Array, ""]]
non_jax_number: TypeAlias = Union[int, float]

ALGORITHMS: Tuple[str, ...] = ("prism", "hrtem")
TILT_MODES: Tuple[str, ...] = ("rectangular", "radial")
KIRKLAND_ELEMENTS: int = 103


@register_pytree_node_class
class AtomList(NamedTuple):
    """
    Description
    -----------
    PyTree structure for the atoms of the tiled simulation cell.

    Attributes
    ----------
    - `atomic_numbers` (Int[Array, "N"]):
        Atomic number Z of every atom
    - `positions` (Float[Array, "N 3"]):
        Fractional (x, y, z) coordinates in the tiled cell
    - `thermal_sigma` (Float[Array, "N"]):
        Root mean square thermal displacement in Angstroms
    - `occupancy` (Float[Array, "N"]):
        Site occupancy fraction between 0 and 1
    """

    atomic_numbers: Int[Array, "N"]
    positions: Float[Array, "N 3"]
    thermal_sigma: Float[Array, "N"]
    occupancy: Float[Array, "N"]

    def tree_flatten(self):
        return (
            (
                self.atomic_numbers,
                self.positions,
                self.thermal_sigma,
                self.occupancy,
            ),
            None,
        )

    @classmethod
    def tree_unflatten(cls, aux_data, children):
        return cls(*children)


@register_pytree_node_class
class SimulationParams(NamedTuple):
    """
    Description
    -----------
    Parameter aggregate for one simulation. Array valued fields are PyTree
    children, the remaining settings travel as static auxiliary data.

    Attributes
    ----------
    - `atoms` (AtomList):
        Atoms of the tiled cell
    - `cell_dims` (Float[Array, "3"]):
        Tiled cell size (z, y, x) in Angstroms
    - `realspace_pixel_size` (Float[Array, "2"]):
        Requested (y, x) pixel size in Angstroms
    - `pixel_size` (Float[Array, "2"]):
        Actual (y, x) pixel size, cell size divided by image size
    - `image_size` (Int[Array, "2"]):
        Number of (y, x) pixels, a multiple of four times the
        interpolation factor on each axis
    - `interpolation_factors` (Int[Array, "2"]):
        PRISM interpolation factors (fy, fx)
    - `potential_bound` (float):
        Half width of the potential kernels in Angstroms
    - `slice_thickness` (float):
        Thickness of a potential slice in Angstroms
    - `voltage_kv` (float):
        Accelerating voltage in kilovolts
    - `alpha_beam_max` (float):
        Largest plane wave angle kept in the S-matrix, in radians
    - `num_threads` (int):
        Number of worker threads
    - `batch_size_target` (int):
        Upper limit on the number of beams sharing a transform plan
    - `algorithm` (str):
        "prism" for regular beam selection, "hrtem" for tilt selection
    - `include_thermal_effects` (bool):
        Displace atoms by a random thermal offset
    - `include_occupancy` (bool):
        Randomly drop atoms according to their occupancy
    - `random_seed` (int):
        Base seed for the per slice random streams
    - `potential_3d` (bool):
        Build the kernels from the 3-D potential integrated along z
    - `tilt_mode` (str):
        "rectangular" or "radial" tilt window
    - `x_tilt_offset`, `y_tilt_offset` (float):
        Center of the tilt window in radians
    - `min_x_tilt`, `max_x_tilt`, `min_y_tilt`, `max_y_tilt` (float):
        Rectangular tilt window in radians
    - `min_r_tilt`, `max_r_tilt` (float):
        Radial tilt window in radians
    - `x_tilt_step`, `y_tilt_step` (float):
        Requested tilt spacing in radians, 0 for the finest spacing
    - `kirkland_path` (Optional[Path]):
        Alternative Kirkland parameter table, None for the packaged one
    """

    atoms: AtomList
    cell_dims: Float[Array, "3"]
    realspace_pixel_size: Float[Array, "2"]
    pixel_size: Float[Array, "2"]
    image_size: Int[Array, "2"]
    interpolation_factors: Int[Array, "2"]
    potential_bound: float
    slice_thickness: float
    voltage_kv: float
    alpha_beam_max: float
    num_threads: int
    batch_size_target: int
    algorithm: str
    include_thermal_effects: bool
    include_occupancy: bool
    random_seed: int
    potential_3d: bool
    tilt_mode: str
    x_tilt_offset: float
    y_tilt_offset: float
    min_x_tilt: float
    max_x_tilt: float
    min_y_tilt: float
    max_y_tilt: float
    min_r_tilt: float
    max_r_tilt: float
    x_tilt_step: float
    y_tilt_step: float
    kirkland_path: Optional[Path]

    def tree_flatten(self):
        return (
            (
                self.atoms,
                self.cell_dims,
                self.realspace_pixel_size,
                self.pixel_size,
                self.image_size,
                self.interpolation_factors,
            ),
            tuple(self[6:]),
        )

    @classmethod
    def tree_unflatten(cls, aux_data, children):
        return cls(*children, *aux_data)


@register_pytree_node_class
class PotentialKernels(NamedTuple):
    """
    Description
    -----------
    PyTree structure for the potential kernel table. Row k of `kernels`
    belongs to species `atomic_numbers[k]`.

    Attributes
    ----------
    - `atomic_numbers` (Int[Array, "K"]):
        Unique atomic numbers in ascending order
    - `kernels` (Float[Array, "K ky kx"]):
        Non-negative projected potential kernels
    - `xvec` (Int[Array, "kx"]):
        Integer pixel offsets of the kernel columns
    - `yvec` (Int[Array, "ky"]):
        Integer pixel offsets of the kernel rows
    """

    atomic_numbers: Int[Array, "K"]
    kernels: Float[Array, "K ky kx"]
    xvec: Int[Array, "kx"]
    yvec: Int[Array, "ky"]

    def tree_flatten(self):
        return (
            (
                self.atomic_numbers,
                self.kernels,
                self.xvec,
                self.yvec,
            ),
            None,
        )

    @classmethod
    def tree_unflatten(cls, aux_data, children):
        return cls(*children)


@register_pytree_node_class
class PotentialVolume(NamedTuple):
    """
    Description
    -----------
    PyTree structure for the projected potential of every slice.

    Attributes
    ----------
    - `slices` (Float[Array, "S H W"]):
        Projected potential indexed [slice, row, col]
    - `slice_thickness` (scalar_float):
        Thickness of each slice in Angstroms
    - `pixel_size` (Float[Array, "2"]):
        (y, x) pixel size in Angstroms
    """

    slices: Float[Array, "S H W"]
    slice_thickness: scalar_float
    pixel_size: Float[Array, "2"]

    def tree_flatten(self):
        return (
            (
                self.slices,
                self.slice_thickness,
                self.pixel_size,
            ),
            None,
        )

    @classmethod
    def tree_unflatten(cls, aux_data, children):
        return cls(*children)


@register_pytree_node_class
class SpectralGrid(NamedTuple):
    """
    Description
    -----------
    PyTree structure for the spectral sampling of one slice.

    Attributes
    ----------
    - `qya`, `qxa` (Float[Array, "H W"]):
        Spectral coordinates in inverse Angstroms
    - `q2` (Float[Array, "H W"]):
        Squared spectral radius
    - `q_max` (Float[Array, ""]):
        Largest spectral radius free of aliasing
    - `antialias_mask` (Bool[Array, "H W"]):
        Low half of each spectral axis, with wraparound
    - `prop` (Complex[Array, "H W"]):
        Free space propagator over one slice thickness
    - `prop_back` (Complex[Array, "H W"]):
        Back propagator to the middle of the cell
    - `qy_ind` (Int[Array, "h"]):
        Rows kept by the down-sampled output
    - `qx_ind` (Int[Array, "w"]):
        Columns kept by the down-sampled output
    """

    qya: Float[Array, "H W"]
    qxa: Float[Array, "H W"]
    q2: Float[Array, "H W"]
    q_max: Float[Array, ""]
    antialias_mask: Bool[Array, "H W"]
    prop: Complex[Array, "H W"]
    prop_back: Complex[Array, "H W"]
    qy_ind: Int[Array, "h"]
    qx_ind: Int[Array, "w"]

    def tree_flatten(self):
        return (tuple(self), None)

    @classmethod
    def tree_unflatten(cls, aux_data, children):
        return cls(*children)


@register_pytree_node_class
class BeamSelection(NamedTuple):
    """
    Description
    -----------
    PyTree structure for the plane waves kept in the S-matrix.

    Attributes
    ----------
    - `mask` (Bool[Array, "H W"]):
        True where a beam is selected
    - `beam_map` (Int[Array, "H W"]):
        1-based raster number of every selected beam, 0 elsewhere
    - `beam_indices` (Int[Array, "B"]):
        0-based flat indices (row * W + col) of the beams in raster order
    - `x_tilts`, `y_tilts` (Float[Array, "B"]):
        Beam tilt in radians
    - `x_tilt_indices`, `y_tilt_indices` (Int[Array, "B"]):
        Beam position in units of the interpolation factor
    """

    mask: Bool[Array, "H W"]
    beam_map: Int[Array, "H W"]
    beam_indices: Int[Array, "B"]
    x_tilts: Float[Array, "B"]
    y_tilts: Float[Array, "B"]
    x_tilt_indices: Int[Array, "B"]
    y_tilt_indices: Int[Array, "B"]

    def tree_flatten(self):
        return (tuple(self), None)

    @classmethod
    def tree_unflatten(cls, aux_data, children):
        return cls(*children)

    @property
    def number_beams(self) -> int:
        return int(self.beam_indices.shape[0])


@register_pytree_node_class
class CompactSMatrix(NamedTuple):
    """
    Description
    -----------
    PyTree structure for the compact scattering matrix. The first axis
    follows `beam_indices`, and consumers must keep that ordering.

    Attributes
    ----------
    - `s_matrix` (Complex[Array, "B h w"]):
        Cropped exit wave of every beam
    - `beam_indices` (Int[Array, "B"]):
        Flat spectral index of every beam in raster order
    - `beam_map_output` (Int[Array, "h w"]):
        Beam numbering on the down-sampled grid
    - `qxa_output`, `qya_output` (Float[Array, "h w"]):
        Spectral coordinates on the down-sampled grid
    - `pixel_size_output` (Float[Array, "2"]):
        (y, x) pixel size of the cropped exit waves
    - `image_size_output` (Int[Array, "2"]):
        (y, x) size of the cropped exit waves
    - `x_tilts`, `y_tilts` (Float[Array, "B"]):
        Beam tilts in radians
    - `x_tilt_indices`, `y_tilt_indices` (Int[Array, "B"]):
        Integer tilt positions
    """

    s_matrix: Complex[Array, "B h w"]
    beam_indices: Int[Array, "B"]
    beam_map_output: Int[Array, "h w"]
    qxa_output: Float[Array, "h w"]
    qya_output: Float[Array, "h w"]
    pixel_size_output: Float[Array, "2"]
    image_size_output: Int[Array, "2"]
    x_tilts: Float[Array, "B"]
    y_tilts: Float[Array, "B"]
    x_tilt_indices: Int[Array, "B"]
    y_tilt_indices: Int[Array, "B"]

    def tree_flatten(self):
        return (tuple(self), None)

    @classmethod
    def tree_unflatten(cls, aux_data, children):
        return cls(*children)


class WorkRange(NamedTuple):
    """Half-open interval [start, stop) of slice or beam indices."""

    start: int
    stop: int

    def __len__(self) -> int:
        return self.stop - self.start


@jaxtyped(typechecker=beartype)
def make_atom_list(
    atomic_numbers: Int[Array, "N"],
    positions: Float[Array, "N 3"],
    thermal_sigma: Optional[Float[Array, "N"]] = None,
    occupancy: Optional[Float[Array, "N"]] = None,
) -> AtomList:
    """
    Description
    -----------
    Factory function for AtomList with data validation.

    Parameters
    ----------
    - `atomic_numbers` (Int[Array, "N"]):
        Atomic number of every atom
    - `positions` (Float[Array, "N 3"]):
        Fractional (x, y, z) coordinates
    - `thermal_sigma` (Optional[Float[Array, "N"]]):
        Thermal displacement in Angstroms, zeros if None
    - `occupancy` (Optional[Float[Array, "N"]]):
        Site occupancy, ones if None

    Returns
    -------
    - `atoms` (AtomList):
        Validated atom list

    Raises
    ------
    - ConfigurationError:
        If the list is empty or contains invalid values

    Flow
    ----
    - Fill in default thermal amplitudes and occupancies
    - Reject empty lists, non-positive atomic numbers,
      negative thermal amplitudes and occupancies outside [0, 1]
    - Create and return AtomList instance
    """
    num_atoms: int = atomic_numbers.shape[0]
    if num_atoms == 0:
        raise ConfigurationError("The atom list is empty")
    if thermal_sigma is None:
        thermal_sigma = jnp.zeros(num_atoms, dtype=jnp.float64)
    if occupancy is None:
        occupancy = jnp.ones(num_atoms, dtype=jnp.float64)
    if bool(jnp.any(atomic_numbers < 1)):
        raise ConfigurationError("Atomic numbers must be positive")
    if bool(jnp.any(thermal_sigma < 0)):
        raise ConfigurationError("Thermal displacements must be non-negative")
    if bool(jnp.any((occupancy < 0) | (occupancy > 1))):
        raise ConfigurationError("Occupancies must lie between 0 and 1")
    return AtomList(
        atomic_numbers=jnp.asarray(atomic_numbers, dtype=jnp.int32),
        positions=jnp.asarray(positions, dtype=jnp.float64),
        thermal_sigma=jnp.asarray(thermal_sigma, dtype=jnp.float64),
        occupancy=jnp.asarray(occupancy, dtype=jnp.float64),
    )


def _derived_image_size(cell_length: float, pixel: float, factor: int) -> int:
    block: int = 4 * factor
    blocks: int = int(math.floor(cell_length / (pixel * block) + 0.5))
    return block * max(1, blocks)


@beartype
def make_simulation_params(
    atoms: AtomList,
    cell_dims: Union[Float[Array, "3"], Tuple[non_jax_number, ...]],
    realspace_pixel_size: Union[Float[Array, "2"], Tuple[non_jax_number, ...]] = (0.1, 0.1),
    interpolation_factors: Union[Int[Array, "2"], Tuple[int, ...]] = (5, 5),
    potential_bound: non_jax_number = 1.0,
    slice_thickness: non_jax_number = 2.0,
    voltage_kv: non_jax_number = 80.0,
    alpha_beam_max: non_jax_number = 0.024,
    num_threads: int = 12,
    batch_size_target: int = 1,
    algorithm: str = "prism",
    include_thermal_effects: bool = False,
    include_occupancy: bool = False,
    random_seed: int = 0,
    potential_3d: bool = False,
    tilt_mode: str = "rectangular",
    x_tilt_offset: non_jax_number = 0.0,
    y_tilt_offset: non_jax_number = 0.0,
    min_x_tilt: non_jax_number = 0.0,
    max_x_tilt: non_jax_number = 0.0,
    min_y_tilt: non_jax_number = 0.0,
    max_y_tilt: non_jax_number = 0.0,
    min_r_tilt: non_jax_number = 0.0,
    max_r_tilt: non_jax_number = 0.0,
    x_tilt_step: non_jax_number = 0.0,
    y_tilt_step: non_jax_number = 0.0,
    kirkland_path: Optional[Path] = None,
) -> SimulationParams:
    """
    Description
    -----------
    Validates the simulation settings and derives the real space sampling.
    The image size on each axis is the multiple of four times the
    interpolation factor closest to cell / requested pixel size, so the
    down-sampled output is exactly half the image on both axes.

    Parameters
    ----------
    - `atoms` (AtomList):
        Atoms of the tiled cell
    - `cell_dims` (Union[Float[Array, "3"], Tuple[non_jax_number, ...]]):
        Tiled cell size (z, y, x) in Angstroms
    - `realspace_pixel_size` (Union[Float[Array, "2"], Tuple[non_jax_number, ...]]):
        Requested (y, x) pixel size in Angstroms
    - `interpolation_factors` (Union[Int[Array, "2"], Tuple[int, ...]]):
        PRISM interpolation factors (fy, fx)
    - remaining keywords:
        See `SimulationParams`

    Returns
    -------
    - `params` (SimulationParams):
        Validated parameter aggregate

    Raises
    ------
    - ConfigurationError:
        If a setting is out of range, an option is unknown, a tilt window
        is contradictory or an atomic number lies outside 1..103

    Flow
    ----
    - Convert vector settings to JAX arrays
    - Check every length, count and option
    - Check that no tilt window has its minimum above its maximum
    - Check that every species has Kirkland parameters
    - Derive image size and pixel size
    - Create and return SimulationParams instance
    """
    cell = jnp.asarray(cell_dims, dtype=jnp.float64)
    requested = jnp.asarray(realspace_pixel_size, dtype=jnp.float64)
    factors = jnp.asarray(interpolation_factors, dtype=jnp.int32)

    if bool(jnp.any(cell <= 0)):
        raise ConfigurationError(f"Cell dimensions must be positive, got {cell}")
    if bool(jnp.any(requested <= 0)):
        raise ConfigurationError(
            f"Pixel sizes must be positive, got {requested}"
        )
    if bool(jnp.any(factors < 1)):
        raise ConfigurationError(
            f"Interpolation factors must be at least 1, got {factors}"
        )
    positive_settings = {
        "potential_bound": potential_bound,
        "slice_thickness": slice_thickness,
        "voltage_kv": voltage_kv,
        "alpha_beam_max": alpha_beam_max,
    }
    for name, value in positive_settings.items():
        if value <= 0:
            raise ConfigurationError(f"{name} must be positive, got {value}")
    if num_threads < 1:
        raise ConfigurationError(f"num_threads must be at least 1, got {num_threads}")
    if batch_size_target < 1:
        raise ConfigurationError(
            f"batch_size_target must be at least 1, got {batch_size_target}"
        )
    if algorithm not in ALGORITHMS:
        raise ConfigurationError(
            f"Unknown algorithm '{algorithm}', expected one of {ALGORITHMS}"
        )
    if tilt_mode not in TILT_MODES:
        raise ConfigurationError(
            f"Unknown tilt mode '{tilt_mode}', expected one of {TILT_MODES}"
        )
    windows = {
        "x tilt": (min_x_tilt, max_x_tilt),
        "y tilt": (min_y_tilt, max_y_tilt),
        "radial tilt": (min_r_tilt, max_r_tilt),
    }
    for name, (lower, upper) in windows.items():
        if lower < 0 or upper < 0:
            raise ConfigurationError(f"The {name} window must be non-negative")
        if lower > upper:
            raise ConfigurationError(
                f"The {name} window is contradictory: minimum {lower} "
                f"exceeds maximum {upper}"
            )
    if x_tilt_step < 0 or y_tilt_step < 0:
        raise ConfigurationError("Tilt steps must be non-negative")
    species = jnp.unique(atoms.atomic_numbers)
    unknown = species[(species < 1) | (species > KIRKLAND_ELEMENTS)]
    if unknown.size > 0:
        raise ConfigurationError(
            f"No Kirkland parameters for atomic numbers {unknown.tolist()}; "
            f"supported range is 1..{KIRKLAND_ELEMENTS}"
        )

    image_size = jnp.asarray(
        [
            _derived_image_size(float(cell[1]), float(requested[0]), int(factors[0])),
            _derived_image_size(float(cell[2]), float(requested[1]), int(factors[1])),
        ],
        dtype=jnp.int32,
    )
    pixel_size = cell[1:] / image_size

    return SimulationParams(
        atoms=atoms,
        cell_dims=cell,
        realspace_pixel_size=requested,
        pixel_size=pixel_size,
        image_size=image_size,
        interpolation_factors=factors,
        potential_bound=float(potential_bound),
        slice_thickness=float(slice_thickness),
        voltage_kv=float(voltage_kv),
        alpha_beam_max=float(alpha_beam_max),
        num_threads=num_threads,
        batch_size_target=batch_size_target,
        algorithm=algorithm,
        include_thermal_effects=include_thermal_effects,
        include_occupancy=include_occupancy,
        random_seed=random_seed,
        potential_3d=potential_3d,
        tilt_mode=tilt_mode,
        x_tilt_offset=float(x_tilt_offset),
        y_tilt_offset=float(y_tilt_offset),
        min_x_tilt=float(min_x_tilt),
        max_x_tilt=float(max_x_tilt),
        min_y_tilt=float(min_y_tilt),
        max_y_tilt=float(max_y_tilt),
        min_r_tilt=float(min_r_tilt),
        max_r_tilt=float(max_r_tilt),
        x_tilt_step=float(x_tilt_step),
        y_tilt_step=float(y_tilt_step),
        kirkland_path=kirkland_path,
    )


@jaxtyped(typechecker=beartype)
def make_potential_volume(
    slices: Float[Array, "S H W"],
    slice_thickness: scalar_float,
    pixel_size: Float[Array, "2"],
) -> PotentialVolume:
    """
    Description
    -----------
    Factory function for PotentialVolume with data validation.

    Parameters
    ----------
    - `slices` (Float[Array, "S H W"]):
        Projected potential indexed [slice, row, col]
    - `slice_thickness` (scalar_float):
        Thickness of each slice
    - `pixel_size` (Float[Array, "2"]):
        (y, x) pixel size

    Returns
    -------
    - `volume` (PotentialVolume):
        Validated potential volume

    Raises
    ------
    - ConfigurationError:
        If the volume is empty or contains non-finite values
    """
    if slices.size == 0:
        raise ConfigurationError(f"Potential volume is empty, shape {slices.shape}")
    if not bool(jnp.all(jnp.isfinite(slices))):
        raise ConfigurationError("Potential volume contains non-finite values")
    return PotentialVolume(
        slices=jnp.asarray(slices, dtype=jnp.float64),
        slice_thickness=jnp.asarray(slice_thickness, dtype=jnp.float64),
        pixel_size=jnp.asarray(pixel_size, dtype=jnp.float64),
    )
