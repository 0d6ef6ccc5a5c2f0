"""
Module: simul.coordinates
-------------------------
Spectral sampling, antialiasing, propagators and beam selection.

The beam selection is a policy chosen once from the algorithm name. Both
policies return a `BeamSelection` whose beams are numbered in row-major
raster order over the full spectral grid; the first axis of the compact
S-matrix follows that order.

Functions
---------
- `antialias_mask`:
    Low half of each spectral axis, with wraparound
- `downsample_indices`:
    Rows and columns of the non-redundant low-frequency quarter
- `make_spectral_grid`:
    Spectral coordinates, mask and propagators of a simulation
- `select_beams_regular`:
    PRISM beam selection on the interpolation grid
- `select_beams_tilt`:
    HRTEM beam selection inside a tilt window
- `beam_selection_policy`:
    Selection function of an algorithm
- `select_beams`:
    Applies the policy of `params.algorithm`

Internal Functions
------------------
These functions are not exported and are used internally by the module.

- `_integer_frequencies`:
    Spectral indices of each pixel as integers
- `_number_beams`:
    Turns a selection mask into the raster ordered BeamSelection
- `_tilt_interpolation_factors`:
    Interpolation factors implied by the requested tilt steps
"""

import logging
import math

import jax
import jax.numpy as jnp
from beartype import beartype
from beartype.typing import Callable, Dict, Tuple
from jaxtyping import Array, Bool, Float, Int, jaxtyped

from prismslice.types import (BeamSelection, ConfigurationError,
                              SimulationParams, SpectralGrid)

from .forward import wavelength_ang

jax.config.update("jax_enable_x64", True)

logger = logging.getLogger(__name__)

BeamPolicy = Callable[[SpectralGrid, SimulationParams], BeamSelection]


@beartype
def antialias_mask(image_size: Tuple[int, int]) -> Bool[Array, "H W"]:
    """
    Description
    -----------
    Marks the central half of each spectral axis in FFT order, i.e. the
    frequencies whose index lies in [-N/4, N/4).

    Parameters
    ----------
    - `image_size` (Tuple[int, int]):
        (H, W) of the grid

    Returns
    -------
    - `mask` (Bool[Array, "H W"]):
        True inside the antialiasing aperture
    """
    height, width = image_size
    rows = (jnp.arange(height // 2) - height // 4) % height
    cols = (jnp.arange(width // 2) - width // 4) % width
    row_mask = jnp.zeros(height, dtype=bool).at[rows].set(True)
    col_mask = jnp.zeros(width, dtype=bool).at[cols].set(True)
    return row_mask[:, jnp.newaxis] & col_mask[jnp.newaxis, :]


@beartype
def downsample_indices(
    image_size: Tuple[int, int]
) -> Tuple[Int[Array, "h"], Int[Array, "w"]]:
    """
    Description
    -----------
    Row and column indices of the low-frequency quarter kept by the
    compact S-matrix, in FFT order.

    Parameters
    ----------
    - `image_size` (Tuple[int, int]):
        (H, W) of the full grid, both multiples of 4

    Returns
    -------
    - `qy_ind` (Int[Array, "h"]):
        [0, H/4) followed by [H - H/4, H)
    - `qx_ind` (Int[Array, "w"]):
        [0, W/4) followed by [W - W/4, W)
    """
    height, width = image_size
    qy_ind = jnp.concatenate(
        [jnp.arange(height // 4), jnp.arange(height - height // 4, height)]
    ).astype(jnp.int32)
    qx_ind = jnp.concatenate(
        [jnp.arange(width // 4), jnp.arange(width - width // 4, width)]
    ).astype(jnp.int32)
    return qy_ind, qx_ind


@beartype
def make_spectral_grid(params: SimulationParams) -> SpectralGrid:
    """
    Description
    -----------
    Builds the spectral sampling of one slice together with the free-space
    propagator over one slice thickness and the back propagator to the
    middle of the cell.

    Parameters
    ----------
    - `params` (SimulationParams):
        Simulation parameters

    Returns
    -------
    - `grid` (SpectralGrid):
        Coordinates, mask, propagators and down-sampling indices

    Flow
    ----
    - Spectral coordinates from fftfreq on each axis
    - Largest alias-free radius from the pitch of the requested sampling
    - Antialiasing mask
    - exp(-i pi lambda dz q^2) and exp(+i pi lambda z/2 q^2) inside the mask
    - Down-sampling indices
    """
    height, width = int(params.image_size[0]), int(params.image_size[1])
    pixel_y, pixel_x = params.pixel_size[0], params.pixel_size[1]
    qy = jnp.fft.fftfreq(height, d=pixel_y)
    qx = jnp.fft.fftfreq(width, d=pixel_x)
    qya, qxa = jnp.meshgrid(qy, qx, indexing="ij")
    q2 = qxa**2 + qya**2

    # q_max uses the requested pixel size, not the derived one
    dqx = 1.0 / (width * params.realspace_pixel_size[1])
    dqy = 1.0 / (height * params.realspace_pixel_size[0])
    q_max = jnp.minimum(dqx * (width // 2), dqy * (height // 2)) / 2.0

    mask = antialias_mask((height, width))
    lam = wavelength_ang(params.voltage_kv)
    prop = jnp.where(
        mask, jnp.exp(-1j * jnp.pi * lam * params.slice_thickness * q2), 0.0
    )
    prop_back = jnp.where(
        mask, jnp.exp(1j * jnp.pi * lam * (params.cell_dims[0] / 2.0) * q2), 0.0
    )
    qy_ind, qx_ind = downsample_indices((height, width))
    return SpectralGrid(
        qya=qya,
        qxa=qxa,
        q2=q2,
        q_max=q_max,
        antialias_mask=mask,
        prop=prop.astype(jnp.complex128),
        prop_back=prop_back.astype(jnp.complex128),
        qy_ind=qy_ind,
        qx_ind=qx_ind,
    )


def _integer_frequencies(shape: Tuple[int, int]) -> Tuple[Int[Array, "H W"], Int[Array, "H W"]]:
    height, width = shape
    ya = jnp.round(jnp.fft.fftfreq(height, d=1.0 / height)).astype(jnp.int32)
    xa = jnp.round(jnp.fft.fftfreq(width, d=1.0 / width)).astype(jnp.int32)
    return jnp.meshgrid(ya, xa, indexing="ij")


@jaxtyped(typechecker=beartype)
def _grid_aligned(
    yv: Int[Array, "H W"], xv: Int[Array, "H W"], factors: Tuple[int, int]
) -> Bool[Array, "H W"]:
    # Python modulo is non-negative, so -f and +f are treated alike
    return (yv % factors[0] == 0) & (xv % factors[1] == 0)


def _number_beams(
    selected: Bool[Array, "H W"],
    grid: SpectralGrid,
    params: SimulationParams,
    factors: Tuple[int, int],
) -> BeamSelection:
    height, width = selected.shape
    beam_indices = jnp.flatnonzero(selected.ravel()).astype(jnp.int32)
    number_beams = int(beam_indices.shape[0])
    if number_beams == 0:
        raise ConfigurationError(
            f"No beams selected for algorithm '{params.algorithm}'; widen the "
            "angular range or lower the interpolation factors"
        )
    beam_map = (
        jnp.zeros(height * width, dtype=jnp.int32)
        .at[beam_indices]
        .set(jnp.arange(1, number_beams + 1, dtype=jnp.int32))
        .reshape(height, width)
    )
    lam = wavelength_ang(params.voltage_kv)
    yv, xv = _integer_frequencies((height, width))
    return BeamSelection(
        mask=selected,
        beam_map=beam_map,
        beam_indices=beam_indices,
        x_tilts=grid.qxa.ravel()[beam_indices] * lam,
        y_tilts=grid.qya.ravel()[beam_indices] * lam,
        x_tilt_indices=xv.ravel()[beam_indices] // factors[1],
        y_tilt_indices=yv.ravel()[beam_indices] // factors[0],
    )


@beartype
def select_beams_regular(grid: SpectralGrid, params: SimulationParams) -> BeamSelection:
    """
    Description
    -----------
    PRISM selection: every beam inside the convergence cone
    (alpha_beam_max / lambda)^2 and the antialiasing mask whose integer
    spectral indices are multiples of the interpolation factors.

    Parameters
    ----------
    - `grid` (SpectralGrid):
        Spectral sampling
    - `params` (SimulationParams):
        Simulation parameters

    Returns
    -------
    - `beams` (BeamSelection):
        Selected beams in raster order

    Raises
    ------
    - ConfigurationError:
        If no beam is selected
    """
    factors = (int(params.interpolation_factors[0]), int(params.interpolation_factors[1]))
    lam = wavelength_ang(params.voltage_kv)
    yv, xv = _integer_frequencies(grid.q2.shape)
    selected = (
        (grid.q2 < (params.alpha_beam_max / lam) ** 2)
        & grid.antialias_mask
        & _grid_aligned(yv, xv, factors)
    )
    beams = _number_beams(selected, grid, params, factors)
    logger.info("Selected %d beams on the interpolation grid", beams.number_beams)
    return beams


def _tilt_interpolation_factors(params: SimulationParams) -> Tuple[int, int]:
    if params.tilt_mode != "rectangular":
        return (int(params.interpolation_factors[0]), int(params.interpolation_factors[1]))
    lam = float(wavelength_ang(params.voltage_kv))
    factors = []
    for step, cell in (
        (params.y_tilt_step, float(params.cell_dims[1])),
        (params.x_tilt_step, float(params.cell_dims[2])),
    ):
        min_step = lam / cell
        factors.append(int(math.floor(step / min_step + 0.5)) if step >= min_step else 1)
    return factors[0], factors[1]


@beartype
def select_beams_tilt(grid: SpectralGrid, params: SimulationParams) -> BeamSelection:
    """
    Description
    -----------
    HRTEM selection: beams whose tilt relative to the window centre lies in
    the rectangular or radial window, inside the antialiasing mask and on
    the interpolation grid. In rectangular mode the interpolation factors
    follow from the requested tilt steps, one beam per minimum resolvable
    tilt lambda / cell when a step is smaller than that.

    Parameters
    ----------
    - `grid` (SpectralGrid):
        Spectral sampling
    - `params` (SimulationParams):
        Simulation parameters

    Returns
    -------
    - `beams` (BeamSelection):
        Selected beams in raster order

    Raises
    ------
    - ConfigurationError:
        If the window contains no beam

    Flow
    ----
    - Interpolation factors for the tilt mode
    - Relative tilts |q lambda - offset| on both axes
    - Rectangular: inside the outer box and outside the inner box
    - Radial: between the inner and outer radius
    - Combine with the antialiasing mask and grid alignment
    """
    factors = _tilt_interpolation_factors(params)
    lam = wavelength_ang(params.voltage_kv)
    rel_x: Float[Array, "H W"] = jnp.abs(grid.qxa * lam - params.x_tilt_offset)
    rel_y: Float[Array, "H W"] = jnp.abs(grid.qya * lam - params.y_tilt_offset)
    if params.tilt_mode == "rectangular":
        window = (
            (rel_x <= params.max_x_tilt)
            & (rel_y <= params.max_y_tilt)
            & ((rel_x >= params.min_x_tilt) | (rel_y >= params.min_y_tilt))
        )
    else:
        radius = jnp.sqrt(rel_x**2 + rel_y**2)
        window = (radius >= params.min_r_tilt) & (radius <= params.max_r_tilt)
    yv, xv = _integer_frequencies(grid.q2.shape)
    selected = window & grid.antialias_mask & _grid_aligned(yv, xv, factors)
    beams = _number_beams(selected, grid, params, factors)
    logger.info(
        "Selected %d beams in the %s tilt window", beams.number_beams, params.tilt_mode
    )
    return beams


_BEAM_POLICIES: Dict[str, BeamPolicy] = {
    "prism": select_beams_regular,
    "hrtem": select_beams_tilt,
}


def beam_selection_policy(algorithm: str) -> BeamPolicy:
    """Returns the beam selection function of `algorithm`."""
    try:
        return _BEAM_POLICIES[algorithm]
    except KeyError:
        raise ConfigurationError(f"Unknown algorithm '{algorithm}'") from None


@beartype
def select_beams(grid: SpectralGrid, params: SimulationParams) -> BeamSelection:
    """Selects beams with the policy of `params.algorithm`."""
    return beam_selection_policy(params.algorithm)(grid, params)
