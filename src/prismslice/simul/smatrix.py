"""
Module: simul.smatrix
---------------------
Compact S-matrix orchestrator.

Sets up the spectral grid, the beam selection and the transmission stack
on the calling thread, then propagates the beams on `params.num_threads`
workers. Workers draw batches of beams from one shared dispatcher, own one
transform plan each, and write each batch into its own slab of the shared
output buffer.

Functions
---------
- `build_compact_matrix`:
    Compact S-matrix of a potential volume
"""

import logging

import jax
import jax.numpy as jnp
import numpy as np
from beartype import beartype
from beartype.typing import Optional

from prismslice.types import (CompactSMatrix, ConfigurationError,
                              PotentialVolume, ResourceError,
                              SimulationParams)

from .coordinates import beam_selection_policy, make_spectral_grid
from .dispatch import (ProgressCallback, ProgressTracker, WorkDispatcher,
                       run_workers)
from .forward import transmission_volume
from .propagate import TransformPlan, propagation_batch_size

jax.config.update("jax_enable_x64", True)

logger = logging.getLogger(__name__)


@beartype
def build_compact_matrix(
    params: SimulationParams,
    potential: PotentialVolume,
    progress: Optional[ProgressCallback] = None,
) -> CompactSMatrix:
    """
    Description
    -----------
    Propagates every selected beam through the potential and assembles the
    compact S-matrix. The first axis of `s_matrix` follows
    `beam_indices`, the raster order of the beams on the full grid.

    Parameters
    ----------
    - `params` (SimulationParams):
        Simulation parameters
    - `potential` (PotentialVolume):
        Potential from `compute_potential`
    - `progress` (Optional[ProgressCallback]):
        Called with (completed, total) beams after each batch

    Returns
    -------
    - `smatrix` (CompactSMatrix):
        Exit waves of shape [beams, H/2, W/2] with their output sampling

    Raises
    ------
    - ConfigurationError:
        If the potential does not match the image size or no beam is
        selected
    - ResourceError:
        If the output buffer cannot be allocated
    - WorkerError:
        If a worker fails; the partially written matrix is discarded

    Flow
    ----
    - Spectral grid and beam selection, policy chosen from the algorithm
    - Transmission function of every slice
    - Batch size min(target, max(1, beams // threads))
    - Workers build a plan, then loop on the dispatcher until it is empty
    - Down-sampled coordinates and beam map for the output
    """
    height, width = int(params.image_size[0]), int(params.image_size[1])
    if potential.slices.shape[1:] != (height, width):
        raise ConfigurationError(
            f"Potential slices of shape {potential.slices.shape[1:]} do not "
            f"match the image size ({height}, {width})"
        )
    grid = make_spectral_grid(params)
    select = beam_selection_policy(params.algorithm)
    beams = select(grid, params)
    transmission = transmission_volume(potential.slices, params.voltage_kv)

    number_beams = beams.number_beams
    batch_size = propagation_batch_size(
        number_beams, params.num_threads, params.batch_size_target
    )
    out_height, out_width = int(grid.qy_ind.shape[0]), int(grid.qx_ind.shape[0])
    try:
        s_matrix = np.zeros((number_beams, out_height, out_width), dtype=np.complex128)
    except MemoryError as err:
        raise ResourceError(
            f"Cannot allocate the compact S-matrix of shape "
            f"({number_beams}, {out_height}, {out_width})"
        ) from err

    beam_indices = np.asarray(beams.beam_indices, dtype=np.int32)
    back_propagate = params.algorithm == "hrtem"
    dispatcher = WorkDispatcher(0, number_beams)
    tracker = ProgressTracker(progress, number_beams)

    def worker(worker_id: int) -> None:
        with TransformPlan(
            batch_size,
            transmission,
            grid.prop,
            grid.prop_back,
            grid.qy_ind,
            grid.qx_ind,
            back_propagate,
        ) as plan:
            while True:
                work = dispatcher.get_work(batch_size)
                if work is None:
                    break
                padded = np.full(batch_size, -1, dtype=np.int32)
                padded[: len(work)] = beam_indices[work.start : work.stop]
                exit_waves = plan.execute(jnp.asarray(padded))
                s_matrix[work.start : work.stop] = np.asarray(exit_waves[: len(work)])
                tracker.advance(len(work))
        logger.debug("Propagation worker %d finished", worker_id)

    num_workers = min(params.num_threads, number_beams)
    logger.info(
        "Propagating %d beams through %d slices on %d threads, %d beams per batch",
        number_beams,
        transmission.shape[0],
        num_workers,
        batch_size,
    )
    run_workers(num_workers, worker, dispatcher)

    def downsample(values):
        return values[grid.qy_ind][:, grid.qx_ind]

    return CompactSMatrix(
        s_matrix=jnp.asarray(s_matrix),
        beam_indices=beams.beam_indices,
        beam_map_output=downsample(beams.beam_map),
        qxa_output=downsample(grid.qxa),
        qya_output=downsample(grid.qya),
        pixel_size_output=params.pixel_size * 2.0,
        image_size_output=params.image_size // 2,
        x_tilts=beams.x_tilts,
        y_tilts=beams.y_tilts,
        x_tilt_indices=beams.x_tilt_indices,
        y_tilt_indices=beams.y_tilt_indices,
    )
