"""
Module: simul.workflows
-----------------------
End-to-end chaining of the simulation stages.

Functions
---------
- `xyz_to_compact_matrix`:
    Reads a model, tiles it, and computes potential and compact S-matrix
"""

import logging
from pathlib import Path

from beartype import beartype
from beartype.typing import Any, Optional, Tuple, Union

from prismslice.types import (CompactSMatrix, PotentialVolume,
                              make_simulation_params)

from .dispatch import ProgressCallback
from .preprocessing import parse_xyz, tile_atoms
from .slicer import compute_potential
from .smatrix import build_compact_matrix

logger = logging.getLogger(__name__)


@beartype
def xyz_to_compact_matrix(
    xyz_path: Union[str, Path],
    tiles: Tuple[int, int, int] = (1, 1, 1),
    progress: Optional[ProgressCallback] = None,
    **settings: Any,
) -> Tuple[PotentialVolume, CompactSMatrix]:
    """
    Description
    -----------
    Runs the potential and S-matrix stages for a model file.

    Parameters
    ----------
    - `xyz_path` (Union[str, Path]):
        Model in the PRISM XYZ layout
    - `tiles` (Tuple[int, int, int]):
        Copies of the cell along (x, y, z)
    - `progress` (Optional[ProgressCallback]):
        Passed to both stages
    - `**settings` (Any):
        Keyword arguments of `make_simulation_params`

    Returns
    -------
    - `potential` (PotentialVolume):
        Projected potential of every slice
    - `smatrix` (CompactSMatrix):
        Compact S-matrix

    Flow
    ----
    - Parse the model and tile the cell
    - Build and validate the parameters
    - Compute the potential, then the compact S-matrix
    """
    atoms, cell_dims = parse_xyz(xyz_path)
    atoms, cell_dims = tile_atoms(atoms, cell_dims, tiles)
    params = make_simulation_params(atoms, cell_dims, **settings)
    logger.info(
        "Simulating %d atoms on a %d x %d grid with algorithm '%s'",
        atoms.atomic_numbers.shape[0],
        int(params.image_size[0]),
        int(params.image_size[1]),
        params.algorithm,
    )
    potential = compute_potential(params, progress)
    smatrix = build_compact_matrix(params, potential, progress)
    return potential, smatrix
