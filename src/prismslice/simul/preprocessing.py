"""
Module: simul.preprocessing
---------------------------
Input preparation for the potential slicer.

Loads the Kirkland scattering parameters and the atomic symbol table
shipped in the manifest folder, reads atomic models written in the XYZ
layout used by PRISM codes, and tiles a unit cell into the simulation cell.

Functions
---------
- `atomic_symbol`:
    Returns atomic number for given atomic symbol string.
- `kirkland_potentials`:
    Returns the Kirkland parameter table, loading it on first use.
- `kirkland_params`:
    Returns the 12 Kirkland parameters of one element.
- `parse_xyz`:
    Reads an XYZ model into an AtomList and its cell dimensions.
- `tile_atoms`:
    Replicates a cell along x, y and z.

Internal Functions
------------------
These functions are not exported and are used internally by the module.

- `_load_atomic_numbers`:
    Loads atomic number mapping from JSON file in manifest folder.
- `_load_kirkland_csv`:
    Loads Kirkland scattering factors from CSV file.
"""

import functools
import json
import logging
from pathlib import Path

import jax
import jax.numpy as jnp
import numpy as np
from beartype import beartype
from beartype.typing import Dict, List, Optional, Tuple, Union
from jaxtyping import Array, Float, Int, jaxtyped

from prismslice.types import (AtomList, ConfigurationError, make_atom_list,
                              scalar_int)

jax.config.update("jax_enable_x64", True)

logger = logging.getLogger(__name__)

_KIRKLAND_PATH: Path = (Path(__file__).resolve().parent / "manifest" / "Kirkland_Potentials.csv")
_ATOMS_PATH: Path = (Path(__file__).resolve().parent / "manifest" / "atom_numbers.json")


def _load_atomic_numbers(
    json_path: Optional[Path] = _ATOMS_PATH
    ) -> Dict[str, int]:
    """
    Description
    -----------
    Loads atomic number mapping from JSON file in manifest folder.

    Parameters
    ----------
    - `json_path` (Optional[Path]):
        Custom path to JSON file, defaults to module path

    Returns
    -------
    - `atomic_data` (Dict[str, int]):
        Dictionary mapping atomic symbols to atomic numbers
    """
    file_path: Path = json_path if json_path is not None else _ATOMS_PATH
    with open(file_path, 'r', encoding='utf-8') as file:
        atomic_data: Dict[str, int] = json.load(file)
    return atomic_data

_ATOMIC_NUMBERS: Dict[str, int] = _load_atomic_numbers()


@beartype
def atomic_symbol(atomic_symbol: str) -> int:
    """
    Description
    -----------
    Returns atomic number for given atomic symbol string.

    Parameters
    ----------
    - `atomic_symbol` (str):
        Chemical symbol for the element (e.g., "H", "He", "Li")

    Returns
    -------
    - `atomic_number` (int):
        Atomic number corresponding to the symbol

    Raises
    ------
    - ConfigurationError:
        If the symbol is empty or unknown

    Flow
    ----
    - Strip whitespace and ensure proper case
    - Look up atomic number in preloaded mapping
    """
    cleaned_symbol: str = atomic_symbol.strip()
    if not cleaned_symbol:
        raise ConfigurationError("Atomic symbol cannot be empty")

    normalized_symbol: str = cleaned_symbol.capitalize()
    if normalized_symbol not in _ATOMIC_NUMBERS:
        raise ConfigurationError(f"Atomic symbol '{atomic_symbol}' not found")
    return _ATOMIC_NUMBERS[normalized_symbol]


@functools.lru_cache(maxsize=None)
def _load_kirkland_csv(file_path: Path = _KIRKLAND_PATH) -> Float[Array, "103 12"]:
    """
    Description
    -----------
    Loads Kirkland potential parameters from CSV file. Row Z-1 holds the
    parameters a1 b1 a2 b2 a3 b3 c1 d1 c2 d2 c3 d3 of element Z. Results
    are cached per path.

    Parameters
    ----------
    - `file_path` (Path):
        Path to CSV file, defaults to the packaged table

    Returns
    -------
    - `kirkland_data` (Float[Array, "103 12"]):
        Kirkland potential parameters as JAX array

    Raises
    ------
    - FileNotFoundError:
        If CSV file is not found
    - ValueError:
        If the table is not 103 rows of 12 parameters
    """
    kirkland_numpy: np.ndarray = np.loadtxt(
        file_path,
        delimiter=',',
        dtype=np.float64,
        ndmin=2,
    )
    if kirkland_numpy.shape != (103, 12):
        raise ValueError(
            f"Expected Kirkland table shape (103, 12), got {kirkland_numpy.shape}"
        )
    logger.debug("Loaded %d Kirkland rows from %s", kirkland_numpy.shape[0], file_path)
    return jnp.asarray(kirkland_numpy, dtype=jnp.float64)


def kirkland_potentials(file_path: Optional[Path] = None) -> Float[Array, "103 12"]:
    """
    Description
    -----------
    Returns the Kirkland parameter table, read once per path.

    Parameters
    ----------
    - `file_path` (Optional[Path]):
        Alternative table, None for the packaged one

    Returns
    -------
    - `kirkland_potentials` (Float[Array, "103 12"]):
        Kirkland potential parameters for elements 1 to 103
    """
    path: Path = _KIRKLAND_PATH if file_path is None else Path(file_path)
    return _load_kirkland_csv(path)


@beartype
def kirkland_params(
    atomic_number: scalar_int, file_path: Optional[Path] = None
) -> Float[Array, "12"]:
    """
    Description
    -----------
    Returns the Kirkland parameters of one element.

    Parameters
    ----------
    - `atomic_number` (scalar_int):
        Atomic number Z
    - `file_path` (Optional[Path]):
        Alternative table, None for the packaged one

    Returns
    -------
    - `params` (Float[Array, "12"]):
        a1 b1 a2 b2 a3 b3 c1 d1 c2 d2 c3 d3

    Raises
    ------
    - ConfigurationError:
        If the element is not covered by the table
    """
    table: Float[Array, "103 12"] = kirkland_potentials(file_path)
    z_number: int = int(atomic_number)
    if not 1 <= z_number <= table.shape[0]:
        raise ConfigurationError(
            f"No Kirkland parameters for Z={z_number}; the table covers "
            f"Z=1..{table.shape[0]}"
        )
    return table[z_number - 1]


def _species_number(token: str) -> int:
    try:
        return int(token)
    except ValueError:
        return atomic_symbol(token)


@beartype
def parse_xyz(file_path: Union[str, Path]) -> Tuple[AtomList, Float[Array, "3"]]:
    """
    Description
    -----------
    Reads an atomic model in the PRISM XYZ layout:

        comment line
        a b c                      (cell size along x, y, z in Angstroms)
        Z x y z [occupancy [sigma]]
        ...
        -1                         (optional terminator)

    Positions are converted to fractional coordinates of the cell. The
    species column may hold atomic numbers or chemical symbols.

    Parameters
    ----------
    - `file_path` (Union[str, Path]):
        Path to the model file

    Returns
    -------
    - `atoms` (AtomList):
        Atoms with fractional coordinates
    - `cell_dims` (Float[Array, "3"]):
        Cell size ordered (z, y, x)

    Raises
    ------
    - FileNotFoundError:
        If the file is missing
    - ValueError:
        If the cell line or an atom line is malformed, or no atoms are found

    Flow
    ----
    - Skip the comment line
    - Read the cell size
    - Read atom lines until the terminator or the end of the file
    - Fill in occupancy 1 and sigma 0 when the columns are missing
    """
    with open(file_path, 'r', encoding='utf-8') as f:
        lines: List[str] = f.readlines()

    if len(lines) < 3:
        raise ValueError("Invalid XYZ file: expected a comment, a cell line and atoms")

    try:
        cell_x, cell_y, cell_z = (float(v) for v in lines[1].split()[:3])
    except ValueError as err:
        raise ValueError(f"Invalid cell line: {lines[1].strip()!r}") from err

    numbers: List[int] = []
    positions: List[List[float]] = []
    occupancies: List[float] = []
    sigmas: List[float] = []
    for line_number, line in enumerate(lines[2:], start=3):
        parts: List[str] = line.split()
        if not parts:
            continue
        if parts[0] == "-1":
            break
        if len(parts) < 4:
            raise ValueError(f"Line {line_number} has fewer than 4 columns: {line.strip()!r}")
        try:
            x, y, z = (float(v) for v in parts[1:4])
            occupancies.append(float(parts[4]) if len(parts) > 4 else 1.0)
            sigmas.append(float(parts[5]) if len(parts) > 5 else 0.0)
        except ValueError as err:
            raise ValueError(f"Line {line_number} is malformed: {line.strip()!r}") from err
        numbers.append(_species_number(parts[0]))
        positions.append([x / cell_x, y / cell_y, z / cell_z])

    if not numbers:
        raise ValueError(f"No atoms found in {file_path}")

    atoms: AtomList = make_atom_list(
        jnp.asarray(numbers, dtype=jnp.int32),
        jnp.asarray(positions, dtype=jnp.float64),
        jnp.asarray(sigmas, dtype=jnp.float64),
        jnp.asarray(occupancies, dtype=jnp.float64),
    )
    cell_dims = jnp.asarray([cell_z, cell_y, cell_x], dtype=jnp.float64)
    logger.info("Read %d atoms from %s", len(numbers), file_path)
    return atoms, cell_dims


@jaxtyped(typechecker=beartype)
def tile_atoms(
    atoms: AtomList,
    cell_dims: Float[Array, "3"],
    tiles: Tuple[int, int, int],
) -> Tuple[AtomList, Float[Array, "3"]]:
    """
    Description
    -----------
    Replicates the cell `tiles = (tx, ty, tz)` times along x, y and z.
    Fractional coordinates are rescaled to the tiled cell.

    Parameters
    ----------
    - `atoms` (AtomList):
        Atoms of one cell
    - `cell_dims` (Float[Array, "3"]):
        Cell size (z, y, x)
    - `tiles` (Tuple[int, int, int]):
        Number of copies along (x, y, z)

    Returns
    -------
    - `tiled_atoms` (AtomList):
        Atoms of the tiled cell, copies in x fastest order
    - `tiled_cell_dims` (Float[Array, "3"]):
        Size of the tiled cell (z, y, x)

    Raises
    ------
    - ConfigurationError:
        If a tile count is below 1
    """
    tx, ty, tz = tiles
    if min(tiles) < 1:
        raise ConfigurationError(f"Tile counts must be at least 1, got {tiles}")
    counts: Float[Array, "3"] = jnp.asarray([tx, ty, tz], dtype=jnp.float64)
    iz, iy, ix = jnp.meshgrid(
        jnp.arange(tz), jnp.arange(ty), jnp.arange(tx), indexing="ij"
    )
    shifts: Float[Array, "T 3"] = jnp.stack(
        [ix.ravel(), iy.ravel(), iz.ravel()], axis=-1
    ).astype(jnp.float64)
    num_tiles: int = shifts.shape[0]
    positions: Float[Array, "T N 3"] = (
        atoms.positions[jnp.newaxis, :, :] + shifts[:, jnp.newaxis, :]
    ) / counts
    tiled: AtomList = make_atom_list(
        jnp.tile(atoms.atomic_numbers, num_tiles),
        positions.reshape(-1, 3),
        jnp.tile(atoms.thermal_sigma, num_tiles),
        jnp.tile(atoms.occupancy, num_tiles),
    )
    tiled_cell: Float[Array, "3"] = cell_dims * jnp.asarray([tz, ty, tx], dtype=jnp.float64)
    return tiled, tiled_cell
