"""
Module: simul.forward
---------------------
Electron optical constants and the transmission builder.

Functions
---------
- `wavelength_ang`:
    Relativistic electron wavelength in Angstroms
- `interaction_sigma`:
    Interaction parameter in radians per Volt Angstrom
- `transmission_volume`:
    Phase-only transmission function of every potential slice
"""

import jax
import jax.numpy as jnp
from beartype import beartype
from jaxtyping import Array, Complex, Float, jaxtyped

from prismslice.types import scalar_float

jax.config.update("jax_enable_x64", True)

_ELECTRON_MASS: float = 9.109383e-31
_ELECTRON_CHARGE: float = 1.602177e-19
_SPEED_OF_LIGHT: float = 299792458.0
_PLANCK: float = 6.62607e-34


@jaxtyped(typechecker=beartype)
def wavelength_ang(voltage_kv: scalar_float) -> Float[Array, ""]:
    """
    Description
    -----------
    Calculates the relativistic electron wavelength in angstroms based on
    the microscope accelerating voltage.

    Parameters
    ----------
    - `voltage_kv` (scalar_float):
        The microscope accelerating voltage in kilo electronVolts

    Returns
    -------
    - `in_angstroms` (Float[Array, ""]):
        The electron wavelength in angstroms

    Flow
    ----
    - Calculate the electron wavelength in meters
    - Convert the wavelength to angstroms
    """
    voltage = jnp.asarray(voltage_kv, dtype=jnp.float64) * 1000.0
    numerator = (_PLANCK**2) * (_SPEED_OF_LIGHT**2)
    denominator = (_ELECTRON_CHARGE * voltage) * (
        (2 * _ELECTRON_MASS * (_SPEED_OF_LIGHT**2)) + (_ELECTRON_CHARGE * voltage)
    )
    wavelength_meters = jnp.sqrt(numerator / denominator)
    return 1e10 * wavelength_meters


@jaxtyped(typechecker=beartype)
def interaction_sigma(voltage_kv: scalar_float) -> Float[Array, ""]:
    """
    Description
    -----------
    Interaction parameter sigma such that a projected potential V gives
    the phase shift sigma * V.

    Parameters
    ----------
    - `voltage_kv` (scalar_float):
        Accelerating voltage in kilovolts

    Returns
    -------
    - `sigma` (Float[Array, ""]):
        (2 pi / (lambda V)) (m c^2 + e V) / (2 m c^2 + e V)
    """
    voltage = jnp.asarray(voltage_kv, dtype=jnp.float64) * 1000.0
    rest_energy = _ELECTRON_MASS * _SPEED_OF_LIGHT**2
    kinetic = _ELECTRON_CHARGE * voltage
    return (
        (2 * jnp.pi / (wavelength_ang(voltage_kv) * voltage))
        * (rest_energy + kinetic)
        / (2 * rest_energy + kinetic)
    )


@jaxtyped(typechecker=beartype)
def transmission_volume(
    potential: Float[Array, "S H W"], voltage_kv: scalar_float
) -> Complex[Array, "S H W"]:
    """
    Description
    -----------
    Converts every potential slice into its transmission function
    exp(i sigma V).

    Parameters
    ----------
    - `potential` (Float[Array, "S H W"]):
        Projected potential in Kirkland units
    - `voltage_kv` (scalar_float):
        Accelerating voltage in kilovolts

    Returns
    -------
    - `trans` (Complex[Array, "S H W"]):
        Transmission function of every slice
    """
    sigma = interaction_sigma(voltage_kv)
    trans: Complex[Array, "S H W"] = jnp.exp(1j * sigma * potential)
    return trans
