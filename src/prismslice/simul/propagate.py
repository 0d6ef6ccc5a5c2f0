"""
Module: simul.propagate
-----------------------
Plane-wave propagator for the compact S-matrix.

Each beam starts as a unit impulse at its spectral index, is taken to real
space, and is passed through every slice: transmission, forward transform,
free-space propagator, inverse transform. A final forward transform gives
the exit wave in spectral space, which is cropped to the low-frequency
quarter and brought back to real space on the small grid.

`jnp.fft.ifft2` scales by 1/N, so every forward/inverse pair is the
identity, which is the scaling contract of the propagator.

Compiled executables play the role of transform plans. Building and
releasing them is serialised behind one module-wide lock; executing a
built plan does not take the lock.

Classes
-------
- `TransformPlan`:
    Per-worker compiled propagation of a fixed batch of beams

Functions
---------
- `plan_lock`:
    The lock guarding plan creation and release
- `propagate_beams`:
    Propagates a batch of beams through the transmission stack
- `propagation_batch_size`:
    Number of beams handled by one plan execution

Internal Functions
------------------
These functions are not exported and are used internally by the module.

- `_impulses`:
    Spectral unit impulses of a padded batch of beams
- `_propagate_stack`:
    Traced body of `propagate_beams`
"""

import logging
import threading
from functools import partial

import jax
import jax.numpy as jnp
from beartype import beartype
from jax import lax
from jaxtyping import Array, Bool, Complex, Int, jaxtyped

jax.config.update("jax_enable_x64", True)

logger = logging.getLogger(__name__)

_PLAN_LOCK = threading.Lock()


def plan_lock() -> threading.Lock:
    """Returns the lock that serialises plan creation and release."""
    return _PLAN_LOCK


def _impulses(
    flat_indices: Int[Array, "B"], height: int, width: int
) -> Complex[Array, "B H W"]:
    batch = flat_indices.shape[0]
    filled: Bool[Array, "B"] = flat_indices >= 0
    safe_indices = jnp.where(filled, flat_indices, 0)
    psi = jnp.zeros((batch, height * width), dtype=jnp.complex128)
    psi = psi.at[jnp.arange(batch), safe_indices].set(filled.astype(jnp.complex128))
    return psi.reshape(batch, height, width)


def _propagate_stack(
    flat_indices: Int[Array, "B"],
    transmission: Complex[Array, "S H W"],
    prop: Complex[Array, "H W"],
    prop_back: Complex[Array, "H W"],
    qy_ind: Int[Array, "h"],
    qx_ind: Int[Array, "w"],
    back_propagate: bool,
) -> Complex[Array, "B h w"]:
    _, height, width = transmission.shape
    psi = jnp.fft.ifft2(_impulses(flat_indices, height, width))

    def transmit_and_propagate(psi, trans):
        psi = jnp.fft.fft2(psi * trans[jnp.newaxis]) * prop[jnp.newaxis]
        return jnp.fft.ifft2(psi), None

    psi, _ = lax.scan(transmit_and_propagate, psi, transmission)
    psi = jnp.fft.fft2(psi)
    if back_propagate:
        psi = psi * prop_back[jnp.newaxis]
    cropped = psi[:, qy_ind][:, :, qx_ind]
    return jnp.fft.ifft2(cropped)


_propagate_jit = jax.jit(_propagate_stack, static_argnames=("back_propagate",))


@jaxtyped(typechecker=beartype)
def propagate_beams(
    flat_indices: Int[Array, "B"],
    transmission: Complex[Array, "S H W"],
    prop: Complex[Array, "H W"],
    prop_back: Complex[Array, "H W"],
    qy_ind: Int[Array, "h"],
    qx_ind: Int[Array, "w"],
    back_propagate: bool = False,
) -> Complex[Array, "B h w"]:
    """
    Description
    -----------
    Propagates a batch of plane waves through every slice and crops the
    exit waves to the compact S-matrix layout.

    Parameters
    ----------
    - `flat_indices` (Int[Array, "B"]):
        Flat spectral index (row * W + col) of every beam, -1 for an
        empty slot whose output is zero
    - `transmission` (Complex[Array, "S H W"]):
        Transmission function of every slice
    - `prop` (Complex[Array, "H W"]):
        Free-space propagator over one slice
    - `prop_back` (Complex[Array, "H W"]):
        Back propagator, used when `back_propagate` is True
    - `qy_ind` (Int[Array, "h"]):
        Rows of the cropped output
    - `qx_ind` (Int[Array, "w"]):
        Columns of the cropped output
    - `back_propagate` (bool):
        Refocus the exit wave at the middle of the cell (HRTEM)

    Returns
    -------
    - `exit_waves` (Complex[Array, "B h w"]):
        Cropped real-space exit wave of every beam

    Flow
    ----
    - Unit impulse at each beam index, inverse transform
    - For each slice: multiply by the transmission, forward transform,
      multiply by the propagator, inverse transform
    - Forward transform, optionally multiply by the back propagator
    - Crop to [qy_ind][:, qx_ind] and inverse transform on the small grid
    """
    return _propagate_jit(
        flat_indices,
        transmission,
        prop,
        prop_back,
        qy_ind,
        qx_ind,
        back_propagate=back_propagate,
    )


@beartype
def propagation_batch_size(
    number_beams: int, num_threads: int, batch_size_target: int
) -> int:
    """min(target, max(1, beams // threads))"""
    return min(batch_size_target, max(1, number_beams // num_threads))


class TransformPlan:
    """
    Description
    -----------
    Compiled propagation of `batch_size` beams through a fixed transmission
    stack, owned by one worker. The plan is compiled against the arrays it
    will run on, inside `plan_lock()`; `close` releases it inside the same
    lock. `execute` runs without the lock and may be called concurrently
    with other plans.

    Parameters
    ----------
    - `batch_size` (int):
        Number of beams per execution
    - `transmission` (Complex[Array, "S H W"]):
        Transmission function of every slice
    - `prop`, `prop_back` (Complex[Array, "H W"]):
        Propagator and back propagator
    - `qy_ind`, `qx_ind` (Int[Array, "n"]):
        Crop indices
    - `back_propagate` (bool):
        Apply the back propagator
    """

    def __init__(
        self,
        batch_size: int,
        transmission: Complex[Array, "S H W"],
        prop: Complex[Array, "H W"],
        prop_back: Complex[Array, "H W"],
        qy_ind: Int[Array, "h"],
        qx_ind: Int[Array, "w"],
        back_propagate: bool = False,
    ):
        self.batch_size = batch_size
        self._operands = (transmission, prop, prop_back, qy_ind, qx_ind)
        index_shape = jax.ShapeDtypeStruct((batch_size,), jnp.int32)
        with _PLAN_LOCK:
            self._executable = (
                jax.jit(partial(_propagate_stack, back_propagate=back_propagate))
                .lower(index_shape, *self._operands)
                .compile()
            )
        logger.debug("Built transform plan for %d beams", batch_size)

    @property
    def closed(self) -> bool:
        return self._executable is None

    def execute(self, flat_indices: Int[Array, "B"]) -> Complex[Array, "B h w"]:
        """Propagates the beams at `flat_indices` (-1 for empty slots)."""
        if self._executable is None:
            raise RuntimeError("Transform plan has been closed")
        flat_indices = jnp.asarray(flat_indices, dtype=jnp.int32)
        if flat_indices.shape != (self.batch_size,):
            raise ValueError(
                f"Plan expects {self.batch_size} beam indices, got {flat_indices.shape}"
            )
        return self._executable(flat_indices, *self._operands)

    def close(self) -> None:
        with _PLAN_LOCK:
            self._executable = None
        logger.debug("Released transform plan")

    def __enter__(self) -> "TransformPlan":
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.close()
