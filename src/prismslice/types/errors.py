"""
Module: types.errors
--------------------
Exception classes raised by the simulation engine.

Classes
-------
- `ConfigurationError`:
    Invalid parameters detected during setup, before any worker starts
- `ResourceError`:
    A buffer derived from the grid dimensions could not be allocated
- `WorkerError`:
    A worker thread failed and the stage was abandoned
"""


class ConfigurationError(ValueError):
    """Raised when simulation parameters are invalid or contradictory."""


class ResourceError(MemoryError):
    """Raised when an array derived from the grid size cannot be allocated."""


class WorkerError(RuntimeError):
    """
    Raised from the join barrier of a parallel stage when one of its
    workers failed. The original exception is available as `__cause__`.
    """
