# cellseg/core/errors.py
# Error taxonomy shared by the core algorithms, batch runner and CLI


class CellSegError(Exception):
    """Base class for all cellseg errors."""


class InvalidInputError(CellSegError, ValueError):
    """Malformed parameters, mismatched raster shapes or out-of-range indices."""


class UnavailableCapabilityError(CellSegError, RuntimeError):
    """An optional capability (e.g. a container format reader) is not available."""


class PerUnitProcessingError(CellSegError, RuntimeError):
    """Processing of a single batch unit failed; the batch continues."""

    def __init__(self, unit_index: int, message: str):
        super().__init__(f"unit {unit_index + 1}: {message}")
        self.unit_index = unit_index


class FatalSetupError(CellSegError, RuntimeError):
    """The run cannot start at all (no inputs, no usable output location)."""


class RunCancelled(CellSegError):
    """Raised by an interactive acknowledgment hook to cancel the current run."""
