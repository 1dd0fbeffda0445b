# rserve_engine/core/errors.py

# -----------------------------
# Base Errors
# -----------------------------

class RserveEngineError(Exception):
    """Base class for all engine errors."""
    pass


# -----------------------------
# Orchestrator Errors
# -----------------------------

class SpawnerError(RserveEngineError):
    """A lifecycle operation on the container engine failed."""
    pass


class SpawnerValidationError(SpawnerError):
    """Invalid call shape, e.g. an upload build without a code path."""
    pass


class BuildFailedError(SpawnerError):
    """An image build did not succeed; carries the accumulated build log."""

    def __init__(self, message: str, build_log=None):
        super().__init__(message)
        self.build_log = list(build_log or [])


# -----------------------------
# Persistence Errors
# -----------------------------

class MetricsStoreError(RserveEngineError):
    """The durable metrics store rejected or failed an operation."""
    pass
