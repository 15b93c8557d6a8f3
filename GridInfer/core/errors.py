"""
Error Taxonomy for GridInfer.

Every failure that can end a distributed inference run is one of the classes
below. Validation errors (`ConfigurationError`, `ShapeError`) are raised
before any collective call is issued; `ExecutorFailure` wraps whatever the
model executor raised. `CommunicationFailure` exists for callers that want to
report a hung collective detected by an external watchdog: GridInfer itself
never raises it, since a collective that never completes simply blocks.
"""


class GridInferError(Exception):
    """Base class for all GridInfer errors."""

    exit_code = 1


class ConfigurationError(GridInferError):
    """Invalid static parameters (group sizes, indivisible layers or heads)."""

    exit_code = 2


class ShapeError(GridInferError):
    """Request-derived lengths exceed the preallocated sequence capacity."""

    exit_code = 3


class ExecutorFailure(GridInferError):
    """The model executor raised during a forward call."""

    exit_code = 4


class CommunicationFailure(GridInferError):
    """A collective operation did not complete (reported externally)."""

    exit_code = 5
