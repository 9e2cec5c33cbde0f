"""Variance engine error types."""


class VarianceError(ValueError):
    """Base class for variance engine errors."""


class ConfigurationError(VarianceError):
    """A detection configuration violates its invariants."""


class DetectionNotFoundError(VarianceError):
    """No stored detection with that id exists for the organization."""


class InvalidStatusTransitionError(VarianceError):
    """The requested review status change is not allowed."""

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot move detection from '{current}' to '{requested}'")


class OrganizationNotFoundError(VarianceError):
    """The organization does not exist."""
