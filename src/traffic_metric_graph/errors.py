from __future__ import annotations


class MetricGraphError(Exception):
    """Base class for failures of a pipeline stage."""


class DataUnavailable(MetricGraphError):
    """No road features matched, or the assembled graph is empty."""


class BindingFailure(MetricGraphError):
    def __init__(self, message: str, dropped: int = 0) -> None:
        super().__init__(message)
        self.dropped = int(dropped)


class FitFailure(MetricGraphError):
    """Insufficient data, uncovered graph components or non-convergence."""


class DimensionMismatch(MetricGraphError, ValueError):
    """Query coordinates are inconsistent with the graph a model was fitted on."""
