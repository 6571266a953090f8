"""Error taxonomy for the gate engine.

Evaluation-path errors (MetricError, ShieldError) are caught at the
GateController / ReconciliationLoop boundary and turned into outcomes.
Mutation-path errors propagate to the caller.
"""

from __future__ import annotations


class GateError(Exception):
    """Base class for every engine error."""


class MetricError(GateError):
    """A MetricSource call failed."""

    def __init__(self, message: str, metric: str | None = None):
        super().__init__(message)
        self.metric = metric


class AuthorizationDenied(MetricError):
    """Read permission for health data was revoked or never granted."""


class MetricUnavailable(MetricError):
    """The query ran but no usable value came back."""


class FetchTimeout(MetricError):
    """The query exceeded its bounded wait."""


class ShieldError(GateError):
    pass


class ShieldNotAuthorized(ShieldError):
    pass


class ShieldUpdateFailed(ShieldError):
    pass


class PersistenceError(GateError):
    """A write to the Store failed; the mutation is not applied."""


class InvalidGoalEdit(GateError, ValueError):
    """Bad weekday, duplicate goal, or an edit the container cannot take."""


class GoalNotFound(InvalidGoalEdit):
    """The edit names a goal or pending change that does not exist."""


class EmergencyCodeRejected(GateError):
    pass
