"""
Service errors raised by the exchange workflow.

Only ``VersionConflictError`` is meant to be retried automatically; every
other kind needs a human or upstream decision.
"""

from typing import Dict, List


class ServiceError(Exception):
    """Base exception for service errors."""

    retryable = False


class NotFoundError(ServiceError):
    """The exchange id is unknown."""

    def __init__(self, exchange_id):
        self.exchange_id = exchange_id
        super().__init__(f"Exchange {exchange_id} not found")


class InvalidTransitionError(ServiceError):
    """The target stage is not reachable from the current stage."""

    def __init__(self, from_stage, to_stage, message=None):
        self.from_stage = from_stage
        self.to_stage = to_stage
        super().__init__(message or f"Invalid transition from {from_stage} to {to_stage}")


class GuardsNotMetError(ServiceError):
    """One or more guard conditions failed."""

    def __init__(self, from_stage, to_stage, failed_conditions: List[Dict[str, str]]):
        self.from_stage = from_stage
        self.to_stage = to_stage
        self.failed_conditions = failed_conditions
        names = ', '.join(c['condition'] for c in failed_conditions)
        super().__init__(f"Transition conditions not met: {names}")

    @property
    def condition_names(self) -> List[str]:
        return [c['condition'] for c in self.failed_conditions]


class VersionConflictError(ServiceError):
    """The exchange changed between read and write; reload and retry."""

    retryable = True

    def __init__(self, exchange_id, expected_version):
        self.exchange_id = exchange_id
        self.expected_version = expected_version
        super().__init__(
            f"Exchange {exchange_id} was modified concurrently "
            f"(expected version {expected_version})"
        )


class ActionPartialFailure(ServiceError):
    """
    A committed transition whose auto-actions did not all succeed.

    Reported on the transition result, never raised by the engine.
    """

    def __init__(self, action_errors: List[Dict[str, str]]):
        self.action_errors = action_errors
        names = ', '.join(e['action'] for e in action_errors)
        super().__init__(f"Auto-actions failed: {names}")

    @property
    def failed_actions(self) -> List[str]:
        return [e['action'] for e in self.action_errors]
