"""
Exception hierarchy for AssetFlow.

Stage handlers report expected outcomes through typed results; these
exceptions cover the cases that must interrupt normal control flow.
"""


class AssetFlowError(Exception):
    """Base exception for all AssetFlow errors."""
    pass


class AssetNotFoundError(AssetFlowError):
    """Raised when an asset or version cannot be resolved."""

    def __init__(self, entity_id, kind: str = 'asset'):
        self.entity_id = entity_id
        self.kind = kind
        super().__init__(f"{kind.capitalize()} {entity_id} not found")


class PreconditionError(AssetFlowError):
    """Raised when a stage is invoked before its upstream inputs exist."""
    pass


class TransientError(AssetFlowError):
    """Infrastructure failure that is worth retrying (storage I/O, network)."""
    pass


class TerminalBusinessError(AssetFlowError):
    """Business-rule failure that must never be retried."""

    reason_code = 'terminal_error'


class VerificationError(AssetFlowError):
    """Raised when a generated artifact fails storage verification."""
    pass


class InvalidTransitionError(AssetFlowError):
    """Raised on an illegal status transition."""

    def __init__(self, current, target):
        self.current = current
        self.target = target
        super().__init__(f"Invalid transition: {current} -> {target}")


class StageTimeoutError(AssetFlowError):
    """Raised when a stage exceeds its wall-clock budget."""

    def __init__(self, stage: str, timeout: float):
        self.stage = stage
        self.timeout = timeout
        super().__init__(f"Stage {stage} timed out after {timeout}s")


class AIQuotaExceededError(TerminalBusinessError):
    """AI vendor quota is exhausted; retrying cannot succeed."""

    reason_code = 'api_quota_exceeded'


class PlanLimitExceededError(TerminalBusinessError):
    """Tenant plan does not allow further AI usage."""

    reason_code = 'plan_limit_exceeded'
