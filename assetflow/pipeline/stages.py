"""
Stage descriptors, retry policies and typed stage results.

The pipeline itself is the ordered ``STAGES`` list in
``assetflow.pipeline.handlers``: one place shows the order, the
critical/non-critical split, each stage's retry budget and what it does
when its upstream input is not ready.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Union


# -- typed results --------------------------------------------------------

@dataclass(frozen=True)
class Success:
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Skip:
    reason: str


@dataclass(frozen=True)
class Fail:
    error: str
    retryable: bool = True
    exception: Optional[BaseException] = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class Defer:
    delay: float
    reason: str = 'upstream_not_ready'


StageResult = Union[Success, Skip, Fail, Defer]


# -- readiness ------------------------------------------------------------

class Readiness(Enum):
    READY = "ready"
    WAIT = "wait"                # upstream still PENDING/PROCESSING
    UNAVAILABLE = "unavailable"  # upstream FAILED/SKIPPED, will never become ready


@dataclass(frozen=True)
class PreconditionResult:
    readiness: Readiness
    reason: Optional[str] = None

    @classmethod
    def ready(cls) -> 'PreconditionResult':
        return cls(Readiness.READY)

    @classmethod
    def wait(cls, reason: str) -> 'PreconditionResult':
        return cls(Readiness.WAIT, reason)

    @classmethod
    def unavailable(cls, reason: str) -> 'PreconditionResult':
        return cls(Readiness.UNAVAILABLE, reason)


class WaitPolicy(Enum):
    """What a stage does while its upstream input is not ready yet."""
    NOT_APPLICABLE = "n/a"
    SKIP_AND_CONTINUE = "skip_and_continue"
    RETRY_UNTIL_READY = "retry_until_ready"


@dataclass(frozen=True)
class RetryPolicy:
    """
    Attempt budget and backoff for one stage.

    Args:
        max_attempts: Total executions allowed, including the first
        backoff: Delays in seconds before attempts 2, 3, ...; the last entry
            repeats if there are more attempts than entries
        timeout: Wall-clock budget for a single attempt, in seconds
        max_deferrals: Cap on RETRY_UNTIL_READY requeues
        defer_delay: Seconds between deferrals
    """
    max_attempts: int = 3
    backoff: Sequence[float] = (60, 300, 900)
    timeout: float = 180
    max_deferrals: int = 5
    defer_delay: float = 60

    def delay_for(self, attempt: int) -> float:
        """Backoff before the attempt following ``attempt`` (1-based)."""
        if not self.backoff:
            return 0
        index = min(max(attempt - 1, 0), len(self.backoff) - 1)
        return float(self.backoff[index])


@dataclass(frozen=True)
class StageDescriptor:
    """
    Args:
        name: Stage identifier, also the ledger key
        handler: ``handler(ctx) -> StageResult``
        critical: Whether exhausting retries halts the chain
        retry_policy: Attempt budget, backoff and timeout
        wait_policy: Behaviour while upstream input is not ready
        precondition: ``precondition(ctx) -> PreconditionResult``
        condition: ``condition(ctx) -> bool``; False skips as not applicable
        queue: Celery queue used when dispatching this stage
    """
    name: str
    handler: Callable
    critical: bool
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    wait_policy: WaitPolicy = WaitPolicy.NOT_APPLICABLE
    precondition: Optional[Callable] = None
    condition: Optional[Callable] = None
    queue: str = 'pipeline_default'
    skip_when_unsupported: bool = True


def apply_stage_overrides(stages: List[StageDescriptor],
                          pipeline_config: Dict[str, Any]) -> List[StageDescriptor]:
    """
    Layer ``pipeline.stages.<name>`` config and the global deferral settings
    over the built-in policies.
    """
    overrides = pipeline_config.get('stages') or {}
    configured = []
    for stage in stages:
        policy = stage.retry_policy
        policy = replace(
            policy,
            max_deferrals=pipeline_config.get('max_deferrals', policy.max_deferrals),
            defer_delay=pipeline_config.get('defer_delay', policy.defer_delay),
        )
        stage_override = overrides.get(stage.name) or {}
        policy_fields = {key: stage_override[key] for key in
                         ('max_attempts', 'backoff', 'timeout', 'max_deferrals', 'defer_delay')
                         if key in stage_override}
        if 'backoff' in policy_fields:
            policy_fields['backoff'] = tuple(policy_fields['backoff'])
        policy = replace(policy, **policy_fields)
        critical = stage_override.get('critical', stage.critical)
        configured.append(replace(stage, retry_policy=policy, critical=critical))
    return configured
