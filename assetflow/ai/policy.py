"""
Tenant-level gates for AI stages.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..exceptions import PlanLimitExceededError

logger = logging.getLogger(__name__)

DEFAULT_AUTO_APPLY_LIMIT = 5
DEFAULT_SUGGESTION_MIN_CONFIDENCE = 0.90


@dataclass(frozen=True)
class PolicyDecision:
    should_proceed: bool
    reason: Optional[str] = None


class AiTagPolicy:
    """
    Reads tenant settings:

    - ``disable_ai_tagging``: turns off every AI stage for the tenant
    - ``ai_tag_suggestions``: enables metadata suggestions (default on)
    - ``ai_auto_apply_limit``: tags applied automatically per asset
    - ``ai_credits_remaining``: plan allowance; 0 blocks AI calls
    """

    def should_proceed_with_ai(self, settings: Optional[Dict[str, Any]]) -> PolicyDecision:
        if settings is None:
            return PolicyDecision(False, 'tenant_not_found')
        if settings.get('disable_ai_tagging', False):
            return PolicyDecision(False, 'ai_tagging_disabled')
        return PolicyDecision(True)

    def should_generate_suggestions(self, settings: Optional[Dict[str, Any]]) -> PolicyDecision:
        decision = self.should_proceed_with_ai(settings)
        if not decision.should_proceed:
            return decision
        if not settings.get('ai_tag_suggestions', True):
            return PolicyDecision(False, 'ai_suggestions_disabled')
        return PolicyDecision(True)

    def check_plan_limit(self, settings: Dict[str, Any]) -> None:
        """
        Raises:
            PlanLimitExceededError: when the tenant has no AI allowance left
        """
        remaining = settings.get('ai_credits_remaining')
        if remaining is not None and remaining <= 0:
            raise PlanLimitExceededError("AI plan limit exceeded for tenant")

    def auto_apply_limit(self, settings: Dict[str, Any]) -> int:
        return int(settings.get('ai_auto_apply_limit', DEFAULT_AUTO_APPLY_LIMIT))

    def suggestion_min_confidence(self, settings: Dict[str, Any]) -> float:
        return float(settings.get('ai_suggestion_min_confidence', DEFAULT_SUGGESTION_MIN_CONFIDENCE))
