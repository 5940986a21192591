"""Risk engine -- runs every registered risk rule against an order.

The Risk Engine is the only component that can approve or reject an order
on funds, shares or risk limits. Completely deterministic: rules see an
immutable OrderContext and do no I/O.
"""

from __future__ import annotations

import logging

from core.errors import rejection_for
from core.models.orders import OrderContext, RiskResult, RuleEvaluation
from core.registry import PluginRegistry

logger = logging.getLogger(__name__)


class RiskEngine:
    """Deterministic pre-trade gate over the registry's ``risk_rule`` plugins.

    Rules run in registration order. The first failing rule decides the
    rejection type raised by ``check``.
    """

    def __init__(self, registry: PluginRegistry) -> None:
        self._registry = registry

    def evaluate(self, context: OrderContext) -> RiskResult:
        """Evaluate all rules without raising (for previews and tests)."""
        evaluations: list[RuleEvaluation] = []

        for rule in self._registry.get_all("risk_rule"):
            try:
                evaluations.append(rule.evaluate(context))
            except Exception:
                logger.exception("Risk rule '%s' raised an error", rule.name)
                evaluations.append(RuleEvaluation(
                    rule_name=rule.name,
                    passed=False,
                    reason="Rule raised an exception",
                    error_code="risk_limit_exceeded",
                ))

        return RiskResult(
            approved=all(e.passed for e in evaluations),
            evaluations=evaluations,
        )

    def check(self, context: OrderContext) -> RiskResult:
        """Evaluate all rules; raise the typed rejection of the first failure."""
        result = self.evaluate(context)
        if result.approved:
            logger.debug(
                "Order %s %s %s approved (%d rules passed)",
                context.order.side, context.order.quantity, context.order.symbol,
                len(result.evaluations),
            )
            return result

        first = result.failed_rules[0]
        logger.info(
            "Order REJECTED: %s %d %s (failed: %s)",
            context.order.side.upper(),
            context.order.quantity,
            context.order.symbol,
            ", ".join(e.rule_name for e in result.failed_rules),
        )
        raise rejection_for(first.error_code, first.reason)
