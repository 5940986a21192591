"""Shares rule -- sells must be covered by shares not already reserved."""

from __future__ import annotations

from core.models.orders import OrderContext, RuleEvaluation

PLUGIN_META = {
    "name": "shares",
    "display_name": "Available Shares",
    "description": "Reject sells larger than the unreserved holding",
    "category": "risk_rule",
    "protocols": ["risk_rule"],
    "class_name": "SharesRule",
    "config_fields": [],
}


class SharesRule:
    """Long-only: a sell can never exceed the available holding quantity."""

    @property
    def name(self) -> str:
        return "shares"

    def evaluate(self, context: OrderContext) -> RuleEvaluation:
        order = context.order
        if order.side != "sell":
            return RuleEvaluation(rule_name=self.name, passed=True, reason="Buy order -- no shares needed")

        available = context.holding.available_quantity if context.holding else 0
        passed = available >= order.quantity
        return RuleEvaluation(
            rule_name=self.name,
            passed=passed,
            reason=(
                f"Selling {order.quantity} of {available} available {order.symbol}"
                if passed
                else f"Insufficient shares: trying to sell {order.quantity} {order.symbol}, "
                     f"{available} available"
            ),
            error_code=None if passed else "insufficient_shares",
            current_value=float(available),
            limit_value=float(order.quantity),
        )
