"""Order value rule -- cap the notional of any single order."""

from __future__ import annotations

from core.models.orders import OrderContext, RuleEvaluation

PLUGIN_META = {
    "name": "order_value",
    "display_name": "Maximum Order Value",
    "description": "Reject orders whose notional exceeds a fixed cap",
    "category": "risk_rule",
    "protocols": ["risk_rule"],
    "class_name": "OrderValueRule",
    "config_fields": [
        {
            "key": "max_order_value",
            "label": "Max order value ($)",
            "type": "number",
            "required": False,
            "default": 5000,
            "description": "Largest notional allowed for one order, buy or sell",
        },
    ],
}


class OrderValueRule:
    """Reject orders larger than ``max_order_value``, on either side."""

    def __init__(self, max_order_value: float = 5_000.0) -> None:
        self.max_order_value = max_order_value

    @property
    def name(self) -> str:
        return "order_value"

    def evaluate(self, context: OrderContext) -> RuleEvaluation:
        passed = context.notional <= self.max_order_value
        return RuleEvaluation(
            rule_name=self.name,
            passed=passed,
            reason=(
                f"Order value ${context.notional:,.2f} within limit ${self.max_order_value:,.2f}"
                if passed
                else f"Order value ${context.notional:,.2f} exceeds maximum ${self.max_order_value:,.2f}"
            ),
            error_code=None if passed else "risk_limit_exceeded",
            current_value=context.notional,
            limit_value=self.max_order_value,
        )
