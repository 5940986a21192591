"""Concentration rule -- limit exposure to any single position."""

from __future__ import annotations

from core.models.orders import OrderContext, RuleEvaluation

PLUGIN_META = {
    "name": "concentration",
    "display_name": "Position Concentration",
    "description": "Limit exposure to any single position",
    "category": "risk_rule",
    "protocols": ["risk_rule"],
    "class_name": "ConcentrationRule",
    "setup_instructions": "Prevents over-concentration in a single position.",
    "config_fields": [
        {
            "key": "max_position_size",
            "label": "Max single position (%)",
            "type": "number",
            "required": False,
            "default": 25,
            "description": "Maximum portfolio percentage in one position",
            "placeholder": "25",
        },
    ],
}


class ConcentrationRule:
    """Reject buys that would push one position above ``max_position_size``."""

    def __init__(self, max_position_size: float = 0.25) -> None:
        self.max_position_size = max_position_size

    @property
    def name(self) -> str:
        return "concentration"

    def evaluate(self, context: OrderContext) -> RuleEvaluation:
        order = context.order
        if order.side != "buy":
            return RuleEvaluation(
                rule_name=self.name,
                passed=True,
                reason="Sells reduce concentration -- check passes",
            )

        total_value = context.total_value
        if total_value <= 0:
            return RuleEvaluation(
                rule_name=self.name,
                passed=False,
                reason="Portfolio has no value -- cannot size a new position",
                error_code="risk_limit_exceeded",
                current_value=0.0,
                limit_value=self.max_position_size,
            )

        existing = context.holding.quantity * context.quote_price if context.holding else 0.0
        position_pct = (existing + context.notional) / total_value

        if position_pct > self.max_position_size:
            return RuleEvaluation(
                rule_name=self.name,
                passed=False,
                reason=(
                    f"Position size limit exceeded: {order.symbol} would be {position_pct:.1%} "
                    f"of portfolio (limit: {self.max_position_size:.1%})"
                ),
                error_code="risk_limit_exceeded",
                current_value=position_pct,
                limit_value=self.max_position_size,
            )

        return RuleEvaluation(
            rule_name=self.name,
            passed=True,
            reason=f"{order.symbol} would be {position_pct:.1%} of portfolio",
            current_value=position_pct,
            limit_value=self.max_position_size,
        )
