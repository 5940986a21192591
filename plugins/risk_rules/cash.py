"""Cash rule -- buys must be covered by available cash and keep a reserve."""

from __future__ import annotations

from core.models.orders import OrderContext, RuleEvaluation

PLUGIN_META = {
    "name": "cash",
    "display_name": "Available Cash",
    "description": "Reject buys that available cash cannot cover",
    "category": "risk_rule",
    "protocols": ["risk_rule"],
    "class_name": "CashRule",
    "config_fields": [
        {
            "key": "min_cash_reserve",
            "label": "Minimum cash reserve ($)",
            "type": "number",
            "required": False,
            "default": 100,
            "description": "Cash that must remain after any buy",
        },
    ],
}


class CashRule:
    """Buys need ``available_cash >= notional`` and a leftover of ``min_cash_reserve``.

    Available cash excludes whatever open buy limit orders have reserved.
    """

    def __init__(self, min_cash_reserve: float = 100.0) -> None:
        self.min_cash_reserve = min_cash_reserve

    @property
    def name(self) -> str:
        return "cash"

    def evaluate(self, context: OrderContext) -> RuleEvaluation:
        if context.order.side != "buy":
            return RuleEvaluation(rule_name=self.name, passed=True, reason="Sell order -- no cash needed")

        available = context.portfolio.available_cash
        notional = context.notional

        if available < notional:
            return RuleEvaluation(
                rule_name=self.name,
                passed=False,
                reason=f"Insufficient funds: need ${notional:,.2f}, have ${available:,.2f}",
                error_code="insufficient_funds",
                current_value=available,
                limit_value=notional,
            )

        remaining = available - notional
        if remaining < self.min_cash_reserve:
            return RuleEvaluation(
                rule_name=self.name,
                passed=False,
                reason=(
                    f"Insufficient funds: must keep ${self.min_cash_reserve:,.2f} in cash, "
                    f"order would leave ${remaining:,.2f}"
                ),
                error_code="insufficient_funds",
                current_value=remaining,
                limit_value=self.min_cash_reserve,
            )

        return RuleEvaluation(
            rule_name=self.name,
            passed=True,
            reason=f"${remaining:,.2f} cash left after order",
            current_value=remaining,
            limit_value=self.min_cash_reserve,
        )
