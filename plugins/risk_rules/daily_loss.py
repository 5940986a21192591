"""Daily loss rule -- stop new buys once the session is down too much."""

from __future__ import annotations

from core.models.orders import OrderContext, RuleEvaluation

PLUGIN_META = {
    "name": "daily_loss",
    "display_name": "Daily Loss Limit",
    "description": "Block new buys once the session loss exceeds a threshold",
    "category": "risk_rule",
    "protocols": ["risk_rule"],
    "class_name": "DailyLossRule",
    "setup_instructions": "Automatically pauses buying when the portfolio drops too much in one session.",
    "config_fields": [
        {
            "key": "max_daily_loss",
            "label": "Max daily loss (%)",
            "type": "number",
            "required": False,
            "default": 10,
            "description": "Session loss, relative to starting cash, that blocks new buys",
            "placeholder": "10",
        },
    ],
}


class DailyLossRule:
    """Reject buys once the session has lost more than ``max_daily_loss``.

    Sells always pass so a losing position can still be closed.
    """

    def __init__(self, max_daily_loss: float = 0.10) -> None:
        self.max_daily_loss = max_daily_loss

    @property
    def name(self) -> str:
        return "daily_loss"

    def evaluate(self, context: OrderContext) -> RuleEvaluation:
        if context.order.side != "buy":
            return RuleEvaluation(
                rule_name=self.name,
                passed=True,
                reason="Sell order -- daily loss check passes",
            )

        starting = context.portfolio.starting_cash
        loss = (starting - context.total_value) / starting if starting > 0 else 0.0
        loss = max(0.0, loss)

        passed = loss <= self.max_daily_loss
        return RuleEvaluation(
            rule_name=self.name,
            passed=passed,
            reason=(
                f"Session loss {loss:.1%} within limit {self.max_daily_loss:.1%}"
                if passed
                else f"Daily loss limit exceeded: session down {loss:.1%} (limit: {self.max_daily_loss:.1%})"
            ),
            error_code=None if passed else "risk_limit_exceeded",
            current_value=loss,
            limit_value=self.max_daily_loss,
        )
