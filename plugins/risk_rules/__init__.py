"""Built-in risk rules -- implementations of the RiskRule protocol."""

from plugins.risk_rules.order_value import OrderValueRule
from plugins.risk_rules.cash import CashRule
from plugins.risk_rules.shares import SharesRule
from plugins.risk_rules.concentration import ConcentrationRule
from plugins.risk_rules.daily_loss import DailyLossRule

__all__ = ["OrderValueRule", "CashRule", "SharesRule", "ConcentrationRule", "DailyLossRule"]
