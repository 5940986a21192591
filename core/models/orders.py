"""Order models -- orders, fills, execution results and risk evaluations."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal
from uuid import uuid4

from pydantic import BaseModel, Field

from core.models.portfolio import Holding, PortfolioSnapshot

OrderSide = Literal["buy", "sell"]
OrderKind = Literal["market", "limit"]
OrderStatus = Literal["open", "filled", "cancelled"]
ErrorCode = Literal[
    "validation_error",
    "insufficient_funds",
    "insufficient_shares",
    "risk_limit_exceeded",
    "transaction_failure",
]


class Order(BaseModel):
    """A trade request and, once accepted, its stored record.

    Quantity and limit price are deliberately unconstrained here: the
    OrderEngine validates them and answers with a typed rejection instead
    of raising while the request is being built.
    """

    id: str = Field(default_factory=lambda: f"ord_{uuid4().hex[:12]}")
    user_ref: str
    symbol: str
    side: OrderSide
    kind: OrderKind = "market"
    quantity: int
    limit_price: float | None = None
    status: OrderStatus = "open"
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    # Populated on fill
    filled_at: datetime | None = None
    executed_price: float | None = None
    realized_pnl: float | None = None

    # Locked against this order while it is open
    reserved_cash: float = 0.0
    reserved_quantity: int = 0

    def is_marketable(self, price: float) -> bool:
        """True if the order can fill now against ``price``."""
        if self.kind == "market":
            return True
        if self.limit_price is None:
            return False
        if self.side == "buy":
            return price <= self.limit_price
        return price >= self.limit_price


class Fill(BaseModel):
    """Everything one fill changes, applied by storage in a single transaction.

    ``order`` is the order record in its filled state. Storing it also
    releases whatever the order had reserved while it was open.
    """

    order: Order
    quantity: int = Field(gt=0)
    price: float = Field(gt=0)

    @property
    def notional(self) -> float:
        return self.quantity * self.price

    @property
    def cash_delta(self) -> float:
        return -self.notional if self.order.side == "buy" else self.notional


class ExecutionResult(BaseModel):
    """Outcome of submitting, filling or cancelling an order."""

    success: bool
    order_id: str | None = None
    status: OrderStatus | None = None
    executed_price: float | None = None
    executed_quantity: int | None = None
    remaining_quantity: int | None = None
    error: str | None = None
    error_code: ErrorCode | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class OrderContext(BaseModel):
    """What the risk rules see when judging an order."""

    order: Order
    quote_price: float
    notional: float
    portfolio: PortfolioSnapshot
    holding: Holding | None = None
    holdings_value: float = 0.0

    @property
    def total_value(self) -> float:
        """Cash plus holdings at current quotes."""
        return self.portfolio.cash + self.holdings_value


class RuleEvaluation(BaseModel):
    """Result of a single risk rule evaluation."""

    rule_name: str
    passed: bool
    reason: str
    error_code: ErrorCode | None = None
    current_value: float | None = None
    limit_value: float | None = None


class RiskResult(BaseModel):
    """Aggregate result of all risk rule evaluations."""

    approved: bool
    evaluations: list[RuleEvaluation] = Field(default_factory=list)

    @property
    def failed_rules(self) -> list[RuleEvaluation]:
        return [e for e in self.evaluations if not e.passed]

    @property
    def summary(self) -> str:
        if self.approved:
            return f"Approved ({len(self.evaluations)} rules passed)"
        failed = ", ".join(e.rule_name for e in self.failed_rules)
        return f"Rejected (failed: {failed})"
