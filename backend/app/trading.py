from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable, Sequence

from fastapi import HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import Competition, CompetitionParticipant, Position, TradeOrder, User, UserBalance

logger = logging.getLogger(__name__)

STARTING_BALANCE = Decimal(os.environ.get("STARTING_BALANCE", "100000"))
ORDER_SIDES = ("buy", "sell")
ORDER_TYPES = ("market", "limit", "stop", "stop_limit")
ASSET_TYPES = ("stock", "option", "future")
RISK_FREE_RATE = 0.02
TRADING_DAYS_PER_YEAR = 252

PERFORMANCE_PERIODS: dict[str, timedelta | None] = {
    "1d": timedelta(days=1),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "90d": timedelta(days=90),
    "1y": timedelta(days=365),
    "all": None,
}
GRANULARITY_STEPS = {
    "hourly": timedelta(hours=1),
    "daily": timedelta(days=1),
    "weekly": timedelta(weeks=1),
}
MAX_HISTORY_POINTS = 500


def to_decimal(value) -> Decimal:
    return Decimal(str(value if value is not None else 0))


def period_starts(now: datetime) -> tuple[datetime, datetime, datetime]:
    """Start of the current day, ISO week (Monday) and month."""
    day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    week_start = day_start - timedelta(days=day_start.weekday())
    month_start = day_start.replace(day=1)
    return day_start, week_start, month_start


def get_or_create_balance(db: Session, user: User, for_update: bool = False) -> UserBalance:
    stmt = select(UserBalance).where(UserBalance.user_id == user.id)
    if for_update:
        stmt = stmt.with_for_update()
    balance = db.execute(stmt).scalar_one_or_none()
    if balance:
        return balance
    balance = UserBalance(
        user_id=user.id,
        balance=float(STARTING_BALANCE),
        available_balance=float(STARTING_BALANCE),
        total_pnl=0,
        daily_pnl=0,
        weekly_pnl=0,
        monthly_pnl=0,
    )
    db.add(balance)
    db.flush()
    return balance


def apply_realized_pnl(balance: UserBalance, pnl: Decimal, now: datetime) -> None:
    """
    Accumulate realised P&L into the period buckets.

    A bucket restarts at zero when the last update happened before the start
    of the current day, week or month.
    """
    day_start, week_start, month_start = period_starts(now)
    last_update = balance.updated_at or now

    daily = to_decimal(balance.daily_pnl) if last_update >= day_start else Decimal("0")
    weekly = to_decimal(balance.weekly_pnl) if last_update >= week_start else Decimal("0")
    monthly = to_decimal(balance.monthly_pnl) if last_update >= month_start else Decimal("0")

    balance.total_pnl = float(to_decimal(balance.total_pnl) + pnl)
    balance.daily_pnl = float(daily + pnl)
    balance.weekly_pnl = float(weekly + pnl)
    balance.monthly_pnl = float(monthly + pnl)


def ensure_can_trade_or_raise(user: User) -> None:
    if not user.can_trade:
        raise HTTPException(
            status_code=403,
            detail="Trading not allowed for admin accounts due to conflict of interest",
        )


def record_competition_fill(db: Session, user_id: int, realized_pnl: Decimal | None) -> None:
    participants = db.execute(
        select(CompetitionParticipant)
        .join(Competition, Competition.id == CompetitionParticipant.competition_id)
        .where(
            CompetitionParticipant.user_id == user_id,
            CompetitionParticipant.status == "active",
            Competition.status == "active",
        )
        .with_for_update()
    ).scalars().all()
    for participant in participants:
        participant.total_trades = int(participant.total_trades or 0) + 1
        if realized_pnl is None:
            continue
        participant.realized_pnl = float(to_decimal(participant.realized_pnl) + realized_pnl)
        participant.total_pnl = float(to_decimal(participant.total_pnl) + realized_pnl)
        participant.current_balance = float(to_decimal(participant.current_balance) + realized_pnl)


def execute_market_order(
    db: Session,
    user: User,
    symbol: str,
    side: str,
    quantity: Decimal,
    price: Decimal,
    asset_type: str = "stock",
    now: datetime | None = None,
) -> TradeOrder:
    """
    Fill a market order at `price` inside the caller's transaction.

    Buys debit cash and fold the fill into the position's weighted average
    cost. Sells credit cash, book (price - average_cost) * quantity as
    realised P&L and drop the position once it is flat.
    """
    now = now or datetime.utcnow()
    if quantity <= 0:
        raise HTTPException(400, "quantity must be > 0")
    if price <= 0:
        raise HTTPException(400, f"No valid price available for {symbol}")

    balance = get_or_create_balance(db, user, for_update=True)
    position = db.execute(
        select(Position)
        .where(Position.user_id == user.id, Position.symbol == symbol, Position.asset_type == asset_type)
        .with_for_update()
    ).scalar_one_or_none()

    cash = to_decimal(balance.available_balance)
    notional = quantity * price
    realized_pnl: Decimal | None = None

    if side == "buy":
        if notional > cash:
            raise HTTPException(
                400,
                f"Insufficient buying power. Need {float(notional):.2f}, have {float(cash):.2f}",
            )
        balance.available_balance = float(cash - notional)
        if not position:
            position = Position(user_id=user.id, symbol=symbol, asset_type=asset_type, quantity=0, average_cost=0)
            db.add(position)
        held = to_decimal(position.quantity)
        new_qty = held + quantity
        position.average_cost = float((held * to_decimal(position.average_cost) + notional) / new_qty)
        position.quantity = float(new_qty)
    elif side == "sell":
        held = to_decimal(position.quantity) if position else Decimal("0")
        if not position or held < quantity:
            raise HTTPException(
                400,
                f"Insufficient position. Have {float(held):g} {symbol}, tried to sell {float(quantity):g}",
            )
        average_cost = to_decimal(position.average_cost)
        realized_pnl = (price - average_cost) * quantity
        balance.available_balance = float(cash + notional)
        balance.balance = float(to_decimal(balance.balance) + realized_pnl)
        apply_realized_pnl(balance, realized_pnl, now)
        remaining = held - quantity
        if remaining <= 0:
            db.delete(position)
        else:
            position.quantity = float(remaining)
    else:
        raise HTTPException(400, "side must be 'buy' or 'sell'")

    balance.updated_at = now
    order = TradeOrder(
        user_id=user.id,
        symbol=symbol,
        asset_type=asset_type,
        side=side,
        order_type="market",
        quantity=float(quantity),
        price=float(price),
        status="filled",
        filled_quantity=float(quantity),
        filled_price=float(price),
        realized_pnl=float(realized_pnl) if realized_pnl is not None else None,
        created_at=now,
        updated_at=now,
        filled_at=now,
    )
    db.add(order)
    record_competition_fill(db, user.id, realized_pnl)
    db.flush()
    logger.info(
        "Filled %s %s %s @ %s for user %s (realized_pnl=%s)",
        side,
        quantity,
        symbol,
        price,
        user.id,
        realized_pnl,
    )
    return order


def cancel_order(order: TradeOrder, now: datetime | None = None) -> TradeOrder:
    if order.status != "pending":
        raise HTTPException(400, f"Only pending orders can be cancelled (order is {order.status}).")
    now = now or datetime.utcnow()
    order.status = "cancelled"
    order.cancelled_at = now
    order.updated_at = now
    return order


def adjust_balance(balance: UserBalance, action: str, amount: Decimal) -> UserBalance:
    if amount <= 0:
        raise HTTPException(400, "amount must be > 0")
    current_balance = to_decimal(balance.balance)
    current_cash = to_decimal(balance.available_balance)
    if action == "add":
        balance.balance = float(current_balance + amount)
        balance.available_balance = float(current_cash + amount)
    elif action == "remove":
        balance.balance = float(max(Decimal("0"), current_balance - amount))
        balance.available_balance = float(max(Decimal("0"), current_cash - amount))
    else:
        raise HTTPException(400, "action must be 'add' or 'remove'")
    balance.updated_at = datetime.utcnow()
    return balance


@dataclass
class ReplayedPosition:
    symbol: str
    asset_type: str
    quantity: Decimal = Decimal("0")
    average_cost: Decimal = Decimal("0")


@dataclass
class ReplayState:
    cash: Decimal
    positions: dict[tuple[str, str], ReplayedPosition] = field(default_factory=dict)
    realized_pnl: Decimal = Decimal("0")
    last_prices: dict[str, Decimal] = field(default_factory=dict)

    def apply(self, order: TradeOrder) -> Decimal | None:
        qty = to_decimal(order.filled_quantity or order.quantity)
        price = to_decimal(order.filled_price if order.filled_price is not None else order.price)
        key = (str(order.symbol), str(order.asset_type or "stock"))
        position = self.positions.get(key)
        self.last_prices[key[0]] = price

        if order.side == "buy":
            if position is None:
                position = self.positions[key] = ReplayedPosition(symbol=key[0], asset_type=key[1])
            new_qty = position.quantity + qty
            position.average_cost = (position.quantity * position.average_cost + qty * price) / new_qty
            position.quantity = new_qty
            self.cash -= qty * price
            return None

        average_cost = position.average_cost if position else Decimal("0")
        pnl = (price - average_cost) * qty
        self.cash += qty * price
        self.realized_pnl += pnl
        if position is not None:
            position.quantity -= qty
            if position.quantity <= 0:
                del self.positions[key]
        return pnl

    def position_cost(self) -> Decimal:
        return sum((p.quantity * p.average_cost for p in self.positions.values()), Decimal("0"))

    def market_value(self, prices: dict[str, Decimal] | None = None) -> Decimal:
        total = Decimal("0")
        for position in self.positions.values():
            price = (prices or {}).get(position.symbol) or self.last_prices.get(position.symbol, position.average_cost)
            total += position.quantity * price
        return total


def fill_sort_key(order: TradeOrder) -> datetime:
    return order.filled_at or order.created_at


@dataclass
class RecalculationResult:
    user_id: int
    orders_replayed: int
    realized_pnl: float
    daily_pnl: float
    weekly_pnl: float
    monthly_pnl: float
    balance: float
    available_balance: float
    positions: int


def recalculate_user_pnl(db: Session, user: User, now: datetime | None = None) -> RecalculationResult:
    """
    Rebuild positions, per-sell realised P&L and balances from filled orders.

    Cash is re-derived as the starting balance plus realised P&L minus the cost
    of whatever is still held; manual balance adjustments are not replayed.
    """
    now = now or datetime.utcnow()
    day_start, week_start, month_start = period_starts(now)
    orders = db.execute(
        select(TradeOrder).where(TradeOrder.user_id == user.id, TradeOrder.status == "filled")
    ).scalars().all()
    orders = sorted(orders, key=fill_sort_key)

    state = ReplayState(cash=STARTING_BALANCE)
    daily = weekly = monthly = Decimal("0")
    for order in orders:
        pnl = state.apply(order)
        order.realized_pnl = float(pnl) if pnl is not None else None
        if pnl is None:
            continue
        filled_at = fill_sort_key(order)
        if filled_at >= day_start:
            daily += pnl
        if filled_at >= week_start:
            weekly += pnl
        if filled_at >= month_start:
            monthly += pnl

    existing = {
        (p.symbol, p.asset_type): p
        for p in db.execute(
            select(Position).where(Position.user_id == user.id).with_for_update()
        ).scalars().all()
    }
    for key, row in existing.items():
        if key not in state.positions:
            db.delete(row)
    for key, replayed in state.positions.items():
        row = existing.get(key)
        if row is None:
            row = Position(user_id=user.id, symbol=key[0], asset_type=key[1])
            db.add(row)
        row.quantity = float(replayed.quantity)
        row.average_cost = float(replayed.average_cost)

    balance = get_or_create_balance(db, user, for_update=True)
    available = STARTING_BALANCE + state.realized_pnl - state.position_cost()
    balance.total_pnl = float(state.realized_pnl)
    balance.daily_pnl = float(daily)
    balance.weekly_pnl = float(weekly)
    balance.monthly_pnl = float(monthly)
    balance.available_balance = float(available)
    balance.balance = float(STARTING_BALANCE + state.realized_pnl)
    balance.updated_at = now
    db.flush()

    logger.info("Recalculated P&L for user %s from %d orders", user.id, len(orders))
    return RecalculationResult(
        user_id=int(user.id),
        orders_replayed=len(orders),
        realized_pnl=float(state.realized_pnl),
        daily_pnl=float(daily),
        weekly_pnl=float(weekly),
        monthly_pnl=float(monthly),
        balance=float(balance.balance),
        available_balance=float(available),
        positions=len(state.positions),
    )


@dataclass
class PerformancePoint:
    timestamp: datetime
    total_value: float
    cash: float
    positions_value: float
    pnl: float
    pnl_percentage: float


@dataclass
class PerformanceSummary:
    start_value: float
    end_value: float
    total_return: float
    total_return_percentage: float
    realized_pnl: float
    unrealized_pnl: float
    max_drawdown: float
    sharpe_ratio: float
    win_rate: float
    total_trades: int
    winning_trades: int
    losing_trades: int


def max_drawdown_pct(values: Sequence[float]) -> float:
    """Largest peak-to-trough decline, as a percentage of the peak."""
    peak = None
    worst = 0.0
    for value in values:
        if peak is None or value > peak:
            peak = value
        if peak and peak > 0:
            worst = max(worst, (peak - value) / peak * 100)
    return worst


def sharpe_ratio(values: Sequence[float]) -> float:
    """Annualised Sharpe ratio of per-point returns against a 2% risk-free rate."""
    returns = [
        values[i] / values[i - 1] - 1
        for i in range(1, len(values))
        if values[i - 1] > 0
    ]
    if len(returns) < 2:
        return 0.0
    daily_rf = RISK_FREE_RATE / TRADING_DAYS_PER_YEAR
    excess = [r - daily_rf for r in returns]
    mean = sum(excess) / len(excess)
    variance = sum((r - mean) ** 2 for r in excess) / (len(excess) - 1)
    std = math.sqrt(variance)
    if std == 0:
        return 0.0
    return mean / std * math.sqrt(TRADING_DAYS_PER_YEAR)


def win_rate_stats(orders: Iterable[TradeOrder]) -> tuple[float, int, int, int]:
    closed = [o for o in orders if o.side == "sell" and o.realized_pnl is not None]
    wins = sum(1 for o in closed if float(o.realized_pnl) > 0)
    losses = sum(1 for o in closed if float(o.realized_pnl) < 0)
    rate = wins / len(closed) * 100 if closed else 0.0
    return rate, len(closed), wins, losses


def build_performance(
    orders: Sequence[TradeOrder],
    period: str,
    granularity: str | None,
    current_prices: dict[str, Decimal],
    now: datetime | None = None,
) -> tuple[list[PerformancePoint], PerformanceSummary]:
    """
    Replay filled orders into evenly spaced snapshots of account value.

    Open positions are marked at the last fill price seen up to each snapshot,
    and at `current_prices` for the final one.
    """
    if period not in PERFORMANCE_PERIODS:
        raise HTTPException(400, f"period must be one of: {', '.join(PERFORMANCE_PERIODS)}")
    granularity = granularity or ("hourly" if period == "1d" else "daily")
    if granularity not in GRANULARITY_STEPS:
        raise HTTPException(400, f"granularity must be one of: {', '.join(GRANULARITY_STEPS)}")

    now = now or datetime.utcnow()
    filled = sorted((o for o in orders if o.status == "filled"), key=fill_sort_key)
    window = PERFORMANCE_PERIODS[period]
    if window is not None:
        start = now - window
    elif filled:
        start = fill_sort_key(filled[0])
    else:
        start = now - timedelta(days=30)

    step = GRANULARITY_STEPS[granularity]
    span = max(now - start, timedelta(0))
    buckets = int(span / step)
    if buckets >= MAX_HISTORY_POINTS:
        step = span / (MAX_HISTORY_POINTS - 1)
        buckets = MAX_HISTORY_POINTS - 1
    timestamps = [start + step * i for i in range(buckets + 1)]
    if not timestamps or timestamps[-1] < now:
        timestamps.append(now)

    state = ReplayState(cash=STARTING_BALANCE)
    cursor = 0
    points: list[PerformancePoint] = []
    for i, ts in enumerate(timestamps):
        while cursor < len(filled) and fill_sort_key(filled[cursor]) <= ts:
            state.apply(filled[cursor])
            cursor += 1
        is_last = i == len(timestamps) - 1
        positions_value = state.market_value(current_prices if is_last else None)
        total_value = state.cash + positions_value
        pnl = total_value - STARTING_BALANCE
        points.append(
            PerformancePoint(
                timestamp=ts,
                total_value=float(total_value),
                cash=float(state.cash),
                positions_value=float(positions_value),
                pnl=float(pnl),
                pnl_percentage=float(pnl / STARTING_BALANCE * 100) if STARTING_BALANCE else 0.0,
            )
        )

    values = [p.total_value for p in points]
    start_value = values[0]
    end_value = values[-1]
    unrealized = state.market_value(current_prices) - state.position_cost()
    rate, _, wins, losses = win_rate_stats(filled)
    summary = PerformanceSummary(
        start_value=start_value,
        end_value=end_value,
        total_return=end_value - start_value,
        total_return_percentage=(end_value - start_value) / start_value * 100 if start_value else 0.0,
        realized_pnl=float(state.realized_pnl),
        unrealized_pnl=float(unrealized),
        max_drawdown=max_drawdown_pct(values),
        sharpe_ratio=sharpe_ratio(values),
        win_rate=rate,
        total_trades=len(filled),
        winning_trades=wins,
        losing_trades=losses,
    )
    return points, summary
