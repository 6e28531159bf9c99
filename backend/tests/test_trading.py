"""Tests for order execution, P&L bookkeeping, recalculation and performance."""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from fastapi import HTTPException

from app.models import Competition, CompetitionParticipant, Position, TradeOrder, User
from app.trading import (
    STARTING_BALANCE,
    adjust_balance,
    apply_realized_pnl,
    build_performance,
    cancel_order,
    execute_market_order,
    get_or_create_balance,
    max_drawdown_pct,
    recalculate_user_pnl,
    sharpe_ratio,
    win_rate_stats,
)

NOW = datetime(2024, 3, 13, 15, 0)  # a Wednesday


@pytest.fixture
def trader(db):
    user = User(username="trader", role="user")
    db.add(user)
    db.flush()
    get_or_create_balance(db, user)
    db.commit()
    return user


def buy(db, user, symbol, qty, price, now=NOW):
    return execute_market_order(db, user, symbol, "buy", Decimal(str(qty)), Decimal(str(price)), now=now)


def sell(db, user, symbol, qty, price, now=NOW):
    return execute_market_order(db, user, symbol, "sell", Decimal(str(qty)), Decimal(str(price)), now=now)


class TestExecuteMarketOrder:
    def test_buy_debits_cash_and_opens_position(self, db, trader) -> None:
        order = buy(db, trader, "AAPL", 10, 200)
        balance = get_or_create_balance(db, trader)
        assert order.status == "filled"
        assert float(order.filled_price) == 200
        assert float(balance.available_balance) == pytest.approx(float(STARTING_BALANCE) - 2000)
        assert float(balance.balance) == pytest.approx(float(STARTING_BALANCE))
        position = db.query(Position).filter_by(user_id=trader.id, symbol="AAPL").one()
        assert float(position.quantity) == 10
        assert float(position.average_cost) == 200

    def test_average_cost_is_weighted(self, db, trader) -> None:
        buy(db, trader, "AAPL", 10, 100)
        buy(db, trader, "AAPL", 30, 200)
        position = db.query(Position).filter_by(user_id=trader.id, symbol="AAPL").one()
        assert float(position.quantity) == 40
        assert float(position.average_cost) == pytest.approx(175.0)

    def test_sell_books_realized_pnl(self, db, trader) -> None:
        buy(db, trader, "AAPL", 10, 100)
        order = sell(db, trader, "AAPL", 4, 150)
        balance = get_or_create_balance(db, trader)
        assert float(order.realized_pnl) == pytest.approx(200.0)
        assert float(balance.total_pnl) == pytest.approx(200.0)
        assert float(balance.daily_pnl) == pytest.approx(200.0)
        assert float(balance.balance) == pytest.approx(float(STARTING_BALANCE) + 200)
        assert float(balance.available_balance) == pytest.approx(float(STARTING_BALANCE) - 1000 + 600)
        position = db.query(Position).filter_by(user_id=trader.id, symbol="AAPL").one()
        assert float(position.quantity) == 6

    def test_selling_everything_closes_position(self, db, trader) -> None:
        buy(db, trader, "TSLA", 5, 100)
        sell(db, trader, "TSLA", 5, 90)
        assert db.query(Position).filter_by(user_id=trader.id).count() == 0
        assert float(get_or_create_balance(db, trader).total_pnl) == pytest.approx(-50.0)

    def test_insufficient_buying_power(self, db, trader) -> None:
        with pytest.raises(HTTPException) as exc:
            buy(db, trader, "AAPL", 1_000_000, 200)
        assert exc.value.status_code == 400
        assert "Insufficient buying power" in exc.value.detail

    def test_cannot_sell_more_than_held(self, db, trader) -> None:
        buy(db, trader, "AAPL", 1, 100)
        with pytest.raises(HTTPException) as exc:
            sell(db, trader, "AAPL", 2, 100)
        assert "Insufficient position" in exc.value.detail

    def test_fill_updates_active_competition(self, db, trader) -> None:
        competition = Competition(
            name="Spring Cup",
            creator_id=trader.id,
            status="active",
            start_date=NOW - timedelta(days=1),
            end_date=NOW + timedelta(days=30),
        )
        db.add(competition)
        db.flush()
        participant = CompetitionParticipant(
            competition_id=competition.id,
            user_id=trader.id,
            starting_balance=100000,
            current_balance=100000,
        )
        db.add(participant)
        db.commit()

        buy(db, trader, "AAPL", 10, 100)
        sell(db, trader, "AAPL", 10, 110)
        db.refresh(participant)
        assert participant.total_trades == 2
        assert float(participant.total_pnl) == pytest.approx(100.0)
        assert float(participant.current_balance) == pytest.approx(100100.0)


class TestPeriodRollover:
    def test_buckets_reset_on_new_day_week_and_month(self, db, trader) -> None:
        balance = get_or_create_balance(db, trader)
        balance.total_pnl = 500
        balance.daily_pnl = 100
        balance.weekly_pnl = 200
        balance.monthly_pnl = 300
        balance.updated_at = datetime(2024, 2, 29, 12, 0)  # previous month

        apply_realized_pnl(balance, Decimal("50"), datetime(2024, 3, 1, 10, 0))
        assert float(balance.total_pnl) == pytest.approx(550)
        assert float(balance.daily_pnl) == pytest.approx(50)
        # 2024-02-29 and 2024-03-01 fall in the same ISO week.
        assert float(balance.weekly_pnl) == pytest.approx(250)
        assert float(balance.monthly_pnl) == pytest.approx(50)

    def test_same_day_accumulates(self, db, trader) -> None:
        balance = get_or_create_balance(db, trader)
        balance.daily_pnl = 10
        balance.updated_at = NOW - timedelta(hours=1)
        apply_realized_pnl(balance, Decimal("5"), NOW)
        assert float(balance.daily_pnl) == pytest.approx(15)


class TestOrderHelpers:
    def test_only_pending_orders_cancel(self) -> None:
        with pytest.raises(HTTPException):
            cancel_order(TradeOrder(status="filled"))
        order = cancel_order(TradeOrder(status="pending"), now=NOW)
        assert order.status == "cancelled"
        assert order.cancelled_at == NOW

    def test_adjust_balance_add_and_floor_on_remove(self, db, trader) -> None:
        balance = get_or_create_balance(db, trader)
        adjust_balance(balance, "add", Decimal("500"))
        assert float(balance.available_balance) == pytest.approx(float(STARTING_BALANCE) + 500)
        adjust_balance(balance, "remove", Decimal("10000000"))
        assert float(balance.balance) == 0
        assert float(balance.available_balance) == 0

    def test_adjust_balance_rejects_unknown_action(self, db, trader) -> None:
        with pytest.raises(HTTPException):
            adjust_balance(get_or_create_balance(db, trader), "double", Decimal("1"))


class TestRecalculation:
    def test_rebuilds_balance_and_positions_from_fills(self, db, trader) -> None:
        buy(db, trader, "AAPL", 10, 100, now=NOW - timedelta(days=40))
        sell(db, trader, "AAPL", 5, 120, now=NOW - timedelta(days=40))
        buy(db, trader, "MSFT", 2, 300, now=NOW - timedelta(hours=2))
        sell(db, trader, "AAPL", 5, 90, now=NOW - timedelta(hours=1))
        db.commit()

        # Corrupt the stored state, then rebuild it.
        balance = get_or_create_balance(db, trader)
        balance.total_pnl = 0
        balance.available_balance = 1
        db.query(Position).filter_by(user_id=trader.id).delete()
        db.commit()

        result = recalculate_user_pnl(db, trader, now=NOW)
        db.commit()
        assert result.orders_replayed == 4
        assert result.realized_pnl == pytest.approx(100 - 50)
        assert result.daily_pnl == pytest.approx(-50)
        assert result.monthly_pnl == pytest.approx(-50)
        assert result.positions == 1
        assert result.balance == pytest.approx(float(STARTING_BALANCE) + 50)
        assert result.available_balance == pytest.approx(float(STARTING_BALANCE) + 50 - 600)
        position = db.query(Position).filter_by(user_id=trader.id).one()
        assert position.symbol == "MSFT"


class TestPerformance:
    def test_max_drawdown(self) -> None:
        assert max_drawdown_pct([100, 120, 90, 130]) == pytest.approx(25.0)
        assert max_drawdown_pct([100, 110, 120]) == 0

    def test_sharpe_needs_variation(self) -> None:
        assert sharpe_ratio([100, 100]) == 0.0
        assert sharpe_ratio([100, 101, 99, 103, 104]) != 0.0

    def test_win_rate(self) -> None:
        orders = [
            TradeOrder(side="sell", realized_pnl=10),
            TradeOrder(side="sell", realized_pnl=-5),
            TradeOrder(side="sell", realized_pnl=3),
            TradeOrder(side="buy", realized_pnl=None),
        ]
        rate, closed, wins, losses = win_rate_stats(orders)
        assert closed == 3
        assert (wins, losses) == (2, 1)
        assert rate == pytest.approx(200 / 3)

    def test_history_marks_open_positions_at_current_price(self) -> None:
        orders = [
            TradeOrder(
                side="buy",
                symbol="AAPL",
                asset_type="stock",
                status="filled",
                quantity=10,
                filled_quantity=10,
                filled_price=100,
                filled_at=NOW - timedelta(days=3),
            )
        ]
        points, summary = build_performance(orders, "7d", None, {"AAPL": Decimal("110")}, now=NOW)
        assert points[0].total_value == pytest.approx(float(STARTING_BALANCE))
        assert points[-1].timestamp == NOW
        assert points[-1].positions_value == pytest.approx(1100)
        assert summary.unrealized_pnl == pytest.approx(100)
        assert summary.total_trades == 1

    def test_rejects_unknown_period(self) -> None:
        with pytest.raises(HTTPException):
            build_performance([], "5y", None, {})
