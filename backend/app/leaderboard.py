from __future__ import annotations

import os
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Sequence

ACTIVE_TRADER_DAYS = int(os.environ.get("ACTIVE_TRADER_DAYS", "7"))

PERIOD_PNL_FIELDS = {
    "daily": "daily_pnl",
    "weekly": "weekly_pnl",
    "monthly": "monthly_pnl",
    "all_time": "total_pnl",
}
RANKING_CRITERIA = ("pnl", "win_rate", "total_trades", "balance")


@dataclass
class LeaderboardEntry:
    user_id: int
    username: str
    display_name: str | None = None
    whop_user_id: str | None = None
    balance: float = 0.0
    total_pnl: float = 0.0
    daily_pnl: float = 0.0
    weekly_pnl: float = 0.0
    monthly_pnl: float = 0.0
    total_trades: int = 0
    winning_trades: int = 0
    win_rate: float = 0.0
    last_trade_at: datetime | None = None
    rank: int = 0


@dataclass
class WhopRankingConfig:
    ranking_criteria: str = "pnl"
    time_period: str = "all_time"
    max_entries: int = 100
    min_trades: int = 1
    active_only: bool = False


def pnl_field_for_period(period: str) -> str:
    try:
        return PERIOD_PNL_FIELDS[period]
    except KeyError:
        raise ValueError(f"period must be one of: {', '.join(PERIOD_PNL_FIELDS)}") from None


def rank_entries(entries: Sequence[LeaderboardEntry], key: str, limit: int | None = None) -> list[LeaderboardEntry]:
    """
    Stable descending sort on `key`; rank is the 1-based position.

    Ties keep their input order and still get distinct ranks.
    """
    ordered = sorted(entries, key=lambda entry: float(getattr(entry, key) or 0), reverse=True)
    if limit is not None:
        ordered = ordered[: max(0, limit)]
    return [replace(entry, rank=index + 1) for index, entry in enumerate(ordered)]


def whop_score_field(config: WhopRankingConfig) -> str:
    """Entry attribute a Whop leaderboard sorts on; raises ValueError on bad options."""
    if config.ranking_criteria not in RANKING_CRITERIA:
        raise ValueError(f"ranking_criteria must be one of: {', '.join(RANKING_CRITERIA)}")
    pnl_field = pnl_field_for_period(config.time_period)
    return pnl_field if config.ranking_criteria == "pnl" else config.ranking_criteria


def eligible_whop_entries(
    entries: Sequence[LeaderboardEntry],
    config: WhopRankingConfig,
    now: datetime | None = None,
) -> list[LeaderboardEntry]:
    candidates = [entry for entry in entries if entry.total_trades >= config.min_trades]
    if config.active_only:
        cutoff = (now or datetime.utcnow()) - timedelta(days=ACTIVE_TRADER_DAYS)
        candidates = [
            entry for entry in candidates if entry.last_trade_at is not None and entry.last_trade_at >= cutoff
        ]
    return candidates


def rank_whop_entries(
    entries: Sequence[LeaderboardEntry],
    config: WhopRankingConfig,
    now: datetime | None = None,
) -> list[LeaderboardEntry]:
    key = whop_score_field(config)
    return rank_entries(eligible_whop_entries(entries, config, now), key, config.max_entries)


@dataclass
class ParticipantStanding:
    user_id: int
    username: str
    total_pnl: float
    current_balance: float
    starting_balance: float
    total_trades: int = 0
    joined_at: datetime | None = None
    rank: int = 0

    @property
    def return_percentage(self) -> float:
        if not self.starting_balance:
            return 0.0
        return (self.current_balance - self.starting_balance) / self.starting_balance * 100


def rank_competition_participants(standings: Sequence[ParticipantStanding]) -> list[ParticipantStanding]:
    """Order by total P&L, then current balance, both descending."""
    ordered = sorted(
        standings,
        key=lambda s: (float(s.total_pnl or 0), float(s.current_balance or 0)),
        reverse=True,
    )
    return [replace(standing, rank=index + 1) for index, standing in enumerate(ordered)]
