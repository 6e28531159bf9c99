from datetime import datetime
from pydantic import BaseModel, Field


class UserOut(BaseModel):
    id: int
    username: str
    email: str | None = None
    whop_user_id: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    role: str = "user"
    can_trade: bool = True
    is_active: bool = True


class AuthRegisterIn(BaseModel):
    username: str = Field(min_length=1, max_length=64)
    password: str = Field(min_length=8, max_length=128)
    email: str | None = Field(default=None, max_length=255)
    first_name: str | None = Field(default=None, max_length=128)
    last_name: str | None = Field(default=None, max_length=128)


class AuthLoginIn(BaseModel):
    username: str = Field(min_length=1, max_length=64)
    password: str = Field(min_length=1, max_length=128)


class AuthSessionOut(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime
    user: UserOut


class AuthLogoutOut(BaseModel):
    ok: bool = True


class AuthPasswordUpdateIn(BaseModel):
    current_password: str = Field(min_length=1, max_length=128)
    new_password: str = Field(min_length=8, max_length=128)


class AuthPasswordUpdateOut(BaseModel):
    ok: bool = True


class BalanceOut(BaseModel):
    user_id: int
    balance: float
    available_balance: float
    total_pnl: float
    daily_pnl: float
    weekly_pnl: float
    monthly_pnl: float
    updated_at: datetime | None = None


class BalanceEnvelopeOut(BaseModel):
    balance: BalanceOut


class BalanceAdjustIn(BaseModel):
    user_id: int
    action: str = Field(min_length=1, max_length=16)
    amount: float = Field(gt=0)


class OrderIn(BaseModel):
    symbol: str = Field(min_length=1, max_length=16)
    side: str = Field(min_length=1, max_length=8)
    order_type: str = Field(default="market", max_length=16)
    quantity: float
    asset_type: str = Field(default="stock", max_length=16)
    time_in_force: str = Field(default="day", max_length=8)


class OrderOut(BaseModel):
    id: int
    symbol: str
    asset_type: str
    side: str
    order_type: str
    quantity: float
    price: float | None = None
    status: str
    filled_quantity: float
    filled_price: float | None = None
    realized_pnl: float | None = None
    commission: float = 0
    time_in_force: str = "day"
    created_at: datetime
    filled_at: datetime | None = None
    cancelled_at: datetime | None = None


class OrderEnvelopeOut(BaseModel):
    order: OrderOut
    message: str | None = None


class PaginationOut(BaseModel):
    total: int
    page: int
    limit: int
    total_pages: int


class OrderListOut(BaseModel):
    orders: list[OrderOut]
    pagination: PaginationOut


class OrderUpdateIn(BaseModel):
    action: str = Field(min_length=1, max_length=16)
    quantity: float | None = None
    price: float | None = None


class PositionOut(BaseModel):
    id: int
    symbol: str
    asset_type: str
    quantity: float
    average_cost: float
    current_price: float
    current_value: float
    cost_basis: float
    unrealized_pnl: float
    unrealized_pnl_percentage: float
    price_source: str


class PortfolioSummaryOut(BaseModel):
    total_positions: int
    total_portfolio_value: float
    total_cost_basis: float
    total_unrealized_pnl: float
    total_unrealized_pnl_percentage: float
    cash_balance: float
    total_account_value: float


class PortfolioOut(BaseModel):
    positions: list[PositionOut]
    summary: PortfolioSummaryOut


class PerformancePointOut(BaseModel):
    timestamp: datetime
    total_value: float
    cash: float
    positions_value: float
    pnl: float
    pnl_percentage: float


class PerformanceSummaryOut(BaseModel):
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


class PerformanceOut(BaseModel):
    period: str
    granularity: str
    history: list[PerformancePointOut]
    summary: PerformanceSummaryOut


class LeaderboardEntryOut(BaseModel):
    rank: int
    user_id: int
    username: str
    display_name: str | None = None
    balance: float
    total_pnl: float
    daily_pnl: float
    weekly_pnl: float
    monthly_pnl: float
    period_pnl: float
    total_trades: int
    win_rate: float
    is_current_user: bool = False


class LeaderboardOut(BaseModel):
    period: str
    leaderboard: list[LeaderboardEntryOut]
    user_rank: int | None = None
    total_participants: int


class WhopLeaderboardEntryOut(BaseModel):
    rank: int
    user_id: int
    username: str
    whop_user_id: str | None = None
    score: float
    balance: float
    total_pnl: float
    total_trades: int
    win_rate: float
    last_trade_at: datetime | None = None


class WhopLeaderboardOut(BaseModel):
    ranking_criteria: str
    time_period: str
    entries: list[WhopLeaderboardEntryOut]
    total_eligible: int


class CompetitionCreateIn(BaseModel):
    name: str | None = Field(default=None, max_length=160)
    description: str | None = Field(default=None, max_length=5000)
    type: str = Field(default="invite_only", max_length=16)
    status: str = Field(default="draft", max_length=16)
    starting_balance: float = Field(default=100000, gt=0)
    max_participants: int = Field(default=100, ge=1)
    entry_fee: float = Field(default=0, ge=0)
    prize_pool: float = Field(default=0, ge=0)
    ranking_criteria: str = Field(default="total_pnl", max_length=32)
    start_date: datetime | None = None
    end_date: datetime | None = None
    registration_deadline: datetime | None = None


class CompetitionUpdateIn(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=160)
    description: str | None = Field(default=None, max_length=5000)
    status: str | None = Field(default=None, max_length=16)
    max_participants: int | None = Field(default=None, ge=1)
    prize_pool: float | None = Field(default=None, ge=0)
    ranking_criteria: str | None = Field(default=None, max_length=32)
    start_date: datetime | None = None
    end_date: datetime | None = None
    registration_deadline: datetime | None = None


class CreatorSummaryOut(BaseModel):
    id: int
    username: str
    first_name: str | None = None
    last_name: str | None = None


class ParticipationOut(BaseModel):
    status: str
    current_rank: int | None = None
    current_balance: float
    total_pnl: float
    joined_at: datetime


class CompetitionOut(BaseModel):
    id: int
    name: str
    description: str | None = None
    status: str
    type: str
    starting_balance: float
    max_participants: int
    entry_fee: float
    prize_pool: float
    ranking_criteria: str
    start_date: datetime
    end_date: datetime
    registration_deadline: datetime | None = None
    created_at: datetime
    participant_count: int = 0
    spots_remaining: int = 0
    creator: CreatorSummaryOut | None = None
    user_participation: ParticipationOut | None = None
    is_creator: bool = False


class CompetitionEnvelopeOut(BaseModel):
    competition: CompetitionOut
    message: str | None = None


class CompetitionListOut(BaseModel):
    competitions: list[CompetitionOut]
    total: int


class CompetitionStandingOut(BaseModel):
    rank: int
    user_id: int
    username: str
    total_pnl: float
    current_balance: float
    starting_balance: float
    return_percentage: float
    total_trades: int
    is_current_user: bool = False


class CompetitionDetailOut(BaseModel):
    competition: CompetitionOut
    leaderboard: list[CompetitionStandingOut]


class CompetitionJoinIn(BaseModel):
    invitation_code: str | None = Field(default=None, max_length=32)


class CompetitionJoinOut(BaseModel):
    message: str
    starting_balance: float
    participant_rank: int | None = None


class InvitationCreateIn(BaseModel):
    whop_user_id: str | None = Field(default=None, max_length=128)
    email: str | None = Field(default=None, max_length=255)


class InvitationOut(BaseModel):
    id: int
    competition_id: int
    invitation_code: str
    invitee_whop_id: str | None = None
    invitee_email: str | None = None
    status: str
    expires_at: datetime
    created_at: datetime


class InvitationCreateOut(BaseModel):
    success: bool = True
    invitation_code: str
    expires_at: datetime
    message: str


class InvitationListOut(BaseModel):
    invitations: list[InvitationOut]


class CompetitionLeaderboardOut(BaseModel):
    competition: CompetitionOut
    leaderboard: list[CompetitionStandingOut]
    user_rank: int | None = None
    total_participants: int


class DeletedOut(BaseModel):
    success: bool = True
    message: str


class QuoteOut(BaseModel):
    symbol: str
    price: float
    bid: float | None = None
    ask: float | None = None
    previous_close: float | None = None
    change: float | None = None
    change_percent: float | None = None
    source: str
    market_open: bool
    timestamp: datetime


class BarOut(BaseModel):
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: int


class BarsOut(BaseModel):
    symbol: str
    interval: str
    source: str
    bars: list[BarOut]


class IndicatorsOut(BaseModel):
    symbol: str
    interval: str
    source: str
    timestamps: list[datetime]
    indicators: dict


class SymbolSearchResultOut(BaseModel):
    symbol: str
    name: str


class SymbolSearchOut(BaseModel):
    results: list[SymbolSearchResultOut]


class CreatorUserOut(BaseModel):
    id: int
    username: str
    email: str | None = None
    whop_user_id: str | None = None
    role: str
    is_active: bool
    balance: float
    available_balance: float
    total_pnl: float
    total_orders: int
    filled_orders: int
    created_at: datetime


class CreatorUserListOut(BaseModel):
    users: list[CreatorUserOut]
    total: int


class CreatorUserActionIn(BaseModel):
    action: str = Field(min_length=1, max_length=32)
    user_id: int
    new_balance: float | None = Field(default=None, ge=0)


class AnalyticsOut(BaseModel):
    total_users: int
    active_users: int
    total_orders: int
    filled_orders: int
    fill_rate: float
    average_pnl: float
    total_volume: float
    active_competitions: int


class RecalculateResultOut(BaseModel):
    user_id: int
    orders_replayed: int
    realized_pnl: float
    daily_pnl: float
    weekly_pnl: float
    monthly_pnl: float
    balance: float
    available_balance: float
    positions: int


class RecalculateOut(BaseModel):
    results: list[RecalculateResultOut]
    users_processed: int


class WebhookOut(BaseModel):
    success: bool = True
    event: str | None = None
