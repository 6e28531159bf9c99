import json
import logging
import math
import os
import re
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import and_, case, delete, func, or_, select
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from .auth import (
    WHOP_WEBHOOK_SECRET,
    generate_session_token,
    hash_password,
    hash_session_token,
    parse_whop_token,
    session_expiry_from_now,
    verify_password,
    verify_webhook_signature,
)
from .competitions import (
    COMPETITION_STATUSES,
    COMPETITION_TYPES,
    RANKING_CRITERIA as COMPETITION_RANKING_CRITERIA,
    active_participant_count,
    competition_standings,
    create_invitation,
    ensure_competition_creator_or_raise,
    get_competition_or_404,
    get_participation,
    join_competition,
    to_naive_utc,
)
from .db import SessionLocal, get_db
from .indicators import calculate_indicators
from .leaderboard import (
    LeaderboardEntry,
    WhopRankingConfig,
    eligible_whop_entries,
    pnl_field_for_period,
    rank_entries,
    rank_whop_entries,
    whop_score_field,
)
from .market_data import get_bars, get_quote, is_market_open, normalize_symbol, search_symbols
from .models import (
    Competition,
    CompetitionInvitation,
    CompetitionParticipant,
    Position,
    TradeOrder,
    User,
    UserBalance,
    UserSession,
)
from .schemas import (
    AnalyticsOut,
    AuthLoginIn,
    AuthLogoutOut,
    AuthPasswordUpdateIn,
    AuthPasswordUpdateOut,
    AuthRegisterIn,
    AuthSessionOut,
    BalanceAdjustIn,
    BalanceEnvelopeOut,
    BalanceOut,
    BarOut,
    BarsOut,
    CompetitionCreateIn,
    CompetitionDetailOut,
    CompetitionEnvelopeOut,
    CompetitionJoinIn,
    CompetitionJoinOut,
    CompetitionLeaderboardOut,
    CompetitionListOut,
    CompetitionOut,
    CompetitionStandingOut,
    CompetitionUpdateIn,
    CreatorSummaryOut,
    CreatorUserActionIn,
    CreatorUserListOut,
    CreatorUserOut,
    DeletedOut,
    IndicatorsOut,
    InvitationCreateIn,
    InvitationCreateOut,
    InvitationListOut,
    InvitationOut,
    LeaderboardEntryOut,
    LeaderboardOut,
    OrderEnvelopeOut,
    OrderIn,
    OrderListOut,
    OrderOut,
    OrderUpdateIn,
    PaginationOut,
    ParticipationOut,
    PerformanceOut,
    PerformancePointOut,
    PerformanceSummaryOut,
    PortfolioOut,
    PortfolioSummaryOut,
    PositionOut,
    QuoteOut,
    RecalculateOut,
    RecalculateResultOut,
    SymbolSearchOut,
    SymbolSearchResultOut,
    UserOut,
    WebhookOut,
    WhopLeaderboardEntryOut,
    WhopLeaderboardOut,
)
from .seed import DEFAULT_SANDBOX_USERNAME, init_db, seed
from .trading import (
    ASSET_TYPES,
    ORDER_SIDES,
    ORDER_TYPES,
    adjust_balance,
    build_performance,
    cancel_order,
    ensure_can_trade_or_raise,
    execute_market_order,
    get_or_create_balance,
    recalculate_user_pnl,
    to_decimal,
)

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="WhopTrade Paper Trading API")
ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.environ.get("ALLOWED_ORIGINS", "http://localhost:3000,http://localhost:3001").split(",")
    if origin.strip()
]
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StarletteHTTPException)
def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "Invalid request", "details": jsonable_encoder(exc.errors())},
    )


@app.exception_handler(Exception)
def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


@app.get("/")
def root():
    return {"ok": True, "service": "WhopTrade API", "docs": "/docs", "health": "/healthz"}


@app.get("/healthz")
def healthz():
    return {"ok": True}


VALID_USERNAME = re.compile(r"^[a-z0-9][a-z0-9_-]{0,63}$")
RAW_CREATOR_USERNAMES = (os.environ.get("CREATOR_USERNAMES") or "").strip() or DEFAULT_SANDBOX_USERNAME
CREATOR_USERNAMES = {
    name.strip().lower()
    for name in RAW_CREATOR_USERNAMES.split(",")
    if name.strip()
}
WHOP_JOIN_EVENTS = ("user_joined", "membership_created")
WHOP_LEAVE_EVENTS = ("user_left", "membership_deleted")


@dataclass
class AuthContext:
    user: User
    session: UserSession | None


@app.on_event("startup")
def on_startup():
    init_db()
    db = SessionLocal()
    try:
        seed(db)
    finally:
        db.close()


def normalize_username(raw_username: str | None) -> str:
    username = (raw_username or "").strip().lower()
    if not username:
        raise HTTPException(400, "username is required")
    if not VALID_USERNAME.match(username):
        raise HTTPException(
            status_code=400,
            detail=(
                "Invalid username. Use lowercase letters, numbers, underscore, or hyphen "
                "(max 64 chars)."
            ),
        )
    return username


def unique_username(db: Session, raw: str) -> str:
    base = re.sub(r"[^a-z0-9_-]", "", (raw or "").strip().lower())[:56] or "trader"
    if not base[0].isalnum():
        base = f"u{base}"[:56]
    candidate = base
    suffix = 1
    while db.execute(select(User.id).where(User.username == candidate)).first():
        suffix += 1
        candidate = f"{base}-{suffix}"
    return candidate


def auth_exception(detail: str = "Authentication required.") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_bearer_token(
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> str:
    if not authorization:
        raise auth_exception()
    scheme, _, token = authorization.partition(" ")
    if scheme.strip().lower() != "bearer" or not token.strip():
        raise auth_exception("Invalid authorization header.")
    return token.strip()


def get_user_by_id_or_raise(
    db: Session,
    user_id: int,
    for_update: bool = False,
) -> User:
    stmt = select(User).where(User.id == user_id)
    if for_update:
        stmt = stmt.with_for_update()
    user = db.execute(stmt).scalar_one_or_none()
    if not user:
        raise auth_exception("User not found.")
    return user


def get_user_or_404(db: Session, user_id: int) -> User:
    user = db.execute(select(User).where(User.id == user_id)).scalar_one_or_none()
    if not user:
        raise HTTPException(404, "User not found")
    return user


def upsert_whop_user(
    db: Session,
    whop_user_id: str,
    username: str | None = None,
    email: str | None = None,
    company_id: str | None = None,
) -> User:
    user = db.execute(select(User).where(User.whop_user_id == whop_user_id)).scalar_one_or_none()
    if not user:
        user = User(
            username=unique_username(db, username or f"whop_{whop_user_id}"),
            whop_user_id=whop_user_id,
            role="user",
        )
        db.add(user)
        logger.info("Created profile for Whop user %s", whop_user_id)
    if email:
        user.email = email.strip().lower()
    if company_id:
        user.company_id = company_id
    user.is_active = True
    db.flush()
    get_or_create_balance(db, user)
    return user


def get_auth_context(
    bearer_token: str = Depends(get_bearer_token),
    db: Session = Depends(get_db),
) -> AuthContext:
    whop_user_id = parse_whop_token(bearer_token)
    if whop_user_id:
        user = db.execute(select(User).where(User.whop_user_id == whop_user_id)).scalar_one_or_none()
        if not user:
            user = upsert_whop_user(db, whop_user_id)
            db.commit()
        if not user.is_active:
            raise auth_exception("Account is deactivated.")
        return AuthContext(user=user, session=None)

    session = db.execute(
        select(UserSession).where(
            UserSession.token_hash == hash_session_token(bearer_token),
            UserSession.revoked_at.is_(None),
            UserSession.expires_at > datetime.utcnow(),
        )
    ).scalar_one_or_none()
    if not session:
        raise auth_exception("Session is invalid or expired.")
    user = get_user_by_id_or_raise(
        db=db,
        user_id=int(session.user_id),
        for_update=False,
    )
    if not user.is_active:
        raise auth_exception("Account is deactivated.")
    return AuthContext(user=user, session=session)


def get_creator_context(auth: AuthContext = Depends(get_auth_context)) -> AuthContext:
    if auth.user.role != "creator":
        raise HTTPException(status_code=403, detail="Creator access required.")
    return auth


def users_visible_to(creator: User):
    """Filter clause limiting a creator to users of their own company."""
    if creator.company_id:
        return User.company_id == creator.company_id
    return User.id.is_not(None)


def ensure_user_visible_or_raise(creator: User, user: User) -> None:
    if creator.company_id and user.company_id != creator.company_id:
        raise HTTPException(403, "User belongs to another company.")


def user_to_out(user: User) -> UserOut:
    return UserOut(
        id=user.id,
        username=str(user.username),
        email=user.email,
        whop_user_id=user.whop_user_id,
        first_name=user.first_name,
        last_name=user.last_name,
        role=str(user.role),
        can_trade=user.can_trade,
        is_active=bool(user.is_active),
    )


def create_auth_session_out(db: Session, user: User) -> AuthSessionOut:
    token = generate_session_token()
    expires_at = session_expiry_from_now()
    db.add(
        UserSession(
            user_id=user.id,
            token_hash=hash_session_token(token),
            expires_at=expires_at,
        )
    )
    return AuthSessionOut(
        access_token=token,
        expires_at=expires_at,
        user=user_to_out(user),
    )


@app.post("/auth/register", response_model=AuthSessionOut)
def register(payload: AuthRegisterIn, db: Session = Depends(get_db)):
    username = normalize_username(payload.username)
    existing = db.execute(select(User).where(User.username == username)).scalar_one_or_none()
    if existing:
        raise HTTPException(400, f"User '{username}' already exists.")

    user = User(
        username=username,
        email=(payload.email or "").strip().lower() or None,
        first_name=payload.first_name,
        last_name=payload.last_name,
        role="creator" if username in CREATOR_USERNAMES else "user",
        password_hash=hash_password(payload.password),
    )
    db.add(user)
    db.flush()
    get_or_create_balance(db, user)

    out = create_auth_session_out(db=db, user=user)
    db.commit()
    logger.info("Registered %s (%s)", username, user.role)
    return out


@app.post("/auth/login", response_model=AuthSessionOut)
def login(payload: AuthLoginIn, db: Session = Depends(get_db)):
    username = normalize_username(payload.username)
    user = db.execute(select(User).where(User.username == username)).scalar_one_or_none()
    if user and not user.password_hash:
        raise auth_exception("This account signs in through Whop.")
    if not user or not verify_password(payload.password, user.password_hash):
        raise auth_exception("Invalid username or password.")
    if not user.is_active:
        raise auth_exception("Account is deactivated.")

    out = create_auth_session_out(db=db, user=user)
    db.commit()
    return out


@app.post("/auth/logout", response_model=AuthLogoutOut)
def logout(
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    if auth.session is not None:
        auth.session.revoked_at = datetime.utcnow()
        db.commit()
    return AuthLogoutOut(ok=True)


@app.get("/auth/me", response_model=UserOut)
def auth_me(auth: AuthContext = Depends(get_auth_context)):
    return user_to_out(auth.user)


@app.post("/auth/password", response_model=AuthPasswordUpdateOut)
def auth_update_password(
    payload: AuthPasswordUpdateIn,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    user = get_user_by_id_or_raise(
        db=db,
        user_id=auth.user.id,
        for_update=True,
    )
    if not user.password_hash:
        raise HTTPException(400, "No password is set for this account.")
    if not verify_password(payload.current_password, user.password_hash):
        raise HTTPException(400, "Current password is incorrect.")
    if payload.current_password == payload.new_password:
        raise HTTPException(400, "New password must be different from current password.")

    user.password_hash = hash_password(payload.new_password)
    db.commit()
    return AuthPasswordUpdateOut(ok=True)


def balance_to_out(balance: UserBalance) -> BalanceOut:
    return BalanceOut(
        user_id=int(balance.user_id),
        balance=float(balance.balance),
        available_balance=float(balance.available_balance),
        total_pnl=float(balance.total_pnl or 0),
        daily_pnl=float(balance.daily_pnl or 0),
        weekly_pnl=float(balance.weekly_pnl or 0),
        monthly_pnl=float(balance.monthly_pnl or 0),
        updated_at=balance.updated_at,
    )


@app.get("/paper-trading/balance", response_model=BalanceEnvelopeOut)
def paper_balance(
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    balance = get_or_create_balance(db, auth.user)
    db.commit()
    return BalanceEnvelopeOut(balance=balance_to_out(balance))


@app.post("/paper-trading/balance", response_model=BalanceEnvelopeOut)
def paper_balance_adjust(
    payload: BalanceAdjustIn,
    auth: AuthContext = Depends(get_creator_context),
    db: Session = Depends(get_db),
):
    target = get_user_or_404(db, payload.user_id)
    ensure_user_visible_or_raise(auth.user, target)
    balance = get_or_create_balance(db, target, for_update=True)
    adjust_balance(balance, payload.action.strip().lower(), to_decimal(payload.amount))
    db.commit()
    logger.info("Creator %s %s %.2f on user %s", auth.user.id, payload.action, payload.amount, target.id)
    return BalanceEnvelopeOut(balance=balance_to_out(balance))


def order_to_out(order: TradeOrder) -> OrderOut:
    return OrderOut(
        id=int(order.id),
        symbol=str(order.symbol),
        asset_type=str(order.asset_type),
        side=str(order.side),
        order_type=str(order.order_type),
        quantity=float(order.quantity),
        price=float(order.price) if order.price is not None else None,
        status=str(order.status),
        filled_quantity=float(order.filled_quantity or 0),
        filled_price=float(order.filled_price) if order.filled_price is not None else None,
        realized_pnl=float(order.realized_pnl) if order.realized_pnl is not None else None,
        commission=float(order.commission or 0),
        time_in_force=str(order.time_in_force or "day"),
        created_at=order.created_at,
        filled_at=order.filled_at,
        cancelled_at=order.cancelled_at,
    )


def get_own_order_or_404(db: Session, user: User, order_id: int, for_update: bool = False) -> TradeOrder:
    stmt = select(TradeOrder).where(TradeOrder.id == order_id, TradeOrder.user_id == user.id)
    if for_update:
        stmt = stmt.with_for_update()
    order = db.execute(stmt).scalar_one_or_none()
    if not order:
        raise HTTPException(404, "Order not found")
    return order


@app.post("/paper-trading/orders", response_model=OrderEnvelopeOut, status_code=201)
def place_order(
    payload: OrderIn,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    ensure_can_trade_or_raise(auth.user)

    symbol = normalize_symbol(payload.symbol)
    if not symbol:
        raise HTTPException(400, "symbol is required")
    side = payload.side.strip().lower()
    if side not in ORDER_SIDES:
        raise HTTPException(400, "side must be 'buy' or 'sell'")
    order_type = payload.order_type.strip().lower()
    if order_type not in ORDER_TYPES:
        raise HTTPException(400, f"order_type must be one of: {', '.join(ORDER_TYPES)}")
    if order_type != "market":
        raise HTTPException(400, "Only market orders are supported")
    asset_type = payload.asset_type.strip().lower()
    if asset_type not in ASSET_TYPES:
        raise HTTPException(400, f"asset_type must be one of: {', '.join(ASSET_TYPES)}")
    quantity = to_decimal(payload.quantity)
    if quantity <= 0:
        raise HTTPException(400, "quantity must be > 0")

    quote = get_quote(symbol)
    user = get_user_by_id_or_raise(
        db=db,
        user_id=auth.user.id,
        for_update=True,
    )
    order = execute_market_order(
        db=db,
        user=user,
        symbol=symbol,
        side=side,
        quantity=quantity,
        price=to_decimal(quote.price),
        asset_type=asset_type,
    )
    order.time_in_force = payload.time_in_force or "day"
    db.commit()
    return OrderEnvelopeOut(
        order=order_to_out(order),
        message=f"Market {side} order for {float(quantity):g} {symbol} filled at ${quote.price:.2f}",
    )


@app.get("/paper-trading/orders", response_model=OrderListOut)
def list_orders(
    status_filter: str | None = Query(default=None, alias="status"),
    symbol: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=100),
    page: int = Query(default=1, ge=1),
    offset: int | None = Query(default=None, ge=0),
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    filters = [TradeOrder.user_id == auth.user.id]
    if status_filter:
        filters.append(TradeOrder.status == status_filter.strip().lower())
    if symbol:
        filters.append(TradeOrder.symbol == normalize_symbol(symbol))

    total = int(db.execute(select(func.count()).select_from(TradeOrder).where(*filters)).scalar_one())
    start = offset if offset is not None else (page - 1) * limit
    orders = db.execute(
        select(TradeOrder)
        .where(*filters)
        .order_by(TradeOrder.created_at.desc(), TradeOrder.id.desc())
        .offset(start)
        .limit(limit)
    ).scalars().all()
    return OrderListOut(
        orders=[order_to_out(order) for order in orders],
        pagination=PaginationOut(
            total=total,
            page=start // limit + 1,
            limit=limit,
            total_pages=math.ceil(total / limit) if total else 0,
        ),
    )


@app.get("/paper-trading/orders/{order_id}", response_model=OrderEnvelopeOut)
def get_order(
    order_id: int,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    return OrderEnvelopeOut(order=order_to_out(get_own_order_or_404(db, auth.user, order_id)))


@app.put("/paper-trading/orders/{order_id}", response_model=OrderEnvelopeOut)
def update_order(
    order_id: int,
    payload: OrderUpdateIn,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    order = get_own_order_or_404(db, auth.user, order_id, for_update=True)
    action = payload.action.strip().lower()
    if action == "cancel":
        cancel_order(order)
        message = "Order cancelled"
    elif action == "modify":
        if order.status != "pending":
            raise HTTPException(400, f"Only pending orders can be modified (order is {order.status}).")
        if payload.quantity is not None:
            if payload.quantity <= 0:
                raise HTTPException(400, "quantity must be > 0")
            order.quantity = float(payload.quantity)
        if payload.price is not None:
            if payload.price <= 0:
                raise HTTPException(400, "price must be > 0")
            order.price = float(payload.price)
        order.updated_at = datetime.utcnow()
        message = "Order modified"
    else:
        raise HTTPException(400, "action must be 'cancel' or 'modify'")
    db.commit()
    return OrderEnvelopeOut(order=order_to_out(order), message=message)


@app.delete("/paper-trading/orders/{order_id}", response_model=OrderEnvelopeOut)
def delete_order(
    order_id: int,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    order = get_own_order_or_404(db, auth.user, order_id, for_update=True)
    cancel_order(order)
    db.commit()
    return OrderEnvelopeOut(order=order_to_out(order), message="Order cancelled")


@app.get("/paper-trading/portfolio", response_model=PortfolioOut)
def portfolio(
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    balance = get_or_create_balance(db, auth.user)
    db.commit()
    positions = db.execute(
        select(Position).where(Position.user_id == auth.user.id).order_by(Position.symbol.asc())
    ).scalars().all()

    quotes = {}
    rows: list[PositionOut] = []
    total_value = Decimal("0")
    total_cost = Decimal("0")
    for position in positions:
        if position.symbol not in quotes:
            quotes[position.symbol] = get_quote(position.symbol)
        quote = quotes[position.symbol]
        qty = to_decimal(position.quantity)
        average_cost = to_decimal(position.average_cost)
        price = to_decimal(quote.price)
        value = qty * price
        cost = qty * average_cost
        unrealized = value - cost
        total_value += value
        total_cost += cost
        rows.append(
            PositionOut(
                id=int(position.id),
                symbol=str(position.symbol),
                asset_type=str(position.asset_type),
                quantity=float(qty),
                average_cost=float(average_cost),
                current_price=float(price),
                current_value=float(value),
                cost_basis=float(cost),
                unrealized_pnl=float(unrealized),
                unrealized_pnl_percentage=float(unrealized / cost * 100) if cost else 0.0,
                price_source=quote.source,
            )
        )

    cash = to_decimal(balance.available_balance)
    total_unrealized = total_value - total_cost
    return PortfolioOut(
        positions=rows,
        summary=PortfolioSummaryOut(
            total_positions=len(rows),
            total_portfolio_value=float(total_value),
            total_cost_basis=float(total_cost),
            total_unrealized_pnl=float(total_unrealized),
            total_unrealized_pnl_percentage=float(total_unrealized / total_cost * 100) if total_cost else 0.0,
            cash_balance=float(cash),
            total_account_value=float(cash + total_value),
        ),
    )


@app.get("/paper-trading/performance", response_model=PerformanceOut)
def performance(
    period: str = Query(default="30d"),
    granularity: str | None = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    orders = db.execute(
        select(TradeOrder).where(TradeOrder.user_id == auth.user.id, TradeOrder.status == "filled")
    ).scalars().all()
    symbols = db.execute(
        select(Position.symbol).where(Position.user_id == auth.user.id).distinct()
    ).scalars().all()
    current_prices = {symbol: to_decimal(get_quote(symbol).price) for symbol in symbols}

    points, summary = build_performance(orders, period, granularity, current_prices)
    return PerformanceOut(
        period=period,
        granularity=granularity or ("hourly" if period == "1d" else "daily"),
        history=[PerformancePointOut(**vars(point)) for point in points],
        summary=PerformanceSummaryOut(**vars(summary)),
    )


def build_leaderboard_entries(db: Session, company_id: str | None = None) -> list[LeaderboardEntry]:
    """One entry per trading account, in user-id order so ties rank deterministically."""
    order_stats = (
        select(
            TradeOrder.user_id.label("user_id"),
            func.count(TradeOrder.id).label("total_trades"),
            func.sum(
                case((and_(TradeOrder.side == "sell", TradeOrder.realized_pnl.is_not(None)), 1), else_=0)
            ).label("closed_trades"),
            func.sum(case((TradeOrder.realized_pnl > 0, 1), else_=0)).label("winning_trades"),
            func.max(TradeOrder.filled_at).label("last_trade_at"),
        )
        .where(TradeOrder.status == "filled")
        .group_by(TradeOrder.user_id)
        .subquery()
    )
    stmt = (
        select(User, UserBalance, order_stats)
        .join(UserBalance, UserBalance.user_id == User.id)
        .outerjoin(order_stats, order_stats.c.user_id == User.id)
        .where(User.role != "creator", User.is_active.is_(True))
        .order_by(User.id.asc())
    )
    if company_id:
        stmt = stmt.where(User.company_id == company_id)

    entries: list[LeaderboardEntry] = []
    for row in db.execute(stmt).all():
        user, balance = row[0], row[1]
        closed = int(row.closed_trades or 0)
        wins = int(row.winning_trades or 0)
        display_name = " ".join(part for part in (user.first_name, user.last_name) if part) or None
        entries.append(
            LeaderboardEntry(
                user_id=int(user.id),
                username=str(user.username),
                display_name=display_name,
                whop_user_id=user.whop_user_id,
                balance=float(balance.balance or 0),
                total_pnl=float(balance.total_pnl or 0),
                daily_pnl=float(balance.daily_pnl or 0),
                weekly_pnl=float(balance.weekly_pnl or 0),
                monthly_pnl=float(balance.monthly_pnl or 0),
                total_trades=int(row.total_trades or 0),
                winning_trades=wins,
                win_rate=wins / closed * 100 if closed else 0.0,
                last_trade_at=row.last_trade_at,
            )
        )
    return entries


def leaderboard_out(entries: list[LeaderboardEntry], period: str, limit: int, current_user_id: int) -> LeaderboardOut:
    try:
        field_name = pnl_field_for_period(period)
    except ValueError as exc:
        raise HTTPException(400, str(exc)) from None
    ranked = rank_entries(entries, field_name)
    user_rank = next((entry.rank for entry in ranked if entry.user_id == current_user_id), None)
    return LeaderboardOut(
        period=period,
        leaderboard=[
            LeaderboardEntryOut(
                rank=entry.rank,
                user_id=entry.user_id,
                username=entry.username,
                display_name=entry.display_name,
                balance=entry.balance,
                total_pnl=entry.total_pnl,
                daily_pnl=entry.daily_pnl,
                weekly_pnl=entry.weekly_pnl,
                monthly_pnl=entry.monthly_pnl,
                period_pnl=float(getattr(entry, field_name)),
                total_trades=entry.total_trades,
                win_rate=entry.win_rate,
                is_current_user=entry.user_id == current_user_id,
            )
            for entry in ranked[:limit]
        ],
        user_rank=user_rank,
        total_participants=len(ranked),
    )


@app.get("/paper-trading/leaderboard", response_model=LeaderboardOut)
def paper_leaderboard(
    period: str = Query(default="all_time"),
    limit: int = Query(default=50, ge=1, le=500),
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    return leaderboard_out(build_leaderboard_entries(db), period, limit, auth.user.id)


@app.get("/creator/leaderboard", response_model=LeaderboardOut)
def creator_leaderboard(
    period: str = Query(default="all_time"),
    limit: int = Query(default=50, ge=1, le=500),
    auth: AuthContext = Depends(get_creator_context),
    db: Session = Depends(get_db),
):
    entries = build_leaderboard_entries(db, company_id=auth.user.company_id)
    return leaderboard_out(entries, period, limit, auth.user.id)


@app.get("/whop/leaderboard", response_model=WhopLeaderboardOut)
def whop_leaderboard(
    ranking_criteria: str = Query(default="pnl"),
    time_period: str = Query(default="all_time"),
    max_entries: int = Query(default=100, ge=1, le=500),
    min_trades: int = Query(default=1, ge=0),
    active_only: bool = Query(default=False),
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    config = WhopRankingConfig(
        ranking_criteria=ranking_criteria,
        time_period=time_period,
        max_entries=max_entries,
        min_trades=min_trades,
        active_only=active_only,
    )
    try:
        score_field = whop_score_field(config)
    except ValueError as exc:
        raise HTTPException(400, str(exc)) from None
    now = datetime.utcnow()
    entries = build_leaderboard_entries(db, company_id=auth.user.company_id)
    ranked = rank_whop_entries(entries, config, now)
    eligible = len(eligible_whop_entries(entries, config, now))
    return WhopLeaderboardOut(
        ranking_criteria=ranking_criteria,
        time_period=time_period,
        entries=[
            WhopLeaderboardEntryOut(
                rank=entry.rank,
                user_id=entry.user_id,
                username=entry.username,
                whop_user_id=entry.whop_user_id,
                score=float(getattr(entry, score_field)),
                balance=entry.balance,
                total_pnl=entry.total_pnl,
                total_trades=entry.total_trades,
                win_rate=entry.win_rate,
                last_trade_at=entry.last_trade_at,
            )
            for entry in ranked
        ],
        total_eligible=eligible,
    )


def competition_to_out(db: Session, competition: Competition, user: User) -> CompetitionOut:
    participant_count = active_participant_count(db, competition.id)
    participation = get_participation(db, competition.id, user.id)
    creator = competition.creator
    return CompetitionOut(
        id=int(competition.id),
        name=str(competition.name),
        description=competition.description,
        status=str(competition.status),
        type=str(competition.type),
        starting_balance=float(competition.starting_balance),
        max_participants=int(competition.max_participants),
        entry_fee=float(competition.entry_fee or 0),
        prize_pool=float(competition.prize_pool or 0),
        ranking_criteria=str(competition.ranking_criteria),
        start_date=competition.start_date,
        end_date=competition.end_date,
        registration_deadline=competition.registration_deadline,
        created_at=competition.created_at,
        participant_count=participant_count,
        spots_remaining=max(0, int(competition.max_participants) - participant_count),
        creator=CreatorSummaryOut(
            id=int(creator.id),
            username=str(creator.username),
            first_name=creator.first_name,
            last_name=creator.last_name,
        )
        if creator
        else None,
        user_participation=ParticipationOut(
            status=str(participation.status),
            current_rank=participation.current_rank,
            current_balance=float(participation.current_balance),
            total_pnl=float(participation.total_pnl or 0),
            joined_at=participation.joined_at,
        )
        if participation
        else None,
        is_creator=competition.creator_id == user.id,
    )


def standings_to_out(standings, current_user_id: int) -> list[CompetitionStandingOut]:
    return [
        CompetitionStandingOut(
            rank=standing.rank,
            user_id=standing.user_id,
            username=standing.username,
            total_pnl=standing.total_pnl,
            current_balance=standing.current_balance,
            starting_balance=standing.starting_balance,
            return_percentage=standing.return_percentage,
            total_trades=standing.total_trades,
            is_current_user=standing.user_id == current_user_id,
        )
        for standing in standings
    ]


def validate_competition_choice(value: str | None, allowed: tuple[str, ...], field_name: str) -> None:
    if value is not None and value not in allowed:
        raise HTTPException(400, f"{field_name} must be one of: {', '.join(allowed)}")


def validate_competition_dates(competition: Competition) -> None:
    if competition.end_date <= competition.start_date:
        raise HTTPException(400, "end_date must be after start_date")
    if competition.registration_deadline and competition.registration_deadline > competition.end_date:
        raise HTTPException(400, "registration_deadline cannot be after end_date")


@app.get("/competitions", response_model=CompetitionListOut)
def list_competitions(
    status_filter: str = Query(default="active", alias="status"),
    type_filter: str | None = Query(default=None, alias="type"),
    limit: int = Query(default=10, ge=1, le=100),
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    stmt = select(Competition).where(Competition.status == status_filter)
    if type_filter:
        stmt = stmt.where(Competition.type == type_filter)
    # Organization competitions are only listed inside their own company.
    stmt = stmt.where(
        or_(
            Competition.type != "organization",
            Competition.company_id == auth.user.company_id,
            Competition.creator_id == auth.user.id,
        )
    )
    competitions = db.execute(
        stmt.order_by(Competition.created_at.desc(), Competition.id.desc()).limit(limit)
    ).scalars().all()
    rows = [competition_to_out(db, competition, auth.user) for competition in competitions]
    return CompetitionListOut(competitions=rows, total=len(rows))


@app.post("/competitions", response_model=CompetitionEnvelopeOut, status_code=201)
def create_competition(
    payload: CompetitionCreateIn,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    name = (payload.name or "").strip()
    if not name or payload.start_date is None or payload.end_date is None:
        raise HTTPException(400, "Missing required fields: name, start_date, end_date")
    validate_competition_choice(payload.type, COMPETITION_TYPES, "type")
    validate_competition_choice(payload.status, ("draft", "active"), "status")
    validate_competition_choice(payload.ranking_criteria, COMPETITION_RANKING_CRITERIA, "ranking_criteria")

    end_date = to_naive_utc(payload.end_date)
    competition = Competition(
        name=name,
        description=(payload.description or "").strip() or None,
        creator_id=auth.user.id,
        company_id=auth.user.company_id,
        status=payload.status,
        type=payload.type,
        starting_balance=float(payload.starting_balance),
        max_participants=int(payload.max_participants),
        entry_fee=float(payload.entry_fee),
        prize_pool=float(payload.prize_pool),
        ranking_criteria=payload.ranking_criteria,
        start_date=to_naive_utc(payload.start_date),
        end_date=end_date,
        registration_deadline=to_naive_utc(payload.registration_deadline) or end_date,
    )
    validate_competition_dates(competition)
    db.add(competition)
    db.commit()
    logger.info("User %s created competition %s", auth.user.id, competition.id)
    return CompetitionEnvelopeOut(
        competition=competition_to_out(db, competition, auth.user),
        message="Competition created",
    )


@app.get("/competitions/{competition_id}", response_model=CompetitionDetailOut)
def get_competition(
    competition_id: int,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    competition = get_competition_or_404(db, competition_id)
    standings = competition_standings(db, competition.id)[:10]
    return CompetitionDetailOut(
        competition=competition_to_out(db, competition, auth.user),
        leaderboard=standings_to_out(standings, auth.user.id),
    )


@app.put("/competitions/{competition_id}", response_model=CompetitionEnvelopeOut)
def update_competition(
    competition_id: int,
    payload: CompetitionUpdateIn,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    competition = get_competition_or_404(db, competition_id, for_update=True)
    ensure_competition_creator_or_raise(competition, auth.user, "update")

    changes = payload.model_dump(exclude_unset=True)
    validate_competition_choice(changes.get("status"), COMPETITION_STATUSES, "status")
    validate_competition_choice(changes.get("ranking_criteria"), COMPETITION_RANKING_CRITERIA, "ranking_criteria")
    for field_name, value in changes.items():
        if value is None and field_name != "description":
            continue
        if isinstance(value, datetime):
            value = to_naive_utc(value)
        setattr(competition, field_name, value)
    validate_competition_dates(competition)
    competition.updated_at = datetime.utcnow()
    db.commit()
    return CompetitionEnvelopeOut(
        competition=competition_to_out(db, competition, auth.user),
        message="Competition updated",
    )


@app.delete("/competitions/{competition_id}", response_model=DeletedOut)
def delete_competition(
    competition_id: int,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    competition = get_competition_or_404(db, competition_id, for_update=True)
    ensure_competition_creator_or_raise(competition, auth.user, "delete")
    if competition.status != "draft":
        raise HTTPException(400, "Can only delete draft competitions")

    db.execute(delete(CompetitionInvitation).where(CompetitionInvitation.competition_id == competition.id))
    db.execute(delete(CompetitionParticipant).where(CompetitionParticipant.competition_id == competition.id))
    db.delete(competition)
    db.commit()
    return DeletedOut(message="Competition deleted")


@app.post("/competitions/{competition_id}/join", response_model=CompetitionJoinOut)
def join_competition_route(
    competition_id: int,
    payload: CompetitionJoinIn | None = None,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    participant = join_competition(
        db=db,
        competition_id=competition_id,
        user=auth.user,
        invitation_code=payload.invitation_code if payload else None,
    )
    db.commit()
    return CompetitionJoinOut(
        message="Successfully joined competition",
        starting_balance=float(participant.starting_balance),
        participant_rank=participant.current_rank,
    )


def invitation_to_out(invitation: CompetitionInvitation) -> InvitationOut:
    return InvitationOut(
        id=int(invitation.id),
        competition_id=int(invitation.competition_id),
        invitation_code=str(invitation.invitation_code),
        invitee_whop_id=invitation.invitee_whop_id,
        invitee_email=invitation.invitee_email,
        status=str(invitation.status),
        expires_at=invitation.expires_at,
        created_at=invitation.created_at,
    )


@app.post("/competitions/{competition_id}/invite", response_model=InvitationCreateOut, status_code=201)
def invite_to_competition(
    competition_id: int,
    payload: InvitationCreateIn,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    if not (payload.whop_user_id or "").strip() and not (payload.email or "").strip():
        raise HTTPException(400, "Either whop_user_id or email is required")
    competition = get_competition_or_404(db, competition_id)
    invitation = create_invitation(
        db=db,
        competition=competition,
        inviter=auth.user,
        whop_user_id=payload.whop_user_id,
        email=payload.email,
    )
    db.commit()
    return InvitationCreateOut(
        invitation_code=str(invitation.invitation_code),
        expires_at=invitation.expires_at,
        message="Invitation created successfully",
    )


@app.get("/competitions/{competition_id}/invite", response_model=InvitationListOut)
def list_invitations(
    competition_id: int,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    competition = get_competition_or_404(db, competition_id)
    ensure_competition_creator_or_raise(competition, auth.user, "view invitations for")
    invitations = db.execute(
        select(CompetitionInvitation)
        .where(CompetitionInvitation.competition_id == competition.id)
        .order_by(CompetitionInvitation.created_at.desc(), CompetitionInvitation.id.desc())
    ).scalars().all()
    return InvitationListOut(invitations=[invitation_to_out(invitation) for invitation in invitations])


@app.get("/competitions/{competition_id}/leaderboard", response_model=CompetitionLeaderboardOut)
def competition_leaderboard(
    competition_id: int,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    competition = get_competition_or_404(db, competition_id)
    if competition.type == "invite_only" and competition.creator_id != auth.user.id:
        if get_participation(db, competition.id, auth.user.id) is None:
            raise HTTPException(403, "You must be a participant to view this leaderboard")

    standings = competition_standings(db, competition.id)
    user_rank = next((s.rank for s in standings if s.user_id == auth.user.id), None)
    return CompetitionLeaderboardOut(
        competition=competition_to_out(db, competition, auth.user),
        leaderboard=standings_to_out(standings[offset : offset + limit], auth.user.id),
        user_rank=user_rank,
        total_participants=len(standings),
    )


@app.get("/market-data/quote", response_model=QuoteOut)
def market_quote(symbol: str | None = Query(default=None)):
    if not normalize_symbol(symbol):
        raise HTTPException(400, "symbol is required")
    quote = get_quote(symbol)
    change = None
    change_percent = None
    if quote.previous_close:
        change = quote.price - quote.previous_close
        change_percent = change / quote.previous_close * 100
    return QuoteOut(
        symbol=quote.symbol,
        price=quote.price,
        bid=quote.bid,
        ask=quote.ask,
        previous_close=quote.previous_close,
        change=change,
        change_percent=change_percent,
        source=quote.source,
        market_open=is_market_open(),
        timestamp=quote.timestamp,
    )


def load_bars_or_400(symbol: str | None, interval: str, limit: int):
    if not normalize_symbol(symbol):
        raise HTTPException(400, "symbol is required")
    try:
        return get_bars(symbol, interval, limit)
    except ValueError as exc:
        raise HTTPException(400, str(exc)) from None


@app.get("/market-data/bars", response_model=BarsOut)
def market_bars(
    symbol: str | None = Query(default=None),
    interval: str = Query(default="1d"),
    limit: int = Query(default=100, ge=1, le=1000),
):
    bars, source = load_bars_or_400(symbol, interval, limit)
    return BarsOut(
        symbol=normalize_symbol(symbol),
        interval=interval,
        source=source,
        bars=[BarOut(**vars(bar)) for bar in bars],
    )


def parse_periods(raw: str | None, field_name: str) -> list[int]:
    try:
        periods = [int(part) for part in (raw or "").split(",") if part.strip()]
    except ValueError:
        raise HTTPException(400, f"{field_name} must be a comma separated list of integers") from None
    if any(period < 1 for period in periods):
        raise HTTPException(400, f"{field_name} periods must be >= 1")
    return periods


@app.get("/market-data/indicators", response_model=IndicatorsOut)
def market_indicators(
    symbol: str | None = Query(default=None),
    interval: str = Query(default="1d"),
    limit: int = Query(default=200, ge=1, le=1000),
    sma: str | None = Query(default="20,50"),
    ema: str | None = Query(default=None),
    rsi: int | None = Query(default=14),
    macd: bool = Query(default=True),
    bollinger: bool = Query(default=False),
    stochastic: bool = Query(default=False),
    atr: int | None = Query(default=None),
    ichimoku: bool = Query(default=False),
):
    bars, source = load_bars_or_400(symbol, interval, limit)
    config: dict = {}
    if sma:
        config["sma"] = {"periods": parse_periods(sma, "sma")}
    if ema:
        config["ema"] = {"periods": parse_periods(ema, "ema")}
    if rsi is not None:
        config["rsi"] = {"period": rsi}
    if macd:
        config["macd"] = {}
    if bollinger:
        config["bollinger"] = {}
    if stochastic:
        config["stochastic"] = {}
    if atr is not None:
        config["atr"] = {"period": atr}
    if ichimoku:
        config["ichimoku"] = {}
    try:
        indicators = calculate_indicators(bars, config)
    except ValueError as exc:
        raise HTTPException(400, str(exc)) from None
    return IndicatorsOut(
        symbol=normalize_symbol(symbol),
        interval=interval,
        source=source,
        timestamps=[bar.timestamp for bar in bars],
        indicators=indicators,
    )


@app.get("/market-data/search", response_model=SymbolSearchOut)
def market_search(
    query: str = Query(default=""),
    limit: int = Query(default=10, ge=1, le=50),
):
    return SymbolSearchOut(results=[SymbolSearchResultOut(**row) for row in search_symbols(query, limit)])


def creator_user_rows(db: Session, creator: User, search: str | None, limit: int) -> list[CreatorUserOut]:
    order_counts = (
        select(
            TradeOrder.user_id.label("user_id"),
            func.count(TradeOrder.id).label("total_orders"),
            func.sum(case((TradeOrder.status == "filled", 1), else_=0)).label("filled_orders"),
        )
        .group_by(TradeOrder.user_id)
        .subquery()
    )
    stmt = (
        select(User, UserBalance, order_counts.c.total_orders, order_counts.c.filled_orders)
        .outerjoin(UserBalance, UserBalance.user_id == User.id)
        .outerjoin(order_counts, order_counts.c.user_id == User.id)
        .where(users_visible_to(creator))
    )
    needle = (search or "").strip().lower()
    if needle:
        pattern = f"%{needle}%"
        stmt = stmt.where(or_(func.lower(User.username).like(pattern), func.lower(User.email).like(pattern)))
    rows = db.execute(stmt.order_by(User.created_at.desc(), User.id.desc()).limit(limit)).all()
    return [creator_user_to_out(user, balance, total, filled) for user, balance, total, filled in rows]


def creator_user_to_out(user: User, balance: UserBalance | None, total_orders, filled_orders) -> CreatorUserOut:
    return CreatorUserOut(
        id=int(user.id),
        username=str(user.username),
        email=user.email,
        whop_user_id=user.whop_user_id,
        role=str(user.role),
        is_active=bool(user.is_active),
        balance=float(balance.balance) if balance else 0.0,
        available_balance=float(balance.available_balance) if balance else 0.0,
        total_pnl=float(balance.total_pnl or 0) if balance else 0.0,
        total_orders=int(total_orders or 0),
        filled_orders=int(filled_orders or 0),
        created_at=user.created_at,
    )


@app.get("/creator/users", response_model=CreatorUserListOut)
def creator_users(
    search: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    auth: AuthContext = Depends(get_creator_context),
    db: Session = Depends(get_db),
):
    rows = creator_user_rows(db, auth.user, search, limit)
    return CreatorUserListOut(users=rows, total=len(rows))


@app.post("/creator/users", response_model=CreatorUserOut)
def creator_user_action(
    payload: CreatorUserActionIn,
    auth: AuthContext = Depends(get_creator_context),
    db: Session = Depends(get_db),
):
    if payload.action != "adjust_balance":
        raise HTTPException(400, "Unknown action. Supported: adjust_balance")
    if payload.new_balance is None:
        raise HTTPException(400, "new_balance is required for adjust_balance")
    target = get_user_or_404(db, payload.user_id)
    ensure_user_visible_or_raise(auth.user, target)

    balance = get_or_create_balance(db, target, for_update=True)
    balance.balance = float(payload.new_balance)
    balance.available_balance = float(payload.new_balance)
    balance.updated_at = datetime.utcnow()
    db.commit()
    logger.info("Creator %s set balance of user %s to %.2f", auth.user.id, target.id, payload.new_balance)

    total_orders, filled_orders = db.execute(
        select(
            func.count(TradeOrder.id),
            func.sum(case((TradeOrder.status == "filled", 1), else_=0)),
        ).where(TradeOrder.user_id == target.id)
    ).one()
    return creator_user_to_out(target, balance, total_orders, filled_orders)


@app.get("/creator/analytics", response_model=AnalyticsOut)
def creator_analytics(
    auth: AuthContext = Depends(get_creator_context),
    db: Session = Depends(get_db),
):
    visible = users_visible_to(auth.user)
    total_users = int(db.execute(select(func.count()).select_from(User).where(visible)).scalar_one())
    active_users = int(
        db.execute(select(func.count()).select_from(User).where(visible, User.is_active.is_(True))).scalar_one()
    )
    total_orders, filled_orders, total_volume = db.execute(
        select(
            func.count(TradeOrder.id),
            func.sum(case((TradeOrder.status == "filled", 1), else_=0)),
            func.sum(
                case(
                    (TradeOrder.status == "filled", TradeOrder.filled_quantity * TradeOrder.filled_price),
                    else_=0,
                )
            ),
        )
        .join(User, User.id == TradeOrder.user_id)
        .where(visible)
    ).one()
    average_pnl = db.execute(
        select(func.avg(UserBalance.total_pnl)).join(User, User.id == UserBalance.user_id).where(visible)
    ).scalar_one()
    competition_filter = [Competition.status == "active"]
    if auth.user.company_id:
        competition_filter.append(Competition.company_id == auth.user.company_id)
    active_competitions = int(
        db.execute(select(func.count()).select_from(Competition).where(*competition_filter)).scalar_one()
    )

    total_orders = int(total_orders or 0)
    filled_orders = int(filled_orders or 0)
    return AnalyticsOut(
        total_users=total_users,
        active_users=active_users,
        total_orders=total_orders,
        filled_orders=filled_orders,
        fill_rate=filled_orders / total_orders * 100 if total_orders else 0.0,
        average_pnl=float(average_pnl or 0),
        total_volume=float(total_volume or 0),
        active_competitions=active_competitions,
    )


@app.post("/creator/recalculate-pnl", response_model=RecalculateOut)
def creator_recalculate_pnl(
    user_id: int | None = Query(default=None),
    auth: AuthContext = Depends(get_creator_context),
    db: Session = Depends(get_db),
):
    if user_id is not None:
        target = get_user_or_404(db, user_id)
        ensure_user_visible_or_raise(auth.user, target)
        targets = [target]
    else:
        targets = db.execute(
            select(User).where(users_visible_to(auth.user), User.role != "creator").order_by(User.id.asc())
        ).scalars().all()

    results = [recalculate_user_pnl(db, target) for target in targets]
    db.commit()
    return RecalculateOut(
        results=[RecalculateResultOut(**vars(result)) for result in results],
        users_processed=len(results),
    )


async def get_raw_body(request: Request) -> bytes:
    return await request.body()


@app.post("/webhooks/whop", response_model=WebhookOut)
def whop_webhook(
    body: bytes = Depends(get_raw_body),
    signature: str | None = Header(default=None, alias="whop-signature"),
    db: Session = Depends(get_db),
):
    if not verify_webhook_signature(body, signature, WHOP_WEBHOOK_SECRET):
        raise HTTPException(401, "Invalid signature")
    try:
        payload = json.loads(body or b"{}")
    except json.JSONDecodeError:
        raise HTTPException(400, "Invalid JSON payload") from None
    if not isinstance(payload, dict):
        raise HTTPException(400, "Invalid JSON payload")

    event = str(payload.get("type") or payload.get("action") or "")
    data = payload.get("data") or {}
    if not isinstance(data, dict):
        raise HTTPException(400, "Invalid webhook payload")
    whop_user = data.get("user") or {}
    if not isinstance(whop_user, dict):
        raise HTTPException(400, "Invalid webhook payload")
    whop_user_id = str(whop_user.get("id") or data.get("user_id") or "").strip()

    if event in WHOP_JOIN_EVENTS:
        if not whop_user_id:
            raise HTTPException(400, "Webhook payload is missing the user id")
        upsert_whop_user(
            db,
            whop_user_id,
            username=whop_user.get("username") or whop_user.get("email"),
            email=whop_user.get("email"),
            company_id=data.get("company_id"),
        )
        db.commit()
        logger.info("Whop %s: user %s active", event, whop_user_id)
    elif event in WHOP_LEAVE_EVENTS:
        if not whop_user_id:
            raise HTTPException(400, "Webhook payload is missing the user id")
        user = db.execute(select(User).where(User.whop_user_id == whop_user_id)).scalar_one_or_none()
        if user:
            user.is_active = False
            db.commit()
        logger.info("Whop %s: user %s deactivated", event, whop_user_id)
    elif event == "payment_completed":
        logger.info("Whop payment completed: %s", data.get("id") or data)
    else:
        logger.info("Unhandled Whop webhook event type: %s", event or "<missing>")
    return WebhookOut(success=True, event=event or None)


@app.get("/webhooks/whop")
def whop_webhook_health():
    return {"ok": True, "service": "whop-webhook"}
