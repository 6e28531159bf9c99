import logging
import os
import time

from sqlalchemy import select, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from .auth import hash_password
from .db import Base, engine
from .models import User, UserBalance
from .trading import get_or_create_balance

logger = logging.getLogger(__name__)

DEFAULT_SANDBOX_USERNAME = (os.environ.get("SANDBOX_USERNAME") or "").strip().lower() or "whopcreator"
SANDBOX_COMPANY_ID = (os.environ.get("SANDBOX_COMPANY_ID") or "").strip() or None


def init_db():
    # Wait for the database to accept connections
    for attempt in range(30):  # ~30 seconds
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            break
        except OperationalError:
            time.sleep(1)
    else:
        raise RuntimeError("Database not ready after 30 seconds")

    Base.metadata.create_all(bind=engine)
    if engine.dialect.name != "postgresql":
        return
    # Columns added after the first deploys.
    with engine.begin() as conn:
        conn.execute(text("ALTER TABLE user_profiles ADD COLUMN IF NOT EXISTS company_id VARCHAR(128)"))
        conn.execute(text("ALTER TABLE user_profiles ADD COLUMN IF NOT EXISTS is_active BOOLEAN DEFAULT TRUE"))
        conn.execute(text("ALTER TABLE trading_orders ADD COLUMN IF NOT EXISTS realized_pnl NUMERIC(18,6)"))
        conn.execute(text("ALTER TABLE competitions ADD COLUMN IF NOT EXISTS company_id VARCHAR(128)"))
        conn.execute(text("UPDATE user_profiles SET is_active=TRUE WHERE is_active IS NULL"))


def seed(db: Session):
    sandbox_username = DEFAULT_SANDBOX_USERNAME
    user = db.execute(select(User).where(User.username == sandbox_username)).scalar_one_or_none()
    sandbox_password_hash = hash_password(os.environ.get("SANDBOX_PASSWORD", "sandbox"))
    if not user:
        user = User(
            username=sandbox_username,
            role="creator",
            company_id=SANDBOX_COMPANY_ID,
            password_hash=sandbox_password_hash,
        )
        db.add(user)
        db.flush()
        logger.info("Seeded sandbox creator %s", sandbox_username)
    elif not user.password_hash:
        user.password_hash = sandbox_password_hash

    users_without_balance = db.execute(
        select(User).outerjoin(UserBalance, UserBalance.user_id == User.id).where(UserBalance.id.is_(None))
    ).scalars().all()
    for missing in users_without_balance:
        get_or_create_balance(db, missing)

    db.commit()
