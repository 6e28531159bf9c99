import argparse
import os
import sys
from pathlib import Path


def main() -> int:
    parser = argparse.ArgumentParser(description="Rebuild positions, realized P&L and balances from filled orders")
    parser.add_argument("--username", default=None, help="Only recalculate this user")
    parser.add_argument("--dry-run", action="store_true", help="Print the results and roll back")
    args = parser.parse_args()

    backend_dir = Path(__file__).resolve().parents[1]
    sys.path.insert(0, str(backend_dir))

    if not os.environ.get("DATABASE_URL", "").strip():
        print("[error] DATABASE_URL is required")
        return 1

    from sqlalchemy import select

    from app.db import SessionLocal
    from app.models import User
    from app.trading import recalculate_user_pnl

    db = SessionLocal()
    try:
        stmt = select(User).where(User.role != "creator").order_by(User.id.asc())
        if args.username:
            stmt = select(User).where(User.username == args.username.strip().lower())
        users = db.execute(stmt).scalars().all()
        if not users:
            print(f"[error] no user found{' for ' + args.username if args.username else ''}")
            return 1

        for user in users:
            result = recalculate_user_pnl(db, user)
            prefix = "[dry-run] " if args.dry_run else ""
            print(
                f"{prefix}{user.username}: {result.orders_replayed} orders, "
                f"realized {result.realized_pnl:.2f}, balance {result.balance:.2f}, "
                f"cash {result.available_balance:.2f}, {result.positions} open positions"
            )

        if args.dry_run:
            db.rollback()
        else:
            db.commit()
    finally:
        db.close()

    print(f"Done: {len(users)} users {'checked' if args.dry_run else 'recalculated'}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
