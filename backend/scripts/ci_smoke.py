import os
import sys
from pathlib import Path


def main() -> int:
    # Ensure `import app.*` works when running from repo root in CI.
    backend_dir = Path(__file__).resolve().parents[1]
    sys.path.insert(0, str(backend_dir))

    database_url = os.environ.get("DATABASE_URL", "").strip()
    if not database_url:
        raise RuntimeError("DATABASE_URL is required for CI smoke test")

    from sqlalchemy import func, select

    from app.db import SessionLocal
    from app.models import Competition, User, UserBalance
    from app.seed import init_db, seed

    safe_url = database_url
    if "://" in safe_url and "@" in safe_url:
        scheme, rest = safe_url.split("://", 1)
        creds, host = rest.split("@", 1)
        if ":" in creds:
            user, _pw = creds.split(":", 1)
            safe_url = f"{scheme}://{user}:***@{host}"
    print("CI smoke DATABASE_URL:", safe_url)

    init_db()

    # Seeding twice covers both a fresh database and a restart.
    db = SessionLocal()
    try:
        seed(db)
        seed(db)

        user_count = int(db.execute(select(func.count()).select_from(User)).scalar_one())
        creator_count = int(
            db.execute(select(func.count()).select_from(User).where(User.role == "creator")).scalar_one()
        )
        balance_count = int(db.execute(select(func.count()).select_from(UserBalance)).scalar_one())
        competition_count = int(db.execute(select(func.count()).select_from(Competition)).scalar_one())
    finally:
        db.close()

    if creator_count < 1:
        raise RuntimeError("Expected the sandbox creator to be seeded")
    if balance_count < user_count:
        raise RuntimeError(f"{user_count - balance_count} users have no balance row")

    print(
        "OK create_all + seed",
        {
            "users": user_count,
            "creators": creator_count,
            "balances": balance_count,
            "competitions": competition_count,
        },
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
