from __future__ import annotations

import logging
import os
import secrets
from datetime import datetime, timedelta, timezone

from fastapi import HTTPException
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .leaderboard import ParticipantStanding, rank_competition_participants
from .models import Competition, CompetitionInvitation, CompetitionParticipant, User

logger = logging.getLogger(__name__)

INVITATION_TTL_DAYS = int(os.environ.get("INVITATION_TTL_DAYS", "7"))
INVITATION_CODE_PREFIX = "COMP-"

COMPETITION_STATUSES = ("draft", "active", "ended", "cancelled")
COMPETITION_TYPES = ("invite_only", "public", "organization")
RANKING_CRITERIA = ("total_pnl", "return_percentage", "current_balance")


def to_naive_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def generate_invitation_code() -> str:
    return INVITATION_CODE_PREFIX + secrets.token_hex(4).upper()


def get_competition_or_404(db: Session, competition_id: int, for_update: bool = False) -> Competition:
    stmt = select(Competition).where(Competition.id == competition_id)
    if for_update:
        stmt = stmt.with_for_update()
    competition = db.execute(stmt).scalar_one_or_none()
    if not competition:
        raise HTTPException(404, "Competition not found")
    return competition


def ensure_competition_creator_or_raise(competition: Competition, user: User, action: str) -> None:
    if competition.creator_id != user.id:
        raise HTTPException(403, f"Only the competition creator can {action} this competition")


def active_participant_count(db: Session, competition_id: int) -> int:
    return int(
        db.execute(
            select(func.count())
            .select_from(CompetitionParticipant)
            .where(
                CompetitionParticipant.competition_id == competition_id,
                CompetitionParticipant.status == "active",
            )
        ).scalar_one()
    )


def get_participation(db: Session, competition_id: int, user_id: int) -> CompetitionParticipant | None:
    return db.execute(
        select(CompetitionParticipant).where(
            CompetitionParticipant.competition_id == competition_id,
            CompetitionParticipant.user_id == user_id,
        )
    ).scalar_one_or_none()


def competition_standings(db: Session, competition_id: int) -> list[ParticipantStanding]:
    rows = db.execute(
        select(CompetitionParticipant, User.username)
        .join(User, User.id == CompetitionParticipant.user_id)
        .where(
            CompetitionParticipant.competition_id == competition_id,
            CompetitionParticipant.status == "active",
        )
        .order_by(CompetitionParticipant.joined_at.asc(), CompetitionParticipant.id.asc())
    ).all()
    return rank_competition_participants(
        [
            ParticipantStanding(
                user_id=int(participant.user_id),
                username=str(username),
                total_pnl=float(participant.total_pnl or 0),
                current_balance=float(participant.current_balance or 0),
                starting_balance=float(participant.starting_balance or 0),
                total_trades=int(participant.total_trades or 0),
                joined_at=participant.joined_at,
            )
            for participant, username in rows
        ]
    )


def refresh_competition_ranks(db: Session, competition_id: int) -> None:
    ranks = {standing.user_id: standing.rank for standing in competition_standings(db, competition_id)}
    participants = db.execute(
        select(CompetitionParticipant).where(CompetitionParticipant.competition_id == competition_id)
    ).scalars().all()
    for participant in participants:
        participant.current_rank = ranks.get(int(participant.user_id))


def find_pending_invitation(
    db: Session,
    competition_id: int,
    whop_user_id: str | None,
    email: str | None,
) -> CompetitionInvitation | None:
    stmt = select(CompetitionInvitation).where(
        CompetitionInvitation.competition_id == competition_id,
        CompetitionInvitation.status == "pending",
    )
    if whop_user_id:
        stmt = stmt.where(CompetitionInvitation.invitee_whop_id == whop_user_id)
    else:
        stmt = stmt.where(CompetitionInvitation.invitee_email == email)
    return db.execute(stmt.limit(1)).scalar_one_or_none()


def create_invitation(
    db: Session,
    competition: Competition,
    inviter: User,
    whop_user_id: str | None,
    email: str | None,
    now: datetime | None = None,
) -> CompetitionInvitation:
    whop_user_id = (whop_user_id or "").strip() or None
    email = (email or "").strip().lower() or None
    if not whop_user_id and not email:
        raise HTTPException(400, "Either whop_user_id or email is required")
    ensure_competition_creator_or_raise(competition, inviter, "invite users to")
    if competition.type != "invite_only":
        raise HTTPException(400, "Invitations are only available for invite-only competitions")
    if find_pending_invitation(db, competition.id, whop_user_id, email):
        raise HTTPException(400, "User already has a pending invitation")

    now = now or datetime.utcnow()
    invitation = CompetitionInvitation(
        competition_id=competition.id,
        inviter_id=inviter.id,
        invitee_whop_id=whop_user_id,
        invitee_email=email,
        invitation_code=generate_invitation_code(),
        status="pending",
        expires_at=now + timedelta(days=INVITATION_TTL_DAYS),
        created_at=now,
    )
    db.add(invitation)
    db.flush()
    logger.info("Created invitation %s for competition %s", invitation.invitation_code, competition.id)
    return invitation


def validate_invitation(
    db: Session,
    competition: Competition,
    user: User,
    invitation_code: str | None,
    now: datetime,
) -> CompetitionInvitation:
    code = (invitation_code or "").strip().upper()
    if not code:
        raise HTTPException(400, "Invitation code required for invite-only competitions")
    invitation = db.execute(
        select(CompetitionInvitation)
        .where(
            CompetitionInvitation.competition_id == competition.id,
            CompetitionInvitation.invitation_code == code,
            CompetitionInvitation.status == "pending",
        )
        .with_for_update()
    ).scalar_one_or_none()
    if not invitation:
        raise HTTPException(400, "Invalid invitation code")
    if invitation.expires_at < now:
        raise HTTPException(400, "Invitation has expired")
    if invitation.invitee_whop_id and invitation.invitee_whop_id != user.whop_user_id:
        raise HTTPException(400, "This invitation is not for your account")
    return invitation


def find_active_participation(db: Session, user_id: int) -> tuple[CompetitionParticipant, Competition] | None:
    row = db.execute(
        select(CompetitionParticipant, Competition)
        .join(Competition, Competition.id == CompetitionParticipant.competition_id)
        .where(
            CompetitionParticipant.user_id == user_id,
            CompetitionParticipant.status == "active",
            Competition.status == "active",
        )
        .limit(1)
    ).first()
    return (row[0], row[1]) if row else None


def join_competition(
    db: Session,
    competition_id: int,
    user: User,
    invitation_code: str | None = None,
    now: datetime | None = None,
) -> CompetitionParticipant:
    """
    Run the join checks in order and enrol the user.

    The first failing check decides the error. The competition row stays
    locked until the caller commits, so the capacity check and the insert
    cannot interleave with another join.
    """
    now = now or datetime.utcnow()
    competition = get_competition_or_404(db, competition_id, for_update=True)
    if competition.status != "active":
        raise HTTPException(400, "Competition is not active")
    deadline = competition.registration_deadline or competition.end_date
    if deadline is not None and now >= deadline:
        raise HTTPException(400, "Registration deadline has passed")

    invitation = None
    if competition.type == "invite_only":
        invitation = validate_invitation(db, competition, user, invitation_code, now)

    current = find_active_participation(db, user.id)
    if current:
        _, current_competition = current
        if current_competition.id == competition.id:
            raise HTTPException(400, "Already joined this competition")
        raise HTTPException(
            400,
            f"You are already participating in an active competition: {current_competition.name}",
        )

    if active_participant_count(db, competition.id) >= int(competition.max_participants):
        raise HTTPException(400, "Competition is full")

    participant = get_participation(db, competition.id, user.id)
    if participant and participant.status == "disqualified":
        raise HTTPException(400, "You have been disqualified from this competition")
    if participant:
        # Rejoining after a withdrawal resets the competition account.
        participant.status = "active"
        participant.joined_at = now
    else:
        participant = CompetitionParticipant(competition_id=competition.id, user_id=user.id)
        db.add(participant)
    participant.whop_user_id = user.whop_user_id
    participant.starting_balance = float(competition.starting_balance)
    participant.current_balance = float(competition.starting_balance)
    participant.total_pnl = 0
    participant.realized_pnl = 0
    participant.unrealized_pnl = 0
    participant.total_trades = 0

    if invitation is not None:
        invitation.status = "accepted"
        invitation.responded_at = now

    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        raise HTTPException(400, "Already joined this competition") from None

    refresh_competition_ranks(db, competition.id)
    logger.info("User %s joined competition %s", user.id, competition.id)
    return participant
