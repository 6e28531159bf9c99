"""Tests for the competition routes: lifecycle, joining, invitations and standings."""

from datetime import datetime, timedelta

import pytest
from fastapi import HTTPException

from app.competitions import join_competition
from app.models import Competition, CompetitionInvitation, CompetitionParticipant, User
from conftest import whop_headers


def competition_payload(**overrides) -> dict:
    now = datetime.utcnow()
    payload = {
        "name": "March Madness",
        "description": "Best P&L wins",
        "type": "public",
        "status": "active",
        "starting_balance": 50000,
        "max_participants": 10,
        "start_date": (now - timedelta(days=1)).isoformat(),
        "end_date": (now + timedelta(days=30)).isoformat(),
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def create_competition(client, creator_headers):
    def _create(**overrides) -> dict:
        response = client.post("/competitions", headers=creator_headers, json=competition_payload(**overrides))
        assert response.status_code == 201, response.text
        return response.json()["competition"]

    return _create


class TestCompetitionLifecycle:
    def test_create_and_fetch(self, client, register, create_competition) -> None:
        competition = create_competition()
        assert competition["is_creator"] is True
        assert competition["participant_count"] == 0
        assert competition["spots_remaining"] == 10
        assert competition["creator"]["username"] == "whopcreator"
        # Deadline defaults to the end date.
        assert competition["registration_deadline"] == competition["end_date"]

        response = client.get(f"/competitions/{competition['id']}", headers=register("alice"))
        assert response.status_code == 200
        data = response.json()
        assert data["competition"]["is_creator"] is False
        assert data["leaderboard"] == []

    def test_defaults_to_invite_only_draft(self, client, creator_headers) -> None:
        payload = competition_payload()
        del payload["type"], payload["status"]
        response = client.post("/competitions", headers=creator_headers, json=payload)
        assert response.status_code == 201
        competition = response.json()["competition"]
        assert (competition["type"], competition["status"]) == ("invite_only", "draft")

    def test_missing_fields(self, client, creator_headers) -> None:
        response = client.post("/competitions", headers=creator_headers, json={"name": "No dates"})
        assert response.status_code == 400
        assert response.json()["error"] == "Missing required fields: name, start_date, end_date"

    def test_end_before_start(self, client, creator_headers) -> None:
        now = datetime.utcnow()
        payload = competition_payload(start_date=now.isoformat(), end_date=(now - timedelta(days=1)).isoformat())
        response = client.post("/competitions", headers=creator_headers, json=payload)
        assert response.status_code == 400

    def test_list_filters_by_status(self, client, register, create_competition) -> None:
        create_competition(name="Live")
        create_competition(name="Later", status="draft")
        headers = register("alice")

        active = client.get("/competitions", headers=headers).json()
        assert [c["name"] for c in active["competitions"]] == ["Live"]
        drafts = client.get("/competitions", headers=headers, params={"status": "draft"}).json()
        assert [c["name"] for c in drafts["competitions"]] == ["Later"]

    def test_only_creator_updates(self, client, register, creator_headers, create_competition) -> None:
        competition = create_competition()
        response = client.put(f"/competitions/{competition['id']}", headers=register("alice"), json={"name": "Mine"})
        assert response.status_code == 403

        response = client.put(
            f"/competitions/{competition['id']}", headers=creator_headers, json={"prize_pool": 500}
        )
        assert response.status_code == 200
        assert response.json()["competition"]["prize_pool"] == 500

    def test_only_drafts_delete(self, client, creator_headers, create_competition) -> None:
        active = create_competition()
        response = client.delete(f"/competitions/{active['id']}", headers=creator_headers)
        assert response.status_code == 400
        assert response.json()["error"] == "Can only delete draft competitions"

        draft = create_competition(status="draft")
        assert client.delete(f"/competitions/{draft['id']}", headers=creator_headers).status_code == 200
        assert client.get(f"/competitions/{draft['id']}", headers=creator_headers).status_code == 404


class TestJoinCompetition:
    def test_join_public_competition(self, client, register, create_competition) -> None:
        competition = create_competition()
        response = client.post(f"/competitions/{competition['id']}/join", headers=register("alice"))
        assert response.status_code == 200
        data = response.json()
        assert data["starting_balance"] == 50000
        assert data["participant_rank"] == 1

    def test_missing_competition(self, client, register) -> None:
        response = client.post("/competitions/999/join", headers=register("alice"))
        assert response.status_code == 404

    def test_inactive_competition(self, client, register, create_competition) -> None:
        competition = create_competition(status="draft")
        response = client.post(f"/competitions/{competition['id']}/join", headers=register("alice"))
        assert response.json() == {"error": "Competition is not active"}

    def test_registration_closed(self, client, register, create_competition) -> None:
        deadline = (datetime.utcnow() - timedelta(hours=1)).isoformat()
        competition = create_competition(registration_deadline=deadline)
        response = client.post(f"/competitions/{competition['id']}/join", headers=register("alice"))
        assert response.status_code == 400
        assert response.json()["error"] == "Registration deadline has passed"

    def test_join_at_the_deadline_is_closed(self, register, create_competition, db) -> None:
        competition_id = create_competition()["id"]
        register("alice")
        competition = db.get(Competition, competition_id)
        user = db.query(User).filter(User.username == "alice").one()
        with pytest.raises(HTTPException) as excinfo:
            join_competition(db, competition_id, user, now=competition.registration_deadline)
        assert excinfo.value.status_code == 400
        assert excinfo.value.detail == "Registration deadline has passed"

    def test_disqualified_user_cannot_rejoin(self, client, register, create_competition, db) -> None:
        competition = create_competition()
        headers = register("alice")
        client.post(f"/competitions/{competition['id']}/join", headers=headers)
        participant = db.query(CompetitionParticipant).filter(
            CompetitionParticipant.competition_id == competition["id"]
        ).one()
        participant.status = "disqualified"
        db.commit()

        response = client.post(f"/competitions/{competition['id']}/join", headers=headers)
        assert response.status_code == 400
        assert response.json() == {"error": "You have been disqualified from this competition"}

    def test_cannot_join_twice(self, client, register, create_competition) -> None:
        competition = create_competition()
        headers = register("alice")
        client.post(f"/competitions/{competition['id']}/join", headers=headers)
        response = client.post(f"/competitions/{competition['id']}/join", headers=headers)
        assert response.status_code == 400
        assert response.json()["error"] == "Already joined this competition"

    def test_one_active_competition_at_a_time(self, client, register, create_competition) -> None:
        first = create_competition(name="First")
        second = create_competition(name="Second")
        headers = register("alice")
        client.post(f"/competitions/{first['id']}/join", headers=headers)
        response = client.post(f"/competitions/{second['id']}/join", headers=headers)
        assert response.status_code == 400
        assert "First" in response.json()["error"]

    def test_full_competition(self, client, register, create_competition) -> None:
        competition = create_competition(max_participants=1)
        client.post(f"/competitions/{competition['id']}/join", headers=register("alice"))
        response = client.post(f"/competitions/{competition['id']}/join", headers=register("bob"))
        assert response.json() == {"error": "Competition is full"}


class TestInvitations:
    def test_invite_only_requires_code(self, client, register, create_competition) -> None:
        competition = create_competition(type="invite_only")
        response = client.post(f"/competitions/{competition['id']}/join", headers=register("alice"))
        assert response.status_code == 400
        assert response.json()["error"] == "Invitation code required for invite-only competitions"

    def test_invite_and_join_with_code(self, client, register, creator_headers, create_competition) -> None:
        competition = create_competition(type="invite_only")
        response = client.post(
            f"/competitions/{competition['id']}/invite",
            headers=creator_headers,
            json={"whop_user_id": "user_abc"},
        )
        assert response.status_code == 201
        code = response.json()["invitation_code"]
        assert code.startswith("COMP-")

        # The code is bound to the invited Whop account.
        wrong = client.post(
            f"/competitions/{competition['id']}/join", headers=register("alice"), json={"invitation_code": code}
        )
        assert wrong.json()["error"] == "This invitation is not for your account"

        joined = client.post(
            f"/competitions/{competition['id']}/join",
            headers=whop_headers("user_abc"),
            json={"invitation_code": code},
        )
        assert joined.status_code == 200

        invitations = client.get(f"/competitions/{competition['id']}/invite", headers=creator_headers).json()
        assert invitations["invitations"][0]["status"] == "accepted"

    def test_invalid_code(self, client, register, create_competition) -> None:
        competition = create_competition(type="invite_only")
        response = client.post(
            f"/competitions/{competition['id']}/join", headers=register("alice"), json={"invitation_code": "COMP-NOPE"}
        )
        assert response.json() == {"error": "Invalid invitation code"}

    def test_expired_code(self, client, register, creator_headers, create_competition, db) -> None:
        competition = create_competition(type="invite_only")
        code = client.post(
            f"/competitions/{competition['id']}/invite", headers=creator_headers, json={"email": "alice@example.com"}
        ).json()["invitation_code"]
        invitation = db.query(CompetitionInvitation).filter(CompetitionInvitation.invitation_code == code).one()
        invitation.expires_at = datetime.utcnow() - timedelta(days=1)
        db.commit()

        response = client.post(
            f"/competitions/{competition['id']}/join", headers=register("alice"), json={"invitation_code": code}
        )
        assert response.status_code == 400
        assert response.json() == {"error": "Invitation has expired"}

    def test_duplicate_pending_invitation(self, client, creator_headers, create_competition) -> None:
        competition = create_competition(type="invite_only")
        url = f"/competitions/{competition['id']}/invite"
        client.post(url, headers=creator_headers, json={"email": "a@example.com"})
        response = client.post(url, headers=creator_headers, json={"email": "A@example.com"})
        assert response.status_code == 400
        assert response.json()["error"] == "User already has a pending invitation"

    def test_invite_requires_target(self, client, creator_headers, create_competition) -> None:
        competition = create_competition(type="invite_only")
        response = client.post(f"/competitions/{competition['id']}/invite", headers=creator_headers, json={})
        assert response.status_code == 400

    def test_only_creator_invites(self, client, register, create_competition) -> None:
        competition = create_competition(type="invite_only")
        response = client.post(
            f"/competitions/{competition['id']}/invite", headers=register("alice"), json={"email": "b@example.com"}
        )
        assert response.status_code == 403

    def test_public_competitions_have_no_invitations(self, client, creator_headers, create_competition) -> None:
        competition = create_competition()
        response = client.post(
            f"/competitions/{competition['id']}/invite", headers=creator_headers, json={"email": "b@example.com"}
        )
        assert response.status_code == 400


class TestCompetitionLeaderboard:
    def test_participant_trades_move_standings(self, client, register, create_competition) -> None:
        competition = create_competition()
        alice = register("alice")
        bob = register("bob")
        client.post(f"/competitions/{competition['id']}/join", headers=alice)
        client.post(f"/competitions/{competition['id']}/join", headers=bob)

        client.post("/paper-trading/orders", headers=bob, json={"symbol": "AAPL", "side": "buy", "quantity": 1})

        response = client.get(f"/competitions/{competition['id']}/leaderboard", headers=alice)
        assert response.status_code == 200
        data = response.json()
        assert data["total_participants"] == 2
        assert {row["username"] for row in data["leaderboard"]} == {"alice", "bob"}
        bob_row = next(row for row in data["leaderboard"] if row["username"] == "bob")
        assert bob_row["total_trades"] == 1

    def test_invite_only_leaderboard_is_private(self, client, register, creator_headers, create_competition) -> None:
        competition = create_competition(type="invite_only")
        response = client.get(f"/competitions/{competition['id']}/leaderboard", headers=register("alice"))
        assert response.status_code == 403

        response = client.get(f"/competitions/{competition['id']}/leaderboard", headers=creator_headers)
        assert response.status_code == 200
