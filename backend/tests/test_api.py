from __future__ import annotations

from datetime import date, timedelta
from uuid import uuid4

from fastapi.testclient import TestClient

from consensus import main as main_module
from consensus.main import DEFAULT_CORS_ORIGIN_REGEX, _load_cors_origin_regex, _load_cors_origins, app


def wire_date(days_ahead: int) -> str:
    return (date.today() + timedelta(days=days_ahead)).strftime("%m/%d/%Y")


def signup(client: TestClient, prefix: str = "user") -> dict:
    resp = client.post("/api/auth/signup", json={"username": f"{prefix}{uuid4().hex[:8]}"})
    assert resp.status_code == 201
    return resp.json()["data"]


def lobby_payload(host_id: str, **overrides) -> dict:
    payload = {
        "host_id": host_id,
        "location": {"lat": 37.7749, "lon": -122.4194},
        "radius": 5,
        "date": wire_date(2),
        "start_hour": 10,
        "end_hour": 14,
        "activity_counts": {"FOOD": 1, "NATURE": 1},
    }
    payload.update(overrides)
    return payload


def started_lobby(client: TestClient, guests: int = 1, **overrides) -> tuple[str, dict, list[dict]]:
    host = signup(client, "host")
    create_resp = client.post("/api/lobbies", json=lobby_payload(host["user_id"], **overrides))
    assert create_resp.status_code == 201
    lobby = create_resp.json()["data"]
    members = []
    for _ in range(guests):
        guest = signup(client, "guest")
        assert client.post("/api/lobbies/join", json={"code": lobby["code"], "user_id": guest["user_id"]}).status_code == 200
        assert client.post(f"/api/lobbies/{lobby['lobby_id']}/member/{guest['user_id']}/ready", json={"ready": True}).status_code == 200
        members.append(guest)
    start_resp = client.post(f"/api/consensus/lobby/{lobby['lobby_id']}/start", json={"user_id": host["user_id"]})
    assert start_resp.status_code == 200
    return lobby["lobby_id"], host, members


def vote_round(client: TestClient, lobby_id: str, round_number: int, user_id: str, yes_ids: set[str]) -> dict:
    options = client.get(f"/api/consensus/lobby/{lobby_id}/round/{round_number}/options").json()["data"]["options"]
    ack = None
    for option in options:
        resp = client.post(
            f"/api/consensus/lobby/{lobby_id}/vote",
            json={
                "user_id": user_id,
                "option_id": option["id"],
                "round_number": round_number,
                "vote": option["id"] in yes_ids,
            },
        )
        assert resp.status_code == 200
        ack = resp.json()["data"]
    return ack


def test_full_consensus_flow():
    with TestClient(app) as client:
        host = signup(client, "host")
        guest = signup(client, "guest")

        login_resp = client.post("/api/auth/login", json={"username": host["username"].upper()})
        assert login_resp.status_code == 200
        assert login_resp.json()["data"]["user_id"] == host["user_id"]

        create_resp = client.post("/api/lobbies", json=lobby_payload(host["user_id"]))
        assert create_resp.status_code == 201
        lobby = create_resp.json()["data"]
        lobby_id = lobby["lobby_id"]
        assert lobby["status"] == "waiting"
        assert lobby["date"] == wire_date(2)
        assert len(lobby["code"]) == 6
        assert lobby["members"] == [
            {"user_id": host["user_id"], "username": host["username"], "is_owner": True, "is_ready": True}
        ]

        join_resp = client.post("/api/lobbies/join", json={"code": lobby["code"].lower(), "user_id": guest["user_id"]})
        assert join_resp.status_code == 200
        assert len(join_resp.json()["data"]["members"]) == 2
        rejoin_resp = client.post("/api/lobbies/join", json={"code": lobby["code"], "user_id": guest["user_id"]})
        assert len(rejoin_resp.json()["data"]["members"]) == 2

        not_ready = client.post(f"/api/consensus/lobby/{lobby_id}/start", json={"user_id": host["user_id"]})
        assert not_ready.status_code == 409
        assert not_ready.json() == {"error": "Not every member is ready"}

        not_owner = client.post(f"/api/consensus/lobby/{lobby_id}/start", json={"user_id": guest["user_id"]})
        assert not_owner.status_code == 403

        early_vote = client.post(
            f"/api/consensus/lobby/{lobby_id}/vote",
            json={"user_id": guest["user_id"], "option_id": "food-1", "round_number": 1, "vote": True},
        )
        assert early_vote.status_code == 409

        ready_resp = client.post(f"/api/lobbies/{lobby_id}/member/{guest['user_id']}/ready", json={"ready": True})
        assert ready_resp.json()["data"]["all_ready"] is True
        ready_again = client.post(f"/api/lobbies/{lobby_id}/member/{guest['user_id']}/ready", json={"ready": True})
        assert ready_again.json()["data"] == ready_resp.json()["data"]
        owner_ready = client.post(f"/api/lobbies/{lobby_id}/member/{host['user_id']}/ready", json={"ready": False})
        assert owner_ready.status_code == 200
        assert owner_ready.json()["data"]["message"] == "The lobby owner is always ready."

        start_resp = client.post(f"/api/consensus/lobby/{lobby_id}/start", json={"user_id": host["user_id"]})
        assert start_resp.status_code == 200
        assert start_resp.json()["data"] == {
            "ok": True,
            "lobby_id": lobby_id,
            "current_round": 1,
            "total_rounds": 2,
            "category": "FOOD",
        }

        assert client.get(f"/api/consensus/lobby/{lobby_id}/round/2/options").status_code == 409
        round_one = client.get(f"/api/consensus/lobby/{lobby_id}/round/1/options").json()["data"]
        assert round_one["category"] == "FOOD"
        assert round_one["is_tiebreak"] is False
        assert "food-1" in {option["id"] for option in round_one["options"]}

        ack = vote_round(client, lobby_id, 1, host["user_id"], {"food-1"})
        assert ack["outcome"] == "pending"
        status = client.get(f"/api/consensus/lobby/{lobby_id}/round/1/status").json()["data"]
        assert status["all_voted"] is False
        assert status["consensus_reached"] is False
        waiting = client.get(f"/api/consensus/lobby/{lobby_id}/waiting").json()["data"]
        assert waiting["users_waiting"] == [guest["username"]]
        assert waiting["all_finished"] is False

        ack = vote_round(client, lobby_id, 1, guest["user_id"], {"food-1"})
        assert ack["outcome"] == "consensus"
        assert ack["round_resolved"] is True

        status = client.get(f"/api/consensus/lobby/{lobby_id}/round/1/status").json()["data"]
        assert status["consensus_reached"] is True
        assert status["consensus_option_id"] == "food-1"
        assert status["all_voted"] is True
        assert status["yes_counts"]["food-1"] == 2

        wrong_pick = client.post(
            f"/api/consensus/lobby/{lobby_id}/round/1/complete",
            json={"selected_option_id": "food-2", "user_id": guest["user_id"]},
        )
        assert wrong_pick.status_code == 409
        complete_resp = client.post(
            f"/api/consensus/lobby/{lobby_id}/round/1/complete",
            json={"selected_option_id": "food-1", "user_id": guest["user_id"]},
        )
        assert complete_resp.json()["data"] == {"all_rounds_completed": False, "next_round": 2}

        late_vote = client.post(
            f"/api/consensus/lobby/{lobby_id}/vote",
            json={"user_id": guest["user_id"], "option_id": "food-1", "round_number": 1, "vote": False},
        )
        assert late_vote.status_code == 409
        assert client.get(f"/api/results/lobby/{lobby_id}/itinerary").status_code == 409

        round_two = client.get(f"/api/consensus/lobby/{lobby_id}/round/2/options").json()["data"]
        assert round_two["category"] == "NATURE"
        vote_round(client, lobby_id, 2, host["user_id"], {"nature-1"})
        ack = vote_round(client, lobby_id, 2, guest["user_id"], {"nature-1"})
        assert ack["outcome"] == "consensus"

        waiting = client.get(f"/api/consensus/lobby/{lobby_id}/waiting").json()["data"]
        assert waiting["all_finished"] is True
        assert waiting["status"] == "awaiting_itinerary"
        complete_resp = client.post(
            f"/api/consensus/lobby/{lobby_id}/round/2/complete",
            json={"selected_option_id": "nature-1", "user_id": host["user_id"]},
        )
        assert complete_resp.json()["data"] == {"all_rounds_completed": True, "next_round": None}

        board = client.get(f"/api/results/lobby/{lobby_id}/round/2/leaderboard").json()["data"]
        assert board["entries"][0]["option_id"] == "nature-1"
        assert board["entries"][0]["yays"] == 2
        assert board["entries"][0]["unanimous"] is True

        itinerary_resp = client.get(f"/api/results/lobby/{lobby_id}/itinerary")
        assert itinerary_resp.status_code == 200
        itinerary = itinerary_resp.json()["data"]
        assert itinerary["date"] == wire_date(2)
        assert [(item["name"], item["time"]) for item in itinerary["activities"]] == [
            ("Corner Taqueria", "10:00"),
            ("Golden Gate Bridge Walk", "11:00"),
        ]
        assert client.get(f"/api/lobbies/{lobby_id}/status").json()["data"]["status"] == "complete"

        guest_move = client.post(
            f"/api/results/lobby/{lobby_id}/itinerary/move",
            json={"user_id": guest["user_id"], "from_index": 1, "to_index": 0},
        )
        assert guest_move.status_code == 403
        bad_move = client.post(
            f"/api/results/lobby/{lobby_id}/itinerary/move",
            json={"user_id": host["user_id"], "from_index": 0, "to_index": 5},
        )
        assert bad_move.status_code == 400
        move_resp = client.post(
            f"/api/results/lobby/{lobby_id}/itinerary/move",
            json={"user_id": host["user_id"], "from_index": 1, "to_index": 0},
        )
        assert move_resp.status_code == 200
        moved = [(item["name"], item["time"]) for item in move_resp.json()["data"]["activities"]]
        assert moved == [("Golden Gate Bridge Walk", "10:00"), ("Corner Taqueria", "11:00")]

        refetch = client.get(f"/api/results/lobby/{lobby_id}/itinerary").json()["data"]
        assert [item["name"] for item in refetch["activities"]] == ["Golden Gate Bridge Walk", "Corner Taqueria"]


def test_tie_runs_a_tiebreak_pass_on_the_same_round():
    with TestClient(app) as client:
        lobby_id, host, (guest,) = started_lobby(client, activity_counts={"FOOD": 1})
        options = client.get(f"/api/consensus/lobby/{lobby_id}/round/1/options").json()["data"]["options"]
        first, second = options[0]["id"], options[1]["id"]

        vote_round(client, lobby_id, 1, host["user_id"], {first})
        ack = vote_round(client, lobby_id, 1, guest["user_id"], {second})
        assert ack["outcome"] == "tie"
        assert ack["round_resolved"] is False

        status = client.get(f"/api/consensus/lobby/{lobby_id}/round/1/status").json()["data"]
        assert status["is_tie"] is True
        assert status["tied_options"] == [first, second]
        assert status["pass_number"] == 1
        assert status["all_voted"] is False

        tiebreak = client.get(f"/api/consensus/lobby/{lobby_id}/round/1/options").json()["data"]
        assert tiebreak["round"] == 1
        assert tiebreak["is_tiebreak"] is True
        assert [option["id"] for option in tiebreak["options"]] == [first, second]

        vote_round(client, lobby_id, 1, host["user_id"], {second})
        ack = vote_round(client, lobby_id, 1, guest["user_id"], {second})
        assert ack["outcome"] == "consensus"
        status = client.get(f"/api/consensus/lobby/{lobby_id}/round/1/status").json()["data"]
        assert status["consensus_option_id"] == second
        assert status["is_tie"] is False


def test_repeat_vote_overwrites_instead_of_adding(vote_count):
    with TestClient(app) as client:
        lobby_id, host, (guest,) = started_lobby(client, activity_counts={"FOOD": 1})
        option_id = client.get(f"/api/consensus/lobby/{lobby_id}/round/1/options").json()["data"]["options"][0]["id"]
        for vote in ("superlike", True, "dislike"):
            resp = client.post(
                f"/api/consensus/lobby/{lobby_id}/vote",
                json={"user_id": guest["user_id"], "option_id": option_id, "round_number": 1, "vote": vote},
            )
            assert resp.status_code == 200
        assert vote_count(lobby_id, 1, guest["user_id"], option_id) == 1
        board = client.get(f"/api/results/lobby/{lobby_id}/round/1/leaderboard").json()["data"]
        assert {entry["option_id"]: entry["yays"] for entry in board["entries"]}[option_id] == 0


def test_round_without_yes_votes_is_skipped_after_retries():
    with TestClient(app) as client:
        lobby_id, host, _ = started_lobby(client, guests=0)
        outcomes = [vote_round(client, lobby_id, 1, host["user_id"], set())["outcome"] for _ in range(3)]
        assert outcomes == ["no_votes", "no_votes", "skipped"]

        status = client.get(f"/api/consensus/lobby/{lobby_id}/round/1/status").json()["data"]
        assert status["status"] == "skipped"
        assert status["consensus_option_id"] is None

        vote_round(client, lobby_id, 2, host["user_id"], {"nature-1"})
        itinerary = client.get(f"/api/results/lobby/{lobby_id}/itinerary").json()["data"]
        assert [(item["name"], item["time"]) for item in itinerary["activities"]] == [("Golden Gate Bridge Walk", "10:00")]


def test_vote_rejections():
    with TestClient(app) as client:
        lobby_id, host, _ = started_lobby(client, guests=0)
        outsider = signup(client, "out")

        not_member = client.post(
            f"/api/consensus/lobby/{lobby_id}/vote",
            json={"user_id": outsider["user_id"], "option_id": "food-1", "round_number": 1, "vote": True},
        )
        assert not_member.status_code == 403
        unknown_option = client.post(
            f"/api/consensus/lobby/{lobby_id}/vote",
            json={"user_id": host["user_id"], "option_id": "arts-1", "round_number": 1, "vote": True},
        )
        assert unknown_option.status_code == 400
        future_round = client.post(
            f"/api/consensus/lobby/{lobby_id}/vote",
            json={"user_id": host["user_id"], "option_id": "nature-1", "round_number": 2, "vote": True},
        )
        assert future_round.status_code == 409
        missing_round = client.get(f"/api/consensus/lobby/{lobby_id}/round/9/status")
        assert missing_round.status_code == 404
        bad_vote = client.post(
            f"/api/consensus/lobby/{lobby_id}/vote",
            json={"user_id": host["user_id"], "option_id": "food-1", "round_number": 1, "vote": "maybe"},
        )
        assert bad_vote.status_code == 400
        assert set(bad_vote.json()) == {"error"}


def test_create_lobby_validation_errors():
    with TestClient(app) as client:
        host = signup(client, "host")
        cases = [
            ({"radius": 20}, "radius"),
            ({"date": wire_date(-1)}, "past"),
            ({"date": wire_date(400)}, "1 year"),
            ({"date": "2026-10-21"}, "MM/DD/YYYY"),
            ({"start_hour": 14, "end_hour": 10}, "before end_hour"),
            ({"start_hour": 8, "end_hour": 21}, "cannot exceed 12"),
            ({"activity_counts": {"FOOD": 0}}, "between 1 and 10"),
            ({"start_hour": 10, "end_hour": 12, "activity_counts": {"FOOD": 3}}, "cannot fit"),
            ({"activity_counts": {"FOOD": -1}}, "negative"),
        ]
        for overrides, message in cases:
            resp = client.post("/api/lobbies", json=lobby_payload(host["user_id"], **overrides))
            assert resp.status_code == 400, overrides
            assert message in resp.json()["error"], overrides


def test_signup_rules():
    with TestClient(app) as client:
        user = signup(client, "Name")
        duplicate = client.post("/api/auth/signup", json={"username": f"  {user['username'].lower()} "})
        assert duplicate.status_code == 409
        too_long = client.post("/api/auth/signup", json={"username": "x" * 21})
        assert too_long.status_code == 400
        missing = client.post("/api/auth/login", json={"username": f"ghost{uuid4().hex[:8]}"})
        assert missing.status_code == 404
        assert missing.json() == {"error": "User not found"}



def test_unexpected_errors_keep_the_error_envelope(monkeypatch):
    def broken(username):
        raise RuntimeError("database went away")

    monkeypatch.setattr(main_module.service, "signup", broken)
    with TestClient(app, raise_server_exceptions=False) as client:
        resp = client.post("/api/auth/signup", json={"username": f"boom{uuid4().hex[:8]}"})
    assert resp.status_code == 500
    assert resp.json() == {"error": "Internal server error"}


def test_join_full_lobby_and_start_without_options():
    with TestClient(app) as client:
        host = signup(client, "host")
        lobby = client.post(
            "/api/lobbies",
            json=lobby_payload(host["user_id"], max_members=2, start_hour=6, end_hour=8, activity_counts={"SOCIAL": 1}),
        ).json()["data"]
        guest = signup(client, "guest")
        late = signup(client, "late")
        assert client.post("/api/lobbies/join", json={"code": lobby["code"], "user_id": guest["user_id"]}).status_code == 200
        full = client.post("/api/lobbies/join", json={"code": lobby["code"], "user_id": late["user_id"]})
        assert full.status_code == 409
        assert full.json() == {"error": "Lobby is full"}
        unknown = client.post("/api/lobbies/join", json={"code": "ZZZZZZZ", "user_id": late["user_id"]})
        assert unknown.status_code == 404

        client.post(f"/api/lobbies/{lobby['lobby_id']}/member/{guest['user_id']}/ready", json={"ready": True})
        start = client.post(f"/api/consensus/lobby/{lobby['lobby_id']}/start", json={"user_id": host["user_id"]})
        assert start.status_code == 409
        assert "No social options" in start.json()["error"]
        status = client.get(f"/api/lobbies/{lobby['lobby_id']}/status").json()["data"]
        assert status["status"] == "waiting"


def test_leave_lobby_transfers_ownership_then_closes():
    with TestClient(app) as client:
        host = signup(client, "host")
        guest = signup(client, "guest")
        lobby = client.post("/api/lobbies", json=lobby_payload(host["user_id"])).json()["data"]
        client.post("/api/lobbies/join", json={"code": lobby["code"], "user_id": guest["user_id"]})

        first = client.post(f"/api/lobbies/member/{host['user_id']}/leave")
        assert first.status_code == 200
        data = first.json()["data"]
        assert data["lobby_closed"] is False
        assert data["lobby"]["members"] == [
            {"user_id": guest["user_id"], "username": guest["username"], "is_owner": True, "is_ready": True}
        ]

        second = client.post(f"/api/lobbies/member/{guest['user_id']}/leave")
        assert second.json()["data"] == {"left": True, "lobby_closed": True}
        assert client.get(f"/api/lobbies/{lobby['lobby_id']}/status").status_code == 404
        assert client.post(f"/api/lobbies/member/{guest['user_id']}/leave").status_code == 404
        rejoin = client.post("/api/lobbies/join", json={"code": lobby["code"], "user_id": host["user_id"]})
        assert rejoin.status_code == 404


def test_cannot_join_started_lobby():
    with TestClient(app) as client:
        lobby_id, host, _ = started_lobby(client, guests=0)
        code = client.get(f"/api/lobbies/{lobby_id}/status").json()["data"]["code"]
        late = signup(client, "late")
        resp = client.post("/api/lobbies/join", json={"code": code, "user_id": late["user_id"]})
        assert resp.status_code == 409
        assert resp.json() == {"error": "Lobby has already started"}


def test_health_and_cors_defaults(monkeypatch):
    monkeypatch.delenv("CORS_ALLOW_ORIGINS", raising=False)
    monkeypatch.delenv("CORS_ALLOW_ORIGIN_REGEX", raising=False)
    assert "http://localhost:8081" in _load_cors_origins()
    assert _load_cors_origin_regex() == DEFAULT_CORS_ORIGIN_REGEX

    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example/, https://b.example")
    assert _load_cors_origins() == ["https://a.example", "https://b.example"]

    with TestClient(app) as client:
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"
