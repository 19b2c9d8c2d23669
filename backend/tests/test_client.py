from __future__ import annotations

from datetime import date, timedelta
import threading
from uuid import uuid4

import httpx
import pytest
from fastapi.testclient import TestClient

from consensus.client import ApiResult, ConsensusClient, NetworkError, PollCancelled, PollLoop, PollTimeout
from consensus.main import app


def test_client_unwraps_data_and_errors():
    with TestClient(app) as http:
        api = ConsensusClient(http=http)
        username = f"cli{uuid4().hex[:8]}"
        created = api.signup(username)
        assert created.ok
        assert created.data["username"] == username

        duplicate = api.signup(username)
        assert not duplicate.ok
        assert duplicate.status_code == 409
        assert duplicate.error == "Username is already taken"
        with pytest.raises(RuntimeError):
            duplicate.unwrap()

        assert api.login(username).unwrap()["user_id"] == created.data["user_id"]


def test_client_reports_transport_failures():
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with ConsensusClient(http=httpx.Client(base_url="http://planner.test", transport=httpx.MockTransport(refuse))) as api:
        result = api.lobby_status("missing")
    assert result.network_error
    assert result.error == "connection refused"
    with pytest.raises(NetworkError):
        result.unwrap()


def test_poll_loop_retries_through_errors_until_done():
    responses = iter(
        [
            ApiResult(error="Network request failed", network_error=True),
            ApiResult(data={"all_finished": False}),
            ApiResult(data={"all_finished": True}),
        ]
    )
    with PollLoop(lambda: next(responses), lambda data: data["all_finished"], interval=0) as loop:
        assert loop.run() == {"all_finished": True}
    assert loop.attempts == 3
    assert loop.last_error == "Network request failed"
    assert loop.cancelled


def test_poll_loop_times_out():
    ticks = iter([0.0, 1.0, 2.5, 4.0])
    loop = PollLoop(
        lambda: ApiResult(data={"all_finished": False}),
        lambda data: data["all_finished"],
        interval=0,
        timeout=3.0,
        clock=lambda: next(ticks),
    )
    with pytest.raises(PollTimeout):
        loop.run()
    assert loop.attempts == 3


def test_poll_loop_can_be_cancelled_from_another_thread():
    first_fetch = threading.Event()

    def fetch() -> ApiResult:
        first_fetch.set()
        return ApiResult(data={"all_finished": False})

    loop = PollLoop(fetch, lambda data: data["all_finished"], interval=30.0, timeout=300.0)
    canceller = threading.Thread(target=lambda: (first_fetch.wait(timeout=2), loop.cancel()))
    canceller.start()
    with pytest.raises(PollCancelled):
        loop.run()
    canceller.join(timeout=2)
    assert loop.attempts == 1


def test_poll_loop_rejects_bad_timing():
    with pytest.raises(ValueError):
        PollLoop(lambda: ApiResult(), lambda data: True, interval=-1)


def test_client_waits_for_round_and_lobby_to_finish():
    with TestClient(app) as http:
        api = ConsensusClient(http=http)
        host = api.signup(f"wait{uuid4().hex[:8]}").unwrap()
        lobby = api.create_lobby(
            {
                "host_id": host["user_id"],
                "location": {"lat": 37.7749, "lon": -122.4194},
                "radius": 5,
                "date": (date.today() + timedelta(days=2)).strftime("%m/%d/%Y"),
                "start_hour": 10,
                "end_hour": 14,
                "activity_counts": {"FOOD": 1},
            }
        ).unwrap()
        lobby_id = lobby["lobby_id"]
        api.start(lobby_id, host["user_id"]).unwrap()

        options = api.round_options(lobby_id, 1).unwrap()["options"]
        winner = options[0]["id"]
        for option in options:
            api.vote(lobby_id, host["user_id"], option["id"], 1, option["id"] == winner).unwrap()

        status = api.wait_for_round(lobby_id, 1, interval=0, timeout=5)
        assert status["consensus_reached"]
        assert status["consensus_option_id"] == winner
        assert api.wait_for_all_finished(lobby_id, interval=0, timeout=5)["all_finished"]
