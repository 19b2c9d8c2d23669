"""HTTP client for the consensus API and a cancellable poll loop.

Every call returns an ApiResult instead of raising, the same shape the
mobile client consumes: either `data` or an `error` message.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import threading
import time
from typing import Any, Callable, Optional

import httpx

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://127.0.0.1:5001"
DEFAULT_POLL_INTERVAL_SECONDS = 2.0
DEFAULT_POLL_TIMEOUT_SECONDS = 300.0


class NetworkError(Exception):
    """Raised when the transport fails before any response arrives."""


class PollTimeout(Exception):
    """Raised when a poll loop gives up waiting."""


class PollCancelled(Exception):
    """Raised when a poll loop is cancelled while waiting."""


@dataclass
class ApiResult:
    data: Any = None
    error: Optional[str] = None
    status_code: Optional[int] = None
    network_error: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> Any:
        if self.network_error:
            raise NetworkError(self.error)
        if self.error is not None:
            raise RuntimeError(self.error)
        return self.data


class ConsensusClient:
    def __init__(self, base_url: str = DEFAULT_BASE_URL, http: Optional[httpx.Client] = None, timeout_seconds: float = 10.0) -> None:
        self._owns_http = http is None
        self.http = http if http is not None else httpx.Client(base_url=base_url, timeout=timeout_seconds)

    def close(self) -> None:
        if self._owns_http:
            self.http.close()

    def __enter__(self) -> "ConsensusClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def request(self, method: str, path: str, json: Optional[dict] = None) -> ApiResult:
        try:
            response = self.http.request(method, path, json=json)
        except httpx.TransportError as exc:
            logger.error("api_network_error method=%s path=%s error=%s", method, path, exc)
            return ApiResult(error=str(exc) or "Network request failed", network_error=True)

        try:
            payload = response.json()
        except ValueError:
            payload = response.text

        if response.is_error:
            if isinstance(payload, dict) and payload.get("error"):
                message = str(payload["error"])
            elif isinstance(payload, str) and payload:
                message = payload
            else:
                message = f"Request failed with status {response.status_code}"
            logger.warning("api_error method=%s path=%s status=%s error=%s", method, path, response.status_code, message)
            return ApiResult(error=message, status_code=response.status_code)

        # Success bodies are {"data": ...}; bare bodies are accepted too.
        data = payload.get("data", payload) if isinstance(payload, dict) else payload
        return ApiResult(data=data, status_code=response.status_code)

    def signup(self, username: str) -> ApiResult:
        return self.request("POST", "/api/auth/signup", {"username": username})

    def login(self, username: str) -> ApiResult:
        return self.request("POST", "/api/auth/login", {"username": username})

    def create_lobby(self, lobby_data: dict) -> ApiResult:
        return self.request("POST", "/api/lobbies", lobby_data)

    def join_lobby(self, code: str, user_id: str) -> ApiResult:
        return self.request("POST", "/api/lobbies/join", {"code": code, "user_id": user_id})

    def lobby_status(self, lobby_id: str) -> ApiResult:
        return self.request("GET", f"/api/lobbies/{lobby_id}/status")

    def set_ready(self, lobby_id: str, user_id: str, ready: bool = True) -> ApiResult:
        return self.request("POST", f"/api/lobbies/{lobby_id}/member/{user_id}/ready", {"ready": ready})

    def leave_lobby(self, user_id: str) -> ApiResult:
        return self.request("POST", f"/api/lobbies/member/{user_id}/leave")

    def start(self, lobby_id: str, user_id: str) -> ApiResult:
        return self.request("POST", f"/api/consensus/lobby/{lobby_id}/start", {"user_id": user_id})

    def round_options(self, lobby_id: str, round_number: int) -> ApiResult:
        return self.request("GET", f"/api/consensus/lobby/{lobby_id}/round/{round_number}/options")

    def vote(self, lobby_id: str, user_id: str, option_id: str, round_number: int, vote: bool | str) -> ApiResult:
        return self.request(
            "POST",
            f"/api/consensus/lobby/{lobby_id}/vote",
            {"user_id": user_id, "option_id": option_id, "round_number": round_number, "vote": vote},
        )

    def round_status(self, lobby_id: str, round_number: int) -> ApiResult:
        return self.request("GET", f"/api/consensus/lobby/{lobby_id}/round/{round_number}/status")

    def complete_round(self, lobby_id: str, round_number: int, selected_option_id: str, user_id: str) -> ApiResult:
        return self.request(
            "POST",
            f"/api/consensus/lobby/{lobby_id}/round/{round_number}/complete",
            {"selected_option_id": selected_option_id, "user_id": user_id},
        )

    def waiting_status(self, lobby_id: str) -> ApiResult:
        return self.request("GET", f"/api/consensus/lobby/{lobby_id}/waiting")

    def leaderboard(self, lobby_id: str, round_number: int) -> ApiResult:
        return self.request("GET", f"/api/results/lobby/{lobby_id}/round/{round_number}/leaderboard")

    def itinerary(self, lobby_id: str) -> ApiResult:
        return self.request("GET", f"/api/results/lobby/{lobby_id}/itinerary")

    def move_activity(self, lobby_id: str, user_id: str, from_index: int, to_index: int) -> ApiResult:
        return self.request(
            "POST",
            f"/api/results/lobby/{lobby_id}/itinerary/move",
            {"user_id": user_id, "from_index": from_index, "to_index": to_index},
        )

    def wait_for_round(
        self,
        lobby_id: str,
        round_number: int,
        interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        timeout: float = DEFAULT_POLL_TIMEOUT_SECONDS,
    ) -> Any:
        """Poll a round until it resolves or restarts as a tiebreak."""
        with PollLoop(
            lambda: self.round_status(lobby_id, round_number),
            lambda status: status["consensus_reached"] or status["is_tie"] or status["status"] == "skipped",
            interval=interval,
            timeout=timeout,
        ) as loop:
            return loop.run()

    def wait_for_all_finished(
        self,
        lobby_id: str,
        interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        timeout: float = DEFAULT_POLL_TIMEOUT_SECONDS,
    ) -> Any:
        with PollLoop(
            lambda: self.waiting_status(lobby_id),
            lambda status: status["all_finished"],
            interval=interval,
            timeout=timeout,
        ) as loop:
            return loop.run()


class PollLoop:
    """Repeatedly fetch until `done` accepts the data, the timeout passes, or cancel() is called.

    Errors from `fetch` are treated as transient and polling continues. Use
    it as a context manager so leaving the block always stops the loop.
    """

    def __init__(
        self,
        fetch: Callable[[], ApiResult],
        done: Callable[[Any], bool],
        interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        timeout: float = DEFAULT_POLL_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if interval < 0 or timeout <= 0:
            raise ValueError("interval must be >= 0 and timeout must be > 0")
        self.fetch = fetch
        self.done = done
        self.interval = interval
        self.timeout = timeout
        self.clock = clock
        self.attempts = 0
        self.last_error: Optional[str] = None
        self._cancelled = threading.Event()

    def __enter__(self) -> "PollLoop":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.cancel()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()

    def run(self) -> Any:
        started = self.clock()
        while True:
            if self._cancelled.is_set():
                raise PollCancelled("poll loop cancelled")
            self.attempts += 1
            result = self.fetch()
            if result.ok:
                if self.done(result.data):
                    return result.data
            else:
                self.last_error = result.error
                logger.info("poll_transient_error attempt=%s error=%s", self.attempts, result.error)
            if self.clock() - started >= self.timeout:
                raise PollTimeout(f"gave up after {self.attempts} attempts")
            if self._cancelled.wait(self.interval):
                raise PollCancelled("poll loop cancelled")
