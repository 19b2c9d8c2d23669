from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import os
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from dotenv import load_dotenv

load_dotenv()

from . import models  # noqa: F401
from .db import Base, engine as db_engine
from .errors import ConsensusError
from .repository import SqlRepository
from .schemas import (
    CompleteRoundRequest,
    CreateLobbyRequest,
    JoinLobbyRequest,
    MoveActivityRequest,
    ReadyRequest,
    StartRequest,
    UserCredentials,
    VoteRequest,
)
from .service import ConsensusService

logger = logging.getLogger(__name__)

DEFAULT_CORS_ORIGINS = [
    "http://localhost:8081",
    "http://127.0.0.1:8081",
    "http://localhost:19006",
]
DEFAULT_CORS_ORIGIN_REGEX = r"^exp://.*$"


@asynccontextmanager
async def lifespan(_: FastAPI):
    logger.info(
        "startup_cors_config allow_origins=%s allow_origin_regex=%s",
        CORS_ORIGINS,
        CORS_ORIGIN_REGEX,
    )
    Base.metadata.create_all(bind=db_engine)
    yield


def _load_cors_origins() -> list[str]:
    raw = os.getenv("CORS_ALLOW_ORIGINS")
    if raw:
        origins = [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]
        if origins:
            return origins
    return DEFAULT_CORS_ORIGINS.copy()


def _load_cors_origin_regex() -> str | None:
    raw = (os.getenv("CORS_ALLOW_ORIGIN_REGEX") or "").strip()
    if raw:
        return raw
    # Expo dev clients load the bundle from exp:// URLs.
    return DEFAULT_CORS_ORIGIN_REGEX


CORS_ORIGINS = _load_cors_origins()
CORS_ORIGIN_REGEX = _load_cors_origin_regex()

app = FastAPI(title="Consensus Round Engine API", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_origin_regex=CORS_ORIGIN_REGEX,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

store = SqlRepository()
service = ConsensusService(store)


def _envelope(data: Any) -> dict[str, Any]:
    if hasattr(data, "model_dump"):
        data = data.model_dump(mode="json")
    return {"data": data}


def _first_validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = str(first.get("msg", "Invalid request")).removeprefix("Value error, ")
    return f"{location}: {message}" if location else message


@app.exception_handler(ConsensusError)
async def consensus_error_handler(request: Request, exc: ConsensusError) -> JSONResponse:
    logger.warning("request_rejected path=%s status=%s error=%s", request.url.path, exc.status_code, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    message = _first_validation_message(exc)
    logger.warning("request_invalid path=%s error=%s", request.url.path, message)
    return JSONResponse(status_code=400, content={"error": message})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("request_failed path=%s", request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


@app.post("/api/auth/signup", status_code=201)
def signup(payload: UserCredentials):
    return _envelope(service.signup(payload.username))


@app.post("/api/auth/login")
def login(payload: UserCredentials):
    return _envelope(service.login(payload.username))


@app.post("/api/lobbies", status_code=201)
def create_lobby(payload: CreateLobbyRequest):
    return _envelope(service.create_lobby(payload))


@app.post("/api/lobbies/join")
def join_lobby(payload: JoinLobbyRequest):
    return _envelope(service.join_lobby(payload.code, payload.user_id))


@app.post("/api/lobbies/member/{user_id}/leave")
def leave_lobby(user_id: str):
    status = service.leave_lobby(user_id)
    if status is None:
        return _envelope({"left": True, "lobby_closed": True})
    return _envelope({"left": True, "lobby_closed": False, "lobby": status.model_dump(mode="json")})


@app.get("/api/lobbies/{lobby_id}/status")
def get_lobby_status(lobby_id: str):
    return _envelope(service.get_status(lobby_id))


@app.post("/api/lobbies/{lobby_id}/member/{user_id}/ready")
def set_member_ready(lobby_id: str, user_id: str, payload: ReadyRequest):
    return _envelope(service.set_ready(lobby_id, user_id, payload.ready))


@app.post("/api/consensus/lobby/{lobby_id}/start")
def start_game(lobby_id: str, payload: StartRequest):
    return _envelope(service.start_game(lobby_id, payload.user_id))


@app.get("/api/consensus/lobby/{lobby_id}/round/{round_number}/options")
def get_round_options(lobby_id: str, round_number: int):
    return _envelope(service.round_options(lobby_id, round_number))


@app.post("/api/consensus/lobby/{lobby_id}/vote")
def submit_vote(lobby_id: str, payload: VoteRequest):
    return _envelope(service.vote(lobby_id, payload))


@app.get("/api/consensus/lobby/{lobby_id}/round/{round_number}/status")
def get_round_status(lobby_id: str, round_number: int):
    return _envelope(service.round_status(lobby_id, round_number))


@app.post("/api/consensus/lobby/{lobby_id}/round/{round_number}/complete")
def complete_round(lobby_id: str, round_number: int, payload: CompleteRoundRequest):
    return _envelope(service.complete_round(lobby_id, round_number, payload.selected_option_id, payload.user_id))


@app.get("/api/consensus/lobby/{lobby_id}/waiting")
def get_waiting_status(lobby_id: str):
    return _envelope(service.waiting_status(lobby_id))


@app.get("/api/results/lobby/{lobby_id}/round/{round_number}/leaderboard")
def get_round_leaderboard(lobby_id: str, round_number: int):
    return _envelope(service.leaderboard(lobby_id, round_number))


@app.get("/api/results/lobby/{lobby_id}/itinerary")
def get_itinerary(lobby_id: str):
    return _envelope(service.get_itinerary(lobby_id))


@app.post("/api/results/lobby/{lobby_id}/itinerary/move")
def move_itinerary_activity(lobby_id: str, payload: MoveActivityRequest):
    return _envelope(service.move_activity(lobby_id, payload.user_id, payload.from_index, payload.to_index))


@app.get("/health")
def health():
    return {
        "status": "ok",
        "cors_allow_origins": CORS_ORIGINS,
        "cors_allow_origin_regex": CORS_ORIGIN_REGEX,
    }
