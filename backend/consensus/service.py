from __future__ import annotations

import logging
import os
import secrets
import string
import unicodedata
from datetime import date, datetime, timedelta
from typing import Callable, List, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from .engine import ItineraryEngine
from .errors import (
    AuthorizationError,
    ConflictError,
    FullError,
    NotFoundError,
    NotReadyError,
    RoundClosedError,
    ValidationError,
)
from .locks import LobbyLocks
from .models import LobbyModel, RoundModel
from .options import OptionProvider, distance_miles
from .repository import SqlRepository
from .schemas import (
    MAX_RADIUS_MILES,
    MAX_TOTAL_ACTIVITIES,
    MAX_USERNAME_LENGTH,
    MAX_WINDOW_HOURS,
    MIN_RADIUS_MILES,
    ActivityCategory,
    CompleteRoundResponse,
    CreateLobbyRequest,
    Itinerary,
    LeaderboardEntry,
    Lobby,
    LobbyStatus,
    LobbyStatusView,
    Location,
    RoundLeaderboard,
    RoundOptions,
    RoundState,
    RoundStatusView,
    StartResponse,
    User,
    VoteAck,
    VoteRequest,
    WaitingStatus,
)
from .sequencer import build_round_sequence, total_rounds
from .voting import Evaluation, Outcome, evaluate_round, finished_members, tally

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits
MAX_CODE_ATTEMPTS = 20
MAX_DAYS_AHEAD = 365
OWNER_READY_MESSAGE = "The lobby owner is always ready."


def normalize_username(raw_username: str) -> str:
    return unicodedata.normalize("NFC", (raw_username or "").strip())


def username_key(username: str) -> str:
    return username.casefold()


def validate_lobby_request(payload: CreateLobbyRequest, today: date) -> None:
    """Raise ValidationError naming the first constraint the request violates."""
    if not MIN_RADIUS_MILES <= payload.radius <= MAX_RADIUS_MILES:
        raise ValidationError(f"radius must be between {MIN_RADIUS_MILES} and {MAX_RADIUS_MILES:g} miles")
    if payload.date < today:
        raise ValidationError("date cannot be in the past")
    if payload.date > today + timedelta(days=MAX_DAYS_AHEAD):
        raise ValidationError("date cannot be more than 1 year ahead")
    if payload.start_hour >= payload.end_hour:
        raise ValidationError("start_hour must be before end_hour")
    hours = payload.end_hour - payload.start_hour
    if hours > MAX_WINDOW_HOURS:
        raise ValidationError(f"timeframe cannot exceed {MAX_WINDOW_HOURS} hours")
    activities = total_rounds(payload.activity_counts)
    if not 1 <= activities <= MAX_TOTAL_ACTIVITIES:
        raise ValidationError(f"select between 1 and {MAX_TOTAL_ACTIVITIES} activities")
    if hours < activities:
        raise ValidationError(f"a {hours}-hour timeframe cannot fit {activities} activities")


class ConsensusService:
    def __init__(
        self,
        store: SqlRepository,
        option_provider: Optional[OptionProvider] = None,
        itinerary_engine: Optional[ItineraryEngine] = None,
        locks: Optional[LobbyLocks] = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.store = store
        self.option_provider = option_provider or OptionProvider()
        self.itinerary_engine = itinerary_engine or ItineraryEngine()
        self.locks = locks or LobbyLocks()
        self.today = today
        try:
            self.code_length = max(4, min(int(os.getenv("LOBBY_CODE_LENGTH", "6")), 6))
        except ValueError:
            self.code_length = 6

    # Identity

    def signup(self, raw_username: str) -> User:
        username = normalize_username(raw_username)
        if not username:
            raise ValidationError("username is required")
        if len(username) > MAX_USERNAME_LENGTH:
            raise ValidationError(f"username must be at most {MAX_USERNAME_LENGTH} characters")
        if self.store.find_user_by_username(username_key(username)):
            raise ConflictError("Username is already taken")
        user = self.store.create_user(str(uuid4()), username, username_key(username))
        logger.info("user_signup user_id=%s", user.user_id)
        return user

    def login(self, raw_username: str) -> User:
        username = normalize_username(raw_username)
        user = self.store.find_user_by_username(username_key(username)) if username else None
        if not user:
            raise NotFoundError("User not found")
        return user

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    # Lobby registry

    def create_lobby(self, payload: CreateLobbyRequest) -> Lobby:
        host = self._require_user(payload.host_id)
        validate_lobby_request(payload, self.today())
        lobby_id = str(uuid4())
        with self.locks.hold(lobby_id), self.store.session() as db:
            model = LobbyModel(
                id=lobby_id,
                code=self._generate_code(db),
                host_id=host.user_id,
                lat=payload.location.lat,
                lon=payload.location.lon,
                radius=payload.radius,
                date=payload.date,
                start_hour=payload.start_hour,
                end_hour=payload.end_hour,
                activity_counts={category.value: int(count) for category, count in payload.activity_counts.items() if count},
                max_members=payload.max_members,
                status=LobbyStatus.waiting.value,
                current_round=0,
                total_rounds=total_rounds(payload.activity_counts),
                join_seq=0,
                created_at=self._now(),
            )
            db.add(model)
            self.store.add_member(db, model, host, is_owner=True)
            db.flush()
            lobby = self.store.to_lobby(model)
        logger.info("lobby_created lobby_id=%s code=%s rounds=%s", lobby.lobby_id, lobby.code, lobby.total_rounds)
        return lobby

    def join_lobby(self, code: str, user_id: str) -> Lobby:
        user = self._require_user(user_id)
        normalized = (code or "").strip().upper()
        lobby_id = self.store.find_lobby_id_by_code(normalized)
        if not lobby_id:
            raise NotFoundError("Lobby not found")
        with self.locks.hold(lobby_id), self.store.session() as db:
            model = self._require_lobby(db, lobby_id)
            if self.store.find_member(model, user.user_id):
                return self.store.to_lobby(model)
            if model.status != LobbyStatus.waiting.value:
                raise ConflictError("Lobby has already started")
            if len(model.members) >= model.max_members:
                raise FullError("Lobby is full")
            self.store.add_member(db, model, user)
            db.flush()
            lobby = self.store.to_lobby(model)
        logger.info("lobby_joined lobby_id=%s user_id=%s members=%s", lobby_id, user.user_id, len(lobby.members))
        return lobby

    def leave_lobby(self, user_id: str) -> Optional[LobbyStatusView]:
        """Remove the user from their waiting lobby; returns None when it closes."""
        lobby_id = self.store.find_waiting_lobby_id_for_user(user_id)
        if not lobby_id:
            raise NotFoundError("User is not in a lobby that can be left")
        with self.locks.hold(lobby_id), self.store.session() as db:
            model = self._require_lobby(db, lobby_id)
            member = self.store.find_member(model, user_id)
            if not member:
                raise NotFoundError("User is not a member of this lobby")
            if model.status != LobbyStatus.waiting.value:
                raise ConflictError("Cannot leave a lobby once the game has started")
            was_owner = member.is_owner
            model.members.remove(member)
            db.flush()
            if not model.members:
                model.status = LobbyStatus.closed.value
                logger.info("lobby_closed lobby_id=%s", lobby_id)
                closed = True
            else:
                closed = False
                if was_owner:
                    successor = min(model.members, key=lambda item: item.joined_seq)
                    successor.is_owner = True
                    successor.is_ready = True
                    model.host_id = successor.user_id
                    logger.info("lobby_owner_changed lobby_id=%s user_id=%s", lobby_id, successor.user_id)
                view = self._status_view(model)
        return None if closed else view

    def set_ready(self, lobby_id: str, user_id: str, ready: bool) -> LobbyStatusView:
        with self.locks.hold(lobby_id), self.store.session() as db:
            model = self._require_lobby(db, lobby_id)
            member = self.store.find_member(model, user_id)
            if not member:
                raise NotFoundError("User is not a member of this lobby")
            if member.is_owner:
                return self._status_view(model, message=OWNER_READY_MESSAGE)
            if model.status != LobbyStatus.waiting.value:
                raise ConflictError("Ready state cannot change after the game has started")
            member.is_ready = bool(ready)
            db.flush()
            return self._status_view(model)

    def get_status(self, lobby_id: str) -> LobbyStatusView:
        with self.store.session() as db:
            return self._status_view(self._require_lobby(db, lobby_id))

    def start_game(self, lobby_id: str, user_id: str) -> StartResponse:
        with self.locks.hold(lobby_id), self.store.session() as db:
            model = self._require_lobby(db, lobby_id)
            if model.host_id != user_id:
                raise AuthorizationError("Only the lobby owner can start the game")
            if model.status != LobbyStatus.waiting.value:
                raise ConflictError("Game has already started")
            if not all(member.is_ready for member in model.members):
                raise NotReadyError("Not every member is ready")

            lobby = self.store.to_lobby(model)
            sequence = build_round_sequence(lobby.activity_counts)
            per_round = self.option_provider.options_for_rounds(
                [slot.category for slot in sequence],
                lobby.date,
                lobby.start_hour,
                lobby.end_hour,
                lobby.location,
                lobby.radius,
            )
            for slot, options in zip(sequence, per_round):
                model.rounds.append(
                    RoundModel(
                        lobby_id=model.id,
                        round_number=slot.round_number,
                        category=slot.category.value,
                        options=[option.model_dump(mode="json") for option in options],
                        active_option_ids=[option.id for option in options],
                        pass_number=0,
                        tiebreak_count=0,
                        retry_count=0,
                        status=RoundState.collecting.value if slot.round_number == 1 else RoundState.pending.value,
                    )
                )
            model.status = LobbyStatus.in_progress.value
            model.current_round = 1
            model.total_rounds = len(sequence)
            db.flush()
        logger.info("lobby_started lobby_id=%s rounds=%s", lobby_id, len(sequence))
        return StartResponse(
            lobby_id=lobby_id,
            current_round=1,
            total_rounds=len(sequence),
            category=sequence[0].category,
        )

    # Rounds and votes

    def round_options(self, lobby_id: str, round_number: int) -> RoundOptions:
        with self.store.session() as db:
            model = self._require_lobby(db, lobby_id)
            round_model = self._require_started_round(model, round_number)
            active = set(round_model.active_option_ids or [])
            options = [option for option in self.store.round_options(round_model) if option.id in active]
            return RoundOptions(
                round=round_number,
                category=ActivityCategory(round_model.category),
                is_tiebreak=round_model.tiebreak_count > 0 and round_model.status == RoundState.collecting.value,
                options=options,
            )

    def vote(self, lobby_id: str, payload: VoteRequest) -> VoteAck:
        with self.locks.hold(lobby_id), self.store.session() as db:
            model = self._require_lobby(db, lobby_id)
            if not self.store.find_member(model, payload.user_id):
                raise AuthorizationError("User is not a member of this lobby")
            round_model = self._require_round(model, payload.round_number)
            if round_model.status in (RoundState.complete.value, RoundState.skipped.value):
                raise RoundClosedError(f"Round {payload.round_number} is already closed")
            if model.status != LobbyStatus.in_progress.value:
                raise RoundClosedError("Voting is not open for this lobby")
            if round_model.status != RoundState.collecting.value:
                raise ConflictError(f"Round {payload.round_number} has not started yet")
            if payload.option_id not in (round_model.active_option_ids or []):
                raise ValidationError(f"Option {payload.option_id} is not part of round {payload.round_number}")

            self.store.upsert_vote(
                db,
                lobby_id,
                round_model.round_number,
                round_model.pass_number,
                payload.user_id,
                payload.option_id,
                payload.vote,
            )
            evaluation = self._evaluate(db, model, round_model)
            if evaluation.outcome != Outcome.pending:
                self._apply_evaluation(model, round_model, evaluation)
            db.flush()
            return VoteAck(
                round_number=round_model.round_number,
                outcome=evaluation.outcome.value,
                round_resolved=evaluation.resolved,
            )

    def round_status(self, lobby_id: str, round_number: int) -> RoundStatusView:
        with self.store.session() as db:
            model = self._require_lobby(db, lobby_id)
            round_model = self._require_round(model, round_number)
            active = list(round_model.active_option_ids or [])
            member_ids = [member.user_id for member in model.members]
            votes = self.store.pass_votes(db, lobby_id, round_number, round_model.pass_number)
            finishers = finished_members(active, member_ids, votes)
            yes_counts, _ = tally(active, finishers, votes)
            resolved = round_model.status in (RoundState.complete.value, RoundState.skipped.value)
            is_tie = round_model.status == RoundState.collecting.value and round_model.last_outcome == Outcome.tie.value
            return RoundStatusView(
                round_number=round_number,
                category=ActivityCategory(round_model.category),
                status=RoundState(round_model.status),
                consensus_reached=round_model.status == RoundState.complete.value,
                consensus_option_id=round_model.winner_option_id,
                is_tie=is_tie,
                tied_options=active if is_tie else [],
                all_voted=resolved or (bool(member_ids) and len(finishers) == len(member_ids)),
                pass_number=round_model.pass_number,
                yes_counts=yes_counts,
            )

    def complete_round(self, lobby_id: str, round_number: int, selected_option_id: str, user_id: str) -> CompleteRoundResponse:
        with self.store.session() as db:
            model = self._require_lobby(db, lobby_id)
            if not self.store.find_member(model, user_id):
                raise AuthorizationError("User is not a member of this lobby")
            round_model = self._require_round(model, round_number)
            if round_model.status == RoundState.complete.value:
                if round_model.winner_option_id != selected_option_id:
                    raise ConflictError(
                        f"Round {round_number} resolved to option {round_model.winner_option_id}, not {selected_option_id}"
                    )
            elif round_model.status != RoundState.skipped.value:
                raise ConflictError(f"Round {round_number} has not reached consensus yet")
            all_done = model.status in (LobbyStatus.awaiting_itinerary.value, LobbyStatus.complete.value)
            return CompleteRoundResponse(
                all_rounds_completed=all_done,
                next_round=round_number + 1 if round_number < model.total_rounds else None,
            )

    def waiting_status(self, lobby_id: str) -> WaitingStatus:
        with self.store.session() as db:
            model = self._require_lobby(db, lobby_id)
            waiting: List[str] = []
            round_model = self.store.get_round(model, model.current_round)
            if round_model is not None and round_model.status == RoundState.collecting.value:
                active = list(round_model.active_option_ids or [])
                member_ids = [member.user_id for member in model.members]
                votes = self.store.pass_votes(db, lobby_id, round_model.round_number, round_model.pass_number)
                done = set(finished_members(active, member_ids, votes))
                waiting = [member.username for member in model.members if member.user_id not in done]
            return WaitingStatus(
                status=LobbyStatus(model.status),
                current_round=model.current_round,
                total_rounds=model.total_rounds,
                users_waiting=waiting,
                all_finished=model.status in (LobbyStatus.awaiting_itinerary.value, LobbyStatus.complete.value),
            )

    def leaderboard(self, lobby_id: str, round_number: int) -> RoundLeaderboard:
        with self.store.session() as db:
            model = self._require_lobby(db, lobby_id)
            round_model = self._require_started_round(model, round_number)
            origin = Location(lat=model.lat, lon=model.lon)
            active = set(round_model.active_option_ids or [])
            options = [option for option in self.store.round_options(round_model) if option.id in active]
            member_ids = [member.user_id for member in model.members]
            votes = self.store.pass_votes(db, lobby_id, round_number, round_model.pass_number)
            counts, unanimous = tally([option.id for option in options], member_ids, votes)
            entries = [
                LeaderboardEntry(
                    option_id=option.id,
                    name=option.name,
                    yays=counts.get(option.id, 0),
                    unanimous=unanimous.get(option.id, False),
                    distance_miles=round(distance_miles(origin, option.location), 2),
                )
                for option in options
            ]
            entries.sort(key=lambda entry: (-entry.yays, entry.distance_miles))
            return RoundLeaderboard(
                round_number=round_number,
                category=ActivityCategory(round_model.category),
                entries=entries,
            )

    # Itinerary

    def get_itinerary(self, lobby_id: str) -> Itinerary:
        with self.locks.hold(lobby_id), self.store.session() as db:
            model = self._require_lobby(db, lobby_id)
            return self._load_or_generate_itinerary(db, model)

    def move_activity(self, lobby_id: str, user_id: str, from_index: int, to_index: int) -> Itinerary:
        with self.locks.hold(lobby_id), self.store.session() as db:
            model = self._require_lobby(db, lobby_id)
            if model.host_id != user_id:
                raise AuthorizationError("Only the lobby owner can reorder the itinerary")
            itinerary = self._load_or_generate_itinerary(db, model)
            updated = self.itinerary_engine.move_activity(itinerary, from_index, to_index)
            if updated is not itinerary:
                self.store.save_itinerary(db, updated)
                logger.info("itinerary_reordered lobby_id=%s from=%s to=%s", lobby_id, from_index, to_index)
            return updated

    def _load_or_generate_itinerary(self, db: Session, model: LobbyModel) -> Itinerary:
        if model.status not in (LobbyStatus.awaiting_itinerary.value, LobbyStatus.complete.value):
            raise ConflictError("Itinerary is not ready until every round is resolved")
        existing = self.store.get_itinerary(db, model.id)
        if existing:
            return existing

        winners = []
        for round_model in model.rounds:
            if round_model.status != RoundState.complete.value:
                continue
            by_id = {option.id: option for option in self.store.round_options(round_model)}
            winner = by_id.get(round_model.winner_option_id)
            if winner:
                winners.append((round_model.round_number, winner))
        itinerary = self.itinerary_engine.generate(model.id, model.date, model.start_hour, model.end_hour, winners)
        self.store.save_itinerary(db, itinerary)
        model.status = LobbyStatus.complete.value
        db.flush()
        logger.info("itinerary_generated lobby_id=%s activities=%s", model.id, len(itinerary.activities))
        return itinerary

    # Helpers

    def _evaluate(self, db: Session, model: LobbyModel, round_model: RoundModel) -> Evaluation:
        member_ids = [member.user_id for member in model.members]
        votes = self.store.pass_votes(db, model.id, round_model.round_number, round_model.pass_number)
        try:
            return evaluate_round(
                list(round_model.active_option_ids or []),
                member_ids,
                votes,
                tiebreak_count=round_model.tiebreak_count,
                retry_count=round_model.retry_count,
            )
        except Exception:
            logger.exception("round_evaluation_failed lobby_id=%s round=%s", model.id, round_model.round_number)
            return Evaluation(Outcome.pending)

    def _apply_evaluation(self, model: LobbyModel, round_model: RoundModel, evaluation: Evaluation) -> None:
        round_model.last_outcome = evaluation.outcome.value
        if evaluation.outcome in (Outcome.consensus, Outcome.forced):
            round_model.status = RoundState.complete.value
            round_model.winner_option_id = evaluation.winner_option_id
        elif evaluation.outcome == Outcome.skipped:
            round_model.status = RoundState.skipped.value
        elif evaluation.outcome == Outcome.tie:
            round_model.active_option_ids = list(evaluation.next_active_ids)
            round_model.pass_number += 1
            round_model.tiebreak_count += 1
        else:
            round_model.active_option_ids = list(evaluation.next_active_ids)
            round_model.pass_number += 1
            round_model.retry_count += 1
        logger.info(
            "round_evaluated lobby_id=%s round=%s outcome=%s winner=%s",
            model.id,
            round_model.round_number,
            evaluation.outcome.value,
            evaluation.winner_option_id,
        )
        if evaluation.resolved:
            self._advance(model, round_model)

    def _advance(self, model: LobbyModel, round_model: RoundModel) -> None:
        next_round = self.store.get_round(model, round_model.round_number + 1)
        if next_round is None:
            model.status = LobbyStatus.awaiting_itinerary.value
            logger.info("lobby_rounds_finished lobby_id=%s", model.id)
            return
        next_round.status = RoundState.collecting.value
        model.current_round = next_round.round_number

    def _require_lobby(self, db: Session, lobby_id: str) -> LobbyModel:
        model = self.store.get_lobby_model(db, lobby_id)
        if not model or model.status == LobbyStatus.closed.value:
            raise NotFoundError("Lobby not found")
        return model

    def _require_round(self, model: LobbyModel, round_number: int) -> RoundModel:
        if model.status == LobbyStatus.waiting.value:
            raise ConflictError("Game has not started yet")
        round_model = self.store.get_round(model, round_number)
        if round_model is None:
            raise NotFoundError(f"Round {round_number} not found")
        return round_model

    def _require_started_round(self, model: LobbyModel, round_number: int) -> RoundModel:
        round_model = self._require_round(model, round_number)
        if round_model.status == RoundState.pending.value:
            raise ConflictError(f"Round {round_number} has not started yet")
        return round_model

    def _status_view(self, model: LobbyModel, message: Optional[str] = None) -> LobbyStatusView:
        lobby = self.store.to_lobby(model)
        return LobbyStatusView(
            lobby_id=lobby.lobby_id,
            code=lobby.code,
            status=lobby.status,
            members=lobby.members,
            all_ready=lobby.all_ready,
            max_members=lobby.max_members,
            current_round=lobby.current_round,
            total_rounds=lobby.total_rounds,
            message=message,
        )

    def _generate_code(self, db: Session) -> str:
        for _ in range(MAX_CODE_ATTEMPTS):
            code = "".join(secrets.choice(CODE_ALPHABET) for _ in range(self.code_length))
            if not self.store.code_in_use(db, code):
                return code
        raise ConflictError("Could not allocate a lobby code, please retry")

    @staticmethod
    def _now() -> str:
        return datetime.utcnow().isoformat()
