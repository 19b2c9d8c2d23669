from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Generator, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .db import SessionLocal
from .errors import ConflictError
from .models import ItineraryModel, LobbyModel, MemberModel, RoundModel, UserModel, VoteModel
from .schemas import Itinerary, Location, Lobby, LobbyStatus, Member, Option, User

ACTIVE_STATUSES = (LobbyStatus.waiting.value, LobbyStatus.in_progress.value, LobbyStatus.awaiting_itinerary.value)


class SqlRepository:
    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        db = SessionLocal()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def create_user(self, user_id: str, username: str, username_key: str) -> User:
        # The unique username_key index settles concurrent signups for the same name.
        try:
            with self.session() as db:
                db.add(
                    UserModel(
                        id=user_id,
                        username=username,
                        username_key=username_key,
                        created_at=datetime.utcnow().isoformat(),
                    )
                )
        except IntegrityError as exc:
            raise ConflictError("Username is already taken") from exc
        return User(user_id=user_id, username=username)

    def get_user(self, user_id: str) -> Optional[User]:
        with self.session() as db:
            model = db.get(UserModel, user_id)
            if not model:
                return None
            return User(user_id=model.id, username=model.username)

    def find_user_by_username(self, username_key: str) -> Optional[User]:
        with self.session() as db:
            model = db.execute(select(UserModel).where(UserModel.username_key == username_key)).scalar_one_or_none()
            if not model:
                return None
            return User(user_id=model.id, username=model.username)

    def code_in_use(self, db: Session, code: str) -> bool:
        found = db.execute(
            select(LobbyModel.id).where(LobbyModel.code == code, LobbyModel.status.in_(ACTIVE_STATUSES))
        ).first()
        return found is not None

    def get_lobby_model(self, db: Session, lobby_id: str) -> Optional[LobbyModel]:
        return db.get(LobbyModel, lobby_id)

    def find_lobby_id_by_code(self, code: str) -> Optional[str]:
        with self.session() as db:
            return db.execute(
                select(LobbyModel.id)
                .where(LobbyModel.code == code, LobbyModel.status.in_(ACTIVE_STATUSES))
                .order_by(LobbyModel.created_at.desc())
            ).scalars().first()

    def find_waiting_lobby_id_for_user(self, user_id: str) -> Optional[str]:
        with self.session() as db:
            return db.execute(
                select(MemberModel.lobby_id)
                .join(LobbyModel, LobbyModel.id == MemberModel.lobby_id)
                .where(MemberModel.user_id == user_id, LobbyModel.status == LobbyStatus.waiting.value)
                .order_by(LobbyModel.created_at.desc())
            ).scalars().first()

    def add_member(self, db: Session, lobby: LobbyModel, user: User, is_owner: bool = False) -> MemberModel:
        lobby.join_seq = (lobby.join_seq or 0) + 1
        member = MemberModel(
            lobby_id=lobby.id,
            user_id=user.user_id,
            username=user.username,
            is_owner=is_owner,
            is_ready=is_owner,
            joined_seq=lobby.join_seq,
        )
        lobby.members.append(member)
        return member

    @staticmethod
    def find_member(lobby: LobbyModel, user_id: str) -> Optional[MemberModel]:
        for member in lobby.members:
            if member.user_id == user_id:
                return member
        return None

    @staticmethod
    def get_round(lobby: LobbyModel, round_number: int) -> Optional[RoundModel]:
        for round_model in lobby.rounds:
            if round_model.round_number == round_number:
                return round_model
        return None

    def upsert_vote(
        self,
        db: Session,
        lobby_id: str,
        round_number: int,
        pass_number: int,
        user_id: str,
        option_id: str,
        value: bool,
    ) -> None:
        model = db.execute(
            select(VoteModel).where(
                VoteModel.lobby_id == lobby_id,
                VoteModel.round_number == round_number,
                VoteModel.pass_number == pass_number,
                VoteModel.user_id == user_id,
                VoteModel.option_id == option_id,
            )
        ).scalar_one_or_none()
        if model:
            model.value = value
        else:
            db.add(
                VoteModel(
                    lobby_id=lobby_id,
                    round_number=round_number,
                    pass_number=pass_number,
                    user_id=user_id,
                    option_id=option_id,
                    value=value,
                )
            )
        db.flush()

    def pass_votes(self, db: Session, lobby_id: str, round_number: int, pass_number: int) -> Dict[tuple[str, str], bool]:
        rows = db.execute(
            select(VoteModel).where(
                VoteModel.lobby_id == lobby_id,
                VoteModel.round_number == round_number,
                VoteModel.pass_number == pass_number,
            )
        ).scalars().all()
        return {(row.user_id, row.option_id): bool(row.value) for row in rows}

    def save_itinerary(self, db: Session, itinerary: Itinerary) -> None:
        model = db.get(ItineraryModel, itinerary.lobby_id)
        payload = itinerary.model_dump(mode="json")
        if model:
            model.generated_at = itinerary.generated_at
            model.payload = payload
        else:
            db.add(
                ItineraryModel(
                    lobby_id=itinerary.lobby_id,
                    generated_at=itinerary.generated_at,
                    payload=payload,
                )
            )

    def get_itinerary(self, db: Session, lobby_id: str) -> Optional[Itinerary]:
        model = db.execute(select(ItineraryModel).where(ItineraryModel.lobby_id == lobby_id)).scalar_one_or_none()
        if not model:
            return None
        return Itinerary.model_validate(model.payload)

    @staticmethod
    def round_options(round_model: RoundModel) -> List[Option]:
        return [Option.model_validate(item) for item in round_model.options or []]

    @staticmethod
    def to_lobby(model: LobbyModel) -> Lobby:
        return Lobby(
            lobby_id=model.id,
            code=model.code,
            host_id=model.host_id,
            location=Location(lat=model.lat, lon=model.lon),
            radius=model.radius,
            date=model.date,
            start_hour=model.start_hour,
            end_hour=model.end_hour,
            activity_counts=model.activity_counts,
            max_members=model.max_members,
            status=model.status,
            current_round=model.current_round,
            total_rounds=model.total_rounds,
            members=[
                Member(
                    user_id=member.user_id,
                    username=member.username,
                    is_owner=member.is_owner,
                    is_ready=member.is_ready,
                )
                for member in model.members
            ],
        )
