from __future__ import annotations

from sqlalchemy import Boolean, Column, Date, Float, ForeignKey, Integer, JSON, String, UniqueConstraint
from sqlalchemy.orm import relationship

from .db import Base


class UserModel(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, index=True)
    username = Column(String, nullable=False)
    username_key = Column(String, nullable=False, unique=True, index=True)
    created_at = Column(String, nullable=False)


class LobbyModel(Base):
    __tablename__ = "lobbies"

    id = Column(String, primary_key=True, index=True)
    code = Column(String, nullable=False, index=True)
    host_id = Column(String, ForeignKey("users.id"), nullable=False)
    lat = Column(Float, nullable=False)
    lon = Column(Float, nullable=False)
    radius = Column(Float, nullable=False)
    date = Column(Date, nullable=False)
    start_hour = Column(Integer, nullable=False)
    end_hour = Column(Integer, nullable=False)
    activity_counts = Column(JSON, nullable=False)
    max_members = Column(Integer, nullable=False)
    status = Column(String, nullable=False, index=True)
    current_round = Column(Integer, nullable=False, default=0)
    total_rounds = Column(Integer, nullable=False, default=0)
    join_seq = Column(Integer, nullable=False, default=0)
    created_at = Column(String, nullable=False)

    members = relationship(
        "MemberModel",
        back_populates="lobby",
        cascade="all, delete-orphan",
        order_by="MemberModel.joined_seq",
    )
    rounds = relationship(
        "RoundModel",
        back_populates="lobby",
        cascade="all, delete-orphan",
        order_by="RoundModel.round_number",
    )
    itinerary = relationship("ItineraryModel", back_populates="lobby", uselist=False, cascade="all, delete-orphan")


class MemberModel(Base):
    __tablename__ = "members"
    __table_args__ = (UniqueConstraint("lobby_id", "user_id", name="uq_members_lobby_user"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    lobby_id = Column(String, ForeignKey("lobbies.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    username = Column(String, nullable=False)
    is_owner = Column(Boolean, nullable=False, default=False)
    is_ready = Column(Boolean, nullable=False, default=False)
    joined_seq = Column(Integer, nullable=False)

    lobby = relationship("LobbyModel", back_populates="members")


class RoundModel(Base):
    __tablename__ = "rounds"
    __table_args__ = (UniqueConstraint("lobby_id", "round_number", name="uq_rounds_lobby_number"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    lobby_id = Column(String, ForeignKey("lobbies.id", ondelete="CASCADE"), nullable=False, index=True)
    round_number = Column(Integer, nullable=False)
    category = Column(String, nullable=False)
    options = Column(JSON, nullable=False)
    active_option_ids = Column(JSON, nullable=False)
    pass_number = Column(Integer, nullable=False, default=0)
    tiebreak_count = Column(Integer, nullable=False, default=0)
    retry_count = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False)
    winner_option_id = Column(String, nullable=True)
    last_outcome = Column(String, nullable=True)

    lobby = relationship("LobbyModel", back_populates="rounds")


class VoteModel(Base):
    __tablename__ = "votes"
    __table_args__ = (
        UniqueConstraint("lobby_id", "round_number", "pass_number", "user_id", "option_id", name="uq_votes_pass_user_option"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    lobby_id = Column(String, ForeignKey("lobbies.id", ondelete="CASCADE"), nullable=False, index=True)
    round_number = Column(Integer, nullable=False)
    pass_number = Column(Integer, nullable=False)
    user_id = Column(String, nullable=False)
    option_id = Column(String, nullable=False)
    value = Column(Boolean, nullable=False)


class ItineraryModel(Base):
    __tablename__ = "itineraries"

    lobby_id = Column(String, ForeignKey("lobbies.id", ondelete="CASCADE"), primary_key=True)
    generated_at = Column(String, nullable=False)
    payload = Column(JSON, nullable=False)

    lobby = relationship("LobbyModel", back_populates="itinerary")
