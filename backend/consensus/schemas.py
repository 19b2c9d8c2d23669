from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, field_serializer, field_validator


class ActivityCategory(str, Enum):
    FOOD = "FOOD"
    RECREATION = "RECREATION"
    NATURE = "NATURE"
    ARTS = "ARTS"
    SOCIAL = "SOCIAL"

    @classmethod
    def _missing_(cls, value: object):
        if isinstance(value, str):
            return cls.__members__.get(value.strip().upper())
        return None


# Fixed round ordering; declaration order of the enum.
CATEGORY_ORDER: List[ActivityCategory] = list(ActivityCategory)


class LobbyStatus(str, Enum):
    waiting = "waiting"
    in_progress = "in_progress"
    awaiting_itinerary = "awaiting_itinerary"
    complete = "complete"
    closed = "closed"


class RoundState(str, Enum):
    pending = "pending"
    collecting = "collecting"
    complete = "complete"
    skipped = "skipped"


MIN_RADIUS_MILES = 0.5
MAX_RADIUS_MILES = 10.0
MAX_WINDOW_HOURS = 12
MAX_TOTAL_ACTIVITIES = 10
MAX_LOBBY_MEMBERS = 25
MAX_USERNAME_LENGTH = 20
WIRE_DATE_FORMAT = "%m/%d/%Y"


class Location(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)


class HoursSpec(BaseModel):
    open: int = Field(ge=0, le=24)
    close: int = Field(ge=0, le=24)
    # 0 = Sunday .. 6 = Saturday, matching the mobile client.
    days: Optional[List[int]] = None


class Option(BaseModel):
    id: str
    name: str
    category: ActivityCategory
    location: Location
    address: str = ""
    hours: Optional[HoursSpec] = None
    image: Optional[str] = None
    duration: int = 1
    rating: float = 4.5


class UserCredentials(BaseModel):
    username: str = Field(min_length=1)


class User(BaseModel):
    user_id: str
    username: str


def parse_wire_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return datetime.strptime(value.strip(), WIRE_DATE_FORMAT).date()
        except ValueError as exc:
            raise ValueError("date must use the MM/DD/YYYY format") from exc
    raise ValueError("date must use the MM/DD/YYYY format")


def format_wire_date(value: date) -> str:
    return value.strftime(WIRE_DATE_FORMAT)


class CreateLobbyRequest(BaseModel):
    host_id: str
    location: Location
    radius: float
    date: date
    start_hour: int = Field(ge=0, le=23)
    end_hour: int = Field(ge=0, le=23)
    activity_counts: Dict[ActivityCategory, int]
    max_members: int = Field(default=MAX_LOBBY_MEMBERS, ge=1, le=MAX_LOBBY_MEMBERS)

    @field_validator("date", mode="before")
    @classmethod
    def validate_date(cls, v: Any) -> date:
        return parse_wire_date(v)

    @field_validator("activity_counts")
    @classmethod
    def validate_counts(cls, v: Dict[ActivityCategory, int]):
        for category, count in v.items():
            if count < 0:
                raise ValueError(f"activity count for {category.value} must not be negative")
        return v


class JoinLobbyRequest(BaseModel):
    code: str = Field(min_length=1)
    user_id: str


class ReadyRequest(BaseModel):
    ready: bool = True


class Member(BaseModel):
    user_id: str
    username: str
    is_owner: bool
    is_ready: bool


class Lobby(BaseModel):
    lobby_id: str
    code: str
    host_id: str
    location: Location
    radius: float
    date: date
    start_hour: int
    end_hour: int
    activity_counts: Dict[ActivityCategory, int]
    max_members: int
    status: LobbyStatus
    current_round: int = 0
    total_rounds: int = 0
    members: List[Member] = Field(default_factory=list)

    @field_validator("date", mode="before")
    @classmethod
    def validate_date(cls, v: Any) -> date:
        return parse_wire_date(v)

    @field_serializer("date")
    def serialize_date(self, v: date) -> str:
        return format_wire_date(v)

    @property
    def all_ready(self) -> bool:
        return bool(self.members) and all(member.is_ready for member in self.members)


class LobbyStatusView(BaseModel):
    lobby_id: str
    code: str
    status: LobbyStatus
    members: List[Member]
    all_ready: bool
    max_members: int
    current_round: int
    total_rounds: int
    message: Optional[str] = None


class StartRequest(BaseModel):
    user_id: str


class StartResponse(BaseModel):
    ok: bool = True
    lobby_id: str
    current_round: int
    total_rounds: int
    category: ActivityCategory


class RoundSlot(BaseModel):
    round_number: int
    category: ActivityCategory


class RoundOptions(BaseModel):
    round: int
    category: ActivityCategory
    is_tiebreak: bool
    options: List[Option]


class VoteRequest(BaseModel):
    user_id: str
    option_id: str
    round_number: int = Field(ge=1)
    vote: bool

    @field_validator("vote", mode="before")
    @classmethod
    def validate_vote(cls, v: Union[bool, str]):
        # The mobile client sends swipe names; superlike counts as a plain yes.
        if isinstance(v, str):
            mapping = {"like": True, "superlike": True, "yes": True, "dislike": False, "no": False}
            lowered = v.strip().lower()
            if lowered in mapping:
                return mapping[lowered]
        return v


class VoteAck(BaseModel):
    ok: bool = True
    round_number: int
    outcome: str
    round_resolved: bool


class RoundStatusView(BaseModel):
    round_number: int
    category: ActivityCategory
    status: RoundState
    consensus_reached: bool
    consensus_option_id: Optional[str] = None
    is_tie: bool
    tied_options: List[str] = Field(default_factory=list)
    all_voted: bool
    pass_number: int
    yes_counts: Dict[str, int] = Field(default_factory=dict)


class CompleteRoundRequest(BaseModel):
    selected_option_id: str
    user_id: str


class CompleteRoundResponse(BaseModel):
    all_rounds_completed: bool
    next_round: Optional[int] = None


class WaitingStatus(BaseModel):
    status: LobbyStatus
    current_round: int
    total_rounds: int
    users_waiting: List[str]
    all_finished: bool


class LeaderboardEntry(BaseModel):
    option_id: str
    name: str
    yays: int
    unanimous: bool
    distance_miles: float


class RoundLeaderboard(BaseModel):
    round_number: int
    category: ActivityCategory
    entries: List[LeaderboardEntry]


class ItineraryActivity(BaseModel):
    id: str
    name: str
    category: ActivityCategory
    round_number: int
    time: str
    duration: int
    overflow: bool = False
    hours: Optional[HoursSpec] = None
    location: Location
    address: str = ""
    image: Optional[str] = None


class Itinerary(BaseModel):
    lobby_id: str
    generated_at: str
    date: date
    start_hour: int
    end_hour: int
    activities: List[ItineraryActivity]

    @field_validator("date", mode="before")
    @classmethod
    def validate_date(cls, v: Any) -> date:
        return parse_wire_date(v)

    @field_serializer("date")
    def serialize_date(self, v: date) -> str:
        return format_wire_date(v)


class MoveActivityRequest(BaseModel):
    user_id: str
    from_index: int
    to_index: int
