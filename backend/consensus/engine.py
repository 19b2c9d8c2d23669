from __future__ import annotations

import logging
import re
from datetime import date, datetime
from typing import List, Sequence, Tuple

from .errors import ConflictError, OverflowError, ValidationError
from .options import client_weekday, is_open_during
from .schemas import Itinerary, ItineraryActivity, Option

logger = logging.getLogger(__name__)

MIN_ACTIVITY_HOURS = 1
MAX_ACTIVITY_HOURS = 3
OVERFLOW_TIME = "N/A"
_TIME_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})$")


def format_hour(hour: int) -> str:
    return f"{hour:02d}:00"


def parse_hour(value: str) -> int | None:
    match = _TIME_PATTERN.match(value or "")
    if not match:
        return None
    return int(match.group(1))


class ItineraryEngine:
    def generate(
        self,
        lobby_id: str,
        on_date: date,
        start_hour: int,
        end_hour: int,
        winners: Sequence[Tuple[int, Option]],
    ) -> Itinerary:
        activities = [
            ItineraryActivity(
                id=option.id,
                name=option.name,
                category=option.category,
                round_number=round_number,
                time=OVERFLOW_TIME,
                duration=self._clamp_duration(option.duration),
                hours=option.hours,
                location=option.location,
                address=option.address,
                image=option.image,
            )
            for round_number, option in sorted(winners, key=lambda item: item[0])
        ]
        return Itinerary(
            lobby_id=lobby_id,
            generated_at=datetime.utcnow().isoformat(),
            date=on_date,
            start_hour=start_hour,
            end_hour=end_hour,
            activities=self.schedule(activities, start_hour, end_hour),
        )

    def schedule(self, activities: Sequence[ItineraryActivity], start_hour: int, end_hour: int) -> List[ItineraryActivity]:
        """Assign start times walking forward from start_hour.

        An activity that would start at or after end_hour is kept and marked
        as overflow instead of being dropped.
        """
        current = max(0, min(23, start_hour))
        limit = max(0, min(23, end_hour))
        scheduled: List[ItineraryActivity] = []
        for activity in activities:
            duration = self._clamp_duration(activity.duration)
            if current >= limit:
                scheduled.append(activity.model_copy(update={"time": OVERFLOW_TIME, "duration": duration, "overflow": True}))
                continue
            scheduled.append(activity.model_copy(update={"time": format_hour(current), "duration": duration, "overflow": False}))
            current = min(limit, current + duration)
        return scheduled

    def move_activity(self, itinerary: Itinerary, from_index: int, to_index: int) -> Itinerary:
        """Return a copy of the itinerary with one activity moved.

        The given itinerary is never modified; a rejected move raises before
        anything is returned.
        """
        count = len(itinerary.activities)
        if not 0 <= from_index < count or not 0 <= to_index < count:
            raise ValidationError(f"Activity positions must be between 0 and {count - 1}")
        if from_index == to_index:
            return itinerary

        reordered = list(itinerary.activities)
        moved = reordered.pop(from_index)
        reordered.insert(to_index, moved)
        recalculated = self.schedule(reordered, itinerary.start_hour, itinerary.end_hour)

        moved_slot = recalculated[to_index]
        moved_start = parse_hour(moved_slot.time)
        if moved_slot.overflow or moved_start is None or moved_start + moved_slot.duration > itinerary.end_hour:
            raise OverflowError(
                f"Moving {moved.name} would exceed the end time ({format_hour(itinerary.end_hour)})."
            )

        weekday = client_weekday(itinerary.date)
        for activity in recalculated:
            start = parse_hour(activity.time)
            if activity.overflow or start is None:
                continue
            if not is_open_during(activity.hours, start, start + activity.duration, weekday):
                logger.info("itinerary_move_rejected lobby_id=%s activity=%s time=%s", itinerary.lobby_id, activity.name, activity.time)
                raise ConflictError(f"{activity.name} is not open at {activity.time}. Please choose a different time slot.")

        return itinerary.model_copy(update={"activities": recalculated})

    @staticmethod
    def _clamp_duration(duration: int | None) -> int:
        return max(MIN_ACTIVITY_HOURS, min(MAX_ACTIVITY_HOURS, duration or MIN_ACTIVITY_HOURS))
