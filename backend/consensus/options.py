from __future__ import annotations

import logging
import math
import os
from datetime import date
from typing import Dict, Iterable, List, Optional, Tuple

from .errors import NoOptionsError
from .schemas import ActivityCategory, HoursSpec, Location, Option

logger = logging.getLogger(__name__)

KM_PER_MILE = 1.609344
WEEKDAYS = [0, 1, 2, 3, 4, 5, 6]
WEEKEND = [0, 6]
TUESDAY_TO_SUNDAY = [0, 2, 3, 4, 5, 6]

# name, lat offset, lng offset, hours (open, close, days) or None, duration, rating, image
RawOption = Tuple[str, float, float, Optional[Tuple[int, int, Optional[List[int]]]], int, float, str]

OPTION_LIBRARY: Dict[ActivityCategory, List[RawOption]] = {
    ActivityCategory.FOOD: [
        ("Corner Taqueria", 0.004, 0.003, (10, 22, None), 1, 4.6, "https://images.unsplash.com/photo-1565299585323-38d6b0865b47?w=800&q=80"),
        ("Malatang House", -0.006, 0.002, (11, 21, None), 1, 4.0, "https://images.unsplash.com/photo-1549396535-c11d5c55b9df?w=800&q=80"),
        ("Sunrise Diner", 0.002, -0.005, (6, 15, None), 1, 4.3, "https://images.unsplash.com/photo-1528207776546-365bb710ee93?w=800&q=80"),
        ("Harbor Oyster Bar", 0.011, 0.008, (12, 23, TUESDAY_TO_SUNDAY), 2, 4.7, "https://images.unsplash.com/photo-1559339352-11d035aa65de?w=800&q=80"),
        ("Noodle Lab", -0.003, -0.009, (11, 22, None), 1, 4.4, "https://images.unsplash.com/photo-1569718212165-3a8278d5f624?w=800&q=80"),
        ("Late Night Slice", 0.007, -0.002, (17, 3, None), 1, 4.1, "https://images.unsplash.com/photo-1513104890138-7c749659a591?w=800&q=80"),
        ("Garden Brunch Cafe", -0.010, 0.006, (8, 14, WEEKEND), 1, 4.5, "https://images.unsplash.com/photo-1504754524776-8f4f37790ca0?w=800&q=80"),
    ],
    ActivityCategory.RECREATION: [
        ("Lucky Strike Lanes", 0.009, 0.004, (12, 24, None), 2, 4.2, "https://images.unsplash.com/photo-1538511059256-46e76f13f071?w=800&q=80"),
        ("Bayside Mini Golf", -0.008, 0.010, (10, 21, None), 1, 4.3, "https://images.unsplash.com/photo-1587174486073-ae5e5cff23aa?w=800&q=80"),
        ("Rock Climbing Gym", 0.005, -0.011, (6, 23, None), 2, 4.6, "https://images.unsplash.com/photo-1522163182402-834f871fd851?w=800&q=80"),
        ("Retro Arcade", -0.004, -0.004, (14, 2, None), 1, 4.4, "https://images.unsplash.com/photo-1511512578047-dfb367046420?w=800&q=80"),
        ("Go-Kart Track", 0.020, 0.015, (11, 20, WEEKEND), 1, 4.1, "https://images.unsplash.com/photo-1583900985737-6d0495555783?w=800&q=80"),
        ("Escape Room Co.", 0.001, 0.012, (12, 22, TUESDAY_TO_SUNDAY), 1, 4.8, "https://images.unsplash.com/photo-1590845947670-c009801ffa74?w=800&q=80"),
    ],
    ActivityCategory.NATURE: [
        ("Golden Gate Bridge Walk", 0.030, -0.020, None, 1, 4.8, "https://images.unsplash.com/photo-1501594907352-04cda38ebc29?w=800&q=80"),
        ("Riverside Park", 0.008, -0.012, (6, 22, None), 1, 4.6, "https://images.unsplash.com/photo-1498144846853-6cc3a433230a?w=800&q=80"),
        ("Botanical Garden", -0.012, 0.007, (9, 17, None), 2, 4.7, "https://images.unsplash.com/photo-1585320806297-9794b3e4eeae?w=800&q=80"),
        ("Ridge Trailhead", 0.040, 0.030, None, 3, 4.5, "https://images.unsplash.com/photo-1551632811-561732d1e306?w=800&q=80"),
        ("Lakeside Boardwalk", -0.015, -0.010, (7, 20, None), 1, 4.4, "https://images.unsplash.com/photo-1500530855697-b586d89ba3ee?w=800&q=80"),
        ("Sunset Lookout", 0.003, 0.002, None, 1, 4.6, "https://images.unsplash.com/photo-1470770841072-f978cf4d019e?w=800&q=80"),
    ],
    ActivityCategory.ARTS: [
        ("Palace of Fine Arts", 0.012, -0.006, None, 1, 4.7, "https://images.unsplash.com/photo-1521464302861-ce943915d1c3?w=800&q=80"),
        ("Modern Art Museum", -0.005, 0.009, (10, 17, TUESDAY_TO_SUNDAY), 2, 4.6, "https://images.unsplash.com/photo-1545624783-a912bb31c9a0?w=800&q=80"),
        ("City History Museum", -0.012, 0.008, (10, 18, None), 2, 4.5, "https://images.unsplash.com/photo-1566127444979-b3d2b654e3d7?w=800&q=80"),
        ("Indie Cinema", 0.003, 0.006, (13, 24, None), 2, 4.4, "https://images.unsplash.com/photo-1489599849927-2ee91cede3ba?w=800&q=80"),
        ("Street Mural Tour", -0.007, -0.013, None, 1, 4.3, "https://images.unsplash.com/photo-1499781350541-7783f6c6a0c8?w=800&q=80"),
        ("Pottery Studio", 0.014, -0.001, (11, 19, WEEKDAYS), 2, 4.5, "https://images.unsplash.com/photo-1565193566173-7a0ee3dbe261?w=800&q=80"),
    ],
    ActivityCategory.SOCIAL: [
        ("Sunset Lounge", 0.005, 0.018, (17, 2, None), 1, 4.3, "https://images.unsplash.com/photo-1514362545857-3bc16c4c7d1b?w=800&q=80"),
        ("Board Game Cafe", -0.002, 0.004, (11, 23, None), 2, 4.6, "https://images.unsplash.com/photo-1610890716171-6b1bb98ffd09?w=800&q=80"),
        ("Karaoke Box", 0.010, -0.008, (18, 4, None), 2, 4.2, "https://images.unsplash.com/photo-1516450360452-9312f5e86fc7?w=800&q=80"),
        ("Fisherman's Wharf Market", 0.025, -0.015, (9, 20, None), 1, 4.4, "https://images.unsplash.com/photo-1558280417-ea782f829e93?w=800&q=80"),
        ("Rooftop Beer Garden", -0.009, -0.006, (15, 24, TUESDAY_TO_SUNDAY), 1, 4.5, "https://images.unsplash.com/photo-1436076863939-06870fe779c2?w=800&q=80"),
        ("Trivia Night Pub", 0.006, 0.011, (19, 1, [3, 4]), 2, 4.3, "https://images.unsplash.com/photo-1572116469696-31de0f17cc34?w=800&q=80"),
    ],
}


def client_weekday(value: date) -> int:
    """Weekday with 0 = Sunday, as the mobile client numbers days."""
    return (value.weekday() + 1) % 7


def is_open_during(hours: Optional[HoursSpec], start_hour: int, end_hour: int, weekday: Optional[int]) -> bool:
    if hours is None or weekday is None:
        return True
    if hours.days is not None and weekday not in hours.days:
        return False
    if hours.close < hours.open:
        # Overnight hours: open from `open` until midnight, then until `close`.
        overlaps_evening = start_hour < 24 and end_hour > hours.open
        overlaps_early_morning = start_hour < hours.close
        return overlaps_evening or overlaps_early_morning
    return start_hour < hours.close and end_hour > hours.open


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    r = 6371
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return r * c


def distance_miles(origin: Location, target: Location) -> float:
    return haversine_km(origin.lat, origin.lon, target.lat, target.lon) / KM_PER_MILE


class OptionProvider:
    def __init__(self, library: Optional[Dict[ActivityCategory, List[RawOption]]] = None, per_round: Optional[int] = None) -> None:
        self.library = library if library is not None else OPTION_LIBRARY
        if per_round is None:
            try:
                per_round = int(os.getenv("OPTIONS_PER_ROUND", "5"))
            except ValueError:
                per_round = 5
        self.per_round = max(1, per_round)

    def get_options(
        self,
        category: ActivityCategory,
        on_date: date,
        start_hour: int,
        end_hour: int,
        location: Location,
        radius_miles: float,
    ) -> List[Option]:
        return [
            option
            for option in self.open_options(category, on_date, start_hour, end_hour, location)
            if distance_miles(location, option.location) <= radius_miles
        ]

    def open_options(
        self,
        category: ActivityCategory,
        on_date: date,
        start_hour: int,
        end_hour: int,
        location: Location,
    ) -> List[Option]:
        """Options open during the window on that weekday, at any distance, best rated first."""
        weekday = client_weekday(on_date)
        results: List[Option] = []
        for index, item in enumerate(self.library.get(category, [])):
            option = self._to_option(category, index, item, location)
            if is_open_during(option.hours, start_hour, end_hour, weekday):
                results.append(option)
        return sorted(results, key=lambda option: option.rating, reverse=True)

    def options_for_rounds(
        self,
        categories: Iterable[ActivityCategory],
        on_date: date,
        start_hour: int,
        end_hour: int,
        location: Location,
        radius_miles: float,
    ) -> List[List[Option]]:
        """Pick each round's candidates, preferring options no earlier round has shown."""
        used_ids: set[str] = set()
        per_round: List[List[Option]] = []
        for round_number, category in enumerate(categories, start=1):
            available = self.get_options(category, on_date, start_hour, end_hour, location, radius_miles)
            if not available and self.open_options(category, on_date, start_hour, end_hour, location):
                raise NoOptionsError(
                    f"No {category.value.lower()} options are within {radius_miles:g} miles of the lobby "
                    f"for round {round_number}. Increase the lobby's radius."
                )
            if not available:
                raise NoOptionsError(
                    f"No {category.value.lower()} options are open on {on_date.isoformat()} "
                    f"between {start_hour}:00 and {end_hour}:00 for round {round_number}. "
                    "Change the lobby's date or timeframe."
                )
            fresh = [option for option in available if option.id not in used_ids]
            chosen = (fresh or available)[: self.per_round]
            used_ids.update(option.id for option in chosen)
            per_round.append(chosen)
        logger.debug("options_for_rounds sizes=%s", [len(options) for options in per_round])
        return per_round

    @staticmethod
    def _to_option(category: ActivityCategory, index: int, item: RawOption, base: Location) -> Option:
        name, lat_offset, lng_offset, hours, duration, rating, image = item
        location = Location(lat=base.lat + lat_offset, lon=base.lon + lng_offset)
        return Option(
            id=f"{category.value.lower()}-{index + 1}",
            name=name,
            category=category,
            location=location,
            address=f"{location.lat:.4f}, {location.lon:.4f}",
            hours=HoursSpec(open=hours[0], close=hours[1], days=hours[2]) if hours else None,
            image=image,
            duration=duration,
            rating=rating,
        )
