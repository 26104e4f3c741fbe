"""
Scheduling backend interface and the business rules shared by all backends.

The tool dispatcher only marshals arguments and results; everything about
opening hours, slot size, which calendar belongs to which barber and how long
a service takes lives here.
"""
from __future__ import annotations

import abc
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, Iterator, List, Optional, Tuple
from zoneinfo import ZoneInfo

from phone_relay.errors import SchedulingError

Interval = Tuple[datetime, datetime]


@dataclass
class BusinessRules:
    """Opening hours, slot grid and service durations for one shop."""

    calendar_ids: Dict[str, str] = field(default_factory=dict)
    timezone: str = "Europe/Sofia"
    opening_hour: int = 9
    closing_hour: int = 19
    slot_minutes: int = 30
    service_durations: Dict[str, int] = field(default_factory=dict)
    default_duration_minutes: int = 30

    @classmethod
    def from_settings(cls, settings: Any) -> "BusinessRules":
        return cls(
            calendar_ids=dict(settings.calendar_ids),
            timezone=settings.business_timezone,
            opening_hour=settings.opening_hour,
            closing_hour=settings.closing_hour,
            slot_minutes=settings.slot_minutes,
            service_durations=dict(settings.service_durations),
            default_duration_minutes=settings.default_duration_minutes,
        )

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @property
    def resources(self) -> List[str]:
        return list(self.calendar_ids)

    def calendar_id_for(self, resource: str) -> str:
        """Map a barber name to a calendar id (case-insensitive)."""
        for name, calendar_id in self.calendar_ids.items():
            if name.casefold() == resource.strip().casefold():
                return calendar_id
        raise SchedulingError(f'Barber "{resource}" not found.')

    def canonical_resource(self, resource: str) -> str:
        for name in self.calendar_ids:
            if name.casefold() == resource.strip().casefold():
                return name
        raise SchedulingError(f'Barber "{resource}" not found.')

    def day_window(self, day: date) -> Interval:
        tz = self.tz
        return (
            datetime.combine(day, time(self.opening_hour), tzinfo=tz),
            datetime.combine(day, time(self.closing_hour), tzinfo=tz),
        )

    def iter_slots(self, day: date) -> Iterator[Interval]:
        start, end = self.day_window(day)
        step = timedelta(minutes=self.slot_minutes)
        current = start
        while current + step <= end:
            yield current, current + step
            current += step

    def free_slots(self, day: date, busy: List[Interval]) -> List[str]:
        """Slot start times (HH:MM, shop time) that overlap no busy interval."""
        return [
            start.strftime("%H:%M")
            for start, end in self.iter_slots(day)
            if not any(start < b_end and b_start < end for b_start, b_end in busy)
        ]

    def duration_for(self, service: str, requested: Optional[int] = None) -> int:
        if requested:
            return int(requested)
        return self.service_durations.get(service.strip().casefold(), self.default_duration_minutes)

    def localize(self, moment: datetime) -> datetime:
        """Naive datetimes are shop-local; aware ones are converted."""
        if moment.tzinfo is None:
            return moment.replace(tzinfo=self.tz)
        return moment.astimezone(self.tz)

    def check_within_hours(self, start: datetime, end: datetime) -> None:
        open_at, close_at = self.day_window(start.date())
        if start < open_at or end > close_at:
            raise SchedulingError(
                f"Requested time {start:%H:%M}-{end:%H:%M} is outside opening hours "
                f"{self.opening_hour:02d}:00-{self.closing_hour:02d}:00."
            )


class SchedulingBackend(abc.ABC):
    """
    The two operations the voice agent can call.

    Implementations raise SchedulingError for rejected requests and backend
    failures; the dispatcher turns those into error-shaped tool results.
    """

    def __init__(self, rules: BusinessRules):
        self.rules = rules

    @abc.abstractmethod
    async def check_availability(self, day: date, resource: str) -> Dict[str, Any]:
        """Return free and busy slots for one barber on one day."""

    @abc.abstractmethod
    async def create_booking(
        self,
        start_time: datetime,
        resource: str,
        service: str,
        client_name: str,
        duration_minutes: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Book an appointment and return a success payload."""

    def _availability_result(self, day: date, resource: str, busy: List[Interval]) -> Dict[str, Any]:
        return {
            "date": day.isoformat(),
            "barber": resource,
            "available_slots": self.rules.free_slots(day, busy),
            "busy_slots": [
                {"start": b_start.astimezone(self.rules.tz).strftime("%H:%M"),
                 "end": b_end.astimezone(self.rules.tz).strftime("%H:%M")}
                for b_start, b_end in sorted(busy)
            ],
        }
