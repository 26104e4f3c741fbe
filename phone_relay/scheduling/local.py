"""
In-memory scheduling backend.

Used for local development (SCHEDULING_BACKEND=memory) and tests. Same
business rules as the Google backend, plus overlap rejection.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

from phone_relay.errors import SchedulingError
from phone_relay.scheduling.base import BusinessRules, Interval, SchedulingBackend

logger = logging.getLogger(__name__)


class InMemorySchedulingBackend(SchedulingBackend):
    def __init__(self, rules: BusinessRules):
        super().__init__(rules)
        self._bookings: Dict[str, List[Dict[str, Any]]] = {name: [] for name in rules.calendar_ids}
        self._lock = asyncio.Lock()

    def _busy(self, resource: str, day: date) -> List[Interval]:
        return [
            (b["start"], b["end"])
            for b in self._bookings.get(resource, [])
            if b["start"].date() == day
        ]

    async def check_availability(self, day: date, resource: str) -> Dict[str, Any]:
        resource = self.rules.canonical_resource(resource)
        async with self._lock:
            busy = self._busy(resource, day)
        return self._availability_result(day, resource, busy)

    async def create_booking(
        self,
        start_time: datetime,
        resource: str,
        service: str,
        client_name: str,
        duration_minutes: Optional[int] = None,
    ) -> Dict[str, Any]:
        resource = self.rules.canonical_resource(resource)
        start = self.rules.localize(start_time)
        end = start + timedelta(minutes=self.rules.duration_for(service, duration_minutes))
        self.rules.check_within_hours(start, end)

        async with self._lock:
            for b_start, b_end in self._busy(resource, start.date()):
                if start < b_end and b_start < end:
                    raise SchedulingError(
                        f"{resource} is already booked {b_start:%H:%M}-{b_end:%H:%M}."
                    )
            booking = {
                "id": uuid.uuid4().hex,
                "start": start,
                "end": end,
                "service": service,
                "client_name": client_name,
            }
            self._bookings.setdefault(resource, []).append(booking)

        logger.info(f"Booked {service} for {client_name} with {resource} at {start.isoformat()}")
        return {
            "success": True,
            "message": f"Appointment booked for {client_name} with {resource}.",
            "booking_id": booking["id"],
            "start": start.isoformat(),
            "end": end.isoformat(),
        }

    def list_bookings(self, resource: str) -> List[Dict[str, Any]]:
        return list(self._bookings.get(self.rules.canonical_resource(resource), []))
