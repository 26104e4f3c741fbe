"""Google Calendar scheduling backend.

Authenticates with an OAuth2 refresh token and talks to Calendar API v3 via
google-api-python-client. The client library is synchronous, so every request
runs in a worker thread with its own authorised httplib2.Http: the shared
service object is never used with a shared transport across concurrent calls.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import httplib2
from google.auth.exceptions import RefreshError
from google.oauth2.credentials import Credentials
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from phone_relay.errors import SchedulingError
from phone_relay.scheduling.base import BusinessRules, Interval, SchedulingBackend

logger = logging.getLogger(__name__)

TOKEN_URI = "https://oauth2.googleapis.com/token"
CALENDAR_SCOPES = ["https://www.googleapis.com/auth/calendar"]


class GoogleCalendarBackend(SchedulingBackend):
    """SchedulingBackend over Google Calendar.

    Usage:
        backend = GoogleCalendarBackend(
            rules,
            client_id="...",
            client_secret="...",
            refresh_token="...",
        )
        slots = await backend.check_availability(date(2024, 7, 28), "Jason")
    """

    def __init__(
        self,
        rules: BusinessRules,
        client_id: str = "",
        client_secret: str = "",
        refresh_token: str = "",
        credentials: Optional[Credentials] = None,
        service: Any = None,
    ):
        """Initialize the backend.

        Args:
            rules: Shop business rules (calendar ids, hours, durations)
            client_id: OAuth2 client id
            client_secret: OAuth2 client secret
            refresh_token: Long-lived refresh token for the shop account
            credentials: Pre-built credentials (overrides the three above)
            service: Pre-built Calendar service resource (tests)
        """
        super().__init__(rules)
        if credentials is None and refresh_token:
            credentials = Credentials(
                None,
                refresh_token=refresh_token,
                token_uri=TOKEN_URI,
                client_id=client_id,
                client_secret=client_secret,
                scopes=CALENDAR_SCOPES,
            )
        self._credentials = credentials
        self._service = service

    def _get_service(self) -> Any:
        if self._service is None:
            if self._credentials is None:
                raise SchedulingError("Google Calendar credentials are not configured.")
            self._service = build(
                "calendar", "v3", credentials=self._credentials, cache_discovery=False
            )
            logger.info("Google Calendar service initialized")
        return self._service

    def _new_http(self) -> Optional[AuthorizedHttp]:
        if self._credentials is None:
            return None
        return AuthorizedHttp(self._credentials, http=httplib2.Http())

    def _execute(self, make_request: Callable[[Any], Any]) -> Any:
        request = make_request(self._get_service())
        http = self._new_http()
        if http is None:
            return request.execute()
        return request.execute(http=http)

    async def _call(self, operation: str, make_request: Callable[[Any], Any]) -> Any:
        try:
            return await asyncio.to_thread(self._execute, make_request)
        except (HttpError, RefreshError, httplib2.HttpLib2Error, OSError) as e:
            logger.error(f"Google Calendar {operation} failed: {e}")
            raise SchedulingError(f"Calendar {operation} failed.") from e

    @staticmethod
    def _parse_event_time(value: Dict[str, str], tz: Any) -> datetime:
        if "dateTime" in value:
            # fromisoformat only accepts a trailing 'Z' from Python 3.11
            raw = value["dateTime"]
            if raw.endswith("Z"):
                raw = raw[:-1] + "+00:00"
            return datetime.fromisoformat(raw)
        # All-day event
        return datetime.combine(date.fromisoformat(value["date"]), datetime.min.time(), tzinfo=tz)

    def _busy_intervals(self, events: List[Dict[str, Any]]) -> List[Interval]:
        tz = self.rules.tz
        busy = []
        for event in events:
            if event.get("status") == "cancelled" or event.get("transparency") == "transparent":
                continue
            busy.append((
                self._parse_event_time(event["start"], tz),
                self._parse_event_time(event["end"], tz),
            ))
        return busy

    async def check_availability(self, day: date, resource: str) -> Dict[str, Any]:
        resource = self.rules.canonical_resource(resource)
        calendar_id = self.rules.calendar_id_for(resource)
        time_min, time_max = self.rules.day_window(day)

        response = await self._call(
            "availability lookup",
            lambda service: service.events().list(
                calendarId=calendar_id,
                timeMin=time_min.isoformat(),
                timeMax=time_max.isoformat(),
                singleEvents=True,
                orderBy="startTime",
            ),
        )
        busy = self._busy_intervals(response.get("items", []))
        logger.debug(f"{resource} has {len(busy)} busy interval(s) on {day.isoformat()}")
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
        calendar_id = self.rules.calendar_id_for(resource)
        start = self.rules.localize(start_time)
        end = start + timedelta(minutes=self.rules.duration_for(service, duration_minutes))
        self.rules.check_within_hours(start, end)

        event = {
            "summary": f"{service} - {client_name}",
            "description": f"Client: {client_name}\nBarber: {resource}\nService: {service}",
            "start": {"dateTime": start.isoformat(), "timeZone": self.rules.timezone},
            "end": {"dateTime": end.isoformat(), "timeZone": self.rules.timezone},
        }
        created = await self._call(
            "booking",
            lambda svc: svc.events().insert(calendarId=calendar_id, body=event),
        )

        logger.info(f"Booked {service} for {client_name} with {resource} at {start.isoformat()}")
        return {
            "success": True,
            "message": f"Appointment booked for {client_name} with {resource}.",
            "booking_id": created.get("id"),
            "start": start.isoformat(),
            "end": end.isoformat(),
        }
