"""Scheduling backends used by the booking tools"""
import logging

from .base import BusinessRules, SchedulingBackend
from .local import InMemorySchedulingBackend

logger = logging.getLogger(__name__)


def create_scheduling_backend(settings) -> SchedulingBackend:
    """Build the backend named by settings.scheduling_backend ("google" or "memory")."""
    rules = BusinessRules.from_settings(settings)
    kind = settings.scheduling_backend.lower()

    if kind == "memory":
        logger.info("Using in-memory scheduling backend")
        return InMemorySchedulingBackend(rules)

    if kind == "google":
        from .google_calendar import GoogleCalendarBackend

        logger.info(f"Using Google Calendar backend for {', '.join(rules.resources)}")
        return GoogleCalendarBackend(
            rules,
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            refresh_token=settings.google_refresh_token,
        )

    raise ValueError(f"Unknown scheduling backend: {settings.scheduling_backend}")


__all__ = [
    "BusinessRules",
    "SchedulingBackend",
    "InMemorySchedulingBackend",
    "create_scheduling_backend",
]
