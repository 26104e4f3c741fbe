"""Function declarations sent to Gemini in the session setup."""
from typing import Any, Dict, List, Sequence

from phone_relay.tools.dispatcher import CHECK_AVAILABILITY, CREATE_BOOKING


def _barber_param(barbers: Sequence[str]) -> Dict[str, Any]:
    param: Dict[str, Any] = {"type": "STRING", "description": "The name of the barber."}
    if barbers:
        param["enum"] = list(barbers)
    return param


def build_function_declarations(barbers: Sequence[str]) -> List[Dict[str, Any]]:
    """
    Schemas for CheckAvailability and CreateBooking.

    Args:
        barbers: Names the model may pass as `barber` (sent as an enum)
    """
    return [
        {
            "name": CHECK_AVAILABILITY,
            "description": (
                "Checks which appointment slots are free for a barber on a given date. "
                "Always call this before booking."
            ),
            "parameters": {
                "type": "OBJECT",
                "properties": {
                    "date": {"type": "STRING", "description": "The date to check, YYYY-MM-DD."},
                    "barber": _barber_param(barbers),
                },
                "required": ["date", "barber"],
            },
        },
        {
            "name": CREATE_BOOKING,
            "description": "Books an appointment. Only book a slot CheckAvailability reported as free.",
            "parameters": {
                "type": "OBJECT",
                "properties": {
                    "startTime": {
                        "type": "STRING",
                        "description": "Start time in ISO 8601, e.g. 2024-07-28T14:30:00.",
                    },
                    "barber": _barber_param(barbers),
                    "service": {
                        "type": "STRING",
                        "description": "The service requested, e.g. haircut or beard trim.",
                    },
                    "clientName": {"type": "STRING", "description": "The client's full name."},
                    "durationMinutes": {
                        "type": "NUMBER",
                        "description": "Length in minutes. Omit to use the service's usual length.",
                    },
                },
                "required": ["startTime", "barber", "service", "clientName"],
            },
        },
    ]
