"""
Tool-call dispatcher for the booking functions Gemini can call.

Every call gets exactly one response. Unknown functions, bad arguments,
backend errors and timeouts are all reported in the result payload as
{"error": "..."} so the model can tell the caller what went wrong.
"""

import asyncio
import datetime as dt
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import BaseModel, Field, ValidationError

from phone_relay.errors import SchedulingError
from phone_relay.scheduling.base import SchedulingBackend

logger = logging.getLogger(__name__)

CHECK_AVAILABILITY = "CheckAvailability"
CREATE_BOOKING = "CreateBooking"


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolResponse:
    id: str
    name: str
    result: Dict[str, Any]

    @property
    def is_error(self) -> bool:
        return "error" in self.result


class CheckAvailabilityArgs(BaseModel):
    date: dt.date
    barber: str


class CreateBookingArgs(BaseModel):
    startTime: dt.datetime
    barber: str
    service: str
    clientName: str
    durationMinutes: Optional[int] = Field(default=None, gt=0)


ToolHandler = Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]


class ToolDispatcher:
    """
    Routes function calls to the scheduling backend.

    One dispatcher can serve many sessions at once: it holds no per-call
    state, and the backend is safe for concurrent use.
    """

    def __init__(self, backend: SchedulingBackend, timeout_seconds: Optional[float] = None):
        """
        Args:
            backend: Scheduling backend that owns the business rules
            timeout_seconds: Upper bound for one backend call (None = no limit)
        """
        self.backend = backend
        self.timeout_seconds = timeout_seconds
        self.handlers: Dict[str, ToolHandler] = {
            CHECK_AVAILABILITY: self._check_availability,
            CREATE_BOOKING: self._create_booking,
        }

    async def dispatch(self, call: ToolCall) -> ToolResponse:
        """
        Run one function call and wrap its outcome.

        Never raises for operation failures. Task cancellation propagates,
        which abandons the call.
        """
        handler = self.handlers.get(call.name)
        if handler is None:
            logger.warning(f"Unknown function requested: {call.name} (id={call.id})")
            return ToolResponse(call.id, call.name, {"error": f"Unknown function: {call.name}"})

        logger.info(f"Executing {call.name} (id={call.id}) with {call.arguments}")
        try:
            result = await asyncio.wait_for(handler(call.arguments), timeout=self.timeout_seconds)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            result = {"error": f"Invalid arguments for {call.name}: {problems}"}
        except asyncio.TimeoutError:
            logger.error(f"{call.name} (id={call.id}) timed out after {self.timeout_seconds}s")
            result = {"error": "The calendar is not responding right now."}
        except SchedulingError as e:
            result = {"error": str(e)}
        except Exception as e:
            logger.error(f"{call.name} (id={call.id}) failed: {e}", exc_info=True)
            result = {"error": f"{call.name} failed: {e}"}

        if not isinstance(result, dict):
            result = {"result": result}

        response = ToolResponse(call.id, call.name, result)
        if response.is_error:
            logger.warning(f"{call.name} (id={call.id}) returned error: {result['error']}")
        else:
            logger.info(f"{call.name} (id={call.id}) succeeded")
        return response

    async def _check_availability(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        args = CheckAvailabilityArgs.model_validate(arguments)
        return await self.backend.check_availability(args.date, args.barber)

    async def _create_booking(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        args = CreateBookingArgs.model_validate(arguments)
        return await self.backend.create_booking(
            start_time=args.startTime,
            resource=args.barber,
            service=args.service,
            client_name=args.clientName,
            duration_minutes=args.durationMinutes,
        )
