"""
Exception taxonomy for the relay.

Every failure is scoped to one call: frames are dropped, sessions are closed,
tool failures become error-shaped tool responses. Nothing here should ever
escape to the server process.
"""


class RelayError(Exception):
    """Base class for relay errors."""


class MalformedFrameError(RelayError):
    """A telephony or AI message could not be parsed or transcoded."""


class SessionSetupError(RelayError):
    """The AI session could not be opened or never became ready."""


class SchedulingError(RelayError):
    """The scheduling backend rejected or failed an operation."""
