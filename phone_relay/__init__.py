"""Phone relay: Twilio Media Streams to Gemini Live, with calendar booking tools."""
__version__ = "0.1.0"
