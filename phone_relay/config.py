from typing import Dict

from pydantic_settings import BaseSettings
from pydantic import Field


DEFAULT_SYSTEM_PROMPT = (
    "You are Emma, the AI receptionist of the Gentleman's Choice barbershop. "
    "Speak only Bulgarian. Be brief and friendly. Today is {today}. "
    "Opening hours are 09:00 to 19:00. First ask which barber the caller wants, "
    "then use CheckAvailability before offering a time and CreateBooking to book it."
)


class Settings(BaseSettings):
    server_host: str = Field(default="0.0.0.0", env="SERVER_HOST")
    server_port: int = Field(default=3000, env="SERVER_PORT")
    max_concurrent_calls: int = Field(default=10, env="MAX_CONCURRENT_CALLS")

    # Gemini Live
    gemini_api_key: str = Field(default="", env="GEMINI_API_KEY")
    gemini_model: str = Field(
        default="models/gemini-2.5-flash-native-audio-preview-09-2025", env="GEMINI_MODEL"
    )
    gemini_voice: str = Field(default="Aoede", env="GEMINI_VOICE")
    gemini_ws_url: str = Field(
        default=(
            "wss://generativelanguage.googleapis.com/ws/"
            "google.ai.generativelanguage.v1beta.GenerativeService.BidiGenerateContent"
        ),
        env="GEMINI_WS_URL",
    )
    system_prompt: str = Field(default=DEFAULT_SYSTEM_PROMPT, env="SYSTEM_PROMPT")
    kickstart_enabled: bool = Field(default=True, env="KICKSTART_ENABLED")
    kickstart_text: str = Field(default="Start now. Greet the caller.", env="KICKSTART_TEXT")
    transcribe_audio: bool = Field(default=True, env="TRANSCRIBE_AUDIO")

    # Audio / relay
    upsample_policy: str = Field(default="duplicate", env="UPSAMPLE_POLICY")
    inbound_gain: float = Field(default=1.0, env="INBOUND_GAIN")
    preconnect_buffer_frames: int = Field(default=50, env="PRECONNECT_BUFFER_FRAMES")
    setup_timeout_seconds: float = Field(default=10.0, env="SETUP_TIMEOUT_SECONDS")
    tool_timeout_seconds: float = Field(default=15.0, env="TOOL_TIMEOUT_SECONDS")
    tool_drain_seconds: float = Field(default=2.0, env="TOOL_DRAIN_SECONDS")

    # Scheduling backend
    scheduling_backend: str = Field(default="google", env="SCHEDULING_BACKEND")
    google_client_id: str = Field(default="", env="GOOGLE_CLIENT_ID")
    google_client_secret: str = Field(default="", env="GOOGLE_CLIENT_SECRET")
    google_refresh_token: str = Field(default="", env="GOOGLE_REFRESH_TOKEN")
    calendar_ids: Dict[str, str] = Field(
        default={"Mohamed": "primary", "Jason": "primary"}, env="CALENDAR_IDS"
    )
    business_timezone: str = Field(default="Europe/Sofia", env="BUSINESS_TIMEZONE")
    opening_hour: int = Field(default=9, env="OPENING_HOUR")
    closing_hour: int = Field(default=19, env="CLOSING_HOUR")
    slot_minutes: int = Field(default=30, env="SLOT_MINUTES")
    service_durations: Dict[str, int] = Field(
        default={"haircut": 30, "beard trim": 20, "haircut and beard": 50},
        env="SERVICE_DURATIONS",
    )
    default_duration_minutes: int = Field(default=30, env="DEFAULT_DURATION_MINUTES")

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"  # Allow extra fields in .env without raising errors


settings = Settings()
