from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


LIVE_API_HOST = "generativelanguage.googleapis.com"
LIVE_API_PATH = "/ws/google.ai.generativelanguage.v1beta.GenerativeService.BidiGenerateContent"


class Settings(BaseSettings):
    """Global configuration for the Iris Live client."""

    api_key: str = ""
    model_id: str = "models/gemini-2.0-flash-exp"
    host: str = LIVE_API_HOST
    muted: bool = False

    sample_rate_hz: int = 24000
    audio_block_frames: int = Field(default=2400, gt=0)
    input_device: int | str | None = None
    output_device: int | str | None = None
    playback_queue_size: int = Field(default=512, gt=0)

    camera_index: int = 0
    camera_poll_interval_s: float = Field(default=0.1, ge=0)
    image_send_interval_ms: int = Field(default=3000, ge=0)
    max_image_dimension: int = Field(default=1024, gt=0)
    jpeg_quality: int = Field(default=70, ge=1, le=95)

    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_prefix="IRIS_", env_file=".env", extra="ignore")

    @field_validator("model_id")
    @classmethod
    def validate_model_id(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("model_id must not be empty")
        if not value.startswith("models/"):
            return f"models/{value}"
        return value

    def live_url(self, api_key: str | None = None) -> str:
        key = self.api_key if api_key is None else api_key
        return f"wss://{self.host}{LIVE_API_PATH}?key={key}"


settings = Settings()  # type: ignore[call-arg]
