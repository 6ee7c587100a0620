from functools import lru_cache

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()


class Settings(BaseSettings):
    # Default Bitrix24 account (used when no channel config file is present)
    bitrix24_domain: str = Field(default="", alias="BITRIX24_DOMAIN")
    bitrix24_webhook_secret: str = Field(default="", alias="BITRIX24_WEBHOOK_SECRET")
    bitrix24_user_id: str | None = Field(default=None, alias="BITRIX24_USER_ID")
    bitrix24_bot_id: str | None = Field(default=None, alias="BITRIX24_BOT_ID")
    # application_token, required as CLIENT_ID for imbot.* calls on the bare REST endpoint
    bitrix24_client_id: str | None = Field(default=None, alias="BITRIX24_CLIENT_ID")
    # JSON file with the channels.bitrix24 section (default account + named accounts)
    channel_config_path: str | None = Field(default=None, alias="CHANNEL_CONFIG_PATH")
    public_base_url: str | None = Field(default=None, alias="PUBLIC_BASE_URL")

    # REST client
    min_request_interval_ms: int = Field(default=1000, alias="BITRIX24_MIN_REQUEST_INTERVAL_MS")
    http_timeout_seconds: float = Field(default=30.0, alias="BITRIX24_HTTP_TIMEOUT_SECONDS")

    # Agent dispatch deadlines
    message_dispatch_timeout_seconds: float = Field(
        default=300.0, alias="MESSAGE_DISPATCH_TIMEOUT_SECONDS"
    )  # 5 minutes
    command_dispatch_timeout_seconds: float = Field(
        default=180.0, alias="COMMAND_DISPATCH_TIMEOUT_SECONDS"
    )  # 3 minutes

    # Speech recognition: "local", "openai" or "auto"
    asr_provider: str | None = Field(default=None, alias="ASR_PROVIDER")
    local_asr_url: str = Field(default="http://127.0.0.1:9000", alias="LOCAL_ASR_URL")
    local_asr_probe_timeout_seconds: float = Field(
        default=2.0, alias="LOCAL_ASR_PROBE_TIMEOUT_SECONDS"
    )
    openai_api_key: str | None = Field(default=None, alias="OPENAI_API_KEY")
    whisper_model: str = Field(default="whisper-1", alias="WHISPER_MODEL")
    asr_language: str | None = Field(default=None, alias="ASR_LANGUAGE")
    max_audio_duration_seconds: int = Field(
        default=600, alias="MAX_AUDIO_DURATION_SECONDS"
    )  # 10 minutes

    # Attachment extraction
    document_preview_chars: int = Field(default=3000, alias="DOCUMENT_PREVIEW_CHARS")
    pdf_min_text_chars: int = Field(default=50, alias="PDF_MIN_TEXT_CHARS")
    attachment_temp_dir: str | None = Field(default=None, alias="ATTACHMENT_TEMP_DIR")

    development_mode: bool = Field(default=False, alias="DEVELOPMENT_MODE")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def normalized_asr_provider(self) -> str | None:
        """Return the ASR provider from the environment, or None when unset/invalid."""
        value = (self.asr_provider or "").strip().lower()
        if value in ("local", "openai", "auto"):
            return value
        return None


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]


def is_development_mode() -> bool:
    """Return True only when DEVELOPMENT_MODE=true is set."""
    try:
        settings = get_settings()
        return bool(settings.development_mode)
    except Exception:
        return False
