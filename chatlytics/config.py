import os
from dataclasses import dataclass, field
from typing import List

try:
    from dotenv import load_dotenv

    load_dotenv()
except Exception:
    # .env is optional
    pass


def _default_cors_origins() -> List[str]:
    value = os.getenv("CORS_ORIGINS")
    return value.split(",") if value else ["*"]


@dataclass
class Settings:
    """Runtime configuration loaded from environment variables."""

    query_api_url: str = os.getenv("QUERY_API_URL", "")
    query_api_path: str = os.getenv("QUERY_API_PATH", "/api/query")
    query_timeout_seconds: float = float(os.getenv("QUERY_TIMEOUT_SECONDS", "60"))
    history_path: str = os.getenv("HISTORY_PATH", "chat_history.json")
    history_capacity: int = int(os.getenv("HISTORY_CAPACITY", "20"))
    date_sample_size: int = int(os.getenv("DATE_SAMPLE_SIZE", "10"))
    demo_latency_seconds: float = float(os.getenv("DEMO_LATENCY_SECONDS", "0"))
    cors_origins: List[str] = field(default_factory=_default_cors_origins)
    log_level: str = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()
