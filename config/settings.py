import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables from .env
BASE_DIR = Path(__file__).resolve().parent
load_dotenv(BASE_DIR / ".env")


def _float(name: str, default: float) -> float:
    return float(os.getenv(name, default))


class Settings:
    RUNPOD_BASE_URL: str = os.getenv("RUNPOD_BASE_URL", "https://api.runpod.ai/v2")
    RUNPOD_API_KEY: str | None = os.getenv("RUNPOD_API_KEY")
    RUNPOD_WAN_ENDPOINT_ID: str | None = os.getenv("RUNPOD_WAN_ENDPOINT_ID")
    RUNPOD_WAN_PUBLIC_ENDPOINT: str = os.getenv("RUNPOD_WAN_PUBLIC_ENDPOINT", "wan-2-5")
    RUNPOD_QWEN_ENDPOINT: str = os.getenv("RUNPOD_QWEN_ENDPOINT", "qwen-image-edit")

    KIE_AI_API_URL: str = os.getenv("KIE_AI_API_URL", "https://api.kie.ai")
    KIE_AI_API_KEY: str | None = os.getenv("KIE_AI_API_KEY")

    KLING_API_URL: str = os.getenv("KLING_API_URL", "https://api-singapore.klingai.com")
    KLING_ACCESS_KEY: str | None = os.getenv("KLING_ACCESS_KEY")
    KLING_SECRET_KEY: str | None = os.getenv("KLING_SECRET_KEY")
    KLING_POLL_INTERVAL: float = _float("KLING_POLL_INTERVAL", 3.0)
    KLING_JOB_TIMEOUT: float = _float("KLING_JOB_TIMEOUT", 300.0)

    REDIS_URL: str = os.getenv("REDIS_URL", "redis://127.0.0.1:6379/0")

    SUPABASE_URL: str | None = os.getenv("SUPABASE_URL")
    SUPABASE_SERVICE_KEY: str | None = os.getenv("SUPABASE_SERVICE_KEY")
    SUPABASE_BUCKET: str = os.getenv("SUPABASE_BUCKET", "generations")

    GROK_API_URL: str = os.getenv("GROK_API_URL", "https://api.x.ai/v1/chat/completions")
    GROK_API_KEY: str | None = os.getenv("GROK_API_KEY")
    GROK_MODEL: str = os.getenv("GROK_MODEL", "grok-3")

    POLL_INTERVAL: float = _float("POLL_INTERVAL", 5.0)  # seconds
    IMAGE_JOB_TIMEOUT: float = _float("IMAGE_JOB_TIMEOUT", 300.0)
    VIDEO_JOB_TIMEOUT: float = _float("VIDEO_JOB_TIMEOUT", 540.0)
    GRACE_RETRIES: int = int(os.getenv("GRACE_RETRIES", 5))

    HTTP_TIMEOUT: float = _float("HTTP_TIMEOUT", 60.0)
    JOB_RESULT_TTL: int = int(os.getenv("JOB_RESULT_TTL", 3600))

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

settings = Settings()
