import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables from config/.env
BASE_DIR = Path(__file__).resolve().parent
load_dotenv(BASE_DIR / ".env")


class Settings:
    GEMINI_API_KEY: str | None = os.getenv("GEMINI_API_KEY") or os.getenv("API_KEY")
    GEMINI_BASE_URL: str = os.getenv("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com")

    IMAGE_MODEL: str = os.getenv("IMAGE_MODEL", "gemini-2.5-flash-image-preview")
    VIDEO_MODEL: str = os.getenv("VIDEO_MODEL", "veo-2.0-generate-001")

    # Concurrent image edits; a video in the batch always drops this to 1
    IMAGE_CONCURRENCY_LIMIT: int = int(os.getenv("IMAGE_CONCURRENCY_LIMIT", "2"))

    REQUEST_TIMEOUT: float = float(os.getenv("REQUEST_TIMEOUT", "300"))
    POLL_INTERVAL: float = float(os.getenv("POLL_INTERVAL", "10"))  # seconds, video operation polling

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()
