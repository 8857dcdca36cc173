# config.py
import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def _int(name: str, fallback: int, minimum: int = 1) -> int:
    """Read a positive integer from the environment, falling back on junk."""
    raw = os.getenv(name)
    try:
        value = int(raw) if raw is not None else fallback
    except ValueError:
        return fallback
    return value if value >= minimum else fallback


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./curioread.db"
    content_store_dir: str = "./data/content"

    google_api_key: str = ""
    gemini_model: str = ""
    question_generator: str = "curiosity"  # curiosity | hook

    session_worker_concurrency: int = 5
    pending_worker_concurrency: int = 1

    queue_capacity: int = 2
    freshness_days: int = 30
    max_quiz_retries: int = 3
    max_generation_attempts: int = 2
    article_wait_attempts: int = 3
    article_wait_seconds: float = 2.0
    stale_claim_minutes: int = 3
    max_error_length: int = 500
    min_article_chars: int = 300
    max_pdf_size_bytes: int = 25 * 1024 * 1024

    session_token_length: int = 16
    log_level: str = "INFO"


def get_settings() -> Settings:
    return Settings(
        database_url=(os.getenv("DATABASE_URL") or Settings.database_url).strip(),
        content_store_dir=os.getenv("CONTENT_STORE_DIR", Settings.content_store_dir),
        google_api_key=os.getenv("GOOGLE_API_KEY", "").strip(),
        gemini_model=(os.getenv("GEMINI_MODEL") or "").strip(),
        question_generator=(os.getenv("QUESTION_GENERATOR") or "curiosity").strip().lower(),
        session_worker_concurrency=_int("SESSION_WORKER_CONCURRENCY", 5),
        pending_worker_concurrency=_int("PENDING_WORKER_CONCURRENCY", 1),
        queue_capacity=_int("QUEUE_CAPACITY", 2),
        freshness_days=_int("FRESHNESS_DAYS", 30),
        max_quiz_retries=_int("MAX_QUIZ_RETRIES", 3),
        max_generation_attempts=_int("MAX_GENERATION_ATTEMPTS", 2),
        article_wait_attempts=_int("ARTICLE_WAIT_ATTEMPTS", 3),
        article_wait_seconds=float(_int("ARTICLE_WAIT_SECONDS", 2, minimum=0)),
        stale_claim_minutes=_int("STALE_CLAIM_MINUTES", 3),
        max_pdf_size_bytes=_int("MAX_PDF_SIZE_BYTES", 25 * 1024 * 1024),
        session_token_length=_int("SESSION_TOKEN_LENGTH", 16, minimum=8),
        log_level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
    )
