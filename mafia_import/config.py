from dataclasses import dataclass
import os

from dotenv import load_dotenv


load_dotenv()


@dataclass(frozen=True)
class Settings:
    app_name: str
    database_url: str
    log_level: str
    source_dir: str
    rate_limit_delay_seconds: float
    batch_size: int
    max_fetch_attempts: int
    retry_base_delay_seconds: float
    full_outage_wait_seconds: float
    full_outage_threshold: int
    max_run_seconds: float
    parallel_concurrency: int
    validation_threshold: float
    skipped_page_retry_limit: int
    max_consecutive_empty_pages: int
    max_pages: int
    cancel_poll_seconds: float
    schedule_hour_utc: int
    schedule_minute_utc: int


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("APP_NAME", "mafia-import"),
        database_url=os.getenv("DATABASE_URL", "sqlite:///./import.db"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        source_dir=os.getenv("SOURCE_DIR", "./data/source"),
        rate_limit_delay_seconds=float(os.getenv("RATE_LIMIT_DELAY_SECONDS", "2")),
        batch_size=int(os.getenv("BATCH_SIZE", "100")),
        max_fetch_attempts=int(os.getenv("MAX_FETCH_ATTEMPTS", "3")),
        retry_base_delay_seconds=float(os.getenv("RETRY_BASE_DELAY_SECONDS", "1")),
        full_outage_wait_seconds=float(os.getenv("FULL_OUTAGE_WAIT_SECONDS", "300")),
        full_outage_threshold=int(os.getenv("FULL_OUTAGE_THRESHOLD", "3")),
        max_run_seconds=float(os.getenv("MAX_RUN_SECONDS", str(12 * 60 * 60))),
        parallel_concurrency=int(os.getenv("PARALLEL_CONCURRENCY", "5")),
        validation_threshold=float(os.getenv("VALIDATION_THRESHOLD", "0.98")),
        skipped_page_retry_limit=int(os.getenv("SKIPPED_PAGE_RETRY_LIMIT", "5")),
        max_consecutive_empty_pages=int(os.getenv("MAX_CONSECUTIVE_EMPTY_PAGES", "3")),
        # 0 means fetch until the source runs dry.
        max_pages=int(os.getenv("MAX_PAGES", "0")),
        cancel_poll_seconds=float(os.getenv("CANCEL_POLL_SECONDS", "5")),
        schedule_hour_utc=int(os.getenv("SCHEDULE_HOUR_UTC", "2")),
        schedule_minute_utc=int(os.getenv("SCHEDULE_MINUTE_UTC", "0")),
    )
