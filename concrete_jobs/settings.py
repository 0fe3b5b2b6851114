from typing import Dict, List

from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Admin gate (HTTP basic)
    BASIC_USER: str = "admin"
    BASIC_PASS: str = "changeme"

    # Persistence
    DATABASE_URL: str = "sqlite:///./jobs.db"

    # Job queue
    JOB_RUNNER_SECRET: str | None = None
    JOB_MAX_ATTEMPTS: int = 3
    JOB_TIMEOUT_MINUTES: int = 30
    RETRY_DELAYS_MINUTES: List[int] = [1, 5, 15]
    JOB_EXECUTORS: Dict[str, str] = {}  # job_type -> "module:callable"
    RUNNER_POLL_SECONDS: float = 15.0

    # SSE streams
    JOB_STREAM_POLL_SECONDS: float = 0.5
    JOBS_STREAM_POLL_SECONDS: float = 1.0

    # Admin client
    API_BASE_URL: str = "http://127.0.0.1:8000"
    HTTP_TIMEOUT_SECONDS: float = 30.0
    DISCOVERY_POLL_SECONDS: float = 4.0
    RECONNECT_DELAY_SECONDS: float = 3.0
    DISCONNECT_DELAY_SECONDS: float = 1.0

    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

settings = Settings()
