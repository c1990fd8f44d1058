import os
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Database configuration
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./codework.db")

    # Redis configuration (result push channel)
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://redis:6379/0")

    # Celery configuration
    CELERY_BROKER_URL: str = os.getenv("CELERY_BROKER_URL", "redis://redis:6379/1")
    CELERY_RESULT_BACKEND: str = os.getenv("CELERY_RESULT_BACKEND", "redis://redis:6379/1")
    EVALUATION_QUEUE: str = os.getenv("EVALUATION_QUEUE", "evaluations")
    # Upper bound on evaluations running at once per worker node
    EVALUATION_WORKER_CONCURRENCY: int = int(os.getenv("EVALUATION_WORKER_CONCURRENCY", "4"))

    # Remote code runner
    RUNNER_BASE_URL: str = os.getenv("RUNNER_BASE_URL", "")
    RUNNER_API_KEY: str = os.getenv("RUNNER_API_KEY", "")
    RUNNER_API_KEY_HEADER: str = os.getenv("RUNNER_API_KEY_HEADER", "X-Api-Key")
    RUNNER_TIMEOUT_SECONDS: float = float(os.getenv("RUNNER_TIMEOUT_SECONDS", "300"))
    RUNNER_TIMEOUT_MARGIN_SECONDS: float = float(os.getenv("RUNNER_TIMEOUT_MARGIN_SECONDS", "30"))
    # Ceiling for a single runner call; the Celery hard limit is derived from it
    RUNNER_MAX_TIMEOUT_SECONDS: float = float(os.getenv("RUNNER_MAX_TIMEOUT_SECONDS", "1800"))

    # Comma separated; compared case-insensitively
    SUPPORTED_LANGUAGES: str = os.getenv("SUPPORTED_LANGUAGES", "c,java,rust,go,python")

    # Bearer token validation (issuance lives in the auth service)
    JWT_SECRET: str = os.getenv("JWT_SECRET", "change-me")
    JWT_ISSUER: str = os.getenv("JWT_ISSUER", "codework")
    JWT_AUDIENCE: str = os.getenv("JWT_AUDIENCE", "codework-api")

    class Config:
        # Let BaseSettings read from project .env if present (local dev).
        env_file = ".env"

    @property
    def supported_languages(self) -> frozenset[str]:
        return frozenset(
            lang.strip().lower() for lang in self.SUPPORTED_LANGUAGES.split(",") if lang.strip()
        )


settings = Settings()
