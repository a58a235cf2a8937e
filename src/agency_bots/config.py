from __future__ import annotations

from dataclasses import dataclass
import os

from dotenv import find_dotenv, load_dotenv


@dataclass(frozen=True)
class Settings:
    app_env: str
    database_dsn: str
    session_jwt_secret: str
    session_jwt_algorithm: str
    session_cookie_name: str
    billing_webhook_secret: str
    azure_ai_project_endpoint: str
    azure_use_managed_identity: bool
    azure_managed_identity_client_id: str
    knowledge_model_deployment: str
    index_poll_interval_seconds: float
    index_timeout_seconds: float
    time_zone: str


def _parse_bool(raw: str, default: bool) -> bool:
    text = (raw or "").strip().lower()
    if not text:
        return default
    return text in {"1", "true", "yes", "y", "on"}


def _parse_float(raw: str, default: float) -> float:
    text = (raw or "").strip()
    if not text:
        return default
    try:
        return float(text)
    except ValueError as err:
        raise ValueError(f"Invalid numeric setting: {raw!r}") from err


def get_settings() -> Settings:
    dotenv_path = find_dotenv(usecwd=True)
    if dotenv_path:
        load_dotenv(dotenv_path=dotenv_path, override=False)

    return Settings(
        app_env=os.getenv("APP_ENV", "dev"),
        database_dsn=os.getenv("DATABASE_DSN", ""),
        session_jwt_secret=os.getenv("SESSION_JWT_SECRET", ""),
        session_jwt_algorithm=os.getenv("SESSION_JWT_ALGORITHM", "HS256"),
        session_cookie_name=os.getenv("SESSION_COOKIE_NAME", "agency_session"),
        billing_webhook_secret=os.getenv("BILLING_WEBHOOK_SECRET", ""),
        azure_ai_project_endpoint=os.getenv("AZURE_AI_PROJECT_ENDPOINT", ""),
        azure_use_managed_identity=_parse_bool(os.getenv("AZURE_USE_MANAGED_IDENTITY", "true"), default=True),
        azure_managed_identity_client_id=os.getenv("AZURE_MANAGED_IDENTITY_CLIENT_ID", ""),
        knowledge_model_deployment=os.getenv("KNOWLEDGE_MODEL_DEPLOYMENT", "gpt-4.1-mini"),
        index_poll_interval_seconds=_parse_float(os.getenv("INDEX_POLL_INTERVAL_SECONDS", ""), 1.5),
        index_timeout_seconds=_parse_float(os.getenv("INDEX_TIMEOUT_SECONDS", ""), 120.0),
        time_zone=os.getenv("AGENCY_TIME_ZONE", "America/Chicago"),
    )
