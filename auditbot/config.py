from __future__ import annotations
import json
import logging
import os
from dotenv import load_dotenv
from pydantic import ValidationError
from auditbot.schemas import TaskSpec

load_dotenv()

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings:
    APP_SECRET: str = os.getenv("APP_SECRET", "change_me")
    HOST: str = os.getenv("HOST", "127.0.0.1")
    PORT: int = int(os.getenv("PORT", "9090"))
    ROOT_PATH: str = os.getenv("ROOT_PATH", "")
    MAX_WORKERS: int = int(os.getenv("MAX_WORKERS", "8"))
    TIMEZONE: str = os.getenv("TIMEZONE", "")  # empty: host local zone
    DB_URL: str = os.getenv("DB_URL", "sqlite:///./data/auditbot.db")
    LOG_DIR: str = os.getenv("LOG_DIR", "./data/logs")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_MAX_BYTES: int = int(os.getenv("LOG_MAX_BYTES", "10485760"))
    LOG_BACKUP_COUNT: int = int(os.getenv("LOG_BACKUP_COUNT", "5"))
    APP_LOG_NAME: str = os.getenv("APP_LOG_NAME", "auditbot.log")
    TASKS_FILE: str = os.getenv("TASKS_FILE", "./tasks.json")

    # identity provider
    OIDC_PROVIDER_URL: str = os.getenv("OIDC_PROVIDER_URL", "")
    OIDC_CLIENT_ID: str = os.getenv("OIDC_CLIENT_ID", "")
    OIDC_CLIENT_SECRET: str = os.getenv("OIDC_CLIENT_SECRET", "")
    OIDC_REDIRECT_URL: str = os.getenv("OIDC_REDIRECT_URL", "http://127.0.0.1:9090/auth/callback")
    OIDC_SCOPES: str = os.getenv("OIDC_SCOPES", "openid profile email offline_access")
    ACCOUNT_CLAIM: str = os.getenv("ACCOUNT_CLAIM", "aws_accounts")
    LOGIN_STATE_TTL_SEC: int = int(os.getenv("LOGIN_STATE_TTL_SEC", "300"))
    HTTP_TIMEOUT_SEC: float = float(os.getenv("HTTP_TIMEOUT_SEC", "10"))

    # aws federation
    AWS_REGION: str = os.getenv("AWS_REGION", "us-east-1")
    ROLE_ARN_TEMPLATE: str = os.getenv("ROLE_ARN_TEMPLATE", "arn:aws:iam::{account_id}:role/ReadOnlyRole")
    ROLE_SESSION_SECONDS: int = int(os.getenv("ROLE_SESSION_SECONDS", "900"))
    UNUSED_BUCKET_DAYS: int = int(os.getenv("UNUSED_BUCKET_DAYS", "30"))

    SLACK_TOKEN: str = os.getenv("SLACK_TOKEN", "")
    ADMIN_AUTH_REQUIRED: bool = _env_bool("ADMIN_AUTH_REQUIRED", "true")

    @property
    def oidc_scopes(self) -> list[str]:
        return [s for s in self.OIDC_SCOPES.replace(",", " ").split() if s]


settings = Settings()


def load_task_specs(path: str) -> list[TaskSpec]:
    """Read task definitions from a JSON file: a list or {"tasks": [...]}.

    A missing file yields no tasks; malformed entries are logged and skipped.
    """
    if not os.path.exists(path):
        logger.warning("tasks file not found: %s", path)
        return []
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)

    items = data["tasks"] if isinstance(data, dict) and "tasks" in data else data
    if not isinstance(items, list):
        raise ValueError("tasks file must be a list or {\"tasks\": [...]} object")

    specs: list[TaskSpec] = []
    for i, raw in enumerate(items):
        if not isinstance(raw, dict):
            logger.error("tasks file entry %d is not an object", i)
            continue
        try:
            specs.append(TaskSpec.model_validate(raw))
        except ValidationError as e:
            logger.error("tasks file entry %d is invalid: %s", i, e)
    logger.info("loaded configuration with %d tasks from %s", len(specs), path)
    return specs
