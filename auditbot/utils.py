from __future__ import annotations
from datetime import datetime, timezone, tzinfo
from zoneinfo import ZoneInfo
import base64
import os
import secrets

from tzlocal import get_localzone


def ensure_dir(path: str) -> None:
    os.makedirs(path, exist_ok=True)


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def resolve_timezone(name: str | None) -> tzinfo:
    if name:
        return ZoneInfo(name)
    return get_localzone()


def random_token(nbytes: int = 32) -> str:
    """urlsafe base64 without padding, suitable for query strings."""
    return base64.urlsafe_b64encode(secrets.token_bytes(nbytes)).rstrip(b"=").decode("ascii")


def mask_secret(value: str | None) -> str:
    if not value:
        return ""
    return "*" * 8
