"""Shared fixtures: fake identity provider, fake STS, stub audit operations."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from auditbot.broker import CredentialBroker
from auditbot.config import Settings
from auditbot.executor import JobExecutor
from auditbot.oidc import TokenSet
from auditbot.operations import AuditOperation, OperationRegistry
from auditbot.scheduler import TaskScheduler
from auditbot.utils import now_utc


def make_token(n: int = 0, expires_in: int = 3600, refresh_token: str | None = "refresh-0") -> TokenSet:
    return TokenSet(
        access_token=f"access-{n}",
        expires_at=now_utc() + timedelta(seconds=expires_in),
        refresh_token=refresh_token,
        id_token=f"id-{n}",
    )


class FakeIdP:
    """Stands in for OIDCClient; records calls and returns canned tokens."""

    def __init__(self) -> None:
        self.provider_url = "https://idp.example.com"
        self.client_id = "auditbot"
        self.client_secret = "s3cret"
        self.redirect_url = "http://testserver/auth/callback"
        self.last_nonce: str | None = None
        self.claims: dict = {"aws_accounts": ["111111111111"], "email": "ops@example.com"}
        self.nonce_override: str | None = None
        self.exchange_error: Exception | None = None
        self.refresh_error: Exception | None = None
        self.refresh_delay: float = 0.0
        self.refresh_gate: threading.Event | None = None
        self.refresh_calls = 0
        self.exchange_calls = 0
        self._lock = threading.Lock()

    def configure(self, provider_url, client_id, client_secret, redirect_url) -> None:
        self.provider_url = provider_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_url = redirect_url

    def close(self) -> None:
        pass

    def authorization_url(self, state: str, nonce: str) -> str:
        self.last_nonce = nonce
        return f"{self.provider_url}/authorize?state={state}&nonce={nonce}"

    def exchange_code(self, code: str) -> TokenSet:
        self.exchange_calls += 1
        if self.exchange_error is not None:
            raise self.exchange_error
        return make_token(100)

    def verify_id_token(self, id_token, access_token=None) -> dict:
        nonce = self.nonce_override if self.nonce_override is not None else self.last_nonce
        return {**self.claims, "nonce": nonce}

    def refresh(self, token: TokenSet) -> TokenSet:
        if self.refresh_gate is not None:
            self.refresh_gate.wait(5)
        if self.refresh_delay:
            threading.Event().wait(self.refresh_delay)
        if self.refresh_error is not None:
            raise self.refresh_error
        with self._lock:
            self.refresh_calls += 1
            n = self.refresh_calls
        return make_token(n, refresh_token=f"refresh-{n}")


def sts_response(account_id: str = "111111111111") -> dict:
    return {
        "Credentials": {
            "AccessKeyId": f"ASIA{account_id}",
            "SecretAccessKey": "secret",
            "SessionToken": "session",
            "Expiration": datetime(2030, 1, 1, tzinfo=timezone.utc),
        }
    }


class StubOperation(AuditOperation):
    service = "storage"
    command = "check_unused"
    title = "Stub findings:"

    def check(self, account_id, credential):
        return [f"bucket-{account_id}"]


class OtherStubOperation(StubOperation):
    service = "iam"
    command = "list_users"
    title = "Users:"

    def check(self, account_id, credential):
        return [f"user-{account_id}"]


@pytest.fixture
def idp() -> FakeIdP:
    return FakeIdP()


@pytest.fixture
def sts() -> MagicMock:
    client = MagicMock()
    client.assume_role_with_web_identity.side_effect = lambda **kw: sts_response(kw["RoleArn"].split(":")[4])
    return client


@pytest.fixture
def broker(idp, sts) -> CredentialBroker:
    return CredentialBroker(idp, sts_client=sts, region="us-east-1")


@pytest.fixture
def registry() -> OperationRegistry:
    reg = OperationRegistry()
    reg.register("storage", "check_unused", StubOperation)
    reg.register("iam", "list_users", OtherStubOperation)
    return reg


@pytest.fixture
def fixed_now() -> datetime:
    # a Sunday
    return datetime(2026, 10, 18, 8, 30, tzinfo=timezone.utc)


@pytest.fixture
def executor() -> MagicMock:
    return MagicMock(spec=JobExecutor)


@pytest.fixture
def scheduler(executor, registry, fixed_now):
    s = TaskScheduler(executor, registry, timezone="UTC", clock=lambda: fixed_now)
    yield s
    s.shutdown()


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    cfg = Settings()
    cfg.DB_URL = "sqlite://"
    cfg.TIMEZONE = "UTC"
    cfg.LOG_DIR = str(tmp_path / "logs")
    cfg.TASKS_FILE = str(tmp_path / "tasks.json")
    cfg.ADMIN_AUTH_REQUIRED = False
    cfg.SLACK_TOKEN = ""
    cfg.ACCOUNT_CLAIM = "aws_accounts"
    return cfg
