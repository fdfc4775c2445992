"""Interactive login: anti-forgery state, code exchange, nonce check, cache fill."""

from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

from auditbot.broker import CredentialBroker
from auditbot.errors import InvalidIdTokenError, InvalidStateError, LoginError, NonceMismatchError
from auditbot.oidc import OIDCClient
from auditbot.utils import now_utc, random_token

logger = logging.getLogger(__name__)


class LoginState(str, enum.Enum):
    INITIATED = "INITIATED"
    CALLBACK_RECEIVED = "CALLBACK_RECEIVED"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"


@dataclass(frozen=True)
class PendingLogin:
    state: str
    nonce: str
    expires_at: datetime


@dataclass
class LoginResult:
    state: LoginState
    subject: str | None = None
    accounts: list[str] = field(default_factory=list)
    error: LoginError | None = None


class PendingLoginStore:
    def __init__(self, ttl: timedelta, clock: Callable[[], datetime] = now_utc) -> None:
        self._lock = threading.Lock()
        self._pending: dict[str, PendingLogin] = {}
        self._ttl = ttl
        self._clock = clock

    def issue(self) -> PendingLogin:
        now = self._clock()
        pending = PendingLogin(state=random_token(), nonce=random_token(16), expires_at=now + self._ttl)
        with self._lock:
            self._purge_locked(now)
            self._pending[pending.state] = pending
        return pending

    def consume(self, state: str) -> PendingLogin | None:
        """Remove and return the pending login; None if unknown or expired."""
        now = self._clock()
        with self._lock:
            pending = self._pending.pop(state, None)
            self._purge_locked(now)
        if pending is None or pending.expires_at <= now:
            return None
        return pending

    def purge_expired(self) -> int:
        with self._lock:
            return self._purge_locked(self._clock())

    def _purge_locked(self, now: datetime) -> int:
        expired = [s for s, p in self._pending.items() if p.expires_at <= now]
        for s in expired:
            del self._pending[s]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)


def _claim_accounts(claims: dict[str, Any], claim: str) -> list[str]:
    value = claims.get(claim)
    if isinstance(value, str):
        value = [v for v in value.replace(",", " ").split() if v]
    if not isinstance(value, list) or not value:
        raise InvalidIdTokenError(f"claim {claim!r} does not name any account")
    return [str(v) for v in value]


class LoginFlow:
    def __init__(
        self,
        idp: OIDCClient,
        broker: CredentialBroker,
        store: PendingLoginStore,
        account_claim: str = "aws_accounts",
    ) -> None:
        self._idp = idp
        self._broker = broker
        self._store = store
        self.account_claim = account_claim

    def begin(self) -> tuple[str, str]:
        pending = self._store.issue()
        return self._idp.authorization_url(pending.state, pending.nonce), pending.state

    def complete(self, state: str, code: str) -> LoginResult:
        try:
            return self._verify(state, code)
        except LoginError as e:
            logger.warning("login rejected: %s", e.message)
            return LoginResult(state=LoginState.REJECTED, error=e)

    def _verify(self, state: str, code: str) -> LoginResult:
        # single use: the state is gone before anything else can fail
        pending = self._store.consume(state)
        if pending is None:
            raise InvalidStateError()

        tokens = self._idp.exchange_code(code)
        claims = self._idp.verify_id_token(tokens.id_token, tokens.access_token)
        if claims.get("nonce") != pending.nonce:
            raise NonceMismatchError()

        accounts = _claim_accounts(claims, self.account_claim)
        for account_id in accounts:
            self._broker.store(account_id, tokens)
        subject = claims.get("email") or claims.get("sub")
        logger.info("login verified for %s, accounts=%s", subject, ",".join(accounts))
        return LoginResult(state=LoginState.VERIFIED, subject=subject, accounts=accounts)

    def purge_expired(self) -> int:
        return self._store.purge_expired()
