"""Federated credential broker.

Holds the encrypted login tokens per AWS account and turns them into short-lived
role credentials through STS AssumeRoleWithWebIdentity. Only ciphertext is kept
between calls; every read decrypts under the process-lifetime key.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

import boto3
import httpx
from botocore.exceptions import BotoCoreError, ClientError

from auditbot.crypto import CipherError, TokenCipher
from auditbot.errors import (
    DecryptionError,
    FederationError,
    NoTokenError,
    RefreshFailedError,
)
from auditbot.oidc import OIDCClient, TokenEndpointError, TokenSet
from auditbot.utils import now_utc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CachedCredential:
    encrypted_payload: bytes


@dataclass(frozen=True)
class DelegatedCredential:
    account_id: str
    role_arn: str
    access_key_id: str
    secret_access_key: str
    session_token: str
    expiration: datetime
    region: str

    def session(self) -> boto3.Session:
        return boto3.Session(
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
            aws_session_token=self.session_token,
            region_name=self.region,
        )

    def client(self, service_name: str, **kwargs: Any):
        return self.session().client(service_name, **kwargs)

    def __repr__(self) -> str:
        return f"DelegatedCredential(account_id={self.account_id!r}, role_arn={self.role_arn!r}, expiration={self.expiration!r})"


class TokenCache:
    """account id -> CachedCredential, with one lock per account for writers."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, CachedCredential] = {}
        self._account_locks: dict[str, threading.Lock] = {}

    def lock_for(self, account_id: str) -> threading.Lock:
        with self._lock:
            lock = self._account_locks.get(account_id)
            if lock is None:
                lock = self._account_locks[account_id] = threading.Lock()
            return lock

    def get(self, account_id: str) -> CachedCredential | None:
        with self._lock:
            return self._entries.get(account_id)

    def put(self, account_id: str, entry: CachedCredential) -> None:
        with self._lock:
            self._entries[account_id] = entry

    def pop(self, account_id: str) -> CachedCredential | None:
        with self._lock:
            return self._entries.pop(account_id, None)

    def accounts(self) -> list[str]:
        with self._lock:
            return sorted(self._entries)


class CredentialBroker:
    def __init__(
        self,
        idp: OIDCClient,
        sts_client: Any = None,
        region: str = "us-east-1",
        role_arn_template: str = "arn:aws:iam::{account_id}:role/ReadOnlyRole",
        session_seconds: int = 900,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self._idp = idp
        self._cipher = TokenCipher()
        self._cache = TokenCache()
        self._sts = sts_client or boto3.client("sts", region_name=region)
        self.region = region
        self.role_arn_template = role_arn_template
        self.session_seconds = session_seconds
        self._clock = clock

    # -------------------- cache --------------------

    def _seal(self, account_id: str, token: TokenSet) -> CachedCredential:
        # the account id is bound as associated data so entries cannot be swapped between keys
        return CachedCredential(self._cipher.encrypt(token.to_bytes(), account_id.encode("utf-8")))

    def _open(self, account_id: str, entry: CachedCredential) -> TokenSet:
        try:
            return TokenSet.from_bytes(self._cipher.decrypt(entry.encrypted_payload, account_id.encode("utf-8")))
        except (CipherError, ValueError, KeyError, TypeError) as e:
            raise DecryptionError(account_id) from e

    def store(self, account_id: str, token: TokenSet) -> None:
        with self._cache.lock_for(account_id):
            self._cache.put(account_id, self._seal(account_id, token))
        logger.info("cached login token for account %s", account_id)

    def remove(self, account_id: str) -> bool:
        with self._cache.lock_for(account_id):
            removed = self._cache.pop(account_id) is not None
        if removed:
            logger.info("removed cached login token for account %s", account_id)
        return removed

    def accounts(self) -> list[str]:
        return self._cache.accounts()

    def has_token(self, account_id: str) -> bool:
        return self._cache.get(account_id) is not None

    # -------------------- minting --------------------

    def _current_token(self, account_id: str) -> TokenSet:
        with self._cache.lock_for(account_id):
            entry = self._cache.get(account_id)
            if entry is None:
                raise NoTokenError(account_id)
            try:
                token = self._open(account_id, entry)
            except DecryptionError:
                self._cache.pop(account_id)
                logger.warning("evicted undecryptable token cache entry for account %s", account_id)
                raise
            if token.is_valid(self._clock()):
                return token

            try:
                fresh = self._idp.refresh(token)
            except (TokenEndpointError, httpx.HTTPError, ValueError) as e:
                logger.warning("token refresh failed for account %s: %s", account_id, e)
                raise RefreshFailedError(account_id, str(e)) from e
            if not fresh.is_valid(self._clock()):
                # refresh responses may omit id_token; the old one cannot be presented to STS
                logger.warning("token refresh for account %s returned no usable id_token", account_id)
                raise RefreshFailedError(account_id, "refreshed token set has an expired id_token")
            self._cache.put(account_id, self._seal(account_id, fresh))
            logger.info("refreshed login token for account %s", account_id)
            return fresh

    def role_arn(self, account_id: str) -> str:
        return self.role_arn_template.format(account_id=account_id)

    def mint_delegated_credential(self, account_id: str) -> DelegatedCredential:
        token = self._current_token(account_id)
        role_arn = self.role_arn(account_id)
        try:
            resp = self._sts.assume_role_with_web_identity(
                RoleArn=role_arn,
                RoleSessionName=f"auditbot-{account_id}",
                WebIdentityToken=token.identity_token,
                DurationSeconds=self.session_seconds,
            )
        except (ClientError, BotoCoreError) as e:
            raise FederationError(account_id, str(e)) from e
        creds = resp["Credentials"]
        return DelegatedCredential(
            account_id=account_id,
            role_arn=role_arn,
            access_key_id=creds["AccessKeyId"],
            secret_access_key=creds["SecretAccessKey"],
            session_token=creds["SessionToken"],
            expiration=creds["Expiration"],
            region=self.region,
        )
