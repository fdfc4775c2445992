"""OpenID Connect client: discovery, authorization-code exchange, refresh and
ID token verification.

HTTP goes through httpx; ID tokens are verified with python-jose against the
provider's published JWKS.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import urlencode

import httpx
from jose import JWTError, jwt

from auditbot.errors import InvalidIdTokenError, LoginExchangeError
from auditbot.utils import now_utc

logger = logging.getLogger(__name__)

DISCOVERY_PATH = "/.well-known/openid-configuration"


@dataclass
class TokenSet:
    access_token: str
    expires_at: datetime
    refresh_token: str | None = None
    id_token: str | None = None
    token_type: str = "Bearer"

    def is_valid(self, now: datetime | None = None) -> bool:
        """Both the access token and the token presented to STS must be unexpired."""
        now = now or now_utc()
        if not self.access_token or now >= self.expires_at:
            return False
        id_expiry = self.id_token_expires_at
        return id_expiry is None or now < id_expiry

    @property
    def identity_token(self) -> str:
        return self.id_token or self.access_token

    @property
    def id_token_expires_at(self) -> datetime | None:
        """``exp`` of the id_token; None when there is none or it is not a JWT."""
        if not self.id_token:
            return None
        try:
            exp = jwt.get_unverified_claims(self.id_token).get("exp")
        except JWTError:
            return None
        if not isinstance(exp, (int, float)):
            return None
        return datetime.fromtimestamp(exp, tz=timezone.utc)

    def to_bytes(self) -> bytes:
        data = asdict(self)
        data["expires_at"] = self.expires_at.isoformat()
        return json.dumps(data, separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_bytes(cls, raw: bytes) -> "TokenSet":
        data = json.loads(raw.decode("utf-8"))
        data["expires_at"] = datetime.fromisoformat(data["expires_at"])
        return cls(**data)

    @classmethod
    def from_response(cls, payload: dict[str, Any], previous: "TokenSet | None" = None) -> "TokenSet":
        if not payload.get("access_token"):
            raise ValueError("token response has no access_token")
        expires_in = int(payload.get("expires_in") or 3600)
        return cls(
            access_token=payload["access_token"],
            expires_at=now_utc() + timedelta(seconds=expires_in),
            # providers may omit the refresh token on refresh when it is not rotated
            refresh_token=payload.get("refresh_token") or (previous.refresh_token if previous else None),
            id_token=payload.get("id_token") or (previous.id_token if previous else None),
            token_type=payload.get("token_type") or "Bearer",
        )


class TokenEndpointError(Exception):
    def __init__(self, status_code: int, error: str):
        super().__init__(f"token endpoint returned {status_code}: {error}")
        self.status_code = status_code
        self.error = error


class OIDCClient:
    def __init__(
        self,
        provider_url: str,
        client_id: str,
        client_secret: str,
        redirect_url: str,
        scopes: list[str] | None = None,
        http: httpx.Client | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._lock = threading.Lock()
        self._http = http or httpx.Client(timeout=timeout)
        self._discovery: dict[str, Any] | None = None
        self._jwks: dict[str, Any] | None = None
        self.scopes = scopes or ["openid", "profile", "email", "offline_access"]
        self.configure(provider_url, client_id, client_secret, redirect_url)

    def configure(self, provider_url: str, client_id: str, client_secret: str, redirect_url: str) -> None:
        with self._lock:
            self.provider_url = provider_url.rstrip("/")
            self.client_id = client_id
            self.client_secret = client_secret
            self.redirect_url = redirect_url
            self._discovery = None
            self._jwks = None

    def close(self) -> None:
        self._http.close()

    # -------------------- discovery --------------------

    def metadata(self) -> dict[str, Any]:
        with self._lock:
            if self._discovery is not None:
                return self._discovery
            url = self.provider_url
        resp = self._http.get(url + DISCOVERY_PATH)
        resp.raise_for_status()
        doc = resp.json()
        for key in ("issuer", "authorization_endpoint", "token_endpoint", "jwks_uri"):
            if key not in doc:
                raise ValueError(f"discovery document missing {key}")
        with self._lock:
            self._discovery = doc
        logger.info("loaded OIDC discovery document for %s", doc["issuer"])
        return doc

    def _jwk_set(self, refresh: bool = False) -> dict[str, Any]:
        with self._lock:
            if self._jwks is not None and not refresh:
                return self._jwks
        resp = self._http.get(self.metadata()["jwks_uri"])
        resp.raise_for_status()
        jwks = resp.json()
        with self._lock:
            self._jwks = jwks
        return jwks

    # -------------------- flows --------------------

    def authorization_url(self, state: str, nonce: str) -> str:
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_url,
            "scope": " ".join(self.scopes),
            "state": state,
            "nonce": nonce,
        }
        return f"{self.metadata()['authorization_endpoint']}?{urlencode(params)}"

    def _token_request(self, form: dict[str, str]) -> dict[str, Any]:
        form = {**form, "client_id": self.client_id, "client_secret": self.client_secret}
        resp = self._http.post(
            self.metadata()["token_endpoint"],
            data=form,
            headers={"Accept": "application/json"},
        )
        if resp.status_code >= 400:
            try:
                error = resp.json().get("error", "unknown_error")
            except ValueError:
                error = "unknown_error"
            raise TokenEndpointError(resp.status_code, error)
        return resp.json()

    def exchange_code(self, code: str) -> TokenSet:
        try:
            payload = self._token_request(
                {"grant_type": "authorization_code", "code": code, "redirect_uri": self.redirect_url}
            )
            return TokenSet.from_response(payload)
        except (httpx.HTTPError, TokenEndpointError, ValueError) as e:
            raise LoginExchangeError(str(e)) from e

    def refresh(self, token: TokenSet) -> TokenSet:
        """Raises TokenEndpointError, httpx.HTTPError or ValueError; the broker maps them."""
        if not token.refresh_token:
            raise ValueError("no refresh token stored")
        payload = self._token_request({"grant_type": "refresh_token", "refresh_token": token.refresh_token})
        return TokenSet.from_response(payload, previous=token)

    def verify_id_token(self, id_token: str | None, access_token: str | None = None) -> dict[str, Any]:
        if not id_token:
            raise InvalidIdTokenError("no id_token in token response")
        try:
            header = jwt.get_unverified_header(id_token)
        except JWTError as e:
            raise InvalidIdTokenError(str(e)) from e
        alg = header.get("alg", "RS256")
        if alg == "none" or alg.startswith("HS"):
            raise InvalidIdTokenError(f"unsupported signing algorithm {alg}")

        try:
            meta = self.metadata()
            jwks = self._jwk_set()
            kid = header.get("kid")
            if kid and not any(k.get("kid") == kid for k in jwks.get("keys", [])):
                # key rotation on the provider side
                jwks = self._jwk_set(refresh=True)
        except (httpx.HTTPError, ValueError) as e:
            raise InvalidIdTokenError(f"could not load provider signing keys ({e})") from e
        try:
            return jwt.decode(
                id_token,
                jwks,
                algorithms=[alg],
                audience=self.client_id,
                issuer=meta["issuer"],
                access_token=access_token,
            )
        except JWTError as e:
            raise InvalidIdTokenError(str(e)) from e
