from __future__ import annotations
from fastapi import HTTPException, Request


def current_user(request: Request) -> str | None:
    return request.session.get("user")


def login(request: Request, user: str, accounts: list[str]) -> None:
    request.session["user"] = user
    request.session["accounts"] = accounts


def logout(request: Request) -> None:
    request.session.pop("user", None)
    request.session.pop("accounts", None)


def require_admin(request: Request) -> str | None:
    """Dependency for the admin API: a verified login session is required."""
    if not request.app.state.settings.ADMIN_AUTH_REQUIRED:
        return None
    user = current_user(request)
    if not user:
        raise HTTPException(status_code=401, detail="Login required: visit /auth/login")
    return user
