"""auditbot errors."""


class AuditBotError(Exception):
    """Base error for auditbot operations."""

    def __init__(self, message: str, code: str = "AUDITBOT_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class ScheduleParseError(AuditBotError):
    """Recurrence expression could not be parsed."""

    def __init__(self, expression: str, reason: str = ""):
        detail = f"Invalid schedule expression {expression!r}"
        if reason:
            detail = f"{detail}: {reason}"
        super().__init__(detail, "SCHEDULE_PARSE_ERROR")
        self.expression = expression


class UnknownOperationError(AuditBotError):
    """No audit operation is registered for a service/command pair."""

    def __init__(self, service: str, command: str):
        super().__init__(f"Unknown operation: {service}/{command}", "UNKNOWN_OPERATION")
        self.service = service
        self.command = command


class NotFound(AuditBotError):
    """Task does not exist."""

    def __init__(self, task_id: str):
        super().__init__(f"Task not found: {task_id}", "TASK_NOT_FOUND")
        self.task_id = task_id


class CredentialError(AuditBotError):
    """Base for credential broker failures."""

    def __init__(self, account_id: str, message: str, code: str):
        super().__init__(message, code)
        self.account_id = account_id


class NoTokenError(CredentialError):
    def __init__(self, account_id: str):
        super().__init__(account_id, f"No login token cached for account {account_id}", "NO_TOKEN")


class RefreshFailedError(CredentialError):
    def __init__(self, account_id: str, reason: str = ""):
        message = f"Token refresh failed for account {account_id}; login again"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(account_id, message, "REFRESH_FAILED")


class DecryptionError(CredentialError):
    """Cached entry is corrupted or was encrypted under another key."""

    def __init__(self, account_id: str):
        super().__init__(
            account_id,
            f"Cached token for account {account_id} could not be decrypted; login again",
            "DECRYPTION_FAILED",
        )


class FederationError(CredentialError):
    """The identity token was not accepted by the account's trust boundary."""

    def __init__(self, account_id: str, reason: str):
        super().__init__(account_id, f"Role federation failed for account {account_id}: {reason}", "FEDERATION_FAILED")


class LoginError(AuditBotError):
    """Base for rejected login callbacks. The message is safe to show to users."""


class InvalidStateError(LoginError):
    def __init__(self) -> None:
        super().__init__("Login state is unknown, expired or already used", "INVALID_STATE")


class NonceMismatchError(LoginError):
    def __init__(self) -> None:
        super().__init__("Identity token nonce does not match the login request", "NONCE_MISMATCH")


class InvalidIdTokenError(LoginError):
    def __init__(self, reason: str) -> None:
        super().__init__(f"Identity token rejected: {reason}", "INVALID_ID_TOKEN")


class LoginExchangeError(LoginError):
    def __init__(self, reason: str) -> None:
        super().__init__(f"Identity provider exchange failed: {reason}", "LOGIN_EXCHANGE_FAILED")


class PartialAccountFailure(AuditBotError):
    """One account of a multi-account task failed; the others are still reported."""

    def __init__(self, account_id: str, cause: Exception):
        reason = getattr(cause, "message", None) or str(cause) or type(cause).__name__
        super().__init__(f"Account {account_id}: {reason}", "PARTIAL_ACCOUNT_FAILURE")
        self.account_id = account_id
        self.cause = cause
