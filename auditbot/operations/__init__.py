"""Registry of audit operations keyed by (service, command)."""

from __future__ import annotations

from typing import Callable

from auditbot.errors import UnknownOperationError
from auditbot.operations.base import AccountResult, AuditOperation, AuditReport, CredentialProvider
from auditbot.operations.iam import ListUsers
from auditbot.operations.storage import CheckUnusedBuckets

__all__ = [
    "AccountResult",
    "AuditOperation",
    "AuditReport",
    "CredentialProvider",
    "OperationRegistry",
    "default_registry",
]


class OperationRegistry:
    def __init__(self) -> None:
        self._factories: dict[tuple[str, str], Callable[[], AuditOperation]] = {}

    def register(self, service: str, command: str, factory: Callable[[], AuditOperation]) -> None:
        self._factories[(service.lower(), command.lower())] = factory

    def resolve(self, service: str, command: str) -> AuditOperation:
        factory = self._factories.get(((service or "").strip().lower(), (command or "").strip().lower()))
        if factory is None:
            raise UnknownOperationError(service, command)
        return factory()

    def pairs(self) -> list[tuple[str, str]]:
        return sorted(self._factories)


def default_registry(unused_bucket_days: int = 30) -> OperationRegistry:
    registry = OperationRegistry()
    registry.register("iam", "list_users", ListUsers)
    registry.register("iam", "list_iam_users", ListUsers)

    def unused_buckets() -> AuditOperation:
        return CheckUnusedBuckets(days=unused_bucket_days)

    registry.register("storage", "check_unused", unused_buckets)
    registry.register("storage", "check_unused_buckets", unused_buckets)
    registry.register("s3", "check_unused", unused_buckets)
    registry.register("s3", "check_unused_buckets", unused_buckets)
    return registry
