from __future__ import annotations

from auditbot.broker import DelegatedCredential
from auditbot.operations.base import AuditOperation


class ListUsers(AuditOperation):
    service = "iam"
    command = "list_users"
    title = "IAM users that still exist in accounts:"
    footer = (
        "Please delete these IAM users as the organization is moving to OIDC roles "
        "for AWS authentication."
    )

    def check(self, account_id: str, credential: DelegatedCredential) -> list[str]:
        iam = credential.client("iam")
        users: list[str] = []
        for page in iam.get_paginator("list_users").paginate():
            users.extend(u["UserName"] for u in page.get("Users", []))
        return users
