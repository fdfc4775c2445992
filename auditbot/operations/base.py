from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable

from auditbot.broker import DelegatedCredential
from auditbot.errors import PartialAccountFailure

CredentialProvider = Callable[[str], DelegatedCredential]


@dataclass
class AccountResult:
    account_id: str
    findings: list[str] = field(default_factory=list)
    error: PartialAccountFailure | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class AuditReport:
    title: str
    results: list[AccountResult]
    footer: str = ""

    @property
    def succeeded(self) -> list[AccountResult]:
        return [r for r in self.results if r.ok]

    @property
    def failed(self) -> list[AccountResult]:
        return [r for r in self.results if not r.ok]

    def render(self) -> str:
        lines = [self.title]
        for r in self.succeeded:
            lines.append(f"Account {r.account_id}:")
            if r.findings:
                lines.extend(f"- {item}" for item in r.findings)
            else:
                lines.append("- nothing found")
        if self.failed:
            lines.append("")
            lines.append("Failed accounts:")
            lines.extend(f"- {r.error.message}" for r in self.failed)
        if self.footer and any(r.findings for r in self.succeeded):
            lines.append("")
            lines.append(self.footer)
        return "\n".join(lines)


class AuditOperation:
    """A read-only check run once per account with that account's credentials."""

    service: str = ""
    command: str = ""
    title: str = ""
    footer: str = ""

    def __init__(self, max_workers: int = 4) -> None:
        self.max_workers = max_workers

    def check(self, account_id: str, credential: DelegatedCredential) -> list[str]:
        raise NotImplementedError

    def _run_account(self, account_id: str, credentials: CredentialProvider) -> AccountResult:
        try:
            credential = credentials(account_id)
            return AccountResult(account_id, findings=self.check(account_id, credential))
        except Exception as e:
            return AccountResult(account_id, error=PartialAccountFailure(account_id, e))

    def execute(self, accounts: list[str], credentials: CredentialProvider) -> AuditReport:
        if not accounts:
            return AuditReport(self.title, [], self.footer)
        workers = max(1, min(self.max_workers, len(accounts)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"audit-{self.service}") as pool:
            results = list(pool.map(lambda a: self._run_account(a, credentials), accounts))
        return AuditReport(self.title, results, self.footer)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.service}/{self.command}>"
