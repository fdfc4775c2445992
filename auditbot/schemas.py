from __future__ import annotations
from datetime import datetime
from typing import Optional
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class TaskSpec(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str
    accounts: list[str] = Field(default_factory=list, validation_alias=AliasChoices("accounts", "aws_accounts"))
    service: str
    command: str
    schedule: str
    channel: str = Field(default="", validation_alias=AliasChoices("channel", "slack_channel"))

    @field_validator("name", "service", "command", "schedule", "channel")
    @classmethod
    def _strip(cls, v: str) -> str:
        return v.strip()

    @field_validator("accounts")
    @classmethod
    def _clean_accounts(cls, v: list[str]) -> list[str]:
        return [str(a).strip() for a in v if str(a).strip()]


class TaskOut(BaseModel):
    id: str
    name: str
    accounts: list[str]
    service: str
    command: str
    schedule: str
    channel: str
    next_run_at: Optional[datetime] = None


class RunOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    task_id: str
    task_name: str
    service: str
    command: str
    trigger: str
    status: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    report: str
    failed_accounts: str
    error_message: Optional[str] = None
    notified: bool


class ExecuteOut(BaseModel):
    task_id: str
    status: str
    result: str
    failed_accounts: list[str]


class BrokerSettingsOut(BaseModel):
    provider_url: str
    client_id: str
    client_secret: str  # masked
    redirect_url: str
    account_claim: str
    role_arn_template: str
    slack_token: str  # masked


class BrokerSettingsUpdate(BaseModel):
    provider_url: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    redirect_url: Optional[str] = None
    account_claim: Optional[str] = None
    role_arn_template: Optional[str] = None
    slack_token: Optional[str] = None

    @field_validator("role_arn_template")
    @classmethod
    def _needs_account_placeholder(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and "{account_id}" not in v:
            raise ValueError("role_arn_template must contain {account_id}")
        return v
