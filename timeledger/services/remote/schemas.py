from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from timeledger.core.dates import parse_remote_date, parse_remote_datetime


class _RemoteModel(BaseModel):
    # Tracker payloads carry many fields we never mirror.
    model_config = ConfigDict(extra="ignore")

    @field_validator("created_on", "updated_on", mode="before", check_fields=False)
    @classmethod
    def _parse_timestamps(cls, value: Any) -> Any:
        if isinstance(value, str):
            return parse_remote_datetime(value)
        return value


class NamedRef(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    name: str | None = None


class CustomField(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int | None = None
    name: str = ""
    value: Any = None


class RemoteUser(_RemoteModel):
    id: int
    login: str | None = None
    firstname: str = ""
    lastname: str = ""
    mail: str | None = None
    # 1 active, 2 registered, 3 locked.
    status: int = 1
    created_on: datetime | None = None
    updated_on: datetime | None = None

    @property
    def display_name(self) -> str:
        name = f"{self.firstname} {self.lastname}".strip()
        return name or (self.login or f"user-{self.id}")


class RemoteProject(_RemoteModel):
    id: int
    name: str
    identifier: str | None = None
    description: str | None = None
    # 1 active, 5 closed, 9 archived.
    status: int = 1
    parent: NamedRef | None = None
    custom_fields: list[CustomField] = Field(default_factory=list)
    created_on: datetime | None = None
    updated_on: datetime | None = None


class RemoteIssue(_RemoteModel):
    id: int
    project: NamedRef
    subject: str = ""
    status: NamedRef | None = None
    tracker: NamedRef | None = None
    priority: NamedRef | None = None
    assigned_to: NamedRef | None = None
    estimated_hours: Decimal | None = None
    done_ratio: int | None = None
    due_date: date | None = None
    created_on: datetime | None = None
    updated_on: datetime | None = None

    @field_validator("due_date", mode="before")
    @classmethod
    def _parse_due_date(cls, value: Any) -> Any:
        if isinstance(value, str):
            return parse_remote_date(value)
        return value

    @field_validator("estimated_hours", mode="before")
    @classmethod
    def _parse_estimate(cls, value: Any) -> Any:
        # Float estimates are carried through their string form to stay exact.
        if isinstance(value, float):
            return Decimal(str(value))
        return value


class RemoteTimeEntry(_RemoteModel):
    id: int
    project: NamedRef
    user: NamedRef
    issue: NamedRef | None = None
    activity: NamedRef | None = None
    hours: Decimal
    comments: str | None = None
    spent_on: date
    created_on: datetime | None = None
    updated_on: datetime | None = None

    @field_validator("hours", mode="before")
    @classmethod
    def _parse_hours(cls, value: Any) -> Any:
        if isinstance(value, float):
            return Decimal(str(value))
        return value


class RemoteMembership(_RemoteModel):
    id: int
    project: NamedRef
    user: NamedRef | None = None
    group: NamedRef | None = None
    roles: list[NamedRef] = Field(default_factory=list)
