"""Tenant authorization DTOs."""

from __future__ import annotations

from enum import Enum
from pydantic import BaseModel, Field


class Grant(str, Enum):
    read = "read"
    write = "write"


class Group(BaseModel):
    name: str
    accounts: list[str] = Field(default_factory=list)
    directories: list[str] = Field(default_factory=list)


class Directory(BaseModel):
    path: str
    grant: Grant = Grant.read
    groups: list[str] = Field(default_factory=list)
    accounts: list[str] = Field(default_factory=list)

    class Config:
        use_enum_values = True


class PermissionDecision(BaseModel):
    allowed: bool
    rule: str
    directory: str | None = None
