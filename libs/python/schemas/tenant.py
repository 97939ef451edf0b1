"""Tenant and site content DTOs."""

from __future__ import annotations

from datetime import datetime
from pydantic import BaseModel, Field


class StorageDescriptor(BaseModel):
    provider: str
    bucket: str
    site_url: str


class Tenant(BaseModel):
    name: str
    owner_id: str
    collaborators: list[str] = Field(default_factory=list)
    state: str
    storage: StorageDescriptor | None = None
    providers: dict[str, str] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime


class FileEntry(BaseModel):
    key: str
    size: int
    content_type: str
    last_modified: datetime
    etag: str


class PublishedFile(BaseModel):
    key: str
    content_type: str
    size: int
    url: str | None = None


class TemplateApplication(BaseModel):
    template: str
    written: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    replaced: bool = False
