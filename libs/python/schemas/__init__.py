"""Shared schema exports."""

from .account import ScopedAccount, SessionGrant
from .access import Directory, Group, PermissionDecision
from .tenant import FileEntry, PublishedFile, StorageDescriptor, TemplateApplication, Tenant

__all__ = [
    "Directory",
    "FileEntry",
    "Group",
    "PermissionDecision",
    "PublishedFile",
    "ScopedAccount",
    "SessionGrant",
    "StorageDescriptor",
    "TemplateApplication",
    "Tenant",
]
