"""Tenant provisioning and scoped identity service."""
