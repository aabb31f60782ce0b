"""Tenant-scoped OAuth connectors with encrypted credential storage."""
