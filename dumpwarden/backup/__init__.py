"""
Backup pipeline for Dumpwarden.

This package handles the core backup functionality including:
- SSH tunnels and connectivity probes
- Database dumps via the external dump utility
- Compression
- Remote storage (Google Drive, S3) and audit logging
- Execution orchestration
- Retention policy enforcement

Submodules are imported directly; dumpwarden.store depends on
dumpwarden.backup.errors, so nothing here may import the executor eagerly.
"""
