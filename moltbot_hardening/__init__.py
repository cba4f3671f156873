"""Provisioning, hardening, verification and rollback tooling for a Moltbot host."""

APP_NAME: str = "Moltbot Hardening"
VERSION: str = "1.0.0"
__version__ = VERSION
