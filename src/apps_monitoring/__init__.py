"""Telemetry polling, idempotent ingestion and alerting for app service owners."""

__version__ = "0.1.0"
