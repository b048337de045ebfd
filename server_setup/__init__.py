"""Idempotent server provisioning and webhook-alerting monitors."""

__version__ = "1.0.0"
