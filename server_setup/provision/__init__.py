"""Provisioning flows built from ledger-gated stages."""
