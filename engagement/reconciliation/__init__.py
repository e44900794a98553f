"""Reconciliation between the local cache and the authoritative store."""
