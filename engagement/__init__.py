"""Challenge engagement tracking: state machine, scoring and cache reconciliation."""

__version__ = "0.1.0"
