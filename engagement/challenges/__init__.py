"""Challenge engagement lifecycle: records, state machine, scoring and service."""
