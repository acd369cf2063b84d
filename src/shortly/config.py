"""
Replication Configuration

Runtime settings for the outbox, consumers and lookup aggregation,
read from environment variables.
"""

import os


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class ReplicationConfig:
    """Replication settings from environment variables."""

    def __init__(self):
        self.service_name = os.getenv("SERVICE_NAME", "shortly")
        self.outbox_enabled = _env_bool("OUTBOX_ENABLED", "true")
        self.outbox_processor_enabled = _env_bool("OUTBOX_PROCESSOR_ENABLED", "true")
        self.outbox_table = os.getenv("OUTBOX_TABLE", "change_records")
        self.poll_interval = float(os.getenv("OUTBOX_POLL_INTERVAL", "1.0"))
        self.batch_size = int(os.getenv("OUTBOX_BATCH_SIZE", "100"))
        # Sweep the outbox right after a mutating transaction commits
        self.dispatch_after_commit = _env_bool("DISPATCH_AFTER_COMMIT", "true")
        self.lookup_recent_limit = int(os.getenv("LOOKUP_RECENT_LIMIT", "5"))
        self.transport_max_retries = int(os.getenv("TRANSPORT_MAX_RETRIES", "3"))
        self.log_level = os.getenv("LOG_LEVEL", "INFO").upper()
        self.log_structured = _env_bool("LOG_STRUCTURED", "true")
        self.otlp_endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT") or None

    def __repr__(self) -> str:
        return (
            f"ReplicationConfig(service={self.service_name}, "
            f"outbox_table={self.outbox_table}, batch_size={self.batch_size}, "
            f"poll_interval={self.poll_interval})"
        )


_config = None


def get_config() -> ReplicationConfig:
    """Get the process-wide replication config."""
    global _config
    if _config is None:
        _config = ReplicationConfig()
    return _config


def reset_config() -> None:
    """Drop the cached config (for testing)."""
    global _config
    _config = None
