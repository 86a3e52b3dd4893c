"""Job-related enums."""

from enum import Enum


class JobType(str, Enum):
    """Types of background jobs."""

    CHANNEL_SYNC = "channel_sync"  # Poll one channel via fetch_since
    CHANNEL_WEBHOOK_INGEST = "channel_webhook_ingest"  # Deferred push ingestion
    CHANNEL_SEND = "channel_send"  # Outbound reply through a channel


class JobStatus(str, Enum):
    """Status of background jobs."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
