"""Job handler registry."""

from __future__ import annotations

from typing import Awaitable, Callable, Mapping

from app.db.enums import JobType
from app.jobs.handlers import channels

JobHandler = Callable[[object, object], Awaitable[None]]

JOB_HANDLERS: Mapping[str, JobHandler] = {
    JobType.CHANNEL_SYNC.value: channels.process_channel_sync,
    JobType.CHANNEL_WEBHOOK_INGEST.value: channels.process_channel_webhook_ingest,
    JobType.CHANNEL_SEND.value: channels.process_channel_send,
}


def resolve_job_handler(job_type: str) -> JobHandler:
    handler = JOB_HANDLERS.get(job_type)
    if not handler:
        raise ValueError(f"Unknown job type: {job_type}")
    return handler
