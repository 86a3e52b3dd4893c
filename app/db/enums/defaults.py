"""Centralized defaults for enums."""

from app.db.enums.channels import ChannelState, PostImportAction
from app.db.enums.jobs import JobStatus


DEFAULT_JOB_STATUS: JobStatus = JobStatus.PENDING
DEFAULT_CHANNEL_STATE: ChannelState = ChannelState.UNCONNECTED
DEFAULT_POST_IMPORT_ACTION: PostImportAction = PostImportAction.LEAVE
