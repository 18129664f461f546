from dataclasses import dataclass
from typing import Optional

PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"

STATUSES = (PENDING, PROCESSING, COMPLETED, FAILED)

# Allowed next statuses; processing → processing is a progress update
TRANSITIONS: dict[str, tuple[str, ...]] = {
    PENDING:    (PROCESSING,),
    PROCESSING: (PROCESSING, COMPLETED, FAILED),
    COMPLETED:  (),
    FAILED:     (),
}

AUDIO = "audio"
VIDEO = "video"
MEDIA_KINDS = (AUDIO, VIDEO)


class PipelineState:
    """Per-job automation stages, in order. FAILED is reachable from any of them."""

    INIT = "init"
    WORKSPACE_CREATED = "workspace_created"
    SOURCE_ATTACHED = "source_attached"
    GENERATING_BOTH = "generating_both"
    ARTIFACTS_READY = "artifacts_ready"
    UPLOADED = "uploaded"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class OriginRef:
    """Where a request came from and where its results go back to."""

    channel: str                     # chat id
    thread: str                      # message id the bot replies to
    user: str
    workspace: Optional[str] = None  # bot id that received the mention


@dataclass
class Job:
    id: int
    url: str
    origin: OriginRef
    status: str          # pending | processing | completed | failed
    progress: int = 0
    current_step: Optional[str] = None
    error_message: Optional[str] = None
    ack_message_ref: Optional[str] = None
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None


@dataclass
class Artifact:
    job_id: int
    kind: str            # audio | video
    filename: str
    storage_key: str
    public_ref: str
    byte_size: int
    expires_at: str
    created_at: Optional[str] = None
    id: Optional[int] = None
