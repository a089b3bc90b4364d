from datetime import datetime, timezone
from enum import Enum
from urllib.parse import unquote

from pydantic import BaseModel, ConfigDict, Field

from wormhole_web.errors import InvalidTransitionError

SCHEMA_VERSION = 1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TransferDirection(str, Enum):
    """Whether this process is sending or receiving."""
    SEND = "send"
    RECEIVE = "receive"


class TransferState(str, Enum):
    """Enumeration of possible states for a transfer."""
    SENDING = "sending"
    WAITING = "waiting"
    RECEIVING = "receiving"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (TransferState.COMPLETE, TransferState.ERROR)


_TRANSITIONS: dict[TransferState, frozenset[TransferState]] = {
    TransferState.SENDING: frozenset({TransferState.WAITING, TransferState.ERROR}),
    TransferState.WAITING: frozenset({TransferState.COMPLETE, TransferState.ERROR}),
    TransferState.RECEIVING: frozenset({TransferState.COMPLETE, TransferState.ERROR}),
    TransferState.COMPLETE: frozenset(),
    TransferState.ERROR: frozenset(),
}


class TransferRecord(BaseModel):
    """Authoritative status of one send or receive operation.

    Serialized with the field aliases below; ``created_at``/``updated_at``
    are bookkeeping for retention and never leave the process.
    """

    model_config = ConfigDict(populate_by_name=True)

    schema_version: int = Field(default=SCHEMA_VERSION, alias="schemaVersion")
    id: str
    direction: TransferDirection = Field(alias="type")
    state: TransferState = Field(alias="status")
    code: str | None = None
    filename: str | None = None
    progress: float = 0.0
    bytes_transferred: int = Field(default=0, alias="transferred")
    bytes_total: int = Field(default=0, alias="total")
    error: str | None = None
    text_content: str | None = Field(default=None, alias="textContent")
    download_path: str | None = Field(default=None, alias="downloadPath")
    created_at: datetime = Field(default_factory=_utcnow, exclude=True)
    updated_at: datetime = Field(default_factory=_utcnow, exclude=True)

    def advance(self, state: TransferState) -> None:
        """Move to *state*, refusing anything but a forward transition."""
        if state not in _TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"{self.id}: cannot move from {self.state.value} to {state.value}"
            )
        self.state = state

    def fail(self, message: str) -> None:
        self.advance(TransferState.ERROR)
        self.error = message

    def record_progress(self, transferred: int) -> None:
        """Update byte counters; the percentage never goes down."""
        self.bytes_transferred = transferred
        if self.bytes_total > 0:
            percent = min(transferred / self.bytes_total * 100, 100.0)
            self.progress = max(self.progress, percent)

    @property
    def download_name(self) -> str | None:
        """Stored filename a finished receive serves; ``None`` for anything else."""
        if (
            self.direction != TransferDirection.RECEIVE
            or self.state != TransferState.COMPLETE
            or not self.download_path
        ):
            return None
        return unquote(self.download_path.rsplit("/", 1)[-1])

    def to_wire(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


class SendTextRequest(BaseModel):
    """Body of ``POST /api/send/text``."""
    text: str = ""


class ReceiveRequest(BaseModel):
    """Body of ``POST /api/receive``."""
    code: str = ""


class TransferAccepted(BaseModel):
    """Response for every request that starts a transfer."""
    id: str


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""
    status: str
    version: str
