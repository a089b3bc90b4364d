"""Contract between transfer orchestration and a wormhole implementation."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, BinaryIO, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Awaitable


class PayloadKind(str, Enum):
    TEXT = "text"
    FILE = "file"


@dataclass
class TransferResult:
    """Outcome reported once by a send's completion signal."""

    ok: bool
    error: str | None = field(default=None)


@dataclass
class Offer:
    """A send the backend has accepted: the code to share and its completion."""

    code: str
    completion: Awaitable[TransferResult]


@runtime_checkable
class IncomingMessage(Protocol):
    """A received payload, readable as a byte stream."""

    name: str
    total_bytes: int
    kind: PayloadKind

    async def read(self, size: int = -1) -> bytes: ...

    async def close(self) -> None: ...


@runtime_checkable
class TransferBackend(Protocol):
    """Anything that can exchange codes and move bytes between peers.

    Implementations raise :class:`wormhole_web.errors.BackendError` for
    handshake, transit or remote-side failures.
    """

    async def send_text(self, text: str) -> Offer: ...

    async def send_file(self, name: str, stream: BinaryIO) -> Offer: ...

    async def receive(self, code: str) -> IncomingMessage: ...
