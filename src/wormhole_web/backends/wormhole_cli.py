"""Transfer backend that drives the ``magic-wormhole`` command-line program."""

from __future__ import annotations

import asyncio
import io
import logging
import re
import shutil
import tempfile
from collections import deque
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO

import aiofiles

from wormhole_web.backends.base import Offer, PayloadKind, TransferResult
from wormhole_web.errors import BackendError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from aiofiles.threadpool.binary import AsyncBufferedReader

logger = logging.getLogger(__name__)

_CODE_LINE_RE = re.compile(r"Wormhole code is:\s*(\S+)")
_STDERR_TAIL = 20


class BufferedTextMessage:
    """A text payload already held in memory."""

    kind = PayloadKind.TEXT

    def __init__(self, data: bytes, name: str = "") -> None:
        self.name = name
        self.total_bytes = len(data)
        self._buffer = io.BytesIO(data)

    async def read(self, size: int = -1) -> bytes:
        return self._buffer.read(size)

    async def close(self) -> None:
        self._buffer.close()


class StagedFileMessage:
    """A received file sitting in a private staging directory.

    The staging directory is removed on :meth:`close`.
    """

    kind = PayloadKind.FILE

    def __init__(self, path: Path, staging_dir: Path) -> None:
        self.name = path.name
        self.total_bytes = path.stat().st_size
        self._path = path
        self._staging_dir = staging_dir
        self._fh: AsyncBufferedReader | None = None

    async def read(self, size: int = -1) -> bytes:
        if self._fh is None:
            self._fh = await aiofiles.open(self._path, "rb")
        return await self._fh.read(size)

    async def close(self) -> None:
        if self._fh is not None:
            await self._fh.close()
            self._fh = None
        await asyncio.to_thread(shutil.rmtree, self._staging_dir, True)


def _last_line(lines: Sequence[str], fallback: str) -> str:
    for line in reversed(lines):
        if line.strip():
            return line.strip()
    return fallback


class WormholeCliBackend:
    """Run ``wormhole send``/``wormhole receive`` as subprocesses.

    Sends resolve as soon as the program prints the exchange code; the
    completion awaitable then follows the process until it exits.
    Receives run to completion in a staging directory before the payload is
    handed over.
    """

    def __init__(
        self,
        executable: str = "wormhole",
        appid: str | None = None,
        relay_url: str | None = None,
    ) -> None:
        self.executable = executable
        self._global_args: list[str] = []
        if appid:
            self._global_args += ["--appid", appid]
        if relay_url:
            self._global_args += ["--relay-url", relay_url]

    async def _spawn(self, *args: str, **kwargs) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(
                self.executable, *self._global_args, *args, **kwargs,
            )
        except FileNotFoundError as exc:
            raise BackendError(
                f"wormhole executable not found: {self.executable}"
            ) from exc
        except OSError as exc:
            raise BackendError(f"Failed to start wormhole: {exc}") from exc

    async def send_text(self, text: str) -> Offer:
        proc = await self._spawn(
            "send", "--text", "-",
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        stdin = _pipe(proc.stdin, "stdin")
        stdin.write(text.encode())
        await stdin.drain()
        stdin.close()
        return await self._await_code(proc)

    async def send_file(self, name: str, stream: BinaryIO) -> Offer:
        source = Path(getattr(stream, "name", "") or "")
        spool_dir: Path | None = None
        if not source.is_file() or source.name != name:
            # The program sends a path, named after its basename.
            spool_dir = Path(await asyncio.to_thread(tempfile.mkdtemp, prefix="wormhole-send-"))
            source = spool_dir / name
            await asyncio.to_thread(_spool, stream, source)

        try:
            proc = await self._spawn(
                "send", "--hide-progress", str(source),
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
            offer = await self._await_code(proc)
        except BaseException:
            if spool_dir is not None:
                shutil.rmtree(spool_dir, ignore_errors=True)
            raise

        if spool_dir is None:
            return offer
        return Offer(code=offer.code, completion=_then_remove(offer.completion, spool_dir))

    async def receive(self, code: str) -> BufferedTextMessage | StagedFileMessage:
        staging = Path(await asyncio.to_thread(tempfile.mkdtemp, prefix="wormhole-recv-"))
        try:
            proc = await self._spawn(
                "receive", "--accept-file", "--hide-progress", code,
                cwd=str(staging),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await proc.communicate()
            if proc.returncode != 0:
                raise BackendError(
                    _last_line(
                        stderr.decode(errors="replace").splitlines(),
                        f"wormhole receive exited with status {proc.returncode}",
                    )
                )

            entries = list(staging.iterdir())
            if not entries:
                text = stdout.decode(errors="replace")
                if text.endswith("\n"):
                    text = text[:-1]
                shutil.rmtree(staging, ignore_errors=True)
                return BufferedTextMessage(text.encode())
            if len(entries) == 1 and entries[0].is_file():
                return StagedFileMessage(entries[0], staging)
            raise BackendError("Directory transfers are not supported")
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise

    async def _await_code(self, proc: asyncio.subprocess.Process) -> Offer:
        stderr = _pipe(proc.stderr, "stderr")
        tail: deque[str] = deque(maxlen=_STDERR_TAIL)
        while True:
            raw = await stderr.readline()
            if not raw:
                break
            line = raw.decode(errors="replace").rstrip()
            tail.append(line)
            match = _CODE_LINE_RE.search(line)
            if match:
                logger.debug("wormhole issued code for pid %s", proc.pid)
                return Offer(
                    code=match.group(1),
                    completion=asyncio.ensure_future(_wait_for_exit(proc, tail)),
                )

        returncode = await proc.wait()
        raise BackendError(
            _last_line(tail, f"wormhole exited with status {returncode} before issuing a code")
        )


def _pipe(stream, name: str):
    if stream is None:
        raise BackendError(f"wormhole {name} pipe is not available")
    return stream


def _spool(stream: BinaryIO, target: Path) -> None:
    with open(target, "wb") as dst:
        shutil.copyfileobj(stream, dst)


async def _wait_for_exit(proc: asyncio.subprocess.Process, tail: deque[str]) -> TransferResult:
    stderr = _pipe(proc.stderr, "stderr")
    while True:
        raw = await stderr.readline()
        if not raw:
            break
        tail.append(raw.decode(errors="replace").rstrip())
    returncode = await proc.wait()
    if returncode == 0:
        return TransferResult(ok=True)
    return TransferResult(
        ok=False,
        error=_last_line(tail, f"wormhole exited with status {returncode}"),
    )


async def _then_remove(completion, directory: Path) -> TransferResult:
    try:
        return await completion
    finally:
        await asyncio.to_thread(shutil.rmtree, directory, True)
