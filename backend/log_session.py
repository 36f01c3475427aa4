"""
Live log streaming for the managed container.

One follow subscription is kept open against Docker and every decoded record
is fanned out to the connected viewers. When the container goes away the
session keeps retrying on a fixed delay until it comes back.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Union

from errors import DecodeError, NotFound
from log_frames import HEADER_SIZE, LogRecord, channel_name, decode_frames

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    STREAMING = "streaming"


def log_message(record: LogRecord, snapshot: bool = False) -> dict:
    message = {
        "type": "log",
        "channel": channel_name(record.channel),
        "line": record.text,
    }
    if snapshot:
        message["snapshot"] = True
    return message


def notice_message(text: str) -> dict:
    return {"type": "notice", "message": text}


class LiveLogSession:
    def __init__(self, docker_manager, manager, retry_delay: float = 5.0, max_frame_bytes: Optional[int] = None):
        self.docker_manager = docker_manager
        self.manager = manager
        self.retry_delay = retry_delay
        self.max_frame_bytes = max_frame_bytes
        self.state = SessionState.DISCONNECTED
        self._task: Optional[asyncio.Task] = None
        self._stream = None
        self._carry = b""
        self._skip = 0

    @property
    def container_name(self) -> str:
        return self.docker_manager.container_name

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        """Kick off the connect loop. Returns False if it is already scheduled."""
        if self.running:
            return False
        self._task = asyncio.get_running_loop().create_task(self._run())
        return True

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._close_stream()
        self.state = SessionState.DISCONNECTED

    async def _run(self) -> None:
        while True:
            try:
                await self._connect_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Log session for {self.container_name} failed: {e}")
            self.state = SessionState.DISCONNECTED
            await asyncio.sleep(self.retry_delay)

    async def _connect_once(self) -> None:
        self.state = SessionState.CONNECTING
        try:
            ref = await asyncio.to_thread(self.docker_manager.find_container)
        except Exception as e:
            ref = None
            logger.warning(f"Container lookup failed: {e}")
        if ref is None:
            logger.warning(f"{self.container_name} not found, retrying in {self.retry_delay:g}s")
            await self.manager.broadcast(
                notice_message(f"{self.container_name} not found, retrying in {self.retry_delay:g}s")
            )
            return

        try:
            self._stream = await asyncio.to_thread(self.docker_manager.open_log_stream, ref.id, True, 0)
        except Exception as e:
            self._stream = None
            self.state = SessionState.DISCONNECTED
            logger.warning(f"Could not follow logs of {ref.name}: {e}")
            await self.manager.broadcast(
                notice_message(f"Could not follow {self.container_name} logs, retrying in {self.retry_delay:g}s")
            )
            return

        self.state = SessionState.STREAMING
        logger.info(f"Streaming logs from {ref.name} ({ref.id[:12]})")
        await self.manager.broadcast(notice_message(f"Connected to {self.container_name} logs"))
        try:
            while True:
                chunk = await asyncio.to_thread(self._stream.next_chunk)
                if chunk is None:
                    break
                await self._handle_chunk(chunk)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Log stream of {ref.name} errored: {e}")
        await self._lost_connection()

    async def _handle_chunk(self, chunk: bytes) -> None:
        if self._skip:
            dropped = min(self._skip, len(chunk))
            self._skip -= dropped
            chunk = chunk[dropped:]
        buffer = self._carry + chunk
        while True:
            try:
                result = decode_frames(buffer, self.max_frame_bytes)
            except DecodeError as e:
                logger.error(f"Dropping undecodable log data: {e}")
                await self._broadcast_records(e.records)
                # The length field is still trusted: skip that payload and resync after it
                end = e.offset + HEADER_SIZE + e.length
                if end > len(buffer):
                    self._skip = end - len(buffer)
                    self._carry = b""
                    return
                buffer = buffer[end:]
                continue
            self._carry = result.remainder
            await self._broadcast_records(result.records)
            return

    async def _broadcast_records(self, records: List[LogRecord]) -> None:
        for record in records:
            await self.manager.broadcast(log_message(record))

    async def _lost_connection(self) -> None:
        self._close_stream()
        self._carry = b""
        self._skip = 0
        self.state = SessionState.DISCONNECTED
        logger.warning(f"Lost connection to {self.container_name} logs, retrying in {self.retry_delay:g}s")
        await self.manager.broadcast(
            notice_message(f"Lost connection to {self.container_name} logs, retrying in {self.retry_delay:g}s")
        )

    def _close_stream(self) -> None:
        stream, self._stream = self._stream, None
        if stream is not None:
            stream.close()


# ==================== Snapshot ====================

def normalize_tail(tail: Optional[int]) -> Union[int, str]:
    """None or a negative count means the whole backlog."""
    if tail is None or tail < 0:
        return "all"
    return int(tail)


@dataclass
class LogSnapshot:
    tail: Union[int, str]
    records: List[LogRecord] = field(default_factory=list)

    def framed(self) -> List[dict]:
        messages = [{"type": "snapshot_begin", "tail": self.tail}]
        messages.extend(log_message(record, snapshot=True) for record in self.records)
        messages.append({"type": "snapshot_end", "count": len(self.records)})
        return messages


async def fetch_snapshot(docker_manager, tail: Optional[int] = None, max_frame_bytes: Optional[int] = None) -> LogSnapshot:
    effective = normalize_tail(tail)
    snapshot = LogSnapshot(tail=effective)
    if effective == 0:
        # Nothing to read, but a missing container is still reported
        ref = await asyncio.to_thread(docker_manager.find_container)
        if ref is None:
            raise NotFound(f"Container {docker_manager.container_name} not found")
        return snapshot

    raw = await asyncio.to_thread(docker_manager.read_logs, effective)
    try:
        result = decode_frames(raw, max_frame_bytes)
    except DecodeError as e:
        logger.error(f"Snapshot log data is malformed, discarding the rest: {e}")
        snapshot.records = e.records
        return snapshot
    if result.remainder:
        logger.warning(f"Snapshot ended with {len(result.remainder)} bytes of a truncated frame; discarded")
    snapshot.records = result.records
    return snapshot
