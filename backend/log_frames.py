"""
Docker multiplexed log stream decoding.

Containers started without a TTY deliver stdout and stderr interleaved on a
single stream. Every frame carries an 8 byte header:

    [channel: 1 byte][reserved: 3 bytes][length: uint32 big-endian]

followed by ``length`` bytes of payload.
"""

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import List, NamedTuple, Optional, Union

from errors import DecodeError

HEADER = struct.Struct(">BxxxL")
HEADER_SIZE = HEADER.size


class LogChannel(IntEnum):
    STDIN = 0
    STDOUT = 1
    STDERR = 2


def _channel(tag: int) -> Union[LogChannel, int]:
    try:
        return LogChannel(tag)
    except ValueError:
        return tag


def channel_name(channel: Union[LogChannel, int]) -> str:
    if isinstance(channel, LogChannel):
        return channel.name.lower()
    return str(channel)


@dataclass(frozen=True)
class LogRecord:
    channel: Union[LogChannel, int]
    payload: bytes

    @property
    def text(self) -> str:
        return self.payload.decode("utf-8", errors="replace")


class DecodeResult(NamedTuple):
    records: List[LogRecord]
    remainder: bytes
    incomplete: bool


def encode_frame(channel: Union[LogChannel, int], payload: bytes) -> bytes:
    return HEADER.pack(int(channel), len(payload)) + payload


def decode_frames(buffer: bytes, max_payload: Optional[int] = None) -> DecodeResult:
    """Split ``buffer`` into complete frames.

    Bytes that do not form a complete frame are returned as ``remainder`` so
    the caller can prepend them to the next chunk. ``incomplete`` is set only
    when a header was read but its payload is cut short; a dangling partial
    header just means no more complete frames.

    Raises DecodeError when a header declares more than ``max_payload`` bytes.
    """
    view = memoryview(buffer)
    total = len(view)
    records: List[LogRecord] = []
    offset = 0
    while total - offset >= HEADER_SIZE:
        tag, length = HEADER.unpack_from(view, offset)
        if max_payload is not None and length > max_payload:
            raise DecodeError(
                f"Frame at offset {offset} declares {length} bytes (limit {max_payload})",
                records,
                offset=offset,
                length=length,
            )
        start = offset + HEADER_SIZE
        end = start + length
        if end > total:
            return DecodeResult(records, bytes(view[offset:]), True)
        records.append(LogRecord(_channel(tag), bytes(view[start:end])))
        offset = end
    return DecodeResult(records, bytes(view[offset:]), False)
