"""
Incremental Server-Sent Events decoder.

Records are split on the raw ``b"\\n\\n"`` separator before any text decoding,
so a multi-byte character straddling two network chunks is reassembled
before it is decoded. Only complete records leave the buffer.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

RECORD_SEPARATOR = b"\n\n"
DEFAULT_EVENT_NAME = "message"

_EVENT_MARKER = "event:"
_DATA_MARKER = "data:"


@dataclass(frozen=True)
class EventRecord:
    """One decoded unit of the event stream."""

    name: str = DEFAULT_EVENT_NAME
    data_lines: tuple[str, ...] = ()

    @property
    def data(self) -> str:
        """Payload lines joined with newlines, in source order."""
        return "\n".join(self.data_lines)


def parse_record(raw: bytes) -> EventRecord:
    """Parse the bytes of a single record (separator already removed).

    Undecodable bytes yield an empty record instead of an error.
    """
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as e:
        logger.warning(f"Dropping undecodable event record ({len(raw)} bytes): {e}")
        return EventRecord()

    name = DEFAULT_EVENT_NAME
    data_lines: list[str] = []

    for line in text.split("\n"):
        line = line.removesuffix("\r")
        if line.startswith(_EVENT_MARKER):
            name = line[len(_EVENT_MARKER):].strip() or DEFAULT_EVENT_NAME
        elif line.startswith(_DATA_MARKER):
            value = line[len(_DATA_MARKER):]
            data_lines.append(value.removeprefix(" "))
        # id:, retry: and ": comment" lines are ignored

    return EventRecord(name=name, data_lines=tuple(data_lines))


def extract(buffer: bytes | bytearray) -> tuple[list[EventRecord], bytes]:
    """Split every complete record off the front of ``buffer``.

    Returns:
        The records in stream order and the trailing partial record (which
        may be empty).
    """
    records: list[EventRecord] = []
    start = 0

    while True:
        end = buffer.find(RECORD_SEPARATOR, start)
        if end == -1:
            break
        records.append(parse_record(bytes(buffer[start:end])))
        start = end + len(RECORD_SEPARATOR)

    return records, bytes(buffer[start:])


class FrameDecoder:
    """Buffer-owning wrapper around :func:`extract`.

    Example:
        >>> decoder = FrameDecoder()
        >>> decoder.feed(b"event: reload\\nda")
        []
        >>> decoder.feed(b"ta: {}\\n\\n")
        [EventRecord(name='reload', data_lines=('{}',))]
    """

    def __init__(self) -> None:
        self._buffer = bytearray()

    @property
    def pending(self) -> int:
        """Number of buffered bytes not yet forming a complete record."""
        return len(self._buffer)

    def feed(self, chunk: bytes) -> list[EventRecord]:
        """Append a chunk and return every record it completes."""
        # Only the tail can hold a separator that was not there before
        search_from = max(len(self._buffer) - len(RECORD_SEPARATOR) + 1, 0)
        self._buffer.extend(chunk)
        if self._buffer.find(RECORD_SEPARATOR, search_from) == -1:
            return []

        records, remainder = extract(self._buffer)
        self._buffer = bytearray(remainder)
        return records

    def reset(self) -> None:
        """Discard any partial record."""
        self._buffer.clear()
