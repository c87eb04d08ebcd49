"""Recover BSON documents from a LiteDB data file without reading its page index.

LiteDB stores documents as ordinary length-prefixed BSON records spread over
its data pages.  Rather than interpreting the page structure we walk the file
one byte at a time and try to read a document at every offset.  A candidate is
only decoded when its length prefix is sane, fits in the buffer and ends in the
BSON terminator byte; anything that then fails to decode, or decodes into
something that does not look like a real record, is ignored.

The scanner always advances by exactly one byte, whether the candidate at the
current offset was accepted or not.  Length prefixes found in random data are
common, so jumping over a rejected candidate could hide a real document that
starts inside it.
"""
from __future__ import annotations

import logging
import re
import struct
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional

import bson
from bson.codec_options import CodecOptions, DatetimeConversion
from bson.errors import BSONError

from services.import_common import check_deadline

LOGGER = logging.getLogger(__name__)

__all__ = ["DocumentScanner", "ScanStats", "scan_documents"]

MIN_DOCUMENT_SIZE = 10
MAX_DOCUMENT_SIZE = 65536
DOCUMENT_TERMINATOR = 0x00
# Offsets scanned between deadline checks.
DEADLINE_CHECK_INTERVAL = 65536

_LENGTH_PREFIX = struct.Struct("<i")
_IDENTIFIER_KEY = re.compile(r"^[A-Za-z_]")

CODEC_OPTIONS = CodecOptions(datetime_conversion=DatetimeConversion.DATETIME_AUTO)


@dataclass
class ScanStats:
    offsets: int = 0
    candidates: int = 0
    decode_failures: int = 0
    implausible: int = 0
    accepted: int = 0


class DocumentScanner:
    """Byte-by-byte scanner over a raw buffer.

    Each call to :meth:`step` examines the current offset, moves the offset
    forward by one byte and returns the document found there, if any.
    """

    def __init__(self, buffer: bytes) -> None:
        self.buffer = memoryview(buffer)
        self.offset = 0
        self.stats = ScanStats()

    @property
    def remaining(self) -> int:
        return len(self.buffer) - self.offset

    @property
    def exhausted(self) -> bool:
        return self.remaining < _LENGTH_PREFIX.size

    def step(self) -> Optional[Dict[str, Any]]:
        document = None
        size = self._candidate_size()
        if size is not None:
            self.stats.candidates += 1
            document = self._decode(self.buffer[self.offset:self.offset + size])
        self.stats.offsets += 1
        self.offset += 1
        return document

    def __iter__(self) -> Iterator[Dict[str, Any]]:
        while not self.exhausted:
            document = self.step()
            if document is not None:
                yield document

    def _candidate_size(self) -> Optional[int]:
        (size,) = _LENGTH_PREFIX.unpack_from(self.buffer, self.offset)
        if size <= MIN_DOCUMENT_SIZE or size >= MAX_DOCUMENT_SIZE:
            return None
        if size > self.remaining:
            return None
        if self.buffer[self.offset + size - 1] != DOCUMENT_TERMINATOR:
            return None
        return size

    def _decode(self, chunk: memoryview) -> Optional[Dict[str, Any]]:
        try:
            document = bson.decode(bytes(chunk), codec_options=CODEC_OPTIONS)
        except (BSONError, ValueError, OverflowError):
            self.stats.decode_failures += 1
            return None
        if not is_plausible_document(document):
            self.stats.implausible += 1
            return None
        self.stats.accepted += 1
        return document


def is_plausible_document(document: Dict[str, Any]) -> bool:
    """Reject decodes that parse as BSON but cannot be a real record."""
    keys = list(document.keys())
    return len(keys) > 1 and any(_IDENTIFIER_KEY.match(key) for key in keys)


def scan_documents(buffer: bytes, deadline: Optional[float] = None) -> List[Dict[str, Any]]:
    """Return every plausible BSON document found in ``buffer``, in scan order.

    When ``deadline`` is given the scan stops with :class:`ImportTimeoutError`
    once that monotonic time has passed.
    """
    scanner = DocumentScanner(buffer)
    documents: List[Dict[str, Any]] = []
    while not scanner.exhausted:
        if deadline is not None and scanner.offset % DEADLINE_CHECK_INTERVAL == 0:
            check_deadline(deadline, "document scan")
        document = scanner.step()
        if document is not None:
            documents.append(document)
    LOGGER.info(
        "Scanned %d offsets: %d candidates, %d decode failures, %d implausible, %d documents",
        scanner.stats.offsets,
        scanner.stats.candidates,
        scanner.stats.decode_failures,
        scanner.stats.implausible,
        scanner.stats.accepted,
    )
    return documents
