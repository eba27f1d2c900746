"""
Incremental scanner for a top-level JSON array of objects.

The scanner never parses the whole document. It tracks brace depth and
string/escape state over a growable byte buffer, cuts out each complete
top-level object, and hands only that slice to ``json.loads``.

UTF-8 continuation bytes are always >= 0x80, so scanning for the ASCII
structural bytes on raw bytes is safe without decoding first.
"""
import json
import logging
import re
from decimal import Decimal
from enum import Enum
from typing import Any, Iterator, List, Optional

from common.errors import ParseError

logger = logging.getLogger(__name__)

OPEN_BRACKET = ord('[')
CLOSE_BRACKET = ord(']')
OPEN_BRACE = ord('{')
CLOSE_BRACE = ord('}')
QUOTE = ord('"')
BACKSLASH = ord('\\')

_SEARCHING_RE = re.compile(rb'[{\]]')
_DEFAULT_RE = re.compile(rb'[{}"]')
_STRING_RE = re.compile(rb'["\\]')


class ScanState(Enum):
    """Scanner states"""
    SEARCHING = "searching"   # between top-level elements
    DEFAULT = "default"       # inside an object, outside strings
    IN_STRING = "in_string"   # inside a string literal


def decode_object(raw: bytes) -> Any:
    """Decode one JSON value; floats become Decimal so prices stay exact."""
    return json.loads(raw, parse_float=Decimal)


class IncrementalArrayParser:
    """
    Push parser: ``feed(chunk)`` returns the objects completed by that chunk,
    ``finish()`` validates that the array was closed.

    Malformed objects are skipped and counted in ``parse_errors``; they never
    abort the scan.
    """

    def __init__(self):
        self._buf = bytearray()
        self._pos = 0
        self._obj_start: Optional[int] = None
        self._depth = 0
        self._state = ScanState.SEARCHING
        self._escaped = False
        self._base_offset = 0

        self.array_opened = False
        self.array_closed = False
        self.objects_emitted = 0
        self.parse_errors = 0

    @property
    def state(self) -> ScanState:
        return self._state

    @property
    def escaped(self) -> bool:
        return self._escaped

    @property
    def depth(self) -> int:
        return self._depth

    @property
    def buffered_bytes(self) -> int:
        return len(self._buf)

    def feed(self, chunk: bytes) -> Iterator[Any]:
        """
        Append a chunk and return an iterator over newly completed objects.
        """
        if self.array_closed:
            if chunk.strip():
                logger.debug("Ignoring %s bytes after the closing bracket", len(chunk))
            return iter(())
        self._buf.extend(chunk)
        if not self.array_opened and not self._open_array():
            return iter(())
        return iter(self._scan())

    def finish(self) -> None:
        """
        Signal end of input.

        Raises:
            ParseError: If the input ended before the array was closed
        """
        if not self.array_opened:
            raise ParseError("Input ended before the opening '[' of the array")
        if self._state is not ScanState.SEARCHING:
            raise ParseError(
                "Input ended inside an object",
                offset=self._base_offset + (self._obj_start or 0),
            )
        if not self.array_closed:
            raise ParseError("Input ended before the closing ']' of the array",
                             offset=self._base_offset + len(self._buf))

    def _open_array(self) -> bool:
        idx = self._buf.find(b'[')
        if idx < 0:
            # Nothing before the array is of interest
            self._discard(len(self._buf))
            return False
        self._discard(idx + 1)
        self.array_opened = True
        return True

    def _discard(self, count: int) -> None:
        del self._buf[:count]
        self._base_offset += count
        self._pos = max(0, self._pos - count)
        if self._obj_start is not None:
            self._obj_start -= count

    def _scan(self) -> List[Any]:
        completed: List[Any] = []
        buf = self._buf
        i = self._pos

        while i < len(buf):
            state = self._state

            if state is ScanState.SEARCHING:
                match = _SEARCHING_RE.search(buf, i)
                if match is None:
                    i = len(buf)
                    break
                i = match.start()
                if buf[i] == CLOSE_BRACKET:
                    self.array_closed = True
                    i += 1
                    break
                # Separators before the object are never needed again
                self._discard(i)
                self._obj_start = 0
                self._depth = 1
                self._state = ScanState.DEFAULT
                i = 1

            elif state is ScanState.IN_STRING:
                if self._escaped:
                    # The escaped byte never toggles the string state
                    self._escaped = False
                    i += 1
                    continue
                match = _STRING_RE.search(buf, i)
                if match is None:
                    i = len(buf)
                    break
                i = match.start()
                if buf[i] == BACKSLASH:
                    self._escaped = True
                else:
                    self._state = ScanState.DEFAULT
                i += 1

            else:
                match = _DEFAULT_RE.search(buf, i)
                if match is None:
                    i = len(buf)
                    break
                i = match.start()
                byte = buf[i]
                i += 1
                if byte == QUOTE:
                    self._state = ScanState.IN_STRING
                elif byte == OPEN_BRACE:
                    self._depth += 1
                else:
                    self._depth -= 1
                    if self._depth == 0:
                        start = self._obj_start
                        raw = bytes(buf[start:i])
                        self._state = ScanState.SEARCHING
                        self._obj_start = None
                        self._emit(raw, start, completed)
                        self._discard(i)
                        i = 0

        self._pos = i
        if self.array_closed:
            self._discard(len(buf))
        elif self._state is ScanState.SEARCHING:
            # Only separators are left behind the last object
            self._discard(self._pos)
        return completed

    def _emit(self, raw: bytes, start: int, completed: List[Any]) -> None:
        try:
            completed.append(decode_object(raw))
            self.objects_emitted += 1
        except (ValueError, UnicodeDecodeError) as e:
            self.parse_errors += 1
            logger.warning(
                "Skipping malformed object at byte %s (%s bytes): %s",
                self._base_offset + start, len(raw), e,
            )
