"""Line framing for child process output streams."""

DEFAULT_ENCODING = "utf-8"


class LineFramer:
    """Split a byte stream into lines.

    Complete lines are returned as soon as their newline arrives, with the
    newline and an optional preceding carriage return removed. Empty lines are
    preserved. Bytes after the last newline are held back until more data
    arrives or ``flush`` is called at end of stream, which returns them once.

    Example:
        >>> framer = LineFramer()
        >>> framer.feed(b"a\\nb\\nc")
        ['a', 'b']
        >>> framer.flush()
        'c'
    """

    def __init__(self, encoding: str = DEFAULT_ENCODING):
        self.encoding = encoding
        self._carry = bytearray()
        self._closed = False

    def feed(self, data: bytes) -> list[str]:
        """Append ``data`` and return every line it completes."""
        if self._closed:
            msg = "Cannot feed a flushed LineFramer"
            raise ValueError(msg)

        self._carry.extend(data)
        lines: list[str] = []
        start = 0
        while (end := self._carry.find(b"\n", start)) != -1:
            lines.append(self._decode(self._carry[start:end]))
            start = end + 1
        if start:
            del self._carry[:start]
        return lines

    def flush(self) -> str | None:
        """Return the trailing partial line, if any, and close the framer."""
        if self._closed:
            return None
        self._closed = True
        if not self._carry:
            return None
        tail = self._decode(self._carry)
        self._carry.clear()
        return tail

    @property
    def pending(self) -> int:
        """Number of buffered bytes not yet framed."""
        return len(self._carry)

    def _decode(self, raw: bytes | bytearray) -> str:
        if raw.endswith(b"\r"):
            raw = raw[:-1]
        return bytes(raw).decode(self.encoding, errors="replace")
