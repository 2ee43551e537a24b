"""Tests for line framing of child output streams."""

import pytest

from taskly.process.framing import LineFramer


class TestLineFramer:
    """Test cases for LineFramer."""

    def test_trailing_partial_line_flushed_at_end(self):
        """Test that "a\\nb\\nc" yields a, b and then c at end of stream."""
        framer = LineFramer()
        assert framer.feed(b"a\nb\nc") == ["a", "b"]
        assert framer.pending == 1
        assert framer.flush() == "c"

    def test_line_split_across_chunks(self):
        """Test that a line arriving in pieces is emitted once complete."""
        framer = LineFramer()
        assert framer.feed(b"hel") == []
        assert framer.feed(b"lo wor") == []
        assert framer.feed(b"ld\nnext") == ["hello world"]
        assert framer.flush() == "next"

    def test_crlf_stripped(self):
        """Test that a carriage return before the newline is removed."""
        framer = LineFramer()
        assert framer.feed(b"one\r\ntwo\r\n") == ["one", "two"]
        assert framer.flush() is None

    def test_crlf_split_between_chunks(self):
        """Test CRLF handling when the newline arrives in the next chunk."""
        framer = LineFramer()
        assert framer.feed(b"one\r") == []
        assert framer.feed(b"\n") == ["one"]

    def test_empty_lines_preserved(self):
        """Test that blank lines are emitted as empty strings."""
        framer = LineFramer()
        assert framer.feed(b"\n\nx\n") == ["", "", "x"]

    def test_flush_returns_tail_once(self):
        """Test that flush returns the tail a single time."""
        framer = LineFramer()
        framer.feed(b"tail")
        assert framer.flush() == "tail"
        assert framer.flush() is None

    def test_flush_without_tail(self):
        """Test flushing when every line was complete."""
        framer = LineFramer()
        framer.feed(b"done\n")
        assert framer.flush() is None

    def test_feed_after_flush_rejected(self):
        """Test that a closed framer refuses more data."""
        framer = LineFramer()
        framer.flush()
        with pytest.raises(ValueError, match="flushed"):
            framer.feed(b"late\n")

    def test_multibyte_character_split_across_chunks(self):
        """Test that UTF-8 sequences split between reads decode intact."""
        encoded = "héllo\n".encode()
        framer = LineFramer()
        assert framer.feed(encoded[:2]) == []
        assert framer.feed(encoded[2:]) == ["héllo"]

    def test_invalid_bytes_replaced(self):
        """Test that undecodable bytes do not raise."""
        framer = LineFramer()
        assert framer.feed(b"\xff\xfeok\n") == ["\ufffd\ufffdok"]
