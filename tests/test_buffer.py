"""
Tests for the per-session output ring buffer.

Covers:
- Ordering and the strictly-newer replay cut
- Byte cap and oldest-first eviction
- Session isolation and discard
"""

from remote_bridge.terminal.buffer import OutputRingBuffer


# ---------------------------------------------------------------------------
# Replay
# ---------------------------------------------------------------------------

class TestReplay:
    def test_since_zero_returns_everything_in_order(self):
        buf = OutputRingBuffer()
        buf.append("s1", "a", 10)
        buf.append("s1", "b", 20)
        buf.append("s1", "c", 30)
        assert buf.since("s1") == "abc"

    def test_since_is_strictly_newer(self):
        buf = OutputRingBuffer()
        buf.append("s1", "foo", 100)
        buf.append("s1", "bar", 200)
        assert buf.since("s1", 150) == "bar"
        assert buf.since("s1", 100) == "bar"
        assert buf.since("s1", 200) == ""

    def test_since_does_not_consume(self):
        buf = OutputRingBuffer()
        buf.append("s1", "foo", 100)
        buf.append("s1", "bar", 200)
        assert buf.since("s1", 50) == buf.since("s1", 50) == "foobar"

    def test_unknown_session_is_empty(self):
        buf = OutputRingBuffer()
        assert buf.since("missing") == ""
        assert buf.size_of("missing") == 0
        assert buf.byte_size("missing") == 0
        assert "missing" not in buf

    def test_append_returns_chunk_with_timestamp(self):
        buf = OutputRingBuffer()
        chunk = buf.append("s1", "hello", 1234)
        assert chunk.timestamp == 1234
        assert chunk.size == 5

    def test_append_defaults_timestamp_to_now(self):
        buf = OutputRingBuffer()
        chunk = buf.append("s1", "x")
        assert chunk.timestamp > 0

    def test_sessions_are_isolated(self):
        buf = OutputRingBuffer()
        buf.append("s1", "one", 10)
        buf.append("s2", "two", 10)
        assert buf.since("s1") == "one"
        assert buf.since("s2") == "two"


# ---------------------------------------------------------------------------
# Eviction
# ---------------------------------------------------------------------------

class TestEviction:
    def test_oldest_chunks_evicted_first(self):
        buf = OutputRingBuffer(max_bytes=10)
        buf.append("s1", "aaaa", 1)
        buf.append("s1", "bbbb", 2)
        buf.append("s1", "cccc", 3)
        assert buf.since("s1") == "bbbbcccc"
        assert buf.byte_size("s1") == 8
        assert buf.size_of("s1") == 2

    def test_total_never_exceeds_cap(self):
        buf = OutputRingBuffer(max_bytes=50)
        for i in range(100):
            buf.append("s1", f"line {i}\n", i)
            assert buf.byte_size("s1") <= 50
        assert buf.since("s1").endswith("line 99\n")

    def test_exactly_at_cap_is_kept(self):
        buf = OutputRingBuffer(max_bytes=6)
        buf.append("s1", "abc", 1)
        buf.append("s1", "def", 2)
        assert buf.since("s1") == "abcdef"

    def test_oversized_chunk_evicts_itself(self):
        buf = OutputRingBuffer(max_bytes=4)
        buf.append("s1", "ok", 1)
        buf.append("s1", "much too long", 2)
        assert buf.since("s1") == ""
        assert buf.byte_size("s1") == 0

    def test_cap_counts_utf8_bytes(self):
        buf = OutputRingBuffer(max_bytes=4)
        buf.append("s1", "éé", 1)  # 4 bytes
        assert buf.byte_size("s1") == 4
        buf.append("s1", "é", 2)
        assert buf.since("s1") == "é"

    def test_eviction_in_one_session_leaves_others(self):
        buf = OutputRingBuffer(max_bytes=4)
        buf.append("s1", "keep", 1)
        buf.append("s2", "xxxx", 1)
        buf.append("s2", "yyyy", 2)
        assert buf.since("s1") == "keep"
        assert buf.since("s2") == "yyyy"


class TestDiscard:
    def test_discard_forgets_session(self):
        buf = OutputRingBuffer()
        buf.append("s1", "data", 1)
        buf.discard("s1")
        assert "s1" not in buf
        assert buf.since("s1") == ""

    def test_discard_unknown_is_noop(self):
        OutputRingBuffer().discard("missing")
