"""
Unit tests for procwarden.log.tail module.
"""

from procwarden.log.tail import follow_files, read_last_lines


class TestReadLastLines:
    """Tests for read_last_lines function."""

    def test_returns_tail(self, tmp_path):
        path = tmp_path / "out.log"
        path.write_text("".join(f"line {i}\n" for i in range(10)))

        assert read_last_lines(path, 3) == ["line 7", "line 8", "line 9"]

    def test_short_file(self, tmp_path):
        path = tmp_path / "out.log"
        path.write_text("only\n")
        assert read_last_lines(path, 5) == ["only"]

    def test_missing_file(self, tmp_path):
        assert read_last_lines(tmp_path / "missing.log", 5) == []


class TestFollowFiles:
    """Tests for follow_files function."""

    def test_emits_only_new_lines(self, tmp_path):
        existing = tmp_path / "out.log"
        existing.write_text("old line\n")
        later = tmp_path / "error.log"
        emitted = []
        calls = {"count": 0}

        def should_stop():
            calls["count"] += 1
            if calls["count"] == 2:
                with existing.open("a") as f:
                    f.write("new line\n")
                later.write_text("first error\n")
            return calls["count"] > 2

        follow_files([existing, later], should_stop, lambda p, line: emitted.append((p.name, line)), poll_interval=0.01)

        assert ("out.log", "new line") in emitted
        assert ("error.log", "first error") in emitted
        assert ("out.log", "old line") not in emitted

    def test_rereads_truncated_file(self, tmp_path):
        path = tmp_path / "out.log"
        path.write_text("a fairly long line that will be truncated away\n")
        emitted = []
        calls = {"count": 0}

        def should_stop():
            calls["count"] += 1
            if calls["count"] == 2:
                path.write_text("short\n")
            return calls["count"] > 2

        follow_files([path], should_stop, lambda p, line: emitted.append(line), poll_interval=0.01)

        assert emitted == ["short"]
