"""Tests for dashboard key handling."""

import io
import time

from socwatch.cli.keys import ESC, KeyReader, is_quit


class TestIsQuit:
    def test_quit_keys(self):
        assert is_quit("q")
        assert is_quit("Q")
        assert is_quit(ESC)

    def test_other_keys(self):
        assert not is_quit(None)
        assert not is_quit("x")
        assert not is_quit("")


class TestKeyReader:
    def test_non_tty_read_times_out(self):
        with KeyReader(io.StringIO("q")) as keys:
            start = time.monotonic()
            assert keys.read(0.05) is None
            assert time.monotonic() - start >= 0.04

    def test_exit_without_tty_is_noop(self):
        reader = KeyReader(io.StringIO())
        with reader:
            pass
        assert reader._fd is None
