"""Non-blocking single-key input for the dashboard loop."""

from __future__ import annotations

import os
import select
import sys
import time
from typing import TextIO

ESC = "\x1b"
QUIT_KEYS = frozenset({"q", "Q", ESC})


class KeyReader:
    """Puts the terminal in cbreak mode and reads keys with a timeout.

    When stdin is not a terminal, ``read`` just sleeps for the timeout, so
    the render loop keeps its tick.
    """

    def __init__(self, stream: TextIO | None = None) -> None:
        self._stream = stream if stream is not None else sys.stdin
        self._fd: int | None = None
        self._saved = None

    def __enter__(self) -> KeyReader:
        try:
            is_tty = self._stream.isatty()
        except (AttributeError, ValueError):
            is_tty = False
        if is_tty:
            import termios
            import tty

            self._fd = self._stream.fileno()
            self._saved = termios.tcgetattr(self._fd)
            tty.setcbreak(self._fd)
        return self

    def __exit__(self, *exc: object) -> None:
        if self._fd is not None and self._saved is not None:
            import termios

            termios.tcsetattr(self._fd, termios.TCSADRAIN, self._saved)
        self._fd = None
        self._saved = None

    def read(self, timeout: float) -> str | None:
        """Next key pressed within ``timeout`` seconds, or None."""
        if self._fd is None:
            time.sleep(timeout)
            return None
        ready, _, _ = select.select([self._fd], [], [], timeout)
        if not ready:
            return None
        key = os.read(self._fd, 1).decode(errors="ignore")
        if key == ESC and self._pending():
            # Arrow and function keys arrive as ESC-prefixed sequences
            while self._pending():
                os.read(self._fd, 16)
            return None
        return key or None

    def _pending(self) -> bool:
        ready, _, _ = select.select([self._fd], [], [], 0)
        return bool(ready)


def is_quit(key: str | None) -> bool:
    return key is not None and key in QUIT_KEYS
