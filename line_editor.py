# line_editor.py - raw-mode line editing with tab completion, plus the plain fallback
from __future__ import annotations

import atexit
import contextlib
import logging
import os
import sys
import termios
from typing import Optional

log = logging.getLogger(__name__)

EOT = 0x04
TAB = 0x09
BACKSPACE = 0x08
DELETE = 0x7F
NEWLINE = 0x0A
RETURN = 0x0D

BELL = b"\a"
ERASE = b"\b \b"


class RawTerminal:
    """The controlling terminal, switched out of canonical mode on demand.

    The original attributes are captured once and put back whenever a
    line is done and at process exit.
    """

    def __init__(self, in_fd: int = 0, out_fd: int = 1):
        self.in_fd = in_fd
        self.out_fd = out_fd
        self._saved = None

    def capture(self):
        if self._saved is not None:
            return
        self._saved = termios.tcgetattr(self.in_fd)
        atexit.register(self.restore)

    def restore(self):
        if self._saved is None:
            return
        try:
            termios.tcsetattr(self.in_fd, termios.TCSADRAIN, self._saved)
        except termios.error:
            pass

    @contextlib.contextmanager
    def raw(self):
        self.capture()
        mode = termios.tcgetattr(self.in_fd)
        mode[3] = mode[3] & ~(termios.ICANON | termios.ECHO)
        mode[6][termios.VMIN] = 1
        mode[6][termios.VTIME] = 0
        termios.tcsetattr(self.in_fd, termios.TCSADRAIN, mode)
        log.debug("raw mode on fd %d", self.in_fd)
        try:
            yield self
        finally:
            self.restore()
            log.debug("raw mode off fd %d", self.in_fd)

    def read_byte(self) -> Optional[int]:
        data = os.read(self.in_fd, 1)
        return data[0] if data else None

    def write(self, data: bytes):
        sys.stdout.flush()
        os.write(self.out_fd, data)


class LineEditor:
    """Reads one line a byte at a time, echoing and completing by hand.

    Only appending and deleting at the end of the line are supported.
    """

    def __init__(self, terminal, completer):
        self.terminal = terminal
        self.completer = completer
        self.buffer = bytearray()
        self._tab_presses = 0

    def read_line(self, prompt: str) -> Optional[str]:
        """Return the finished line, or None at end of input."""
        self.buffer = bytearray()
        self._tab_presses = 0
        with self.terminal.raw():
            self.terminal.write(prompt.encode())
            while True:
                byte = self.terminal.read_byte()
                if byte is None or byte == EOT:
                    # on an empty line this is end of input
                    self.terminal.write(b"\n")
                    return self.text if self.buffer else None
                if byte in (NEWLINE, RETURN):
                    self.terminal.write(b"\n")
                    return self.text
                if byte == TAB:
                    self._complete(prompt)
                    continue
                self._tab_presses = 0
                if byte in (BACKSPACE, DELETE):
                    if self.buffer:
                        del self.buffer[-1]
                        self.terminal.write(ERASE)
                elif byte >= 0x20:
                    self.buffer.append(byte)
                    self.terminal.write(bytes((byte,)))

    @property
    def text(self) -> str:
        return self.buffer.decode("utf-8", "replace")

    def _complete(self, prompt: str):
        plan = self.completer.plan(self.text)
        if plan.insert:
            self._tab_presses = 0
            data = plan.insert.encode()
            self.buffer += data
            self.terminal.write(data)
            return
        if not plan.candidates or self._tab_presses == 0:
            self._tab_presses = 1 if plan.candidates else 0
            self.terminal.write(BELL)
            return
        self._tab_presses = 0
        listing = "  ".join(plan.candidates)
        self.terminal.write(b"\n" + listing.encode() + b"\n" + prompt.encode() + bytes(self.buffer))


class PlainLineReader:
    """Canonical reads for when stdin is not a terminal.

    Reads straight from the descriptor up to the newline so that nothing
    past the current line is consumed before a child runs.
    """

    def __init__(self, in_fd: int = 0):
        self.in_fd = in_fd

    def read_line(self, prompt: str) -> Optional[str]:
        sys.stdout.write(prompt)
        sys.stdout.flush()
        data = bytearray()
        while True:
            chunk = os.read(self.in_fd, 1)
            if not chunk:
                if not data:
                    return None
                break
            if chunk == b"\n":
                break
            data += chunk
        return data.decode("utf-8", "replace").rstrip("\r")


def make_reader(completer, in_fd: int = 0, out_fd: int = 1, line_editor: bool = True):
    """Pick the raw-mode editor on a terminal, the plain reader otherwise."""
    if line_editor and os.isatty(in_fd):
        terminal = RawTerminal(in_fd, out_fd)
        terminal.capture()
        return LineEditor(terminal, completer)
    return PlainLineReader(in_fd)
