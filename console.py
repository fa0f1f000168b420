"""Console I/O used by the interpreter's input/output instructions."""

from __future__ import annotations

import os
import sys

if os.name != "nt":
    import termios
    import tty


def emit(text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()


def read_line() -> str:
    """Block for one line of input. Returns "" at end of input."""
    sys.stdout.flush()
    return sys.stdin.readline()


def read_char(echo: bool = True) -> str:
    """Block for exactly one character. Returns "" at end of input.

    On a terminal the character is taken without waiting for Enter; with
    ``echo`` it is written back so the user sees what was typed.
    """
    sys.stdout.flush()
    if os.name == "nt" and sys.stdin.isatty():
        import msvcrt

        ch = msvcrt.getwch()
    elif sys.stdin.isatty():
        ch = _read_char_cbreak(sys.stdin.fileno())
    else:
        ch = sys.stdin.read(1)
    if echo and ch:
        emit(ch)
    return ch


def _read_char_cbreak(fd: int) -> str:
    try:
        saved = termios.tcgetattr(fd)
    except termios.error:
        return sys.stdin.read(1)
    try:
        tty.setcbreak(fd)
        return sys.stdin.read(1)
    finally:
        termios.tcsetattr(fd, termios.TCSADRAIN, saved)
