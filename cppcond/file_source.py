# Copyright (C) 2019-2024 Intel Corporation
# SPDX-License-Identifier: BSD-3-Clause
"""
Contains classes and functions for splitting C/C++ source text into
logical lines, joining continuations and stripping comments.
"""
from __future__ import annotations

import io
import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class SourceSpan:
    """
    An extent in the original text.
    Lines and columns are 1-based; end_col is one past the last character.
    """

    start_line: int
    start_col: int
    end_line: int
    end_col: int

    def __str__(self) -> str:
        return f"{self.start_line}:{self.start_col}"

    def cover(self, other: SourceSpan) -> SourceSpan:
        """
        Return a span running from the start of this span to the end of
        `other`.
        """
        return SourceSpan(
            self.start_line,
            self.start_col,
            other.end_line,
            other.end_col,
        )


@dataclass(frozen=True)
class LogicalLine:
    """
    Represents a logical line of code: one or more physical lines joined
    by backslash-newline or by an open block comment.
    """

    text: str
    raw: tuple[str, ...]
    span: SourceSpan
    is_directive: bool

    @property
    def num_lines(self) -> int:
        return len(self.raw)

    def is_blank(self) -> bool:
        return not self.text


class one_space_line:
    """
    A container for the cleaned characters of a logical line.
    Runs of whitespace are merged into a single space.
    """

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self.parts: list[str] = []
        self.trailing_space = False

    def append_char(self, c: str) -> None:
        if c.isspace():
            self.append_space()
        else:
            self.append_nonspace(c)

    def append_space(self) -> None:
        if not self.trailing_space:
            self.parts.append(" ")
            self.trailing_space = True

    def append_nonspace(self, c: str) -> None:
        self.parts.append(c)
        self.trailing_space = False

    def is_directive(self) -> bool:
        return self.parts[:1] == ["#"] or self.parts[:2] == [" ", "#"]

    def flush(self) -> str:
        """
        Convert the characters to a string and reset the buffer.
        """
        res = "".join(self.parts).strip()
        self.reset()
        return res


class c_cleaner:
    """
    Approximation of the early stages of a C preprocessor.
    Replaces comments with whitespace while respecting string and
    character literals. State is kept across physical lines and cleared
    with logical_newline.
    """

    def __init__(self, outbuf: one_space_line) -> None:
        self.state = ["TOPLEVEL"]
        self.outbuf = outbuf

    def in_block_comment(self) -> bool:
        return self.state[-1] in ("IN_BLOCK_COMMENT", "FOUND_STAR")

    def logical_newline(self) -> None:
        """
        Reset state when a newline without continuation is found.
        """
        if self.state[-1] == "IN_INLINE_COMMENT":
            self.outbuf.append_space()
        elif self.state[-1] == "FOUND_SLASH":
            self.outbuf.append_nonspace("/")
        if not self.in_block_comment():
            self.state = ["TOPLEVEL"]

    def process(self, chars: Iterable[str]) -> None:
        """
        Add the cleaned contents of one physical line to outbuf.
        """
        state = self.state
        obuf = self.outbuf
        pending = list(chars)
        pending.reverse()
        while pending:
            char = pending.pop()
            if state[-1] == "TOPLEVEL":
                if char == "/":
                    state.append("FOUND_SLASH")
                elif char == '"':
                    state.append("DOUBLE_QUOTATION")
                    obuf.append_nonspace(char)
                elif char == "'":
                    state.append("SINGLE_QUOTATION")
                    obuf.append_nonspace(char)
                else:
                    obuf.append_char(char)
            elif state[-1] in ("DOUBLE_QUOTATION", "SINGLE_QUOTATION"):
                closing = '"' if state[-1] == "DOUBLE_QUOTATION" else "'"
                if char == "\\":
                    state.append("ESCAPING")
                elif char == closing:
                    state.pop()
                obuf.append_nonspace(char)
            elif state[-1] == "ESCAPING":
                obuf.append_nonspace(char)
                state.pop()
            elif state[-1] == "FOUND_SLASH":
                state.pop()
                if char == "/":
                    state.append("IN_INLINE_COMMENT")
                    return
                elif char == "*":
                    state.append("IN_BLOCK_COMMENT")
                else:
                    obuf.append_nonspace("/")
                    pending.append(char)
            elif state[-1] == "IN_BLOCK_COMMENT":
                if char == "*":
                    state.append("FOUND_STAR")
            elif state[-1] == "IN_INLINE_COMMENT":
                # Continues across backslash-newline.
                return
            elif state[-1] == "FOUND_STAR":
                state.pop()
                if char == "/":
                    state.pop()
                    obuf.append_space()
                elif char == "*":
                    state.append("FOUND_STAR")
            else:
                raise RuntimeError("Unknown parser state!")


def scan(text: str) -> Iterator[LogicalLine]:
    """
    Process `text` in terms of logical and physical lines of C code.
    Yield one LogicalLine per logical line, including blank ones, so that
    every physical line of the input is accounted for.

    The scan is lazy; calling scan again restarts from the beginning.
    """
    outbuf = one_space_line()
    cleaner = c_cleaner(outbuf)

    raw: list[str] = []
    start_line = 1
    continued = False
    # Only \n, \r\n and \r end a physical line.
    lines = io.StringIO(text, newline=None)
    for physical_line_num, line in enumerate(lines, start=1):
        if line.endswith("\n"):
            line = line[:-1]
        if not raw:
            start_line = physical_line_num
        raw.append(line)

        end = len(line)
        continued = end > 0 and line[end - 1] == "\\"
        if continued:
            end -= 1
        cleaner.process(line[:end])
        if continued or cleaner.in_block_comment():
            continue

        cleaner.logical_newline()
        yield _make_line(outbuf, raw, start_line)
        raw = []

    if raw:
        if continued:
            log.warning("backslash-newline at end of file")
        if cleaner.in_block_comment():
            log.warning("unterminated block comment at end of file")
        cleaner.logical_newline()
        yield _make_line(outbuf, raw, start_line)


def _make_line(
    outbuf: one_space_line,
    raw: list[str],
    start_line: int,
) -> LogicalLine:
    first = raw[0]
    start_col = len(first) - len(first.lstrip()) + 1
    end_line = start_line + len(raw) - 1
    is_directive = outbuf.is_directive()
    span = SourceSpan(start_line, start_col, end_line, len(raw[-1]) + 1)
    return LogicalLine(outbuf.flush(), tuple(raw), span, is_directive)
