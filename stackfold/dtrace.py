"""Collapse the output of DTrace ``ustack()`` aggregations into folded stacks."""

from __future__ import annotations

import dataclasses
import logging
import re
from collections import deque
from dataclasses import dataclass, field
from typing import BinaryIO, Optional

from stackfold.common import DEFAULT_NSTACKS_PER_JOB, DEFAULT_NTHREADS, Collapser, Occurrences
from stackfold.demangle import fix_partially_demangled_rust_symbol

logger = logging.getLogger(__name__)

_USIZE_LIMIT = 2**64
_COUNT = re.compile(r"\+?[0-9]+")
_HEX = re.compile(r"\+?[0-9a-fA-F]+")
# Characters in the Latin-1 range that count as whitespace.
_WS = rb"[\t\n\x0b\x0c\r \x85\xa0]"
_END_OF_STACK = re.compile(_WS + rb"*(?:[0-9]+" + _WS + rb"*)?")


def _parse_count(text: str) -> Optional[int]:
    if not _COUNT.fullmatch(text):
        return None
    value = int(text)
    return value if value < _USIZE_LIMIT else None


def _is_hex_address(text: str) -> bool:
    if not text.startswith("0x"):
        return False
    digits = text[2:]
    return bool(_HEX.fullmatch(digits)) and int(digits, 16) < _USIZE_LIMIT


def uncpp(probe: str) -> str:
    """Drop a C++ argument list: keep everything up to the last ``(`` or ``<`` after ``::``."""
    scope = probe.find("::")
    if scope < 0:
        return probe
    tail = probe[scope + 2:]
    opening = max(tail.rfind("("), tail.rfind("<"))
    if opening < 0:
        return probe
    return probe[: scope + 2 + opening]


def remove_offset(line: str) -> tuple[bool, bool, bool, str]:
    """Return (has inlines, could be C++, has semicolon, line without its ``+offset``)."""
    last_offset = line.rfind("+")
    if last_offset < 0:
        last_offset = len(line)
    return "->" in line, "::" in line, ";" in line, line[:last_offset]


@dataclass
class Options:
    """Settings for the DTrace collapser."""

    includeoffset: bool = False
    """Keep function offsets on every frame except the leaf."""

    nthreads: int = field(default=DEFAULT_NTHREADS)
    """Number of threads to use."""


class Folder(Collapser):
    """Stack collapser for the output of DTrace ``ustack()``."""

    def __init__(self, options: Optional[Options] = None) -> None:
        opt = dataclasses.replace(options) if options is not None else Options()
        if opt.nthreads == 0:
            opt.nthreads = 1
        self.opt = opt
        self.nstacks_per_job = DEFAULT_NSTACKS_PER_JOB
        self._cache_inlines: list[str] = []
        self._stack: deque[str] = deque()
        self._stack_str_size = 0

    @property
    def nthreads(self) -> int:  # type: ignore[override]
        return self.opt.nthreads

    @nthreads.setter
    def nthreads(self, n: int) -> None:
        self.opt.nthreads = n

    def pre_process(self, reader: BinaryIO, occurrences: Occurrences) -> None:
        """Skip the header, up to and including the first blank line."""
        while True:
            line = reader.readline()
            if not line:
                logger.warning("File ended while skipping headers")
                return
            if not line.decode("utf-8", errors="replace").strip():
                return

    def collapse_single_threaded(self, reader: BinaryIO, occurrences: Occurrences) -> None:
        for raw in reader:
            line = raw.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            count = _parse_count(line)
            if count is not None:
                self._on_stack_end(count, occurrences)
            else:
                self._on_stack_line(line)
        if self._stack or self._stack_str_size != 0:
            raise ValueError("Input data ends in the middle of a stack.")

    def is_applicable(self, input: str) -> Optional[bool]:
        found_empty_line = False
        found_stack_line = False
        for raw in input.splitlines():
            line = raw.strip()
            if not line:
                found_empty_line = True
            elif found_empty_line:
                if _parse_count(line) is not None:
                    return found_stack_line
                if "`" in line or _is_hex_address(line):
                    found_stack_line = True
                else:
                    return False
        return None

    def would_end_stack(self, line: bytes) -> bool:
        return _END_OF_STACK.fullmatch(line) is not None

    def clone_and_reset_stack_context(self) -> "Folder":
        clone = Folder(self.opt)
        clone.nstacks_per_job = self.nstacks_per_job
        clone._cache_inlines = list(self._cache_inlines)
        return clone

    def _fix_rust_symbol(self, frame: str) -> str:
        parts = frame.split("`", 1)
        if len(parts) != 2:
            return frame
        pname, func = parts
        if self.opt.includeoffset:
            pieces = func.rsplit("+", 1)
            if len(pieces) == 2:
                name, offset = pieces
                trimmed = name.rstrip()
                fixed = fix_partially_demangled_rust_symbol(trimmed)
                if fixed != trimmed:
                    return f"{pname}`{fixed}+{offset}"
                return frame
        trimmed = func.rstrip()
        fixed = fix_partially_demangled_rust_symbol(trimmed)
        if fixed != trimmed:
            return f"{pname}`{fixed}"
        return frame

    def _on_stack_line(self, line: str) -> None:
        if self.opt.includeoffset:
            has_inlines, could_be_cpp, has_semicolon, frame = True, True, True, line
        else:
            has_inlines, could_be_cpp, has_semicolon, frame = remove_offset(line)

        if could_be_cpp:
            frame = uncpp(frame)

        frame = self._fix_rust_symbol(frame) if frame else "-"

        if has_inlines:
            inline = False
            for func in frame.split("->"):
                func = func.lstrip("L")
                if has_semicolon:
                    func = func.replace(";", ":")
                if inline:
                    func += "_[i]"
                inline = True
                self._stack_str_size += len(func) + 1
                self._cache_inlines.append(func)
            while self._cache_inlines:
                self._stack.appendleft(self._cache_inlines.pop())
        elif has_semicolon:
            self._stack.appendleft(frame.replace(";", ":"))
        else:
            self._stack.appendleft(frame)

    def _on_stack_end(self, count: int, occurrences: Occurrences) -> None:
        frames = list(self._stack)
        if self.opt.includeoffset and frames:
            frames[-1] = remove_offset(frames[-1])[3]
        occurrences.insert_or_add(";".join(frames), count)
        self._stack_str_size = 0
        self._stack.clear()