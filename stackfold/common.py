"""Shared machinery for stack collapsers: the occurrence map and the collapse driver."""

from __future__ import annotations

import io
import os
import queue
import sys
import threading
from abc import ABC, abstractmethod
from typing import BinaryIO, Optional, TextIO, Union

PathLike = Union[str, "os.PathLike[str]"]

CAPACITY_READER = 128 * 1024
"""Buffer size used when reading input files."""

DEFAULT_NSTACKS_PER_JOB = 100
"""How many stacks make up one chunk of work handed to a worker thread."""

DEFAULT_NTHREADS = os.cpu_count() or 1
"""Default number of threads: the number of logical CPUs."""

_PUT_TIMEOUT = 0.05


class Occurrences:
    """Map from folded stack to sample count, safe to share between threads."""

    def __init__(self, nthreads: int) -> None:
        if nthreads == 0:
            raise ValueError("number of threads must not be zero")
        self._concurrent = nthreads > 1
        self._counts: dict[str, int] = {}
        self._lock = threading.Lock()

    def insert(self, key: str, count: int) -> Optional[int]:
        """Set the count for ``key``; return the previous count, if any."""
        with self._lock:
            previous = self._counts.get(key)
            self._counts[key] = count
            return previous

    def insert_or_add(self, key: str, count: int) -> None:
        """Add ``count`` to the count for ``key``, starting from zero."""
        with self._lock:
            self._counts[key] = self._counts.get(key, 0) + count

    def is_concurrent(self) -> bool:
        """Return True if the map is meant to be filled by several threads."""
        return self._concurrent

    def write_and_clear(self, writer: TextIO) -> None:
        """Write ``key count`` lines sorted by key, then empty the map."""
        with self._lock:
            contents = sorted(self._counts.items())
            self._counts = {}
        for key, value in contents:
            writer.write(f"{key} {value}\n")
        writer.flush()

    def __len__(self) -> int:
        with self._lock:
            return len(self._counts)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._counts

    def __getitem__(self, key: str) -> int:
        with self._lock:
            return self._counts[key]


class Collapser(ABC):
    """Base class for collapsers that turn profiler output into folded stacks.

    Subclasses read binary input and may override the ``nthreads`` and
    ``nstacks_per_job`` attributes.  With more than one thread the input is
    split into chunks of whole stacks that worker threads collapse in parallel.
    """

    nthreads: int = 1
    nstacks_per_job: int = DEFAULT_NSTACKS_PER_JOB

    def pre_process(self, reader: BinaryIO, occurrences: Occurrences) -> None:
        """Consume any header that precedes the stacks; nothing by default."""

    @abstractmethod
    def collapse_single_threaded(self, reader: BinaryIO, occurrences: Occurrences) -> None:
        """Collapse every stack in ``reader`` into ``occurrences``.

        When the input is exhausted, the collapser must be back outside any stack.
        """

    @abstractmethod
    def would_end_stack(self, line: bytes) -> bool:
        """Return True if ``line`` is the last line of a stack."""

    @abstractmethod
    def clone_and_reset_stack_context(self) -> "Collapser":
        """Return a copy with the same settings but no partial stack state."""

    @abstractmethod
    def is_applicable(self, input: str) -> Optional[bool]:
        """Say whether ``input`` is in this collapser's format.

        ``None`` means more input is needed to tell.
        """

    def collapse(self, reader: BinaryIO, writer: TextIO) -> None:
        """Collapse the binary ``reader`` and write folded stacks to ``writer``."""
        occurrences = Occurrences(self.nthreads)
        self.pre_process(reader, occurrences)
        if occurrences.is_concurrent():
            self._collapse_multi_threaded(reader, occurrences)
        else:
            self.collapse_single_threaded(reader, occurrences)
        occurrences.write_and_clear(writer)

    def collapse_file(self, infile: Optional[PathLike], writer: TextIO) -> None:
        """Collapse the file at ``infile``, or standard input if it is None."""
        if infile is None:
            self.collapse(sys.stdin.buffer, writer)
            return
        with open(infile, "rb", buffering=CAPACITY_READER) as reader:
            self.collapse(reader, writer)

    def collapse_file_to_stdout(self, infile: Optional[PathLike]) -> None:
        """Collapse the file at ``infile`` (or standard input) to standard output."""
        self.collapse_file(infile, sys.stdout)

    def _collapse_multi_threaded(self, reader: BinaryIO, occurrences: Occurrences) -> None:
        nstacks_per_job = self.nstacks_per_job
        nthreads = self.nthreads
        if nstacks_per_job == 0:
            raise ValueError("number of stacks per job must not be zero")
        if nthreads < 2:
            raise ValueError("multi-threaded collapsing needs at least two threads")

        inputs: queue.Queue[Optional[bytes]] = queue.Queue(maxsize=2 * nthreads)
        stop = threading.Event()
        errors: list[BaseException] = []
        errors_lock = threading.Lock()

        def work(folder: Collapser) -> None:
            while True:
                data = inputs.get()
                if data is None or stop.is_set():
                    return
                try:
                    folder.collapse_single_threaded(io.BytesIO(data), occurrences)
                except BaseException as error:  # handed back to the caller below
                    with errors_lock:
                        errors.append(error)
                    stop.set()
                    return

        workers = [
            threading.Thread(target=work, args=(self.clone_and_reset_stack_context(),), daemon=True)
            for _ in range(nthreads)
        ]
        for worker in workers:
            worker.start()

        def send(item: Optional[bytes]) -> bool:
            while True:
                try:
                    inputs.put(item, timeout=_PUT_TIMEOUT)
                    return True
                except queue.Full:
                    if not any(worker.is_alive() for worker in workers):
                        return False

        try:
            chunk: list[bytes] = []
            nstacks = 0
            while not stop.is_set():
                line = reader.readline()
                if not line:
                    send(b"".join(chunk))
                    break
                chunk.append(line)
                if self.would_end_stack(line):
                    nstacks += 1
                    if nstacks == nstacks_per_job:
                        if not send(b"".join(chunk)):
                            break
                        chunk = []
                        nstacks = 0
        finally:
            for _ in workers:
                if not send(None):
                    break
            for worker in workers:
                worker.join()

        if errors:
            raise errors[0]