import io
import sys

import pytest

from stackfold.common import (
    DEFAULT_NSTACKS_PER_JOB,
    Collapser,
    Occurrences,
)


class LineFolder(Collapser):
    """Toy format: one header line, then frames (leaf first) closed by a count line."""

    def __init__(self, nthreads=1, nstacks_per_job=DEFAULT_NSTACKS_PER_JOB):
        self.nthreads = nthreads
        self.nstacks_per_job = nstacks_per_job
        self.stack = []
        self.header = None

    def pre_process(self, reader, occurrences):
        self.header = reader.readline()

    def collapse_single_threaded(self, reader, occurrences):
        for raw in reader:
            line = raw.decode("utf-8", "replace").strip()
            if not line:
                continue
            if line.isdigit():
                occurrences.insert_or_add(";".join(reversed(self.stack)), int(line))
                self.stack = []
            elif line == "BAD":
                self.stack = []
                raise ValueError("bad frame")
            else:
                self.stack.append(line)
        if self.stack:
            self.stack = []
            raise ValueError("Input data ends in the middle of a stack.")

    def would_end_stack(self, line):
        return line.strip().isdigit()

    def clone_and_reset_stack_context(self):
        return LineFolder(self.nthreads, self.nstacks_per_job)

    def is_applicable(self, input):
        return None


def _input(nstacks):
    parts = ["header line\n"]
    for i in range(nstacks):
        parts.append(f"leaf{i % 7}\nmid{i % 3}\nmain\n{i % 5 + 1}\n\n")
    return "".join(parts).encode()


def test_occurrences_zero_threads_rejected():
    with pytest.raises(ValueError):
        Occurrences(0)


@pytest.mark.parametrize("nthreads,concurrent", [(1, False), (2, True), (8, True)])
def test_occurrences_is_concurrent(nthreads, concurrent):
    assert Occurrences(nthreads).is_concurrent() is concurrent


def test_insert_returns_previous_value():
    occ = Occurrences(1)
    assert occ.insert("a", 3) is None
    assert occ.insert("a", 5) == 3
    assert occ["a"] == 5


def test_insert_or_add_accumulates():
    occ = Occurrences(2)
    occ.insert_or_add("x;y", 2)
    occ.insert_or_add("x;y", 4)
    occ.insert_or_add("z", 1)
    assert occ["x;y"] == 6
    assert occ["z"] == 1
    assert len(occ) == 2


def test_write_and_clear_sorts_and_empties():
    occ = Occurrences(1)
    occ.insert_or_add("b", 2)
    occ.insert_or_add("a", 1)
    out = io.StringIO()
    occ.write_and_clear(out)
    assert out.getvalue() == "a 1\nb 2\n"
    assert len(occ) == 0
    again = io.StringIO()
    occ.write_and_clear(again)
    assert again.getvalue() == ""


def test_single_threaded_collapse_and_header_consumed():
    data = b"hdr\nfoo\nmain\n2\n\nfoo\nmain\n3\n\nbar\nmain\n1\n"
    folder = LineFolder()
    out = io.StringIO()
    Collapser.collapse(folder, io.BytesIO(data), out)
    assert out.getvalue() == "main;bar 1\nmain;foo 5\n"
    assert folder.header == b"hdr\n"


@pytest.mark.parametrize("nthreads", [2, 3, 4, 8, 16])
@pytest.mark.parametrize("nstacks_per_job", [1, 2, 7, 100])
def test_multi_threaded_matches_single_threaded(nthreads, nstacks_per_job):
    data = _input(250)
    expected = io.StringIO()
    Collapser.collapse(LineFolder(1), io.BytesIO(data), expected)
    actual = io.StringIO()
    Collapser.collapse(LineFolder(nthreads, nstacks_per_job), io.BytesIO(data), actual)
    assert actual.getvalue() == expected.getvalue()
    assert expected.getvalue().startswith("main;mid0;leaf0 ")


def test_output_lines_sorted_and_totals_preserved():
    data = _input(100)
    out = io.StringIO()
    Collapser.collapse(LineFolder(4, 3), io.BytesIO(data), out)
    lines = out.getvalue().splitlines()
    assert lines == sorted(lines)
    total = sum(int(line.rsplit(" ", 1)[1]) for line in lines)
    assert total == sum(i % 5 + 1 for i in range(100))


def test_single_threaded_error_propagates():
    with pytest.raises(ValueError):
        Collapser.collapse(LineFolder(1), io.BytesIO(b"hdr\nfoo\nmain\n"), io.StringIO())


def test_multi_threaded_error_propagates():
    data = _input(50) + b"BAD\n1\n\n" + _input(50)[len(b"header line\n"):]
    with pytest.raises(ValueError, match="bad frame"):
        Collapser.collapse(LineFolder(6, 1), io.BytesIO(data), io.StringIO())


def test_multi_threaded_truncated_stack_raises():
    data = _input(20) + b"dangling\n"
    with pytest.raises(ValueError):
        Collapser.collapse(LineFolder(3, 2), io.BytesIO(data), io.StringIO())


def test_multi_threaded_zero_stacks_per_job_rejected():
    with pytest.raises(ValueError):
        Collapser.collapse(LineFolder(2, 0), io.BytesIO(_input(3)), io.StringIO())


def test_collapse_file(tmp_path):
    data = _input(30)
    path = tmp_path / "stacks.txt"
    path.write_bytes(data)
    out = io.StringIO()
    Collapser.collapse_file(LineFolder(2, 4), path, out)
    expected = io.StringIO()
    Collapser.collapse(LineFolder(1), io.BytesIO(data), expected)
    assert out.getvalue() == expected.getvalue()


def test_collapse_file_missing_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        Collapser.collapse_file(LineFolder(), tmp_path / "absent.txt", io.StringIO())


def test_collapse_file_reads_stdin(monkeypatch):
    data = b"hdr\nfoo\nmain\n2\n"
    monkeypatch.setattr(sys, "stdin", io.TextIOWrapper(io.BytesIO(data)))
    out = io.StringIO()
    Collapser.collapse_file(LineFolder(), None, out)
    assert out.getvalue() == "main;foo 2\n"


def test_collapse_file_to_stdout(tmp_path, capsys):
    data = _input(12)
    path = tmp_path / "stacks.txt"
    path.write_bytes(data)
    expected = io.StringIO()
    Collapser.collapse(LineFolder(1), io.BytesIO(data), expected)
    Collapser.collapse_file_to_stdout(LineFolder(3, 2), path)
    assert capsys.readouterr().out == expected.getvalue()