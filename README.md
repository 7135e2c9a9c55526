# stackfold

`stackfold` turns the stack samples printed by DTrace's `ustack()` aggregation
into *folded stacks*: one line per distinct stack, frames joined by `;`, then a
space and the sample count. Flame graph renderers take this format as input.

## Installing

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```

## Capturing input

Profile a process with DTrace, for example:

```
dtrace -x ustackframes=100 -n 'profile-97 /pid == 12345 && arg1/ { @[ustack()] = count(); } tick-60s { exit(0); }'
```

To include kernel time, drop `&& arg1` from the predicate.

## Command line

```
stackfold-collapse-dtrace [--includeoffset] [-n UINT] [-q] [-v...] [PATH]
```

* `PATH`: the saved DTrace output. Standard input is read when it is left out.
* `--includeoffset`: keep function offsets such as `+0x1a` on every frame except the leaf.
* `-n`, `--nthreads`: the number of worker threads to use. The default is the
  number of logical CPUs; `0` is treated as `1`.
* `-q`, `--quiet`: print no log messages.
* `-v`, `--verbose`: log more. `-v` shows informational messages, `-vv` (or
  more) shows debug messages; without it only warnings are shown.

The folded lines go to standard output, sorted by stack:

```
stackfold-collapse-dtrace out.stacks > out.folded
```

If the file cannot be read, or the input ends partway through a stack, an
error message is printed to standard error and the command exits with status 1.

## Library use

```python
import io
from stackfold.dtrace import Folder, Options

folder = Folder(Options(includeoffset=False, nthreads=1))
out = io.StringIO()
with open("out.stacks", "rb") as reader:
    folder.collapse(reader, out)
print(out.getvalue())
```

`Folder.collapse` reads a binary stream and writes text. 
`Folder.collapse_file(path, writer)` opens the file itself; passing `None` as
the path reads standard input. `Folder.collapse_file_to_stdout(path)` writes
the result to standard output. `Folder.is_applicable(text)` tells whether some
text looks like DTrace output: `True`, `False`, or `None` when more input is
needed to decide.

With more than one thread, the input is cut into chunks of whole stacks
(`Folder.nstacks_per_job`, 100 by default) that worker threads collapse in
parallel; the output is the same as with one thread.

### Behaviour worth knowing

* Header lines up to and including the first blank line are skipped.
* A line holding only a number ends a stack and gives its sample count;
  identical stacks have their counts added up.
* Frames are reversed from the order DTrace printed them in, so that the root
  comes first in the folded line.
* Without `includeoffset`, the `+offset` at the end of a frame is removed.
* C++ frames lose their argument lists: `A::B(int)` becomes `A::B`.
* Rust symbols that DTrace only partly demangled are cleaned up, so
  `_$LT$T$GT$::f::h0123456789abcdef` becomes `<T>::f`.
* Inlined frames written as `a->b` are split, and the inlined ones are
  marked with `_[i]`. Semicolons inside frames become colons.
* Input that ends partway through a stack is rejected with `ValueError`.

### Building blocks

* `stackfold.common.Occurrences`: a thread-safe map from folded stack to count,
  written out sorted by `write_and_clear`.
* `stackfold.common.Collapser`: the base class that drives header handling,
  single- or multi-threaded collapsing and output; `Folder` is built on it.
* `stackfold.dtrace.uncpp` and `stackfold.dtrace.remove_offset`: the frame
  clean-up steps used by `Folder`.
* `stackfold.demangle.fix_partially_demangled_rust_symbol`: the Rust symbol
  repair on its own.
* `stackfold.matcher.is_kernel` and `stackfold.matcher.is_vmlinux`: checks
  that recognise kernel module names and vmlinux images.

## What it does not do

* It reads DTrace output only. Other profilers' formats (such as `perf script`
  output) are not collapsed, and there is no detection of the input format.
* It does not draw flame graphs; it only produces the folded lines that a
  flame graph renderer takes as input.
* It does not compare two profiles.