"""Repair of Rust symbols that profilers left partially demangled."""

_RUST_HASH_LENGTH = 17
_HEX_DIGITS = frozenset("0123456789abcdefABCDEF")

_ESCAPES = (
    ("$SP$", "@"),
    ("$BP$", "*"),
    ("$RF$", "&"),
    ("$LT$", "<"),
    ("$GT$", ">"),
    ("$LP$", "("),
    ("$RP$", ")"),
    ("$C$", ","),
    ("$u7e$", "~"),
    ("$u20$", " "),
    ("$u27$", "'"),
    ("$u3d$", "="),
    ("$u5b$", "["),
    ("$u5d$", "]"),
    ("$u7b$", "{"),
    ("$u7d$", "}"),
    ("$u3b$", ";"),
    ("$u2b$", "+"),
    ("$u21$", "!"),
    ("$u22$", '"'),
)


def _is_rust_hash(s: str) -> bool:
    return s.startswith("h") and all(c in _HEX_DIGITS for c in s[1:])


def _has_rust_hash(symbol: str) -> bool:
    return len(symbol) >= _RUST_HASH_LENGTH and _is_rust_hash(symbol[-_RUST_HASH_LENGTH:])


def fix_partially_demangled_rust_symbol(symbol: str) -> str:
    """Finish demangling a Rust symbol that a profiler demangled only in part.

    For example ``std..fs..File$u20$as...::h0123456789abcdef`` has its trailing
    hash removed and its ``..`` and ``$..$`` escapes expanded.  Symbols without
    a trailing Rust hash (non-Rust, fully mangled or already demangled ones)
    are returned unchanged.
    """
    if not _has_rust_hash(symbol):
        return symbol

    rest = symbol[:-_RUST_HASH_LENGTH]
    if rest.endswith("::"):
        rest = rest[:-2]
    if rest.startswith("_$"):
        rest = rest[1:]

    parts: list[str] = []
    while rest:
        if rest.startswith("."):
            if rest.startswith(".."):
                parts.append("::")
                rest = rest[2:]
            else:
                parts.append(".")
                rest = rest[1:]
        elif rest.startswith("$"):
            for pattern, replacement in _ESCAPES:
                if rest.startswith(pattern):
                    parts.append(replacement)
                    rest = rest[len(pattern):]
                    break
            else:
                parts.append(rest)
                break
        else:
            end = next(
                (i for i, c in enumerate(rest) if c in "$."),
                len(rest),
            )
            parts.append(rest[:end])
            rest = rest[end:]

    return "".join(parts)