"""Helpers that recognise kernel frames in ``perf script`` output."""

_VMLINUX = "vmlinux"
_VMLINUX_EXTRA_CHARS = frozenset("-._")


def _is_vmlinux_char(c: str) -> bool:
    return (c.isascii() and c.isalnum()) or c in _VMLINUX_EXTRA_CHARS


def is_vmlinux(s: str) -> bool:
    """Return True if ``s`` names a vmlinux image, with or without a version.

    Examples of matching module names::

        /usr/lib/debug/boot/vmlinux-5.4.14-cloudflare-2020.1.11
        /lib/modules/4.3.0-rc1-virtual/build/vmlinux
    """
    position = s.rfind(_VMLINUX)
    if position < 0:
        return False
    return all(_is_vmlinux_char(c) for c in s[position:])


def is_kernel(s: str) -> bool:
    """Return True if ``s`` is a kernel module name, module file or vmlinux image."""
    return (s.startswith("[") or s.endswith(".ko") or is_vmlinux(s)) and s != "[unknown]"