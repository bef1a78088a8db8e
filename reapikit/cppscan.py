"""Scanner for C preprocessor #include, #import and #define directives."""

from __future__ import annotations

from typing import Mapping, Sequence

_UPPER = range(ord("A"), ord("Z") + 1)


def _decode(b: bytes) -> str:
    return b.decode("utf-8", errors="surrogateescape")


def _index_any(buf: bytes, chars: bytes) -> int:
    positions = [p for p in (buf.find(bytes([c])) for c in chars) if p >= 0]
    return min(positions) if positions else -1


def cpp_scan(fname: str, buf: bytes) -> tuple[list[str], dict[str, list[str]]]:
    """Return the include names and include-path macros found in buf.

    Includes keep their delimiters ("x.h" or <x.h>), or are macro names.
    Defines map a macro to all values seen for it.
    """
    includes: list[str] = []
    defines: dict[str, list[str]] = {}
    buf = bytes(buf)
    while buf:
        buf = buf.strip()
        if not buf:
            break
        line, sep, rest = buf.partition(b"\n")
        buf = rest if sep else b""
        if not line.startswith(b"#"):
            continue
        line = line[1:].strip()

        if line.startswith(b"include"):
            line = line[len(b"include"):]
            if line.startswith(b"_next"):
                line = line[len(b"_next"):]
            elif not line or line[:1] not in (b" ", b"\t"):
                continue
        elif line.startswith(b"import"):
            line = line[len(b"import"):]
            if not line or line[:1] not in (b" ", b"\t"):
                continue
        elif line.startswith(b"define"):
            line = line[len(b"define"):]
            if not line or line[:1] not in (b" ", b"\t"):
                continue
            _add_define(defines, line.strip())
            continue
        else:
            continue

        line = line.strip()
        if not line:
            continue
        _add_include(includes, line)
    return includes, defines


def _add_include(paths: list[str], incpath: bytes) -> None:
    first = incpath[:1]
    if first == b'"':
        delims = b'"'
    elif first == b"<":
        delims = b">"
    else:
        delims = b" \t"
    quoted = delims in (b'"', b">")
    i = _index_any(incpath[1:], delims)
    if i < 0:
        if quoted:
            # unclosed path
            return
    elif quoted:
        incpath = incpath[:i + 2]
    else:
        incpath = incpath[:i + 1]
    if incpath[0] not in b'"<' and incpath[0] not in _UPPER:
        return
    paths.append(_decode(incpath))


def _add_define(defines: dict[str, list[str]], line: bytes) -> None:
    i = _index_any(line, b" \t")
    if i < 0:
        return
    macro = _decode(line[:i])
    if "(" in macro:
        return
    line = line[i + 1:].strip()
    if not line:
        return
    if line[:1] in (b"<", b'"'):
        delim = b">" if line[:1] == b"<" else b'"'
        j = line.find(delim, 1)
        if j < 0:
            return
        defines.setdefault(macro, []).append(_decode(line[:j + 1]))
        return
    # only a single capitalised token, e.g. "#define FT_AUTHHINTER_H FT_DRIVER_H".
    value = line
    j = _index_any(value, b" \t")
    if j >= 0:
        value = value[:j]
    if not value or b"(" in value:
        return
    if value[0] in _UPPER:
        defines.setdefault(macro, []).append(_decode(value))


def expand_macros(paths: Sequence[str], incname: str, macros: Mapping[str, Sequence[str]]) -> list[str]:
    """Append to paths every include name that incname may expand to.

    An empty name or an undefined macro anywhere in the expansion yields [].
    """
    if not incname:
        return []
    if not is_macro(incname):
        return [*paths, incname]
    values = macros.get(incname)
    if values is None:
        return []
    result = list(paths)
    for value in values:
        result = expand_macros(result, value, macros)
    return result


def is_macro(s: str) -> bool:
    """Return whether an include name is a macro rather than "path" or <path>."""
    return bool(s) and s[0] not in '<"'