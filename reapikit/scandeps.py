"""Simple C/C++ include dependency scanner.

Only `#include "x.h"`, `#include <x.h>` and `#include MACRO` are followed;
`#define MACRO "x.h"`, `<x.h>` or `OTHER_MACRO` supply macro values. Since
conditionals are not evaluated, every value of a macro is tried. Directives
may not span lines or hold comments.

Sysroots, and include dirs with an input-deps label "<dir>:headers", are
treated as precomputed trees and not scanned.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Mapping, Optional, Sequence, Union

from reapikit.scan_fs import ScanFilesystem, _Backend
from reapikit.scanner import Scanner


@dataclass
class Request:
    """A scan request.

    defines are command-line macros whose values are "path.h" or <path.h>;
    includes are forced includes (-include); dirs are include directories
    or .hmap files; timeout bounds the scan in seconds when set.
    """

    defines: dict[str, str] = field(default_factory=dict)
    sources: list[str] = field(default_factory=list)
    includes: list[str] = field(default_factory=list)
    dirs: list[str] = field(default_factory=list)
    frameworks: list[str] = field(default_factory=list)
    sysroots: list[str] = field(default_factory=list)
    timeout: Optional[float] = None


class ScanDeps:
    """Scans C/C++ sources for the headers they depend on."""

    def __init__(
        self,
        fs: Union[ScanFilesystem, _Backend],
        input_deps: Optional[Mapping[str, Sequence[str]]] = None,
    ) -> None:
        self.fs = fs if isinstance(fs, ScanFilesystem) else ScanFilesystem(fs)
        self.input_deps = dict(input_deps or {})

    def scan(self, exec_root: str, req: Request) -> list[str]:
        """Return the paths, relative to exec_root, the request's sources depend on.

        Raises TimeoutError when req.timeout is set and exceeded.
        """
        deadline = time.monotonic() + req.timeout if req.timeout else None
        scanner = Scanner(self.fs, exec_root, self.input_deps, list(req.sysroots))
        scanner.set_macros(req.defines)
        for fname in req.includes:
            scanner.add_include(fname)
        for fname in req.sources:
            scanner.add_source(fname)
        for dir in req.dirs:
            if dir.endswith(".hmap") and scanner.add_hmap(dir):
                continue
            scanner.add_dir(dir)
        for dir in req.frameworks:
            scanner.add_framework_dir(dir)

        while scanner.has_inputs():
            if deadline is not None and time.monotonic() > deadline:
                raise TimeoutError(f"scandeps timed out after {req.timeout}s")
            for name in scanner.next_inputs():
                try:
                    incpath = scanner.find(name)
                except (OSError, ValueError):
                    continue
                if not incpath:
                    continue
                deps = self.input_deps.get(incpath)
                if deps is not None:
                    scanner.add_inputs(*deps)
        return scanner.results()