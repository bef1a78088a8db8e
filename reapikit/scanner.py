"""Include dependency scanner state for one scan request."""

from __future__ import annotations

import os
import posixpath
from typing import Mapping, Optional, Sequence

from reapikit.cppscan import expand_macros, is_macro
from reapikit.fsview import FsView, SearchPathType, _not_exist
from reapikit.scan_fs import ScanFilesystem, _clean, _go_base, _go_dir, _is_local, _to_slash


class Scanner:
    """Follows #include names from sources through search paths and header maps."""

    def __init__(
        self,
        fs: ScanFilesystem,
        exec_root: str,
        input_deps: Optional[Mapping[str, Sequence[str]]] = None,
        precomputed_trees: Sequence[str] = (),
    ) -> None:
        self.fsview = FsView(fs, exec_root, input_deps, precomputed_trees)
        # directories for #include "..." lookups.
        self.dirstack: list[str] = []
        self.max_dirstack = 0
        # pending include names; "" pops the directory stack.
        self.inputs: list[str] = []
        # macro -> every value seen for it, since #if is not evaluated.
        self.macros: dict[str, list[str]] = {}
        # include name -> dir -> already tried.
        self.included: dict[str, dict[str, bool]] = {}
        # macro -> value -> used.
        self.macro_used: dict[str, dict[str, bool]] = {}
        # path -> contains #include MACRO.
        self.macro_include: dict[str, bool] = {}
        # include name -> dirs to retry because a macro may have changed.
        self.macro_dirs: dict[str, list[str]] = {}
        # include name -> index into search paths already tried.
        self.name_dirs: dict[str, int] = {}
        # header map: include name -> file paths.
        self.hmaps: dict[str, list[str]] = {}
        for d in precomputed_trees:
            self.fsview.add_dir(d, SearchPathType.NONE)

    def push_inputs(self, *args: str) -> None:
        """Queue include names, to be processed in the given order, then pop a dir."""
        self.inputs.append("")
        self.inputs.extend(reversed(args))

    def push_macro_inputs(self, *args: str) -> None:
        """Like push_inputs, but queue only the names that are macros."""
        self.inputs.append("")
        self.inputs.extend(name for name in reversed(args) if is_macro(name))

    def has_inputs(self) -> bool:
        return bool(self.inputs)

    def pop_input(self) -> str:
        return self.inputs.pop()

    def next_inputs(self) -> list[str]:
        """Return the include names the next pending input expands to."""
        while self.has_inputs():
            incname = self.pop_input()
            if incname == "":
                self.pop_dir()
                continue
            return expand_macros([], incname, self.macros)
        return []

    def add_inputs(self, *args: str) -> None:
        """Queue include names to be processed after everything already pending."""
        self.inputs = [*args, *self.inputs]

    def set_macros(self, macros: Mapping[str, str]) -> None:
        """Add macro definitions given on the command line."""
        for key, value in macros.items():
            self.macros.setdefault(key, []).append(value)

    def update_macros(self, macros: Mapping[str, Sequence[str]]) -> None:
        """Add macro values found in a file, skipping values already known."""
        for key, values in macros.items():
            known = self.macros.setdefault(key, [])
            seen = set(known)
            for value in values:
                if value in seen:
                    continue
                seen.add(value)
                known.append(value)

    def add_include(self, fname: str) -> None:
        """Add a forced include, as if the source began with #include "fname"."""
        self.push_inputs(f'"{fname}"')

    def add_source(self, fname: str) -> None:
        """Add a source file, included from its own directory."""
        self.push_dir(_go_dir(_to_slash(fname)))
        self.push_inputs(f'"{_go_base(_to_slash(fname))}"')

    def add_dir(self, dir: str) -> None:
        self.fsview.add_dir(dir, SearchPathType.INCLUDE)

    def add_framework_dir(self, dir: str) -> None:
        self.fsview.add_dir(dir, SearchPathType.FRAMEWORK)

    def push_dir(self, dir: str) -> None:
        self.dirstack.append(dir)
        self.max_dirstack = max(self.max_dirstack, len(self.dirstack))
        self.fsview.add_dir(dir, SearchPathType.NONE)

    def pop_dir(self) -> None:
        if self.dirstack:
            self.dirstack.pop()

    def add_hmap(self, hmap: str) -> bool:
        """Load a header map; return False if it is missing or invalid."""
        mapping = self.fsview.get_hmap(hmap)
        if mapping is None:
            return False
        for key, value in mapping.items():
            self.hmaps.setdefault(key, []).append(value)
        return True

    def _rel_to_exec_root(self, name: str) -> Optional[str]:
        exec_root = self.fsview.exec_root
        if not os.path.isabs(exec_root):
            return None
        try:
            return _to_slash(os.path.relpath(name, exec_root))
        except ValueError:
            return None

    def _enter(self, incpath: str, includes: Sequence[str], defines, macro_only: bool) -> None:
        # `#include "xx"` in incpath may find "xx" in the dir of incpath.
        self.push_dir(_go_dir(incpath))
        self.update_macros(defines)
        if macro_only:
            self.push_macro_inputs(*includes)
        else:
            self.push_inputs(*includes)

    def find(self, name: str) -> str:
        """Resolve a delimited include name to a path and queue its includes.

        Raises ValueError for an empty or unacceptable name and
        FileNotFoundError when the name is not found.
        """
        if not name:
            raise ValueError("empty include name")
        form = name[0]
        name = name[1:-1]
        included = self.included.setdefault(name, {})

        if posixpath.isabs(name) or os.path.isabs(name):
            rel = self._rel_to_exec_root(name)
            if rel is None or not _is_local(rel):
                raise ValueError(f"unacceptable abs include path {name!r}")
            if "." not in self.fsview.top_ents:
                self.fsview.add_dir(".", SearchPathType.INCLUDE)
            incpath, sr = self.fsview.get(".", rel)
            self._macro_check(".", rel, incpath, sr.includes)
            self._enter(incpath, sr.includes, sr.defines, False)
            return incpath

        ds: list[str] = []
        if form == '"':
            ds.extend(reversed(self.dirstack))
        qi = len(ds)
        ds.extend(self.macro_dirs.get(name, []))
        mi = len(ds)
        ds.extend(self.fsview.search_paths[self.name_dirs.get(name, 0):])
        if ds:
            for i, dir in enumerate(ds):
                if included.get(dir):
                    continue
                included[dir] = True
                try:
                    incpath, sr = self.fsview.get(dir, name)
                except OSError:
                    continue
                self._macro_check(dir, name, incpath, sr.includes)
                self._enter(incpath, sr.includes, sr.defines, qi <= i < mi)
                if i > mi:
                    self.name_dirs[name] = self.name_dirs.get(name, 0) + i - mi
                return incpath
            self.name_dirs[name] = len(ds) - mi

        if self.fsview.framework_paths and "/" in name:
            fwdir, base = name.split("/", 1)
            # framework import "Foo/Bar.h" -> "Foo.framework/Headers/Bar.h"
            fwname = _clean(f"{fwdir}.framework/Headers/{base}")
            for dir in self.fsview.framework_paths:
                if included.get(dir):
                    continue
                included[dir] = True
                try:
                    incpath, sr = self.fsview.get(dir, fwname)
                except OSError:
                    continue
                self._macro_check(dir, name, incpath, sr.includes)
                self._enter(incpath, sr.includes, sr.defines, False)
                return incpath
        raise _not_exist(name)

    def _macro_check(self, dir: str, name: str, incpath: str, incnames: Sequence[str]) -> None:
        for iname in incnames:
            if is_macro(iname) and not self._macro_all_used(iname):
                # the macro value may have changed, so the include must be retried.
                if not self.macro_include.get(incpath):
                    self.macro_dirs.setdefault(name, []).append(dir)
                self.macro_include[incpath] = True
                self.included[name][dir] = False
                return

    def _macro_all_used(self, macro: str) -> bool:
        used = self.macro_used.setdefault(macro, {})
        values = self.macros.get(macro)
        if values is None:
            return True
        all_used = True
        for value in values:
            if not used.get(value):
                used[value] = True
                all_used = False
        return all_used

    def results(self) -> list[str]:
        """Return the found paths plus every file named by loaded header maps."""
        res = self.fsview.results()
        for values in self.hmaps.values():
            res.extend(values)
        return res