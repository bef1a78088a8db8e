"""Per-scan view of the shared scan filesystem."""

from __future__ import annotations

import enum
import errno
import logging
import os
import posixpath
from typing import Mapping, Optional, Sequence

from reapikit.cppscan import cpp_scan
from reapikit.scan_fs import ScanFilesystem, ScanResult, _clean, _go_dir, _is_local, _to_slash

log = logging.getLogger(__name__)


class SearchPathType(enum.Enum):
    """How a directory added to the view is used."""

    NONE = 0
    INCLUDE = 1
    FRAMEWORK = 2


def _not_exist(name: str) -> FileNotFoundError:
    return FileNotFoundError(errno.ENOENT, os.strerror(errno.ENOENT), name)


def top_elem(name: str) -> str:
    """Return the first path element of name, ignoring a leading "./"."""
    if name.startswith("./"):
        name = name[2:]
    i = name.find("/")
    if i > 0:
        return name[:i]
    return name


class FsView:
    """A view of the filesystem for one scan; caches locally to avoid contention."""

    def __init__(
        self,
        fs: ScanFilesystem,
        exec_root: str,
        input_deps: Optional[Mapping[str, Sequence[str]]] = None,
        precomputed_trees: Sequence[str] = (),
    ) -> None:
        self.fs = fs
        self.exec_root = exec_root
        self.input_deps = input_deps or {}
        # precomputed trees for these include dirs (frameworks, sysroots).
        self.precomputed_trees = list(precomputed_trees)
        self.search_paths: list[str] = []
        self.framework_paths: list[str] = []
        self._dirs: dict[str, bool] = {}
        self._files: dict[str, Optional[ScanResult]] = {}
        # dir -> names of its entries, for dirs used to search.
        self.top_ents: dict[str, set[str]] = {}
        # path -> found; the found paths make up the results.
        self.visited: dict[str, bool] = {}

    def add_dir(self, dir: str, search_path: SearchPathType = SearchPathType.NONE) -> None:
        """Make dir usable for lookups, unless a precomputed tree covers it."""
        if dir + ":headers" in self.input_deps:
            return
        for sysinc in self.precomputed_trees:
            if dir == sysinc or dir.startswith(sysinc + "/"):
                return
        if search_path is SearchPathType.INCLUDE:
            if dir not in self.search_paths:
                self.search_paths.append(dir)
        elif search_path is SearchPathType.FRAMEWORK:
            if dir not in self.framework_paths:
                self.framework_paths.append(dir)
        try:
            dents = self.fs.read_dir(self.exec_root, dir)
        except OSError as err:
            if not isinstance(err, FileNotFoundError):
                log.warning("failed in readdir %s: %s", dir, err)
            return
        self.visited[dir] = True
        self.top_ents[dir] = dents

    def get(self, dir: str, name: str) -> tuple[str, ScanResult]:
        """Look name up in dir; return its path and scan result or raise OSError."""
        top = top_elem(name)
        # framework headers are symlinks, so their listing is not checked.
        if top != ".." and not dir.endswith(".framework/Headers"):
            ents = self.top_ents.get(dir)
            if ents is None or top not in ents:
                raise _not_exist(name)
        incpath = self.path_join(dir, name)
        if not _is_local(incpath):
            raise _not_exist(incpath)
        if self.visited.get(incpath) is False:
            raise _not_exist(incpath)
        incpath = self.fs.path_intern(incpath)
        try:
            sr = self.scan_file(incpath)
        except OSError:
            self.visited[incpath] = False
            raise
        self.visited[incpath] = True
        return incpath, sr

    def scan_file(self, fname: str) -> ScanResult:
        """Return the scan result of fname, scanning it the first time."""
        sr = self._scan_result(fname)
        with sr.lock:
            if sr.done:
                if sr.err is not None:
                    raise sr.err
                return sr
            try:
                buf = self.fs.backend.read_file(self.exec_root, fname)
            except OSError:
                return sr
            includes, defines = cpp_scan(fname, buf)
            sr.includes = [self.fs.intern(name) for name in includes]
            sr.defines = {
                self.fs.intern(k): [self.fs.intern(v) for v in values]
                for k, values in defines.items()
            }
            sr.done = True
            return sr

    def _scan_result(self, incpath: str) -> ScanResult:
        sr, known = self._get_file(incpath)
        if known:
            if sr is None:
                raise _not_exist(incpath)
            return sr
        framework = ".framework/Headers/" in incpath
        if not framework:
            # framework headers are symlinks into the bundle; other paths
            # have each parent directory checked.
            i = incpath.find("/")
            while i >= 0:
                dirname = incpath[:i]
                i = incpath.find("/", i + 1)
                exist = self._check_dir(dirname)
                if exist is True:
                    continue
                if exist is False:
                    raise _not_exist(incpath)
                try:
                    fi = self.fs.backend.stat(self.exec_root, dirname)
                except OSError:
                    self._set_dir(dirname, False)
                    raise _not_exist(incpath)
                if not fi.is_dir:
                    self._set_dir(dirname, False)
                    raise _not_exist(incpath)
                self._set_dir(dirname, True)
        try:
            fi = self.fs.backend.stat(self.exec_root, incpath)
        except OSError:
            self._set_file(incpath, None)
            raise _not_exist(incpath)
        if fi.is_dir:
            self._set_dir(incpath, True)
            self._set_file(incpath, None)
            raise IsADirectoryError(errno.EISDIR, os.strerror(errno.EISDIR), incpath)
        if not fi.is_regular:
            self._set_file(incpath, None)
            raise OSError(errno.EINVAL, os.strerror(errno.EINVAL), incpath)
        sr = ScanResult()
        self._set_file(incpath, sr)
        if framework:
            self._set_dir(_go_dir(incpath), True)
        return sr

    def _check_dir(self, dname: str) -> Optional[bool]:
        if dname in self._dirs:
            return self._dirs[dname]
        exist = self.fs.get_dir(self.exec_root, dname)
        if exist is not None:
            self._dirs[dname] = exist
        return exist

    def _set_dir(self, dname: str, exist: bool) -> None:
        self._dirs[dname] = exist
        self.fs.set_dir(self.exec_root, dname, exist)

    def _get_file(self, fname: str) -> tuple[Optional[ScanResult], bool]:
        if fname in self._files:
            return self._files[fname], True
        sr, known = self.fs.get_file(self.exec_root, fname)
        if known:
            self._files[fname] = sr
        return sr, known

    def _set_file(self, fname: str, sr: Optional[ScanResult]) -> None:
        self._files[fname] = sr
        self.fs.set_file(self.exec_root, fname, sr)

    def results(self) -> list[str]:
        """Return the sorted paths found by this view."""
        return sorted(k for k, found in self.visited.items() if k and ":" not in k and found)

    def path_join(self, dir: str, fname: str) -> str:
        """Join dir and fname; only names starting with "." are cleaned."""
        if dir in ("", "."):
            return fname
        if fname.startswith("."):
            return _clean(f"{dir}/{fname}")
        return f"{dir}/{fname}"

    def get_hmap(self, hmap: str) -> Optional[dict[str, str]]:
        """Return the header map, with entries outside the exec root dropped; None on failure."""
        mapping = self.fs.get_hmap(self.exec_root, hmap)
        if mapping is None:
            return None
        result: dict[str, str] = {}
        for key, value in mapping.items():
            if posixpath.isabs(value) or os.path.isabs(value):
                rel = self._rel(value)
                if rel is None or not _is_local(rel):
                    log.warning("unacceptable dir for %s in hmap %s: %s", key, hmap, value)
                    continue
                value = rel
            result[key] = value
        return result

    def _rel(self, target: str) -> Optional[str]:
        if not os.path.isabs(self.exec_root):
            return None
        try:
            return _to_slash(os.path.relpath(target, self.exec_root))
        except ValueError:
            return None