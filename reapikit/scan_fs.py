"""Filesystem cache shared by include scans, tuned for their access pattern.

It keeps positive and negative results for directories and files so that
probing many include directories for missing headers stays cheap.
"""

from __future__ import annotations

import errno
import logging
import os
import posixpath
import stat as _stat
import threading
from dataclasses import dataclass, field
from typing import Optional, Protocol

from reapikit.hmap import HeaderMapError, parse_header_map

log = logging.getLogger(__name__)

_MAX_SYMLINKS = 40


def _clean(p: str) -> str:
    if not p:
        return "."
    r = posixpath.normpath(p)
    if r.startswith("//"):
        r = "/" + r.lstrip("/")
    return r


def _join(*elems: str) -> str:
    parts = [e for e in elems if e]
    if not parts:
        return ""
    return _clean("/".join(parts))


def _go_dir(p: str) -> str:
    d = posixpath.dirname(p)
    return _clean(d) if d else "."


def _go_base(p: str) -> str:
    if not p:
        return "."
    s = p.rstrip("/")
    if not s:
        return "/"
    return s.rsplit("/", 1)[-1]


def _is_local(p: str) -> bool:
    """Return whether p is a relative path that stays inside its root."""
    if not p or posixpath.isabs(p) or os.path.isabs(p):
        return False
    c = _clean(p)
    return c != ".." and not c.startswith("../")


def _to_slash(p: str) -> str:
    if os.sep != "/":
        return p.replace(os.sep, "/")
    return p


@dataclass(frozen=True)
class _FileInfo:
    path: str
    is_dir: bool
    is_regular: bool
    target: str = ""


class _Backend(Protocol):
    def read_dir(self, exec_root: str, dname: str) -> list[str]: ...

    def stat(self, exec_root: str, name: str) -> _FileInfo: ...

    def read_file(self, exec_root: str, name: str) -> bytes: ...


class LocalFS:
    """Reads directories and files of the local disk relative to an exec root."""

    @staticmethod
    def _path(exec_root: str, name: str) -> str:
        return os.path.join(exec_root, name) if exec_root else name

    def read_dir(self, exec_root: str, dname: str) -> list[str]:
        """Return the sorted entry names of a directory."""
        return sorted(os.listdir(self._path(exec_root, dname)))

    def stat(self, exec_root: str, name: str) -> _FileInfo:
        """Describe a path; symlinks report their target and the type they point to."""
        p = self._path(exec_root, name)
        st = os.lstat(p)
        target = ""
        if _stat.S_ISLNK(st.st_mode):
            target = os.readlink(p)
            try:
                st = os.stat(p)
            except OSError:
                pass
        return _FileInfo(name, _stat.S_ISDIR(st.st_mode), _stat.S_ISREG(st.st_mode), target)

    def read_file(self, exec_root: str, name: str) -> bytes:
        with open(self._path(exec_root, name), "rb") as f:
            return f.read()


@dataclass(eq=False)
class ScanResult:
    """Include names and include-path macros found in one file."""

    done: bool = False
    includes: list[str] = field(default_factory=list)
    defines: dict[str, list[str]] = field(default_factory=dict)
    err: Optional[Exception] = None
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)


@dataclass(eq=False)
class _DirCache:
    ready: threading.Event = field(default_factory=threading.Event)
    names: set[str] = field(default_factory=set)
    err: Optional[OSError] = None


@dataclass(eq=False)
class _HmapResult:
    lock: threading.Lock = field(default_factory=threading.Lock)
    done: bool = False
    mapping: Optional[dict[str, str]] = None


class ScanFilesystem:
    """Caches of directory listings, directory existence, scanned files and header maps."""

    def __init__(self, backend: _Backend) -> None:
        self.backend = backend
        self._lock = threading.Lock()
        self._dirs: dict[str, bool] = {}
        self._files: dict[str, Optional[ScanResult]] = {}
        self._dircache: dict[str, _DirCache] = {}
        self._hmaps: dict[str, _HmapResult] = {}
        self._symtab: dict[str, str] = {}
        self._pathtab: dict[str, str] = {}

    def update(self, path: str, is_dir: bool) -> None:
        """Record that path (a full path) was created or modified."""
        base = ""
        if not is_dir:
            fname = _to_slash(path)
            with self._lock:
                self._files.pop(fname, None)
            base = _go_base(fname)
            dname = _go_dir(fname)
        else:
            dname = _to_slash(path)

        d = dname
        while not d.endswith("/"):
            with self._lock:
                dc = self._dircache.get(d)
                if dc is not None:
                    if not dc.ready.is_set() or dc.err is not None:
                        del self._dircache[d]
                    elif base:
                        dc.names.add(base)
            parent = _go_dir(d)
            if parent == d:
                break
            base, d = _go_base(d), parent

        while not dname.endswith("/"):
            if self._mark_dir_exists(dname):
                return
            dname = _go_dir(dname)

    def _mark_dir_exists(self, dname: str) -> bool:
        with self._lock:
            prev = self._dirs.get(dname)
            self._dirs[dname] = True
        return prev is True

    def read_dir(self, exec_root: str, dname: str) -> set[str]:
        """Return the entry names of dname; the listing is cached and kept up to date."""
        fullpath = _join(exec_root, dname)
        with self._lock:
            dc = self._dircache.get(fullpath)
            owner = dc is None
            if dc is None:
                dc = _DirCache()
                self._dircache[fullpath] = dc
        if owner:
            try:
                self._fill_dir(dc, exec_root, dname, fullpath)
            finally:
                dc.ready.set()
        dc.ready.wait()
        if dc.err is not None:
            raise dc.err
        return dc.names

    def _fill_dir(self, dc: _DirCache, exec_root: str, dname: str, fullpath: str) -> None:
        symlink_err = OSError(errno.ELOOP, f"readdir {dname}: {os.strerror(errno.ELOOP)}")
        names: list[str] = []
        err: Optional[OSError] = None
        for _ in range(_MAX_SYMLINKS):
            try:
                names = self.backend.read_dir(exec_root, dname)
                err = None
                break
            except OSError as exc:
                err = exc
            # may be a symlink?
            try:
                fi = self.backend.stat(exec_root, dname)
            except OSError as serr:
                log.warning("stat %s: %s", dname, serr)
                break
            if not fi.target:
                log.warning("not symlink? %s", dname)
                break
            target = _join(_go_dir(dname), fi.target)
            # the target may escape the exec root.
            if not _is_local(target):
                dname = _join(exec_root, target)
                exec_root = ""
            err = symlink_err
        dc.err = err
        dc.names.update(self.path_intern(n) for n in names)
        d = fullpath
        while not d.endswith("/"):
            if self._mark_dir_exists(d):
                break
            d = _go_dir(d)

    def intern(self, v: str) -> str:
        """Return the canonical copy of an include name or macro."""
        with self._lock:
            return self._symtab.setdefault(v, v)

    def path_intern(self, v: str) -> str:
        """Return the canonical copy of a path name."""
        with self._lock:
            return self._pathtab.setdefault(v, v)

    def get_dir(self, exec_root: str, dname: str) -> Optional[bool]:
        """Return whether dname exists, or None when not known yet."""
        with self._lock:
            return self._dirs.get(_join(exec_root, dname))

    def set_dir(self, exec_root: str, dname: str, exist: bool) -> None:
        with self._lock:
            self._dirs[_join(exec_root, dname)] = exist

    def get_file(self, exec_root: str, fname: str) -> tuple[Optional[ScanResult], bool]:
        """Return (result, known); a known None result means the file is unusable."""
        key = _join(exec_root, fname)
        with self._lock:
            if key not in self._files:
                return None, False
            return self._files[key], True

    def set_file(self, exec_root: str, fname: str, result: Optional[ScanResult]) -> None:
        with self._lock:
            self._files[_join(exec_root, fname)] = result

    def get_hmap(self, exec_root: str, fname: str) -> Optional[dict[str, str]]:
        """Return the parsed header map, or None if it is missing or invalid. Cached."""
        key = _join(exec_root, fname)
        with self._lock:
            hr = self._hmaps.setdefault(key, _HmapResult())
        with hr.lock:
            if hr.done:
                return hr.mapping
            hr.done = True
            try:
                buf = self.backend.read_file(exec_root, fname)
            except OSError as err:
                log.warning("missing hmap %s: %s", fname, err)
                return None
            try:
                mapping = parse_header_map(buf)
            except HeaderMapError as err:
                log.warning("failed to parse hmap %s: %s", fname, err)
                return None
            hr.mapping = mapping
            return mapping