"""Merkle trees of directories for the remote execution API."""

from __future__ import annotations

import logging
import os
import posixpath
from dataclasses import dataclass, field
from typing import Optional, Union

from reapikit.digest import EMPTY, Data, Digest, Store, data_to_bytes
from reapikit.protos import (
    Directory,
    DirectoryNode,
    FileNode,
    OutputDirectory,
    OutputFile,
    OutputSymlink,
    SymlinkNode,
    data_from_directory,
    parse_directory,
)

log = logging.getLogger(__name__)


class MerkleTreeError(Exception):
    """Base error of merkle tree operations."""


class AbsPathError(MerkleTreeError):
    """The entry name is an absolute path."""


class AmbiguousFileSymlinkError(MerkleTreeError):
    """The entry has both data and a symlink target."""


class BadPathError(MerkleTreeError):
    """The entry name has a bad path component such as "." or ".."."""


class BadTreeError(MerkleTreeError):
    """The tree entry has a bad digest."""


class PrecomputedSubtreeError(MerkleTreeError):
    """An entry was set inside a precomputed subtree."""


@dataclass(frozen=True)
class Entry:
    """An entry of the tree; name is relative to the root and may be unclean."""

    name: str
    data: Data = field(default_factory=Data)
    is_executable: bool = False
    target: str = ""

    def is_dir(self) -> bool:
        return self.data.is_zero() and self.target == ""

    def is_symlink(self) -> bool:
        return self.data.is_zero() and self.target != ""


@dataclass(frozen=True)
class TreeEntry:
    """A precomputed subtree; store may be None if its blobs are known uploaded."""

    name: str
    digest: Digest
    store: Optional[Store] = None


@dataclass
class _DirState:
    name: str
    dir: Directory


def _is_abs(name: str) -> bool:
    return os.path.isabs(name) or name.startswith("/") or name.startswith("\\")


def _to_slash(name: str) -> str:
    if os.sep != "/":
        return name.replace(os.sep, "/")
    return name


def _path_join(dirname: str, base: str) -> str:
    if dirname in (".", ""):
        return base
    return f"{dirname}/{base}"


def _digest_or_none(d: Digest) -> Optional[Digest]:
    return None if d.is_zero() else d


class MerkleTree:
    """Builds directory messages from entries and computes the root digest."""

    def __init__(self, store: Optional[Store] = None) -> None:
        # dirname -> Directory; "" is the root, None marks a precomputed subtree.
        self._dirs: dict[str, Optional[Directory]] = {"": Directory()}
        self._store = store

    def root_directory(self) -> Directory:
        root = self._dirs[""]
        assert root is not None
        return root

    def _set_dir(self, cur: _DirState, name: str) -> _DirState:
        dirname = _path_join(cur.name, name)
        if dirname not in self._dirs:
            cur.dir.directories.append(DirectoryNode(name))
            self._dirs[dirname] = Directory()
        d = self._dirs[dirname]
        if d is None:
            raise PrecomputedSubtreeError(f"set in precomputed subtree {dirname}")
        return _DirState(dirname, d)

    def _walk_parents(self, op: str, fname: str, parents: list[str]) -> tuple[_DirState, list[_DirState]]:
        cur = _DirState(".", self.root_directory())
        stack: list[_DirState] = []
        for name in parents:
            if name in ("", "."):
                continue
            if name == "..":
                if not stack:
                    raise BadPathError(f"{op} {fname}: out of exec root")
                cur = stack.pop()
                continue
            stack.append(cur)
            try:
                cur = self._set_dir(cur, name)
            except PrecomputedSubtreeError as err:
                raise PrecomputedSubtreeError(f"{op} {fname}: {err}") from err
        return cur, stack

    def set(self, entry: Entry) -> None:
        """Add a file, directory or symlink entry."""
        fname = entry.name
        if entry.target and not entry.data.is_zero():
            raise AmbiguousFileSymlinkError(f"set {fname}: unable to determine file vs symlink")
        if _is_abs(fname):
            raise AbsPathError(f"set {fname}: absolute path name")
        fname = _to_slash(fname)
        if (entry.is_dir() or entry.target) and fname in self._dirs:
            return
        *parents, leaf = fname.split("/")
        cur, stack = self._walk_parents("set", fname, parents)
        if entry.data.is_zero():
            if leaf == "":
                raise BadPathError(f"set {fname}: empty path element")
            if leaf == ".":
                return
            if leaf == "..":
                if not stack:
                    raise BadPathError(f"set {fname}: out of exec root")
                return
            if entry.is_symlink():
                cur.dir.symlinks.append(SymlinkNode(leaf, entry.target))
                return
            self._set_dir(cur, leaf)
            return
        if leaf in (".", ".."):
            raise BadPathError(f"set {fname}: unexpected {leaf}")
        if self._store is not None:
            self._store.set(entry.data)
        cur.dir.files.append(FileNode(leaf, _digest_or_none(entry.data.digest), entry.is_executable))

    def set_tree(self, tentry: TreeEntry) -> None:
        """Add a precomputed subtree entry."""
        dname = tentry.name
        if tentry.digest.is_zero():
            raise BadTreeError(f"setTree {dname}: bad tree")
        if _is_abs(dname):
            raise AbsPathError(f"setTree {dname}: absolute path name")
        dname = _to_slash(dname)
        if dname in self._dirs:
            raise PrecomputedSubtreeError(f"setTree {dname}: set in precomputed subtree")
        *parents, leaf = dname.split("/")
        cur, _ = self._walk_parents("setTree", dname, parents)
        if leaf == "":
            raise BadPathError(f"setTree {dname}: empty path element")
        if leaf in (".", ".."):
            raise BadPathError(f"setTree {dname}: {leaf} at the leaf")
        dirname = _path_join(cur.name, leaf)
        cur.dir.directories.append(DirectoryNode(leaf, tentry.digest))
        self._dirs.setdefault(dirname, None)
        if self._store is not None and tentry.store is not None:
            for d in tentry.store.list():
                data = tentry.store.get(d)
                if data is not None:
                    self._store.set(data)

    def build(self) -> Digest:
        """Finalize all directories and return the root digest."""
        return self._build_tree(self.root_directory(), "")

    def _build_tree(self, curdir: Directory, dirname: str) -> Digest:
        names: dict[str, Union[FileNode, SymlinkNode, DirectoryNode]] = {}

        files: list[FileNode] = []
        for f in curdir.files:
            prev = names.get(f.name)
            if prev is not None:
                if f != prev:
                    raise MerkleTreeError(f"duplicate file {f.name} in {dirname}: {f} != {prev}")
                log.info("duplicate file %s in %s: %s", f.name, dirname, f)
                continue
            names[f.name] = f
            files.append(f)
        curdir.files = sorted(files, key=lambda n: n.name)

        symlinks: list[SymlinkNode] = []
        for s in curdir.symlinks:
            prev = names.get(s.name)
            if prev is not None:
                if s != prev:
                    raise MerkleTreeError(f"duplicate symlink {s.name} in {dirname}: {s} != {prev}")
                log.info("duplicate symlink %s in %s: %s", s.name, dirname, s)
                continue
            names[s.name] = s
            symlinks.append(s)
        curdir.symlinks = sorted(symlinks, key=lambda n: n.name)

        dirs: list[DirectoryNode] = []
        for subdir in curdir.directories:
            subname = _path_join(dirname, subdir.name)
            if subname not in self._dirs:
                raise MerkleTreeError(f"directory not found: {subname}")
            sub = self._dirs[subname]
            prev = names.get(subdir.name)
            if isinstance(prev, SymlinkNode):
                log.info("use symlink for dir: %s", subname)
                continue
            if sub is not None and subdir.digest is None:
                subdir.digest = self._build_tree(sub, subname)
            if prev is not None:
                if subdir != prev:
                    raise MerkleTreeError(f"duplicate dir {subdir.name} in {subname}: {subdir} != {prev}")
                log.info("duplicate dir %s in %s: %s", subdir.name, subname, subdir)
                continue
            names[subdir.name] = subdir
            dirs.append(subdir)
        curdir.directories = sorted(dirs, key=lambda n: n.name)

        data = data_from_directory(curdir)
        if self._store is not None:
            self._store.set(data)
        return data.digest


def _join(base: str, name: str) -> str:
    parts = [p for p in (base, name) if p]
    if not parts:
        return ""
    return posixpath.normpath("/".join(parts))


def traverse(
    base: str, directory: Directory, store: Store
) -> tuple[list[OutputFile], list[OutputSymlink], list[OutputDirectory]]:
    """Collect files, symlinks and directories under directory, prefixed by base.

    Subdirectories missing from the store or not parseable are skipped.
    """
    files = [OutputFile(_join(base, f.name), f.digest, f.is_executable) for f in directory.files]
    symlinks = [OutputSymlink(_join(base, s.name), s.target) for s in directory.symlinks]
    dirs: list[OutputDirectory] = []
    for subd in directory.directories:
        subdirname = _join(base, subd.name)
        dg = subd.digest if subd.digest is not None else Digest()
        data = store.get(dg)
        if data is None:
            log.error("digest store doesn't have a directory: %s %s", subdirname, dg)
            continue
        try:
            subdir = parse_directory(data_to_bytes(data))
        except ValueError:
            log.error("invalid Directory message: %s %s", subdirname, dg)
            continue
        dirs.append(OutputDirectory(subdirname, EMPTY))
        sfiles, ssymlinks, sdirs = traverse(subdirname, subdir, store)
        files.extend(sfiles)
        symlinks.extend(ssymlinks)
        dirs.extend(sdirs)
    return files, symlinks, dirs