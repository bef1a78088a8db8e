import pytest

from reapikit.digest import EMPTY, Store, data_from_bytes, digest_of_bytes
from reapikit.merkletree import (
    AbsPathError,
    AmbiguousFileSymlinkError,
    BadPathError,
    BadTreeError,
    Entry,
    MerkleTree,
    MerkleTreeError,
    PrecomputedSubtreeError,
    TreeEntry,
    traverse,
)
from reapikit.protos import DirectoryNode, SymlinkNode, data_from_directory


def _file(name, content=b"hello"):
    return Entry(name, data_from_bytes(name, content))


def test_entry_kinds():
    assert Entry("d").is_dir()
    assert Entry("l", target="t").is_symlink()
    assert not _file("f").is_dir()
    assert not _file("f").is_symlink()


def test_empty_tree_digest():
    assert MerkleTree(Store()).build() == EMPTY


def test_root_digest_matches_root_directory():
    tree = MerkleTree(Store())
    tree.set(_file("z.txt"))
    tree.set(_file("a.txt", b"other"))
    d = tree.build()
    root = tree.root_directory()
    assert [f.name for f in root.files] == ["a.txt", "z.txt"]
    assert d == data_from_directory(root).digest


def test_build_is_order_independent():
    entries = [_file("b/x"), _file("a/y", b"y"), Entry("c"), Entry("l", target="b/x")]
    t1, t2 = MerkleTree(), MerkleTree()
    for e in entries:
        t1.set(e)
    for e in reversed(entries):
        t2.set(e)
    assert t1.build() == t2.build()


def test_errors_on_bad_entries():
    tree = MerkleTree()
    with pytest.raises(AbsPathError):
        tree.set(_file("/abs/file"))
    with pytest.raises(AmbiguousFileSymlinkError):
        tree.set(Entry("x", data_from_bytes("x", b"x"), target="y"))
    with pytest.raises(BadPathError):
        tree.set(_file("../escape"))
    with pytest.raises(BadPathError):
        tree.set(_file("dir/.."))
    with pytest.raises(BadPathError):
        tree.set(Entry("dir/"))
    with pytest.raises(BadPathError):
        tree.set(Entry(".."))


def test_unclean_path_creates_both_dirs():
    tree = MerkleTree()
    tree.set(_file("dir1/../dir2/file"))
    tree.build()
    root = tree.root_directory()
    assert [d.name for d in root.directories] == ["dir1", "dir2"]


def test_store_receives_files_and_directories():
    store = Store()
    tree = MerkleTree(store)
    entry = _file("dir/a.txt")
    tree.set(entry)
    root_digest = tree.build()
    assert entry.data.digest in store
    assert root_digest in store


def test_identical_duplicates_are_merged():
    tree = MerkleTree()
    tree.set(_file("a/x"))
    tree.set(_file("a/x"))
    tree.build()
    files, _, _ = traverse("", tree.root_directory(), Store())
    assert tree.root_directory().directories[0].name == "a"
    assert files == []


def test_conflicting_duplicates_raise():
    tree = MerkleTree()
    tree.set(_file("x", b"one"))
    tree.set(_file("x", b"two"))
    with pytest.raises(MerkleTreeError):
        tree.build()


def test_symlink_shadows_directory():
    tree = MerkleTree()
    tree.set(Entry("foo", target="bar"))
    tree.set(_file("foo/x"))
    tree.build()
    root = tree.root_directory()
    assert root.directories == []
    assert root.symlinks == [SymlinkNode("foo", "bar")]


def test_set_tree():
    sub_store = Store()
    blob = data_from_bytes("blob", b"content")
    sub_store.set(blob)
    sub_digest = digest_of_bytes(b"precomputed")
    store = Store()
    tree = MerkleTree(store)
    tree.set_tree(TreeEntry("pre", sub_digest, sub_store))
    assert blob.digest in store
    with pytest.raises(PrecomputedSubtreeError):
        tree.set(_file("pre/x"))
    with pytest.raises(PrecomputedSubtreeError):
        tree.set_tree(TreeEntry("pre", sub_digest))
    tree.build()
    assert tree.root_directory().directories == [DirectoryNode("pre", sub_digest)]


def test_set_tree_errors():
    tree = MerkleTree()
    d = digest_of_bytes(b"t")
    with pytest.raises(BadTreeError):
        tree.set_tree(TreeEntry("t", EMPTY.__class__()))
    with pytest.raises(AbsPathError):
        tree.set_tree(TreeEntry("/t", d))
    with pytest.raises(BadPathError):
        tree.set_tree(TreeEntry("a/..", d))
    with pytest.raises(BadPathError):
        tree.set_tree(TreeEntry("../t", d))


def test_traverse():
    store = Store()
    tree = MerkleTree(store)
    a = _file("dir/a.txt")
    b = _file("dir/sub/b.txt", b"b")
    tree.set(a)
    tree.set(b)
    tree.set(Entry("dir/link", target="a.txt"))
    tree.build()
    files, symlinks, dirs = traverse("out", tree.root_directory(), store)
    assert [(f.path, f.digest) for f in files] == [
        ("out/dir/a.txt", a.data.digest),
        ("out/dir/sub/b.txt", b.data.digest),
    ]
    assert [(s.path, s.target) for s in symlinks] == [("out/dir/link", "a.txt")]
    assert [d.path for d in dirs] == ["out/dir", "out/dir/sub"]
    assert all(d.tree_digest == EMPTY for d in dirs)


def test_traverse_skips_unknown_directories():
    tree = MerkleTree(Store())
    tree.set(_file("dir/a.txt"))
    tree.set(_file("top.txt"))
    tree.build()
    files, symlinks, dirs = traverse("", tree.root_directory(), Store())
    assert [f.path for f in files] == ["top.txt"]
    assert dirs == []
    assert symlinks == []