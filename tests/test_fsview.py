import struct

import pytest

from reapikit.fsview import FsView, SearchPathType, top_elem
from reapikit.scan_fs import LocalFS, ScanFilesystem


def _hmap(entries):
    strs = bytearray(b"\0")

    def add(s):
        idx = len(strs)
        strs.extend(s.encode() + b"\0")
        return idx

    buckets = [(add(k), add(p), add(s)) for k, p, s in entries]
    buckets.append((0, 0, 0))
    cap = len(buckets)
    offset = 24 + 12 * cap
    out = b"pamh" + struct.pack("<HHIIII", 1, 0, offset, len(entries) * 3, cap, 0)
    out += b"".join(struct.pack("<III", *b) for b in buckets)
    return out + bytes(strs)


@pytest.fixture
def root(tmp_path):
    (tmp_path / "inc").mkdir()
    (tmp_path / "inc" / "foo.h").write_text('#include "bar.h"\n#define X <baz.h>\n')
    (tmp_path / "inc" / "sub").mkdir()
    (tmp_path / "inc" / "sub" / "s.h").write_text("")
    return tmp_path


def _view(root, **kwargs):
    return FsView(ScanFilesystem(LocalFS()), str(root), **kwargs)


def test_top_elem():
    assert top_elem("./foo/bar.h") == "foo"
    assert top_elem("foo.h") == "foo.h"
    assert top_elem("../x.h") == ".."


def test_path_join(root):
    fv = _view(root)
    assert fv.path_join("", "a.h") == "a.h"
    assert fv.path_join(".", "a.h") == "a.h"
    assert fv.path_join("dir", "./a.h") == "dir/a.h"
    assert fv.path_join("dir", "../a.h") == "a.h"
    assert fv.path_join("dir", "sub/a.h") == "dir/sub/a.h"
    assert fv.path_join("a/", "b.h") == "a//b.h"


def test_get_scans_file(root):
    fv = _view(root)
    fv.add_dir("inc", SearchPathType.INCLUDE)
    assert fv.search_paths == ["inc"]
    incpath, sr = fv.get("inc", "foo.h")
    assert incpath == "inc/foo.h"
    assert sr.includes == ['"bar.h"']
    assert sr.defines == {"X": ["<baz.h>"]}
    assert fv.results() == ["inc", "inc/foo.h"]


def test_get_is_cached_and_shared(root):
    fs = ScanFilesystem(LocalFS())
    first = FsView(fs, str(root))
    first.add_dir("inc")
    _, sr1 = first.get("inc", "foo.h")
    _, again = first.get("inc", "foo.h")
    assert again is sr1
    second = FsView(fs, str(root))
    second.add_dir("inc")
    _, sr2 = second.get("inc", "foo.h")
    assert sr2 is sr1


def test_get_nested_path(root):
    fv = _view(root)
    fv.add_dir("inc")
    incpath, sr = fv.get("inc", "sub/s.h")
    assert incpath == "inc/sub/s.h"
    assert sr.includes == []


def test_get_missing_top_entry(root):
    fv = _view(root)
    fv.add_dir("inc")
    with pytest.raises(FileNotFoundError):
        fv.get("inc", "none.h")


def test_get_without_added_dir(root):
    fv = _view(root)
    with pytest.raises(FileNotFoundError):
        fv.get("inc", "foo.h")


def test_get_directory_is_invalid(root):
    fv = _view(root)
    fv.add_dir("inc")
    with pytest.raises(IsADirectoryError):
        fv.get("inc", "sub")
    with pytest.raises(FileNotFoundError):
        fv.get("inc", "sub")


def test_get_out_of_exec_root(root):
    fv = _view(root)
    fv.add_dir("inc")
    with pytest.raises(FileNotFoundError):
        fv.get("inc", "../../x.h")


def test_missing_file_excluded_from_results(root):
    fv = _view(root)
    fv.add_dir("inc")
    with pytest.raises(FileNotFoundError):
        fv.get("inc", "sub/missing.h")
    assert fv.visited["inc/sub/missing.h"] is False
    with pytest.raises(FileNotFoundError):
        fv.get("inc", "sub/missing.h")
    assert fv.results() == ["inc"]


def test_precomputed_tree_skips_dir(root):
    fv = _view(root, precomputed_trees=["inc"])
    fv.add_dir("inc/sub", SearchPathType.INCLUDE)
    assert fv.search_paths == []
    assert fv.results() == []


def test_input_deps_headers_label_skips_dir(root):
    fv = _view(root, input_deps={"inc:headers": ["inc/foo.h"]})
    fv.add_dir("inc", SearchPathType.INCLUDE)
    assert fv.search_paths == []
    assert "inc" not in fv.top_ents


def test_add_dir_no_duplicates_and_frameworks(root):
    fv = _view(root)
    fv.add_dir("inc", SearchPathType.INCLUDE)
    fv.add_dir("inc", SearchPathType.INCLUDE)
    fv.add_dir("inc/sub", SearchPathType.FRAMEWORK)
    assert fv.search_paths == ["inc"]
    assert fv.framework_paths == ["inc/sub"]


def test_add_missing_dir_keeps_search_path(root):
    fv = _view(root)
    fv.add_dir("nodir", SearchPathType.INCLUDE)
    assert fv.search_paths == ["nodir"]
    assert "nodir" not in fv.visited


def test_get_hmap_relativizes_and_filters(root):
    entries = [
        ("foo.h", str(root) + "/inc/", "foo.h"),
        ("out.h", "/elsewhere/", "out.h"),
        ("rel.h", "inc/", "rel.h"),
    ]
    (root / "a.hmap").write_bytes(_hmap(entries))
    fv = _view(root)
    assert fv.get_hmap("a.hmap") == {"foo.h": "inc/foo.h", "rel.h": "inc/rel.h"}


def test_get_hmap_missing(root):
    fv = _view(root)
    assert fv.get_hmap("none.hmap") is None