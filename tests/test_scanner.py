import struct

import pytest

from reapikit.scan_fs import LocalFS, ScanFilesystem
from reapikit.scanner import Scanner


def _write(root, rel, content=""):
    p = root / rel
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(content)


def _scanner(tmp_path):
    return Scanner(ScanFilesystem(LocalFS()), str(tmp_path), {}, ())


def _hmap(mapping):
    strings = b"\0"
    buckets = b""
    offsets = {}

    def off(s):
        nonlocal strings
        if s not in offsets:
            offsets[s] = len(strings)
            strings += s.encode() + b"\0"
        return offsets[s]

    for key, (prefix, suffix) in mapping.items():
        buckets += struct.pack("<III", off(key), off(prefix), off(suffix))
    header_len = 24
    string_offset = header_len + len(buckets)
    header = b"pamh" + struct.pack("<HHIIII", 1, 0, string_offset, len(offsets), len(mapping), 0)
    return header + buckets + strings


def test_push_and_pop_inputs_order(tmp_path):
    s = _scanner(tmp_path)
    s.push_inputs('"a.h"', '"b.h"')
    assert s.pop_input() == '"a.h"'
    assert s.pop_input() == '"b.h"'
    assert s.pop_input() == ""
    assert not s.has_inputs()


def test_push_macro_inputs_keeps_only_macros(tmp_path):
    s = _scanner(tmp_path)
    s.push_macro_inputs('"a.h"', "MACRO", "<b.h>")
    assert s.inputs == ["", "MACRO"]


def test_add_inputs_processed_last(tmp_path):
    s = _scanner(tmp_path)
    s.push_inputs('"a.h"')
    s.add_inputs('"z.h"')
    assert s.inputs[0] == '"z.h"'
    assert s.pop_input() == '"a.h"'


def test_update_macros_dedups(tmp_path):
    s = _scanner(tmp_path)
    s.set_macros({"M": '"x.h"'})
    s.update_macros({"M": ['"x.h"', '"y.h"']})
    assert s.macros == {"M": ['"x.h"', '"y.h"']}


def test_next_inputs_expands_macros_and_pops_dir(tmp_path):
    s = _scanner(tmp_path)
    s.set_macros({"M": "<m.h>"})
    s.push_dir("nowhere")
    s.push_inputs("M")
    assert s.next_inputs() == ["<m.h>"]
    assert s.dirstack == ["nowhere"]
    assert s.next_inputs() == []
    assert s.dirstack == []


def test_pop_dir_on_empty_stack(tmp_path):
    s = _scanner(tmp_path)
    s.pop_dir()
    assert s.dirstack == []


def test_find_empty_name_raises(tmp_path):
    s = _scanner(tmp_path)
    with pytest.raises(ValueError):
        s.find("")


def test_find_missing_raises(tmp_path):
    _write(tmp_path, "inc/a.h")
    s = _scanner(tmp_path)
    s.add_dir("inc")
    with pytest.raises(FileNotFoundError):
        s.find("<nothere.h>")


def test_find_in_search_path_queues_includes(tmp_path):
    _write(tmp_path, "inc/a.h", '#include "b.h"\n')
    _write(tmp_path, "inc/b.h")
    s = _scanner(tmp_path)
    s.add_dir("inc")
    assert s.find("<a.h>") == "inc/a.h"
    assert s.dirstack == ["inc"]
    assert s.next_inputs() == ['"b.h"']
    assert s.find('"b.h"') == "inc/b.h"
    assert "inc/b.h" in s.results()


def test_find_absolute_path(tmp_path):
    _write(tmp_path, "src/foo.h")
    s = _scanner(tmp_path)
    assert s.find(f'"{tmp_path}/src/foo.h"') == "src/foo.h"


def test_find_absolute_path_outside_root(tmp_path):
    s = _scanner(tmp_path / "root")
    with pytest.raises(ValueError):
        s.find(f'"{tmp_path}/other/foo.h"')


def test_framework_lookup(tmp_path):
    _write(tmp_path, "fw/Foo.framework/Headers/Bar.h")
    s = _scanner(tmp_path)
    s.add_framework_dir("fw")
    assert s.find("<Foo/Bar.h>") == "fw/Foo.framework/Headers/Bar.h"


def test_add_hmap(tmp_path):
    (tmp_path / "m.hmap").write_bytes(_hmap({"foo.h": ("inc/", "foo.h")}))
    s = _scanner(tmp_path)
    assert s.add_hmap("m.hmap") is True
    assert s.hmaps == {"foo.h": ["inc/foo.h"]}
    assert "inc/foo.h" in s.results()


def test_add_hmap_missing(tmp_path):
    s = _scanner(tmp_path)
    assert s.add_hmap("none.hmap") is False


def test_add_source_pushes_dir_and_input(tmp_path):
    _write(tmp_path, "src/foo.cc")
    s = _scanner(tmp_path)
    s.add_source("src/foo.cc")
    assert s.dirstack == ["src"]
    assert s.next_inputs() == ['"foo.cc"']