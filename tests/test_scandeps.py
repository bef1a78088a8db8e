import struct

import pytest

from reapikit.scan_fs import LocalFS, ScanFilesystem
from reapikit.scandeps import Request, ScanDeps


def _write(root, rel, content=""):
    p = root / rel
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(content)


def _hmap(key, prefix, suffix):
    strings = b"\0" + key.encode() + b"\0" + prefix.encode() + b"\0" + suffix.encode() + b"\0"
    k = 1
    p = k + len(key) + 1
    s = p + len(prefix) + 1
    bucket = struct.pack("<III", k, p, s)
    string_offset = 24 + len(bucket)
    header = b"pamh" + struct.pack("<HHIIII", 1, 0, string_offset, 3, 1, 0)
    return header + bucket + strings


def test_scan_follows_quoted_and_angle_includes(tmp_path):
    _write(tmp_path, "src/foo.cc", '#include "foo.h"\n#include <bar/baz.h>\n')
    _write(tmp_path, "src/foo.h")
    _write(tmp_path, "include/bar/baz.h")
    sd = ScanDeps(LocalFS())
    result = sd.scan(str(tmp_path), Request(sources=["src/foo.cc"], dirs=["include"]))
    assert result == sorted(result)
    assert {"src/foo.cc", "src/foo.h", "include/bar/baz.h"} <= set(result)


def test_scan_skips_missing_headers(tmp_path):
    _write(tmp_path, "src/foo.cc", '#include "missing.h"\n')
    sd = ScanDeps(ScanFilesystem(LocalFS()))
    result = sd.scan(str(tmp_path), Request(sources=["src/foo.cc"]))
    assert "src/foo.cc" in result
    assert not any("missing.h" in r for r in result)


def test_scan_expands_defined_macro(tmp_path):
    _write(tmp_path, "src/foo.cc", '#define HDR "gen.h"\n#include HDR\n')
    _write(tmp_path, "src/gen.h")
    sd = ScanDeps(LocalFS())
    result = sd.scan(str(tmp_path), Request(sources=["src/foo.cc"]))
    assert "src/gen.h" in result


def test_scan_command_line_define(tmp_path):
    _write(tmp_path, "src/foo.cc", "#include CFG\n")
    _write(tmp_path, "inc/config.h")
    sd = ScanDeps(LocalFS())
    req = Request(defines={"CFG": "<config.h>"}, sources=["src/foo.cc"], dirs=["inc"])
    assert "inc/config.h" in sd.scan(str(tmp_path), req)


def test_scan_forced_include(tmp_path):
    _write(tmp_path, "src/foo.cc")
    _write(tmp_path, "inc/pre.h")
    sd = ScanDeps(LocalFS())
    req = Request(sources=["src/foo.cc"], includes=["pre.h"], dirs=["inc"])
    assert "inc/pre.h" in sd.scan(str(tmp_path), req)


def test_scan_input_deps_add_inputs(tmp_path):
    _write(tmp_path, "src/foo.cc")
    _write(tmp_path, "inc/extra.h")
    sd = ScanDeps(LocalFS(), {"src/foo.cc": ['"extra.h"']})
    req = Request(sources=["src/foo.cc"], dirs=["inc"])
    assert "inc/extra.h" in sd.scan(str(tmp_path), req)


def test_scan_sysroot_is_not_scanned(tmp_path):
    _write(tmp_path, "src/foo.cc", "#include <a.h>\n")
    _write(tmp_path, "sys/a.h")
    sd = ScanDeps(LocalFS())
    req = Request(sources=["src/foo.cc"], dirs=["sys"], sysroots=["sys"])
    result = sd.scan(str(tmp_path), req)
    assert "sys/a.h" not in result
    assert "src/foo.cc" in result


def test_scan_headers_label_skips_dir(tmp_path):
    _write(tmp_path, "src/foo.cc", "#include <a.h>\n")
    _write(tmp_path, "pre/a.h")
    sd = ScanDeps(LocalFS(), {"pre:headers": ["pre/a.h"]})
    result = sd.scan(str(tmp_path), Request(sources=["src/foo.cc"], dirs=["pre"]))
    assert "pre/a.h" not in result


def test_scan_hmap_entries_are_results(tmp_path):
    _write(tmp_path, "src/foo.cc")
    (tmp_path / "m.hmap").write_bytes(_hmap("foo.h", "inc/", "foo.h"))
    sd = ScanDeps(LocalFS())
    result = sd.scan(str(tmp_path), Request(sources=["src/foo.cc"], dirs=["m.hmap"]))
    assert "inc/foo.h" in result


def test_scan_recursive_includes_terminate(tmp_path):
    _write(tmp_path, "src/a.h", '#include "b.h"\n')
    _write(tmp_path, "src/b.h", '#include "a.h"\n')
    _write(tmp_path, "src/foo.cc", '#include "a.h"\n')
    sd = ScanDeps(LocalFS())
    result = sd.scan(str(tmp_path), Request(sources=["src/foo.cc"]))
    assert {"src/a.h", "src/b.h"} <= set(result)
    assert len(result) == len(set(result))


def test_scan_timeout(tmp_path):
    _write(tmp_path, "src/foo.cc", '#include "a.h"\n')
    sd = ScanDeps(LocalFS())
    with pytest.raises(TimeoutError):
        sd.scan(str(tmp_path), Request(sources=["src/foo.cc"], timeout=-1.0))