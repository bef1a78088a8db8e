# reapikit

Building blocks for clients of a remote execution API: content digests,
an in-memory content-addressable store, directory messages and merkle
trees of input directories, CAS resource naming, compression and batch
planning, bytestream readers and writers, RPC status codes, retry
policies, a header map parser and a lightweight C/C++ include dependency
scanner.

## Installation

```
pip install reapikit
```

To run the test suite:

```
pip install "reapikit[test]"
pytest
```

## Digests and the in-memory store (`reapikit.digest`)

```python
from reapikit.digest import Store, data_from_bytes, digest_of_bytes

data = data_from_bytes("hello.txt", b"hello")
store = Store()
store.set(data)

d = digest_of_bytes(b"hello")
assert store.get(d) is not None
print(d)  # "<sha256 hex>/5"
```

A `Digest` is a SHA-256 hex hash and a size; `Digest.is_zero()` tells an
unset digest apart from a real one, and `EMPTY` is the digest of no bytes.
`Data` pairs a digest with a source that has an `open()` method;
`data_from_source` reads a source once to compute its digest and
`data_to_bytes` reads the content back. `Store` supports `set`, `get`,
`get_source`, `delete`, `list`, `len()`, `in` and iteration.

## Directory messages and merkle trees

`reapikit.protos` holds `Directory`, `FileNode`, `DirectoryNode` and
`SymlinkNode`. `Directory.serialize()` encodes a directory in protocol
buffer wire format, `parse_directory` decodes it (raising `ValueError` on
malformed input), and `data_from_directory` gives it as `Data`.

```python
from reapikit.digest import Store, data_from_bytes
from reapikit.merkletree import Entry, MerkleTree, traverse

store = Store()
tree = MerkleTree(store)
tree.set(Entry(name="src/main.cc", data=data_from_bytes("main.cc", b"int main() {}")))
tree.set(Entry(name="include"))                    # an empty directory
tree.set(Entry(name="lib/link", target="../src"))  # a symlink
root = tree.build()

files, symlinks, dirs = traverse("out", tree.root_directory(), store)
```

`build()` sorts each directory's entries, drops exact duplicates, stores
every directory message in the store and returns the root digest.
Invalid entries raise subclasses of `MerkleTreeError`: `AbsPathError`,
`AmbiguousFileSymlinkError`, `BadPathError`, `BadTreeError` and
`PrecomputedSubtreeError`. Precomputed subtrees are added with
`MerkleTree.set_tree(TreeEntry(name, digest, store))`. `traverse` walks
directories found in the store and returns `OutputFile`, `OutputSymlink`
and `OutputDirectory` lists; subdirectories missing from the store are
skipped.

## CAS layout and batching (`reapikit.cas`)

`CasLayout(instance, address, compressed_blob, supported_compressors)`
builds read names (`resource_name`), fresh upload names
(`upload_resource_name`, with a random UUID) and bytestream URIs
(`file_uri`). When `compressed_blob` is positive and a blob is at least
that large, names use `compressed-blobs/<compressor>/...`, and
`decoder` / `encoder` wrap a stream with zstd or raw DEFLATE for the first
supported `Compressor`; other compressors raise `ValueError`.

`separate_blobs` sorts blobs by size and splits them between those that
fit in a batch update request and the rest, `create_batch_requests`
bundles `BlobRequest`s under a byte limit and at most 1000 blobs per
batch, `batch_request_size` gives the encoded size of a batch, and
`bytestream_timeout` gives the streaming timeout for a blob (at least ten
minutes).

## CAS client (`reapikit.casclient`)

`CasClient(layout, service)` works against any object implementing the
`CasService` protocol (`batch_read_blobs`, `find_missing_blobs`,
`batch_update_blobs`, `read`, `write` and `max_batch_total_size_bytes`).

- `get(d, name)` returns a blob's bytes: by batch read below 2 MiB, by
  bytestream above.
- `missing(blobs)` returns the digests the service does not have.
- `upload_all(store)` uploads every blob of the store still missing and
  returns how many were uploaded. Blobs known to be present are skipped,
  and a blob already being uploaded by another thread is waited for
  through its `UploadOp` rather than sent twice. Failed stream uploads
  raise `MissingBlobsError`.

`lookup_blobs_in_store` reads the content of blobs from a store.

## Bytestream (`reapikit.bytestreamio`)

`open_reader(client, resource_name)` returns a file-like `Reader` over the
response chunks of a read call; `create_writer(client, resource_name)`
returns a `Writer` that sends chunks at increasing offsets and finishes the
write on `close()`. If the server ends the stream early with `EOFError`,
the blob is taken as already stored and the rest is not sent.

## Status codes and retries

`reapikit.status` defines `Code`, `Status`, `RpcError` and `status_code`.
`reapikit.retry.do(func, backoff, sleep)` calls `func` and retries it with
an `ExponentialBackoff` while `retriable_error` classifies the raised error
as transient: resource exhausted, internal, unavailable, aborted and
unknown `RpcError`s. Authentication and permission errors are retried at
most once; other exceptions are raised at once.

## Header maps (`reapikit.hmap`)

`parse_header_map(buf)` parses a `.hmap` file into a dict mapping include
names to paths, raising `HeaderMapError` on malformed input.

## Include scanning

```python
from reapikit.scan_fs import LocalFS
from reapikit.scandeps import Request, ScanDeps

scanner = ScanDeps(LocalFS(), input_deps={})
deps = scanner.scan("/path/to/exec_root", Request(
    sources=["src/main.cc"],
    dirs=["include"],
))
```

`Request` takes `defines`, `sources`, `includes` (forced includes),
`dirs` (include directories or `.hmap` files), `frameworks`, `sysroots`
and an optional `timeout` in seconds, past which `scan` raises
`TimeoutError`. The result is the sorted list of found paths relative to
the exec root, followed by every file named in loaded header maps.

The scanner understands `#include "x.h"`, `#include <x.h>`,
`#include MACRO` (with `#define MACRO "x.h"`, `<x.h>` or another
capitalised macro), `#include_next` and `#import`. It does not evaluate
`#if` blocks, so every value a macro may take is followed, and directives
may not span lines or carry comments. Directories listed in `sysroots`, or
with a `<dir>:headers` entry in `input_deps`, are treated as precomputed
and are not scanned; `input_deps` entries for a found path add more
inputs. Framework imports `"Foo/Bar.h"` are looked up as
`Foo.framework/Headers/Bar.h`.

The pieces are usable on their own: `cpp_scan`, `expand_macros` and
`is_macro` in `reapikit.cppscan`; the shared caches of `ScanFilesystem` in
`reapikit.scan_fs` (call `update(path, is_dir)` when files change);
`FsView` in `reapikit.fsview`; and `Scanner` in `reapikit.scanner`.

## What the package does not do

- It has no network transport. There is no gRPC channel, authentication
  or TLS setup; `CasClient` and the bytestream helpers talk to whatever
  `CasService` or client object you supply.
- It does not execute actions remotely and has no action cache client.
- It has no command-line tool.