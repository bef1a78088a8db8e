"""Remote execution API building blocks: digests, stores, merkle trees, CAS layout and client, bytestream, retries, header maps and C/C++ include scanning."""

__version__ = "0.1.0"