"""Storage backends, tried in order until one opens.

    native    platform SQLite on the data file (WAL, concurrent reads)
    portable  in-memory SQLite image exported to the data file after each write
    flatfile  JSON document beside the data file, no SQL engine needed
"""

from membank.backends.base import Backend, BackendInfo
from membank.backends.flatfile import FlatFileBackend
from membank.backends.native import NativeBackend
from membank.backends.portable import PortableBackend

DEFAULT_BACKENDS = (NativeBackend, PortableBackend, FlatFileBackend)

__all__ = [
    "Backend",
    "BackendInfo",
    "DEFAULT_BACKENDS",
    "FlatFileBackend",
    "NativeBackend",
    "PortableBackend",
]
