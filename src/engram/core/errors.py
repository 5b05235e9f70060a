"""Exception taxonomy.

"Not found" is never an exception: lookups return None, mutations return
False, batch operations return an empty list.
"""


class EngramError(Exception):
    """Base class for all engram errors."""


class StorageError(EngramError):
    """Database could not be opened, initialized, read or written.

    Covers lock timeouts too: a writer blocked longer than the configured
    busy timeout surfaces here.
    """
