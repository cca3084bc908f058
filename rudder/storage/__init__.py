"""Storage of release revisions.

Storage backends persist the append-only history of every release. The
`Storage` interface is implemented by `InMemoryStorage`, used mostly for
tests and dry runs, and `FileSystemStorage`.
"""

from .filesystem import FileSystemStorage
from .in_memory import InMemoryStorage
from .revision import Revision
from .status import ReleaseStatus
from .storage import Storage

__all__ = [
    "Storage",
    "InMemoryStorage",
    "FileSystemStorage",
    "Revision",
    "ReleaseStatus",
]
