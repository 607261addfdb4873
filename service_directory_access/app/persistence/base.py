"""
Store interface for directory access records.
"""

from abc import ABC, abstractmethod
from typing import Awaitable, Callable, List, Optional

from ..access.models import AccessRecord, AccessStatus

ChangeListener = Callable[[str], Awaitable[None]]


class AccessStore(ABC):
    """Keyed collection of access records with change notifications.

    ``update`` is a conditional write: it only applies while the stored record
    still carries ``expected_status`` and ``expected_version``, and raises
    ConcurrentModification otherwise. Every successful write bumps
    ``version``.
    """

    async def start(self):
        """Open connections."""

    async def stop(self):
        """Release connections."""

    @abstractmethod
    async def get(self, subject_id: str) -> Optional[AccessRecord]:
        ...

    @abstractmethod
    async def list_all(self) -> List[AccessRecord]:
        """All well-formed records, newest request first."""

    @abstractmethod
    async def put(self, record: AccessRecord, expected_version: Optional[int] = None) -> AccessRecord:
        """Create or replace the record for ``record.subject_id``.

        With ``expected_version`` the write only applies while the stored
        version still matches; 0 means no record may exist yet.
        """

    @abstractmethod
    async def update(self, record: AccessRecord, expected_status: AccessStatus,
                     expected_version: int) -> AccessRecord:
        ...

    @abstractmethod
    async def delete(self, subject_id: str) -> bool:
        """Delete a record. Returns False when nothing was stored."""

    @abstractmethod
    def watch(self, listener: ChangeListener) -> Callable[[], None]:
        """Call ``listener(subject_id)`` after every change, from any writer.

        Returns a callable that stops the notifications.
        """

    async def health_check(self) -> bool:
        return True
