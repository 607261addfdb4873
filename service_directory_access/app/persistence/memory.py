"""
In-process document store for directory access records.

Holds raw documents keyed by subject, the way a document database does, so
a malformed document behaves the same here as in production: it is skipped
when listing and reported when read directly.
"""

import asyncio
from typing import Any, Callable, Dict, List, Optional

from shared.logging import get_logger
from shared.errors import ConcurrentModification, RecordNotFound, StoreUnavailable, ValidationError
from ..access.models import AccessRecord, AccessStatus
from .base import AccessStore, ChangeListener


class InMemoryAccessStore(AccessStore):
    """Dict-backed AccessStore."""

    def __init__(self):
        self.logger = get_logger("directory_access.persistence.memory")
        self.documents: Dict[str, Dict[str, Any]] = {}
        self._listeners: List[ChangeListener] = []
        self._lock = asyncio.Lock()

    async def get(self, subject_id: str) -> Optional[AccessRecord]:
        document = self.documents.get(subject_id)
        if document is None:
            return None
        try:
            return AccessRecord.from_dict(document)
        except (KeyError, TypeError, ValueError) as e:
            raise StoreUnavailable(
                f"Stored access record for {subject_id} is malformed",
                {"subject_id": subject_id, "error": str(e)}
            ) from e

    async def list_all(self) -> List[AccessRecord]:
        records = []
        for subject_id, document in list(self.documents.items()):
            try:
                records.append(AccessRecord.from_dict(document))
            except (KeyError, TypeError, ValueError) as e:
                self.logger.warning("Skipping malformed access record", subject_id=subject_id, error=str(e))

        records.sort(key=lambda r: r.requested_at, reverse=True)
        return records

    async def put(self, record: AccessRecord, expected_version: Optional[int] = None) -> AccessRecord:
        async with self._lock:
            previous = self.documents.get(record.subject_id)
            current_version = int(previous.get("version", 0)) if previous else 0

            if expected_version is not None and current_version != expected_version:
                raise ConcurrentModification(
                    record.subject_id,
                    {"expected_version": expected_version, "version": current_version}
                )

            document = record.to_dict()
            document["version"] = current_version + 1
            saved = self._validated(document)
            self.documents[record.subject_id] = document

        await self._notify(record.subject_id)
        return saved

    async def update(self, record: AccessRecord, expected_status: AccessStatus,
                     expected_version: int) -> AccessRecord:
        async with self._lock:
            current = self.documents.get(record.subject_id)
            if current is None:
                raise RecordNotFound(record.subject_id)

            if current.get("status") != expected_status.value or current.get("version") != expected_version:
                raise ConcurrentModification(
                    record.subject_id,
                    {"expected_status": expected_status.value, "expected_version": expected_version}
                )

            document = record.to_dict()
            document["version"] = expected_version + 1
            saved = self._validated(document)
            self.documents[record.subject_id] = document

        await self._notify(record.subject_id)
        return saved

    async def delete(self, subject_id: str) -> bool:
        async with self._lock:
            removed = self.documents.pop(subject_id, None)

        if removed is None:
            return False

        await self._notify(subject_id)
        return True

    def watch(self, listener: ChangeListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def cancel():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return cancel

    def _validated(self, document: Dict[str, Any]) -> AccessRecord:
        """Reject a write that could not be read back."""
        try:
            return AccessRecord.from_dict(document)
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(
                "Access record is malformed",
                {"subject_id": document.get("subject_id"), "error": str(e)}
            ) from e

    async def _notify(self, subject_id: str):
        for listener in list(self._listeners):
            try:
                await listener(subject_id)
            except Exception as e:
                self.logger.error("Change listener failed", subject_id=subject_id, error=str(e))
