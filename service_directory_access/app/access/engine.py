"""
Entitlement engine for the Directory Access service.

Every method works on in-memory record snapshots and an explicit ``now``;
nothing here touches the store. Transitions return new records and leave
their input untouched.
"""

from dataclasses import replace
from datetime import datetime
from typing import Iterable, List, Optional

from shared.logging import get_logger
from shared.errors import InvalidTransition
from .models import (
    AccessRecord, AccessStatus, AccessType, DisplayStatus, FilterCategory,
    SubjectAccessStatus, as_utc
)


class EntitlementEngine:
    """Decision logic for directory access records."""

    def __init__(self):
        self.logger = get_logger("directory_access.engine")

    def classify(self, record: AccessRecord, now: datetime) -> DisplayStatus:
        """Classify a record for display. First matching rule wins."""
        is_paid = record.access_type == AccessType.PAID
        is_manual = record.access_type == AccessType.MANUAL_APPROVAL
        expiry = self._expiry(record)

        if is_paid and record.approved and expiry is not None and expiry > now:
            return DisplayStatus.ACTIVE_PAID

        if is_paid and expiry is not None and expiry <= now:
            return DisplayStatus.EXPIRED

        if is_manual and record.approved:
            return DisplayStatus.MANUALLY_APPROVED

        if record.status in (AccessStatus.DENIED, AccessStatus.REVOKED):
            return DisplayStatus.DENIED

        if is_manual and not record.approved:
            return DisplayStatus.PENDING_APPROVAL

        return DisplayStatus.UNKNOWN

    def is_currently_entitled(self, record: AccessRecord, now: datetime) -> bool:
        """Whether the subject holds access right now."""
        return self.classify(record, now) in (
            DisplayStatus.ACTIVE_PAID,
            DisplayStatus.MANUALLY_APPROVED,
        )

    def matches_category(self, record: AccessRecord, category: FilterCategory, now: datetime) -> bool:
        """Check a record against one of the administrative list filters."""
        if category == FilterCategory.PENDING:
            return (
                record.access_type == AccessType.MANUAL_APPROVAL
                and not record.approved
                and record.status != AccessStatus.DENIED
            )

        if category == FilterCategory.APPROVED:
            # Historical approval; expired paid records stay in this list
            return record.approved and record.status == AccessStatus.ACTIVE

        if category == FilterCategory.PAID:
            return record.access_type == AccessType.PAID and record.approved

        if category == FilterCategory.EXPIRED:
            expiry = self._expiry(record)
            return record.access_type == AccessType.PAID and expiry is not None and expiry < now

        if category == FilterCategory.DENIED:
            return record.status in (AccessStatus.DENIED, AccessStatus.REVOKED)

        return True

    def filter_by_category(self, records: Iterable[AccessRecord], category: FilterCategory,
                           now: datetime) -> List[AccessRecord]:
        """Return the records in ``category``, preserving input order."""
        category = FilterCategory(category)
        return [record for record in records if self.matches_category(record, category, now)]

    def subject_access(self, record: AccessRecord, now: datetime) -> SubjectAccessStatus:
        """Member-facing gate decision for an existing record."""
        if self.is_currently_entitled(record, now):
            return SubjectAccessStatus.GRANTED

        expiry = self._expiry(record)
        if record.access_type == AccessType.PAID and expiry is not None and expiry <= now:
            return SubjectAccessStatus.EXPIRED

        if record.access_type == AccessType.MANUAL_APPROVAL and record.status == AccessStatus.PENDING:
            return SubjectAccessStatus.PENDING

        return SubjectAccessStatus.DENIED

    def apply_approve(self, record: AccessRecord, admin_id: str, now: datetime) -> AccessRecord:
        """pending -> active."""
        self._require_status(record, AccessStatus.PENDING, "approve")
        return replace(
            record,
            approved=True,
            status=AccessStatus.ACTIVE,
            approved_at=now,
            approved_by=admin_id,
        )

    def apply_deny(self, record: AccessRecord, admin_id: str, now: datetime) -> AccessRecord:
        """pending -> denied."""
        self._require_status(record, AccessStatus.PENDING, "deny")
        return replace(
            record,
            approved=False,
            status=AccessStatus.DENIED,
            denied_at=now,
            denied_by=admin_id,
        )

    def apply_revoke(self, record: AccessRecord, admin_id: str, now: datetime) -> AccessRecord:
        """active -> revoked, for either access type."""
        self._require_status(record, AccessStatus.ACTIVE, "revoke")
        return replace(
            record,
            approved=False,
            status=AccessStatus.REVOKED,
            revoked_at=now,
            revoked_by=admin_id,
        )

    def _expiry(self, record: AccessRecord) -> Optional[datetime]:
        # Records built outside a store may carry a naive expiry; read it as UTC
        return as_utc(record.expiry_date) if record.expiry_date is not None else None

    def _require_status(self, record: AccessRecord, expected: AccessStatus, transition: str):
        if record.status != expected:
            self.logger.debug(
                "Transition rejected",
                subject_id=record.subject_id,
                transition=transition,
                status=record.status.value
            )
            raise InvalidTransition(record.subject_id, transition, record.status.value)
