"""
Shared fixtures for Directory Access tests.
"""

from datetime import datetime, timedelta, timezone

import pytest

from service_directory_access.app.access.models import AccessRecord, AccessStatus, AccessType


T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def now():
    """Reference time for engine decisions."""
    return T0 + timedelta(days=10)


@pytest.fixture
def clock():
    return FakeClock()


def build_record(subject_id: str = "a@x.com", access_type: AccessType = AccessType.MANUAL_APPROVAL,
                 status: AccessStatus = AccessStatus.PENDING, **overrides) -> AccessRecord:
    """Build an AccessRecord whose approved flag matches its status."""
    fields = {
        "subject_id": subject_id,
        "access_type": access_type,
        "status": status,
        "approved": status == AccessStatus.ACTIVE,
        "requested_at": T0,
        "user_name": subject_id.split("@")[0],
    }
    fields.update(overrides)
    return AccessRecord(**fields)


def paid_record(subject_id: str, expiry_date: datetime, status: AccessStatus = AccessStatus.ACTIVE,
                **overrides) -> AccessRecord:
    return build_record(
        subject_id,
        AccessType.PAID,
        status,
        purchased_at=expiry_date - timedelta(days=30),
        expiry_date=expiry_date,
        **overrides
    )


@pytest.fixture
def make_record():
    return build_record


@pytest.fixture
def make_paid_record():
    return paid_record
