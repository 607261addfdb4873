"""
Access record data models for the Directory Access service.
"""

from typing import Dict, Any, Optional, List
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum

from pydantic import AwareDatetime, BaseModel, Field


TIMESTAMP_FIELDS = (
    "requested_at", "approved_at", "denied_at", "revoked_at", "expiry_date", "purchased_at",
)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat a naive datetime as UTC; aware values pass through unchanged."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class AccessType(str, Enum):
    """How a subject obtained (or asked for) directory access."""
    MANUAL_APPROVAL = "manual_approval"
    PAID = "paid"


class AccessStatus(str, Enum):
    """Stored lifecycle status of an access record."""
    PENDING = "pending"
    ACTIVE = "active"
    DENIED = "denied"
    REVOKED = "revoked"


class DisplayStatus(str, Enum):
    """Point-in-time classification shown to administrators."""
    ACTIVE_PAID = "active_paid"
    EXPIRED = "expired"
    MANUALLY_APPROVED = "manually_approved"
    DENIED = "denied"
    PENDING_APPROVAL = "pending_approval"
    UNKNOWN = "unknown"


class FilterCategory(str, Enum):
    """Administrative list filters."""
    ALL = "all"
    PENDING = "pending"
    APPROVED = "approved"
    PAID = "paid"
    EXPIRED = "expired"
    DENIED = "denied"


class SubjectAccessStatus(str, Enum):
    """Answer given to a member asking whether they may open the directory."""
    GRANTED = "granted"
    EXPIRED = "expired"
    PENDING = "pending"
    DENIED = "denied"
    NO_ACCESS = "no_access"


@dataclass
class AccessRecord:
    """Directory access record, one per subject."""
    subject_id: str
    access_type: AccessType
    status: AccessStatus
    approved: bool = False
    requested_at: datetime = field(default_factory=utcnow)
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    denied_at: Optional[datetime] = None
    denied_by: Optional[str] = None
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None
    expiry_date: Optional[datetime] = None
    purchased_at: Optional[datetime] = None
    user_name: Optional[str] = None
    user_photo: Optional[str] = None
    version: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["access_type"] = self.access_type.value
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AccessRecord":
        """Build a record from a stored document.

        Raises ValueError or KeyError for documents that do not describe a
        valid record, including timestamps without a UTC offset.
        """
        if not isinstance(data.get("requested_at"), datetime):
            raise ValueError(f"requested_at missing for {data.get('subject_id')}")

        for name in TIMESTAMP_FIELDS:
            value = data.get(name)
            if value is not None and (not isinstance(value, datetime) or value.tzinfo is None):
                raise ValueError(f"{name} for {data.get('subject_id')} is not timezone-aware")

        return cls(
            subject_id=data["subject_id"],
            access_type=AccessType(data["access_type"]),
            status=AccessStatus(data["status"]),
            approved=bool(data.get("approved", False)),
            requested_at=data["requested_at"],
            approved_at=data.get("approved_at"),
            approved_by=data.get("approved_by"),
            denied_at=data.get("denied_at"),
            denied_by=data.get("denied_by"),
            revoked_at=data.get("revoked_at"),
            revoked_by=data.get("revoked_by"),
            expiry_date=data.get("expiry_date"),
            purchased_at=data.get("purchased_at"),
            user_name=data.get("user_name"),
            user_photo=data.get("user_photo"),
            version=int(data.get("version", 0)),
        )


@dataclass
class Stats:
    """Summary counters for the administrative dashboard."""
    total: int
    pending_count: int
    active_paid_count: int
    estimated_monthly_revenue: float


class AdminActionRequest(BaseModel):
    """Request model for approve/deny/revoke."""
    admin_id: str = Field(..., min_length=1, description="Identifier of the acting administrator")


class AccessRequestCreate(BaseModel):
    """Request model for a self-service manual approval request."""
    subject_id: str = Field(..., min_length=3, description="Subject email")
    user_name: Optional[str] = Field(None, description="Display name")
    user_photo: Optional[str] = Field(None, description="Avatar URL")


class PaidAccessGrantRequest(BaseModel):
    """Request model for a completed purchase reported by billing."""
    subject_id: str = Field(..., min_length=3, description="Subject email")
    user_name: Optional[str] = Field(None, description="Display name")
    user_photo: Optional[str] = Field(None, description="Avatar URL")
    purchased_at: Optional[AwareDatetime] = Field(None, description="Purchase time with UTC offset, defaults to now")
    duration_days: Optional[int] = Field(None, ge=1, description="Length of the access period")


class AccessRecordResponse(BaseModel):
    """Response model for a single access record."""
    subject_id: str
    access_type: AccessType
    status: AccessStatus
    approved: bool
    requested_at: datetime
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    denied_at: Optional[datetime] = None
    denied_by: Optional[str] = None
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None
    expiry_date: Optional[datetime] = None
    purchased_at: Optional[datetime] = None
    user_name: Optional[str] = None
    user_photo: Optional[str] = None
    display_status: DisplayStatus
    currently_entitled: bool

    @classmethod
    def from_record(cls, record: AccessRecord, display_status: DisplayStatus,
                    currently_entitled: bool) -> "AccessRecordResponse":
        data = record.to_dict()
        data.pop("version")
        return cls(**data, display_status=display_status, currently_entitled=currently_entitled)


class AccessRecordListResponse(BaseModel):
    """Response model for record list."""
    records: List[AccessRecordResponse]
    total: int
    category: FilterCategory


class StatsResponse(BaseModel):
    """Response model for dashboard stats."""
    total: int
    pending_count: int
    active_paid_count: int
    estimated_monthly_revenue: float


class SubjectAccessResponse(BaseModel):
    """Response model for a subject access check."""
    subject_id: str
    status: SubjectAccessStatus
    expiry_date: Optional[datetime] = None
