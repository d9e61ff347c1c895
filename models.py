from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from geo_math import GeoPoint


class IssueStatus(str, Enum):
    SUBMITTED = "Submitted"
    IN_PROGRESS = "In Progress"
    RESOLVED = "Resolved"


class IssueStage(str, Enum):
    SUBMITTED = "Submitted"
    ASSIGNED = "Assigned"
    IN_PROGRESS = "In Progress"
    RESOLVED = "Resolved"


class IssueCategory(str, Enum):
    POTHOLE = "Pothole"
    GARBAGE = "Garbage"
    STREETLIGHT = "Streetlight"
    WATER_LEAKAGE = "Water Leakage"
    OTHERS = "Others"


DEPARTMENTS = {
    IssueCategory.GARBAGE.value: "Sanitation",
    IssueCategory.STREETLIGHT.value: "Electrical",
}


def resolve_department(category: str) -> str:
    return DEPARTMENTS.get(category, "General")


# What a citizen submits
class IssuePayload(BaseModel):
    title: str = ""
    description: str = ""
    category: str = IssueCategory.OTHERS.value
    location_text: str = ""
    lat: Optional[float] = None
    lng: Optional[float] = None
    user_id: str = ""
    department: Optional[str] = None
    phone_verified: bool = False
    aadhar_number: Optional[str] = None
    full_address: str = ""
    street: Optional[str] = None
    locality: Optional[str] = None
    city: str = ""
    state: str = ""
    pincode: str = ""
    country: str = ""
    landmark: Optional[str] = None

    def coordinates(self) -> Optional[GeoPoint]:
        if self.lat is None or self.lng is None:
            return None
        return GeoPoint(self.lat, self.lng)


class StatusHistoryEntry(BaseModel):
    stage: IssueStage
    status: Optional[IssueStatus] = None
    changed_by: str = ""
    changed_at: datetime
    note: str = ""


# Stored issue, as read back from the record store
class IssueRecord(BaseModel):
    id: str
    title: str = ""
    description: str = ""
    category: str = ""
    status: IssueStatus = IssueStatus.SUBMITTED
    user_id: str = ""
    phone_verified: bool = False
    location_text: str = ""
    full_address: str = ""
    street: Optional[str] = None
    locality: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = None
    country: Optional[str] = None
    landmark: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    department: str = "General"
    created_at: datetime
    updated_at: Optional[datetime] = None
    staff_id: Optional[str] = None
    upvotes: int = 0
    upvoted_by: List[str] = Field(default_factory=list)
    status_history: List[StatusHistoryEntry] = Field(default_factory=list)
    image_url: str = ""
    before_image_url: str = ""
    after_image_url: str = ""
    resolution_image_url: str = ""
    aadhar_number: Optional[str] = None
    aadhar_image_url: str = ""

    def coordinates(self) -> Optional[GeoPoint]:
        if self.lat is None or self.lng is None:
            return None
        return GeoPoint(self.lat, self.lng)


class Attachment(BaseModel):
    """A binary file travelling with a submission."""

    name: str = "attachment"
    content_type: str = "application/octet-stream"
    data: bytes


class DraftImage(BaseModel):
    name: str
    type: str
    data_url: str


class OfflineIssueDraft(BaseModel):
    id: str
    created_at: datetime
    payload: IssuePayload
    image: Optional[DraftImage] = None


class DuplicateCandidate(BaseModel):
    issue: IssueRecord
    distance_meters: float


# ------------------ Firestore document mapping ------------------

def _to_datetime(value: Any) -> Optional[datetime]:
    # Firestore hands back DatetimeWithNanoseconds, a datetime subclass
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    return None


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _fallback_history(data: Dict[str, Any], status: IssueStatus,
                      created_at: datetime, updated_at: Optional[datetime]) -> List[StatusHistoryEntry]:
    staff_id = data.get("staff_id") or ""
    history = [
        StatusHistoryEntry(
            stage=IssueStage.SUBMITTED,
            status=IssueStatus.SUBMITTED,
            changed_by=data.get("user_id") or "",
            changed_at=created_at,
            note="Issue submitted",
        )
    ]
    if status == IssueStatus.IN_PROGRESS:
        history.append(StatusHistoryEntry(
            stage=IssueStage.IN_PROGRESS,
            status=IssueStatus.IN_PROGRESS,
            changed_by=staff_id,
            changed_at=updated_at or created_at,
            note="Issue being worked on",
        ))
    elif status == IssueStatus.RESOLVED:
        history.append(StatusHistoryEntry(
            stage=IssueStage.IN_PROGRESS,
            status=IssueStatus.IN_PROGRESS,
            changed_by=staff_id,
            changed_at=created_at,
            note="Issue being worked on",
        ))
        history.append(StatusHistoryEntry(
            stage=IssueStage.RESOLVED,
            status=IssueStatus.RESOLVED,
            changed_by=staff_id,
            changed_at=updated_at or created_at,
            note="Issue resolved",
        ))
    return history


def _normalize_history(entries: Any, now: datetime) -> List[StatusHistoryEntry]:
    if not isinstance(entries, list):
        return []
    mapped = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        status = entry.get("status")
        mapped.append(StatusHistoryEntry(
            stage=entry.get("stage") or IssueStage.SUBMITTED,
            status=status if status in IssueStatus._value2member_map_ else None,
            changed_by=entry.get("changed_by") or "",
            changed_at=_to_datetime(entry.get("changed_at")) or now,
            note=entry.get("note") or "",
        ))
    mapped.sort(key=lambda item: item.changed_at)
    return mapped


def map_issue_data(issue_id: str, data: Optional[Dict[str, Any]]) -> IssueRecord:
    """Turn a raw stored document into an IssueRecord, filling legacy gaps."""
    data = data or {}
    now = datetime.now(timezone.utc)
    created_at = _to_datetime(data.get("created_at")) or now
    updated_at = _to_datetime(data.get("updated_at"))

    raw_status = data.get("status")
    status = IssueStatus(raw_status) if raw_status in IssueStatus._value2member_map_ else IssueStatus.SUBMITTED

    history = _normalize_history(data.get("status_history"), now)
    if not history:
        history = _fallback_history(data, status, created_at, updated_at)

    before_image_url = data.get("before_image_url") or data.get("image_url") or ""
    after_image_url = data.get("after_image_url") or data.get("resolution_image_url") or ""
    full_address = data.get("full_address") or data.get("location_text") or data.get("location") or ""
    category = data.get("category") or ""

    return IssueRecord(
        id=issue_id,
        title=data.get("title") or "",
        description=data.get("description") or "",
        category=category,
        status=status,
        user_id=data.get("user_id") or "",
        phone_verified=bool(data.get("phone_verified")),
        location_text=data.get("location_text") or data.get("location") or "",
        full_address=full_address,
        street=data.get("street") or None,
        locality=data.get("locality") or None,
        city=data.get("city") or None,
        state=data.get("state") or data.get("region") or None,
        pincode=data.get("pincode") or data.get("postal_code") or None,
        country=data.get("country") or None,
        landmark=data.get("landmark") or None,
        lat=_number(data.get("lat")),
        lng=_number(data.get("lng")),
        department=data.get("department") or resolve_department(category),
        created_at=created_at,
        updated_at=updated_at,
        staff_id=data.get("staff_id") or None,
        upvotes=data["upvotes"] if isinstance(data.get("upvotes"), int) else 0,
        upvoted_by=list(data["upvoted_by"]) if isinstance(data.get("upvoted_by"), list) else [],
        status_history=history,
        image_url=before_image_url,
        before_image_url=before_image_url,
        after_image_url=after_image_url,
        resolution_image_url=after_image_url,
        aadhar_number=data.get("aadhar_number"),
        aadhar_image_url=data.get("aadhar_image_url") or "",
    )
