"""
Issue submission pipeline and the staff-side issue operations.

``IssueSubmissionPipeline.submit`` is the one path that turns a report into a
stored record: validate, upload attachments, write the record, emit
``issue_created``. Both the live submit and the offline replay go through it.
``run`` wraps it with the offline fallback and the duplicate checkpoint and
reports an explicit ``SubmissionOutcome`` instead of raising.
"""

import asyncio
import logging
import re
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from asset_store import AssetStore, StoredAsset
from connectivity import ConnectivityMonitor
from duplicate_detector import DuplicateDetector
from errors import (
    AttachmentUploadError,
    IssueNotFoundError,
    OfflineQueueError,
    PersistenceError,
    ResolutionImageRequiredError,
    SubmissionCancelled,
    SubmissionError,
    ValidationError,
)
from models import (
    Attachment,
    DuplicateCandidate,
    IssuePayload,
    IssueRecord,
    IssueStage,
    IssueStatus,
    resolve_department,
)
from notifications import Notifier
from offline_queue import OfflineDraftQueue
from repository import IssueRepository
from telemetry import EventTracker

logger = logging.getLogger(__name__)

REQUIRED_ADDRESS_FIELDS = ("city", "state", "pincode", "country")

UPLOAD_FAILED_MESSAGE = "Photo upload failed. Check your connection or try a smaller image, then submit again."
SAVE_FAILED_MESSAGE = "We could not save your report yet. Please retry in a moment."


def _clean(value: Optional[str]) -> str:
    return (value or "").strip()


def validate_payload(payload: IssuePayload) -> IssuePayload:
    """Return a trimmed copy of ``payload`` or raise ValidationError listing what is missing."""
    missing = []
    if not _clean(payload.title):
        missing.append("title")
    if not _clean(payload.description):
        missing.append("description")

    point = payload.coordinates()
    if point is None or not point.is_valid():
        missing.append("coordinates")

    full_address = _clean(payload.full_address) or _clean(payload.location_text)
    if not full_address:
        missing.append("full_address")
    for field in REQUIRED_ADDRESS_FIELDS:
        if not _clean(getattr(payload, field)):
            missing.append(field)

    aadhar_number = re.sub(r"\s+", "", payload.aadhar_number or "")
    if aadhar_number and not re.fullmatch(r"\d{12}", aadhar_number):
        missing.append("aadhar_number")

    if missing:
        raise ValidationError(missing)

    return payload.model_copy(update={
        "title": _clean(payload.title),
        "description": _clean(payload.description),
        "category": _clean(payload.category),
        "location_text": full_address,
        "full_address": full_address,
        "street": _clean(payload.street) or None,
        "locality": _clean(payload.locality) or None,
        "city": _clean(payload.city),
        "state": _clean(payload.state),
        "pincode": _clean(payload.pincode),
        "country": _clean(payload.country),
        "landmark": _clean(payload.landmark) or None,
        "aadhar_number": aadhar_number or None,
    })


def _history_entry(stage: IssueStage, status: IssueStatus, changed_by: str, note: str) -> Dict[str, Any]:
    return {
        "stage": stage.value,
        "status": status.value,
        "changed_by": changed_by,
        "changed_at": datetime.now(timezone.utc),
        "note": note,
    }


class OutcomeKind(str, Enum):
    CREATED = "created"
    DUPLICATE_FOUND = "duplicate_found"
    QUEUED_OFFLINE = "queued_offline"
    VALIDATION_ERROR = "validation_error"
    UPLOAD_ERROR = "upload_error"
    PERSISTENCE_ERROR = "persistence_error"
    OFFLINE_QUEUE_ERROR = "offline_queue_error"
    CANCELLED = "cancelled"


class SubmissionOutcome(BaseModel):
    kind: OutcomeKind
    message: str = ""
    issue_id: Optional[str] = None
    draft_id: Optional[str] = None
    duplicate: Optional[DuplicateCandidate] = None
    missing: List[str] = Field(default_factory=list)
    code: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.kind in (OutcomeKind.CREATED, OutcomeKind.QUEUED_OFFLINE)


class IssueSubmissionPipeline:

    def __init__(
        self,
        repository: IssueRepository,
        assets: AssetStore,
        detector: Optional[DuplicateDetector] = None,
        queue: Optional[OfflineDraftQueue] = None,
        connectivity: Optional[ConnectivityMonitor] = None,
        tracker: Optional[EventTracker] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.repository = repository
        self.assets = assets
        self.detector = detector or DuplicateDetector(repository)
        self.queue = queue
        self.connectivity = connectivity or ConnectivityMonitor(online=True)
        self.tracker = tracker or EventTracker(None)
        self.notifier = notifier or Notifier()

    # ---------- helpers ----------

    def _validation_outcome(self, exc: ValidationError) -> SubmissionOutcome:
        message = "Please fill all required fields."
        self.notifier.notify(message, "warning")
        return SubmissionOutcome(kind=OutcomeKind.VALIDATION_ERROR, message=message,
                                 missing=exc.missing, code="validation-error")

    @staticmethod
    def _check_cancelled(cancel_event: Optional[asyncio.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise SubmissionCancelled("Submission was cancelled before it was saved.")

    async def _upload(self, path: str, attachment: Attachment, message: str) -> StoredAsset:
        try:
            return await self.assets.upload(path, attachment)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("Upload to %s failed: %s", path, exc)
            raise AttachmentUploadError(message, cause=exc) from exc

    async def _cleanup(self, uploaded: List[StoredAsset]) -> None:
        for asset in uploaded:
            try:
                await self.assets.delete(asset)
            except Exception:
                logger.warning("Unable to clean up uploaded asset %s", asset.ref, exc_info=True)

    # ---------- submission ----------

    async def submit(
        self,
        payload: IssuePayload,
        file: Optional[Attachment] = None,
        secondary_file: Optional[Attachment] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> str:
        """Validate, upload, and store one report. Returns the new issue id."""
        payload = validate_payload(payload)
        department = payload.department or resolve_department(payload.category)
        uploader = payload.user_id or "anonymous"

        uploaded: List[StoredAsset] = []
        image_url = ""
        aadhar_image_url = ""
        try:
            if file is not None:
                self._check_cancelled(cancel_event)
                asset = await self._upload(
                    f"issue-images/{uploader}/{int(time.time() * 1000)}-{file.name}",
                    file,
                    "Photo upload failed. Please retry or remove the attachment.",
                )
                uploaded.append(asset)
                image_url = asset.url

            if secondary_file is not None:
                self._check_cancelled(cancel_event)
                asset = await self._upload(
                    f"aadhar-images/{uploader}/{int(time.time() * 1000)}-{secondary_file.name}",
                    secondary_file,
                    "Aadhaar upload failed. Please retry.",
                )
                uploaded.append(asset)
                aadhar_image_url = asset.url

            self._check_cancelled(cancel_event)
        except (SubmissionError, asyncio.CancelledError):
            await self._cleanup(uploaded)
            raise

        document = {
            "title": payload.title,
            "description": payload.description,
            "category": payload.category,
            "user_id": payload.user_id,
            "phone_verified": payload.phone_verified,
            "aadhar_number": payload.aadhar_number,
            "location": payload.full_address,
            "location_text": payload.full_address,
            "full_address": payload.full_address,
            "street": payload.street or "",
            "locality": payload.locality or "",
            "city": payload.city,
            "state": payload.state,
            "pincode": payload.pincode,
            "country": payload.country,
            "landmark": payload.landmark or "",
            "lat": payload.lat,
            "lng": payload.lng,
            "department": department,
            "status": IssueStatus.SUBMITTED.value,
            "image_url": image_url,
            "before_image_url": image_url,
            "after_image_url": "",
            "resolution_image_url": "",
            "aadhar_image_url": aadhar_image_url,
            "staff_id": "",
            "upvotes": 0,
            "upvoted_by": [],
            "status_history": [
                _history_entry(IssueStage.SUBMITTED, IssueStatus.SUBMITTED, payload.user_id, "Issue submitted"),
            ],
        }

        try:
            issue_id = await self.repository.create(document)
        except Exception as exc:
            logger.error("Issue creation failed: %s", exc)
            await self._cleanup(uploaded)
            raise PersistenceError("Unable to save your issue right now. Please try again.", cause=exc) from exc

        logger.info("Created issue %s (%s, %s)", issue_id, payload.category, department)
        self.tracker.track("issue_created", {
            "category": payload.category,
            "department": department,
            "phone_verified": payload.phone_verified,
        })
        return issue_id

    async def run(
        self,
        payload: IssuePayload,
        file: Optional[Attachment] = None,
        secondary_file: Optional[Attachment] = None,
        confirm_duplicate: bool = False,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> SubmissionOutcome:
        """
        Full report flow as a UI drives it.

        Offline reports go to the draft queue. Online reports are checked for
        a nearby duplicate first; a hit returns DUPLICATE_FOUND and nothing is
        written until the caller runs again with ``confirm_duplicate=True``.
        """
        try:
            payload = validate_payload(payload)
        except ValidationError as exc:
            return self._validation_outcome(exc)

        if not self.connectivity.is_online:
            return self.save_draft(payload, file)

        if not confirm_duplicate:
            point = payload.coordinates()
            duplicate = await self.detector.check_for_duplicate(payload.category, point.lat, point.lng)
            if duplicate is not None:
                return SubmissionOutcome(
                    kind=OutcomeKind.DUPLICATE_FOUND,
                    message="A similar issue was reported nearby moments ago.",
                    duplicate=duplicate,
                )

        try:
            issue_id = await self.submit(payload, file, secondary_file, cancel_event=cancel_event)
        except SubmissionCancelled as exc:
            self.notifier.notify("Submission cancelled.", "info")
            return SubmissionOutcome(kind=OutcomeKind.CANCELLED, message=str(exc), code=exc.code)
        except AttachmentUploadError as exc:
            self.notifier.notify(UPLOAD_FAILED_MESSAGE, "error")
            return SubmissionOutcome(kind=OutcomeKind.UPLOAD_ERROR, message=UPLOAD_FAILED_MESSAGE, code=exc.code)
        except PersistenceError as exc:
            self.notifier.notify(SAVE_FAILED_MESSAGE, "error")
            return SubmissionOutcome(kind=OutcomeKind.PERSISTENCE_ERROR, message=SAVE_FAILED_MESSAGE, code=exc.code)

        message = "Issue submitted successfully!"
        self.notifier.notify(message, "success")
        return SubmissionOutcome(kind=OutcomeKind.CREATED, message=message, issue_id=issue_id)

    def save_draft(self, payload: IssuePayload, file: Optional[Attachment] = None) -> SubmissionOutcome:
        """Store the report locally for later replay. Invalid reports are never queued."""
        try:
            payload = validate_payload(payload)
        except ValidationError as exc:
            return self._validation_outcome(exc)

        if self.queue is None:
            message = "Unable to save your report offline. Please try again."
            self.notifier.notify(message, "error")
            return SubmissionOutcome(kind=OutcomeKind.OFFLINE_QUEUE_ERROR, message=message,
                                     code="offline-queue-unavailable")
        try:
            draft = self.queue.queue_draft(payload, file)
        except OfflineQueueError:
            logger.exception("Failed to queue offline issue")
            message = "Unable to save your report offline. Please try again."
            self.notifier.notify(message, "error")
            return SubmissionOutcome(kind=OutcomeKind.OFFLINE_QUEUE_ERROR, message=message,
                                     code="offline-queue-unavailable")

        message = "You're offline, your report is saved and will auto-submit when you reconnect."
        self.notifier.notify(message, "info")
        return SubmissionOutcome(kind=OutcomeKind.QUEUED_OFFLINE, message=message, draft_id=draft.id)


class IssueService:
    """Read paths, staff status transitions and upvotes."""

    def __init__(self, repository: IssueRepository, assets: AssetStore,
                 tracker: Optional[EventTracker] = None):
        self.repository = repository
        self.assets = assets
        self.tracker = tracker or EventTracker(None)

    async def list_issues(self, user_id: Optional[str] = None,
                          status: Optional[IssueStatus] = None) -> List[IssueRecord]:
        return await self.repository.list_issues(user_id=user_id, status=status)

    async def get_issue(self, issue_id: str) -> IssueRecord:
        issue = await self.repository.get(issue_id)
        if issue is None:
            raise IssueNotFoundError(issue_id)
        return issue

    async def toggle_upvote(self, issue_id: str, user_id: str) -> int:
        return await self.repository.toggle_upvote(issue_id, user_id)

    async def update_status(
        self,
        issue_id: str,
        new_status: IssueStatus,
        staff_id: str,
        file: Optional[Attachment] = None,
        staff_name: Optional[str] = None,
    ) -> IssueRecord:
        issue = await self.get_issue(issue_id)
        new_status = IssueStatus(new_status)

        if new_status == IssueStatus.RESOLVED and file is None and not issue.after_image_url:
            raise ResolutionImageRequiredError()

        existing = {entry.stage for entry in issue.status_history}
        actor = staff_name.strip() if staff_name and staff_name.strip() else "City Staff"
        history = []

        def queue_history(stage: IssueStage, note: str, status: IssueStatus):
            if stage not in existing:
                history.append(_history_entry(stage, status, staff_id, note))

        if new_status in (IssueStatus.IN_PROGRESS, IssueStatus.RESOLVED):
            queue_history(IssueStage.ASSIGNED, f"Assigned to {actor}", IssueStatus.IN_PROGRESS)
            queue_history(IssueStage.IN_PROGRESS, f"{actor} started work", IssueStatus.IN_PROGRESS)
        if new_status == IssueStatus.RESOLVED:
            queue_history(IssueStage.RESOLVED, f"{actor} resolved the issue", IssueStatus.RESOLVED)

        updates: Dict[str, Any] = {"status": new_status.value, "staff_id": staff_id}

        asset = None
        if file is not None:
            path = f"issue-resolutions/{issue_id}/{int(time.time() * 1000)}-{file.name}"
            try:
                asset = await self.assets.upload(path, file)
            except Exception as exc:
                logger.error("Resolution image upload failed: %s", exc)
                raise AttachmentUploadError(UPLOAD_FAILED_MESSAGE, cause=exc) from exc
            updates["resolution_image_url"] = asset.url
            updates["after_image_url"] = asset.url

        try:
            await self.repository.update(issue_id, updates, history)
        except Exception as exc:
            logger.error("Status update for %s failed: %s", issue_id, exc)
            if asset is not None:
                try:
                    await self.assets.delete(asset)
                except Exception:
                    logger.warning("Unable to clean up resolution asset %s", asset.ref, exc_info=True)
            raise PersistenceError("Unable to update the issue right now. Please try again.", cause=exc) from exc

        if new_status == IssueStatus.RESOLVED:
            self.tracker.track("issue_resolved", {"issue_id": issue_id, "staff_id": staff_id})

        return await self.get_issue(issue_id)

