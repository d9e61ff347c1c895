import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from asset_store import AssetStore, CloudinaryAssetStore
from config import Config
from connectivity import ConnectivityMonitor
from duplicate_detector import DuplicateDetector
from errors import (
    AttachmentUploadError,
    DuplicateCheckError,
    IssueNotFoundError,
    OfflineQueueError,
    PersistenceError,
    ResolutionImageRequiredError,
    ValidationError,
)
from issue_service import IssueService, IssueSubmissionPipeline, OutcomeKind
from models import Attachment, IssuePayload, IssueStatus
from notifications import Notifier
from offline_queue import JsonFileStorage, OfflineDraftQueue, OfflineSync
from repository import FirestoreIssueRepository, IssueRepository
from telemetry import EventTracker, build_tracker

logger = logging.getLogger(__name__)


class Services:
    """Everything the routes need, wired once per app."""

    def __init__(
        self,
        repository: IssueRepository,
        assets: AssetStore,
        queue: OfflineDraftQueue,
        connectivity: Optional[ConnectivityMonitor] = None,
        tracker: Optional[EventTracker] = None,
        notifier: Optional[Notifier] = None,
        detector: Optional[DuplicateDetector] = None,
    ):
        self.repository = repository
        self.connectivity = connectivity or ConnectivityMonitor(online=Config.START_ONLINE)
        self.tracker = tracker or EventTracker(None)
        self.notifier = notifier or Notifier()
        self.queue = queue
        self.detector = detector or DuplicateDetector(repository)
        self.pipeline = IssueSubmissionPipeline(
            repository,
            assets,
            detector=self.detector,
            queue=queue,
            connectivity=self.connectivity,
            tracker=self.tracker,
            notifier=self.notifier,
        )
        self.issues = IssueService(repository, assets, tracker=self.tracker)
        self.sync = OfflineSync(queue, self.pipeline.submit, self.connectivity, self.notifier)


def build_default_services() -> Services:
    from cloudinary_config import configure_cloudinary

    configure_cloudinary()
    return Services(
        repository=FirestoreIssueRepository(),
        assets=CloudinaryAssetStore(),
        queue=OfflineDraftQueue(JsonFileStorage(Config.OFFLINE_QUEUE_PATH), key=Config.OFFLINE_QUEUE_KEY),
        tracker=build_tracker(Config.TELEMETRY_SINK),
    )


def create_app(services: Optional[Services] = None) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logging.basicConfig(level=Config.LOG_LEVEL, format="%(asctime)s  %(levelname)s  %(name)s  %(message)s")
        if getattr(app.state, "services", None) is None:
            app.state.services = build_default_services()
        svc = app.state.services
        svc.sync.attach()
        # replay whatever was left queued by a previous run
        await svc.sync.process_queue()
        yield
        svc.sync.detach()
        await svc.tracker.drain()

    app = FastAPI(
        title="Civic Issue Reporting API",
        description="Issue submission, duplicate detection and offline replay for civic reports",
        version="1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=Config.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)
    register_routes(app)
    return app


def get_services(request: Request) -> Services:
    return request.app.state.services


def maps_link(lat, lng) -> Optional[str]:
    if lat is None or lng is None:
        return None
    return f"https://www.google.com/maps?q={lat},{lng}"


async def to_attachment(upload: Optional[UploadFile]) -> Optional[Attachment]:
    if upload is None or not upload.filename:
        return None
    data = await upload.read()
    return Attachment(
        name=upload.filename,
        content_type=upload.content_type or "application/octet-stream",
        data=data,
    )


def report_form(
    title: str = Form(""),
    description: str = Form(""),
    category: str = Form("Others"),
    lat: Optional[float] = Form(None),
    lng: Optional[float] = Form(None),
    location_text: str = Form(""),
    full_address: str = Form(""),
    street: Optional[str] = Form(None),
    locality: Optional[str] = Form(None),
    city: str = Form(""),
    state: str = Form(""),
    pincode: str = Form(""),
    country: str = Form(""),
    landmark: Optional[str] = Form(None),
    user_id: str = Form(""),
    department: Optional[str] = Form(None),
    phone_verified: bool = Form(False),
    aadhar_number: Optional[str] = Form(None),
) -> IssuePayload:
    return IssuePayload(
        title=title,
        description=description,
        category=category,
        lat=lat,
        lng=lng,
        location_text=location_text,
        full_address=full_address,
        street=street,
        locality=locality,
        city=city,
        state=state,
        pincode=pincode,
        country=country,
        landmark=landmark,
        user_id=user_id,
        department=department or None,
        phone_verified=phone_verified,
        aadhar_number=aadhar_number or None,
    )


async def watch_disconnect(request: Request, cancel_event: asyncio.Event, interval: float = 0.5):
    # the reporter closed the form; stop before the record is written
    while not cancel_event.is_set():
        if await request.is_disconnected():
            logger.info("Client went away, cancelling submission")
            cancel_event.set()
            return
        await asyncio.sleep(interval)


OUTCOME_STATUS = {
    OutcomeKind.CREATED: 201,
    OutcomeKind.QUEUED_OFFLINE: 202,
    OutcomeKind.DUPLICATE_FOUND: 200,
    OutcomeKind.VALIDATION_ERROR: 422,
    OutcomeKind.UPLOAD_ERROR: 502,
    OutcomeKind.PERSISTENCE_ERROR: 503,
    OutcomeKind.OFFLINE_QUEUE_ERROR: 507,
    OutcomeKind.CANCELLED: 499,
}


class ConnectivityUpdate(BaseModel):
    online: bool


class UpvoteRequest(BaseModel):
    user_id: str


def _error(status_code: int, code: str, message: str, **extra):
    return JSONResponse(status_code=status_code, content={"code": code, "message": message, **extra})


def register_error_handlers(app: FastAPI):

    @app.exception_handler(ValidationError)
    async def validation_error(request: Request, exc: ValidationError):
        return _error(422, "validation-error", "Please fill all required fields.", missing=exc.missing)

    @app.exception_handler(AttachmentUploadError)
    async def upload_error(request: Request, exc: AttachmentUploadError):
        return _error(502, exc.code, str(exc))

    @app.exception_handler(PersistenceError)
    async def persistence_error(request: Request, exc: PersistenceError):
        return _error(503, exc.code, str(exc))

    @app.exception_handler(OfflineQueueError)
    async def offline_queue_error(request: Request, exc: OfflineQueueError):
        return _error(507, "offline-queue-unavailable", "Unable to save your report offline. Please try again.")

    @app.exception_handler(DuplicateCheckError)
    async def duplicate_check_failed(request: Request, exc: DuplicateCheckError):
        logger.warning("Duplicate lookup failed: %s", exc.cause)
        return _error(503, "duplicate-check-failed", "Duplicate check is unavailable right now. You can still submit.")

    @app.exception_handler(IssueNotFoundError)
    async def not_found(request: Request, exc: IssueNotFoundError):
        return _error(404, "not-found", "Issue not found")

    @app.exception_handler(ResolutionImageRequiredError)
    async def resolution_image_required(request: Request, exc: ResolutionImageRequiredError):
        return _error(400, "after-image-required", str(exc))


def register_routes(app: FastAPI):

    @app.options("/{rest_of_path:path}")
    async def preflight_handler(rest_of_path: str):
        return JSONResponse({"status": "ok"})

    @app.get("/")
    def home(svc: Services = Depends(get_services)):
        return {"status": "Backend running", "online": svc.connectivity.is_online}

    # POST — Report an issue (duplicate checkpoint + offline fallback)
    @app.post("/report-issue")
    async def report_issue(
        request: Request,
        payload: IssuePayload = Depends(report_form),
        confirm_duplicate: bool = Form(False),
        image: UploadFile = File(None),
        aadhar_image: UploadFile = File(None),
        svc: Services = Depends(get_services),
    ):
        file = await to_attachment(image)
        secondary = await to_attachment(aadhar_image)

        cancel_event = asyncio.Event()
        watcher = asyncio.create_task(watch_disconnect(request, cancel_event))
        try:
            outcome = await svc.pipeline.run(
                payload, file, secondary,
                confirm_duplicate=confirm_duplicate,
                cancel_event=cancel_event,
            )
        finally:
            watcher.cancel()

        body = outcome.model_dump(mode="json")
        if outcome.duplicate is not None:
            body["duplicate"]["distance_meters"] = round(outcome.duplicate.distance_meters)
        if outcome.kind == OutcomeKind.CREATED:
            body["maps_link"] = maps_link(payload.lat, payload.lng)
        return JSONResponse(status_code=OUTCOME_STATUS[outcome.kind], content=body)

    # GET — Probe for a nearby open duplicate
    @app.get("/issues/duplicates")
    async def find_duplicate(
        category: str,
        lat: float,
        lng: float,
        radius_meters: Optional[float] = None,
        minutes_window: Optional[float] = None,
        svc: Services = Depends(get_services),
    ):
        candidate = await svc.detector.find_nearby_candidate(
            category, lat, lng, radius_meters=radius_meters, minutes_window=minutes_window,
        )
        if candidate is None:
            return {"duplicate": None}
        return {
            "duplicate": candidate.issue.model_dump(mode="json"),
            "distance_meters": round(candidate.distance_meters),
        }

    # GET — Fetch issues (optionally one reporter's, optionally by status)
    @app.get("/issues")
    async def get_issues(
        user_id: Optional[str] = None,
        status: Optional[IssueStatus] = None,
        svc: Services = Depends(get_services),
    ):
        issues = []
        for issue in await svc.issues.list_issues(user_id=user_id, status=status):
            data = issue.model_dump(mode="json")
            data["maps_link"] = maps_link(issue.lat, issue.lng)
            issues.append(data)
        return issues

    @app.get("/issues/{issue_id}")
    async def get_issue(issue_id: str, svc: Services = Depends(get_services)):
        issue = await svc.issues.get_issue(issue_id)
        data = issue.model_dump(mode="json")
        data["maps_link"] = maps_link(issue.lat, issue.lng)
        return data

    # POST — Update Issue Status (staff workflow)
    @app.post("/update-status/{issue_id}")
    async def update_status(
        issue_id: str,
        status: IssueStatus = Form(...),
        staff_id: str = Form(...),
        staff_name: str = Form(""),
        proof_image: UploadFile = File(None),
        svc: Services = Depends(get_services),
    ):
        issue = await svc.issues.update_status(
            issue_id, status, staff_id,
            file=await to_attachment(proof_image),
            staff_name=staff_name or None,
        )
        return {
            "message": "Issue status updated successfully",
            "issue_id": issue_id,
            "issue": issue.model_dump(mode="json"),
        }

    @app.post("/issues/{issue_id}/upvote")
    async def toggle_upvote(issue_id: str, req: UpvoteRequest, svc: Services = Depends(get_services)):
        if not req.user_id:
            raise HTTPException(status_code=400, detail="user_id is required")
        delta = await svc.issues.toggle_upvote(issue_id, req.user_id)
        issue = await svc.issues.get_issue(issue_id)
        return {"delta": delta, "upvotes": issue.upvotes, "upvoted_by": issue.upvoted_by}

    # ---------- offline drafts ----------

    @app.post("/drafts")
    async def save_draft(
        payload: IssuePayload = Depends(report_form),
        image: UploadFile = File(None),
        svc: Services = Depends(get_services),
    ):
        outcome = svc.pipeline.save_draft(payload, await to_attachment(image))
        status_code = 201 if outcome.kind == OutcomeKind.QUEUED_OFFLINE else OUTCOME_STATUS[outcome.kind]
        return JSONResponse(status_code=status_code, content=outcome.model_dump(mode="json"))

    @app.get("/drafts")
    async def list_drafts(svc: Services = Depends(get_services)):
        drafts = []
        for draft in svc.queue.list_queued_drafts():
            data = draft.model_dump(mode="json", exclude={"image"})
            data["image_name"] = draft.image.name if draft.image else None
            drafts.append(data)
        return drafts

    @app.delete("/drafts/{draft_id}")
    async def delete_draft(draft_id: str, svc: Services = Depends(get_services)):
        svc.queue.remove_draft(draft_id)
        return {"ok": True}

    @app.post("/drafts/sync")
    async def sync_drafts(svc: Services = Depends(get_services)):
        report = await svc.sync.process_queue()
        return report.model_dump()

    # ---------- connectivity ----------

    @app.get("/connectivity")
    async def get_connectivity(svc: Services = Depends(get_services)):
        return {"online": svc.connectivity.is_online, "syncing": svc.sync.syncing}

    @app.post("/connectivity")
    async def set_connectivity(update: ConnectivityUpdate, svc: Services = Depends(get_services)):
        await svc.connectivity.set_online(update.online)
        return {
            "online": svc.connectivity.is_online,
            "queued": len(svc.queue.list_queued_drafts()),
        }

    # ---------- notifications ----------

    @app.get("/notifications")
    async def list_notifications(svc: Services = Depends(get_services)):
        return [item.model_dump(mode="json") for item in svc.notifier.list()]

    @app.delete("/notifications/{notification_id}")
    async def dismiss_notification(notification_id: str, svc: Services = Depends(get_services)):
        if not svc.notifier.dismiss(notification_id):
            raise HTTPException(status_code=404, detail="Notification not found")
        return {"ok": True}


app = create_app()


if __name__ == "__main__":
    import os

    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
