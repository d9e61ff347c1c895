import asyncio
import os
import tempfile
import unittest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

from asset_store import InMemoryAssetStore
from connectivity import ConnectivityMonitor
from duplicate_detector import DuplicateDetector
from errors import (
    AttachmentUploadError,
    PersistenceError,
    ResolutionImageRequiredError,
    SubmissionCancelled,
    ValidationError,
)
from issue_service import (
    SAVE_FAILED_MESSAGE,
    UPLOAD_FAILED_MESSAGE,
    IssueService,
    IssueSubmissionPipeline,
    OutcomeKind,
    validate_payload,
)
from models import Attachment, IssuePayload, IssueStage, IssueStatus, map_issue_data
from notifications import Notifier
from offline_queue import JsonFileStorage, MemoryStorage, OfflineDraftQueue, OfflineSync
from repository import InMemoryIssueRepository
from telemetry import EventTracker


def payload(**overrides):
    data = dict(
        title="Pothole near bus stop",
        description="Two wheelers keep swerving around it",
        category="Pothole",
        lat=12.9716,
        lng=77.5946,
        full_address="  80 Feet Road, Koramangala  ",
        city="Bengaluru",
        state="Karnataka",
        pincode="560034",
        country="India",
        user_id="citizen-7",
        phone_verified=True,
    )
    data.update(overrides)
    return IssuePayload(**data)


def photo(name="hole.jpg"):
    return Attachment(name=name, content_type="image/jpeg", data=b"jpeg-bytes")


class FailingAssetStore(InMemoryAssetStore):
    """Fails uploads whose path starts with ``fail_prefix``."""

    def __init__(self, fail_prefix):
        super().__init__()
        self.fail_prefix = fail_prefix

    async def upload(self, path, attachment):
        if path.startswith(self.fail_prefix):
            raise ConnectionError("network unreachable")
        return await super().upload(path, attachment)


class ValidatePayloadTests(unittest.TestCase):
    def test_valid_payload_is_trimmed(self):
        cleaned = validate_payload(payload(title="  Pothole  ", aadhar_number="1234 5678 9012"))
        self.assertEqual(cleaned.title, "Pothole")
        self.assertEqual(cleaned.full_address, "80 Feet Road, Koramangala")
        self.assertEqual(cleaned.location_text, "80 Feet Road, Koramangala")
        self.assertEqual(cleaned.aadhar_number, "123456789012")

    def test_location_text_stands_in_for_full_address(self):
        cleaned = validate_payload(payload(full_address="", location_text="Near Forum Mall"))
        self.assertEqual(cleaned.full_address, "Near Forum Mall")

    def test_missing_fields_are_listed(self):
        with self.assertRaises(ValidationError) as ctx:
            validate_payload(payload(title=" ", description="", city="", pincode=""))
        self.assertEqual(ctx.exception.missing, ["title", "description", "city", "pincode"])

    def test_coordinates_must_be_a_valid_pair(self):
        for lat, lng in ((None, 77.5), (12.9, None), (91.0, 0.0), (0.0, -181.0), (float("nan"), 1.0)):
            with self.subTest(lat=lat, lng=lng):
                with self.assertRaises(ValidationError) as ctx:
                    validate_payload(payload(lat=lat, lng=lng))
                self.assertIn("coordinates", ctx.exception.missing)

    def test_bad_aadhar_number(self):
        with self.assertRaises(ValidationError) as ctx:
            validate_payload(payload(aadhar_number="1234"))
        self.assertEqual(ctx.exception.missing, ["aadhar_number"])


class SubmitTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.repo = InMemoryIssueRepository()
        self.assets = InMemoryAssetStore()
        self.sink = AsyncMock()
        self.tracker = EventTracker(self.sink)
        self.pipeline = IssueSubmissionPipeline(self.repo, self.assets, tracker=self.tracker)

    async def test_submit_creates_a_submitted_record(self):
        issue_id = await self.pipeline.submit(payload())

        issue = await self.repo.get(issue_id)
        self.assertEqual(issue.status, IssueStatus.SUBMITTED)
        self.assertEqual(issue.upvotes, 0)
        self.assertEqual(issue.upvoted_by, [])
        self.assertEqual(len(issue.status_history), 1)
        self.assertEqual(issue.status_history[0].stage, IssueStage.SUBMITTED)
        self.assertEqual(issue.status_history[0].changed_by, "citizen-7")
        self.assertEqual(issue.category, "Pothole")
        self.assertEqual(issue.department, "General")
        self.assertEqual(issue.full_address, "80 Feet Road, Koramangala")
        self.assertEqual((issue.lat, issue.lng), (12.9716, 77.5946))

    async def test_department_follows_category(self):
        issue_id = await self.pipeline.submit(payload(category="Garbage"))
        self.assertEqual((await self.repo.get(issue_id)).department, "Sanitation")

    async def test_identical_payloads_create_distinct_records(self):
        first = await self.pipeline.submit(payload())
        second = await self.pipeline.submit(payload())
        self.assertNotEqual(first, second)
        self.assertEqual(len(self.repo), 2)

    async def test_attachments_are_uploaded_and_linked(self):
        issue_id = await self.pipeline.submit(payload(), photo(), photo("aadhar.jpg"))

        issue = await self.repo.get(issue_id)
        self.assertTrue(issue.before_image_url.startswith("memory://assets/issue-images/citizen-7/"))
        self.assertEqual(issue.image_url, issue.before_image_url)
        self.assertTrue(issue.aadhar_image_url.startswith("memory://assets/aadhar-images/citizen-7/"))
        self.assertEqual(len(self.assets.assets), 2)

    async def test_issue_created_event_is_emitted(self):
        await self.pipeline.submit(payload(category="Streetlight"))
        await self.tracker.drain()

        self.sink.emit.assert_awaited_once_with(
            "issue_created",
            {"category": "Streetlight", "department": "Electrical", "phone_verified": 1},
        )

    async def test_broken_event_sink_does_not_fail_submission(self):
        self.sink.emit.side_effect = RuntimeError("analytics down")

        with self.assertLogs("telemetry", level="WARNING"):
            issue_id = await self.pipeline.submit(payload())
            await self.tracker.drain()

        self.assertIsNotNone(await self.repo.get(issue_id))

    async def test_validation_error_never_touches_the_network(self):
        self.repo.create = AsyncMock()
        assets = AsyncMock()
        pipeline = IssueSubmissionPipeline(self.repo, assets)

        with self.assertRaises(ValidationError):
            await pipeline.submit(payload(title=""), photo())

        self.repo.create.assert_not_awaited()
        assets.upload.assert_not_awaited()

    async def test_upload_failure_creates_no_record(self):
        pipeline = IssueSubmissionPipeline(self.repo, FailingAssetStore("issue-images"))

        with self.assertRaises(AttachmentUploadError) as ctx:
            await pipeline.submit(payload(), photo())

        self.assertEqual(ctx.exception.code, "storage-upload-failed")
        self.assertIsInstance(ctx.exception.cause, ConnectionError)
        self.assertEqual(len(self.repo), 0)

    async def test_secondary_upload_failure_cleans_up_primary(self):
        assets = FailingAssetStore("aadhar-images")
        pipeline = IssueSubmissionPipeline(self.repo, assets)

        with self.assertRaises(AttachmentUploadError):
            await pipeline.submit(payload(), photo(), photo("aadhar.jpg"))

        self.assertEqual(assets.assets, {})
        self.assertEqual(len(self.repo), 0)

    async def test_write_failure_deletes_uploaded_assets(self):
        with patch.object(self.repo, "create", AsyncMock(side_effect=RuntimeError("quota exceeded"))):
            with self.assertRaises(PersistenceError) as ctx:
                await self.pipeline.submit(payload(), photo(), photo("aadhar.jpg"))

        self.assertEqual(ctx.exception.code, "firestore-write-failed")
        self.assertEqual(self.assets.assets, {})

    async def test_cleanup_failure_still_surfaces_persistence_error(self):
        self.assets.delete = AsyncMock(side_effect=RuntimeError("delete denied"))
        with patch.object(self.repo, "create", AsyncMock(side_effect=RuntimeError("quota exceeded"))):
            with self.assertLogs("issue_service", level="WARNING"):
                with self.assertRaises(PersistenceError):
                    await self.pipeline.submit(payload(), photo())

    async def test_cancel_before_upload(self):
        cancel = asyncio.Event()
        cancel.set()

        with self.assertRaises(SubmissionCancelled):
            await self.pipeline.submit(payload(), photo(), cancel_event=cancel)

        self.assertEqual(self.assets.assets, {})
        self.assertEqual(len(self.repo), 0)

    async def test_cancel_during_upload_rolls_back(self):
        cancel = asyncio.Event()
        original_upload = self.assets.upload

        async def upload_then_cancel(path, attachment):
            asset = await original_upload(path, attachment)
            cancel.set()
            return asset

        self.assets.upload = upload_then_cancel

        with self.assertRaises(SubmissionCancelled):
            await self.pipeline.submit(payload(), photo(), cancel_event=cancel)

        self.assertEqual(self.assets.assets, {})
        self.assertEqual(len(self.repo), 0)


class RunTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.repo = InMemoryIssueRepository()
        self.assets = InMemoryAssetStore()
        self.queue = OfflineDraftQueue(MemoryStorage())
        self.connectivity = ConnectivityMonitor(online=True)
        self.notifier = Notifier()
        self.pipeline = IssueSubmissionPipeline(
            self.repo,
            self.assets,
            detector=DuplicateDetector(self.repo),
            queue=self.queue,
            connectivity=self.connectivity,
            notifier=self.notifier,
        )

    async def test_first_report_is_created(self):
        outcome = await self.pipeline.run(payload())

        self.assertEqual(outcome.kind, OutcomeKind.CREATED)
        self.assertTrue(outcome.ok)
        self.assertEqual(len(self.repo), 1)
        self.assertEqual(self.notifier.list()[-1].variant, "success")

    async def test_nearby_report_hits_the_duplicate_checkpoint(self):
        first = await self.pipeline.run(payload())

        outcome = await self.pipeline.run(payload(lat=12.97165, lng=77.59465))

        self.assertEqual(outcome.kind, OutcomeKind.DUPLICATE_FOUND)
        self.assertEqual(outcome.duplicate.issue.id, first.issue_id)
        self.assertLess(outcome.duplicate.distance_meters, 10)
        self.assertEqual(len(self.repo), 1)

        confirmed = await self.pipeline.run(payload(lat=12.97165, lng=77.59465), confirm_duplicate=True)
        self.assertEqual(confirmed.kind, OutcomeKind.CREATED)
        self.assertEqual(len(self.repo), 2)

    async def test_failed_duplicate_check_does_not_block(self):
        self.pipeline.detector.repository = AsyncMock()
        self.pipeline.detector.repository.query_recent.side_effect = TimeoutError()

        with self.assertLogs("duplicate_detector", level="WARNING"):
            outcome = await self.pipeline.run(payload())

        self.assertEqual(outcome.kind, OutcomeKind.CREATED)

    async def test_validation_error_outcome(self):
        outcome = await self.pipeline.run(payload(country=""))

        self.assertEqual(outcome.kind, OutcomeKind.VALIDATION_ERROR)
        self.assertEqual(outcome.missing, ["country"])
        self.assertEqual(len(self.repo), 0)

    async def test_upload_and_save_failures_read_differently(self):
        self.pipeline.assets = FailingAssetStore("issue-images")
        upload = await self.pipeline.run(payload(), photo())

        self.pipeline.assets = self.assets
        with patch.object(self.repo, "create", AsyncMock(side_effect=RuntimeError("down"))):
            save = await self.pipeline.run(payload(lat=13.5), photo())

        self.assertEqual(upload.kind, OutcomeKind.UPLOAD_ERROR)
        self.assertEqual(upload.message, UPLOAD_FAILED_MESSAGE)
        self.assertEqual(save.kind, OutcomeKind.PERSISTENCE_ERROR)
        self.assertEqual(save.message, SAVE_FAILED_MESSAGE)
        self.assertNotEqual(upload.message, save.message)

    async def test_offline_report_is_queued(self):
        await self.connectivity.set_online(False)

        outcome = await self.pipeline.run(payload(), photo())

        self.assertEqual(outcome.kind, OutcomeKind.QUEUED_OFFLINE)
        self.assertEqual([d.id for d in self.queue.list_queued_drafts()], [outcome.draft_id])
        self.assertEqual(len(self.repo), 0)

    async def test_offline_without_storage_is_reported(self):
        self.pipeline.queue = OfflineDraftQueue(MemoryStorage(available=False))
        await self.connectivity.set_online(False)

        outcome = await self.pipeline.run(payload())

        self.assertEqual(outcome.kind, OutcomeKind.OFFLINE_QUEUE_ERROR)
        self.assertFalse(outcome.ok)
        self.assertEqual(self.notifier.list()[-1].variant, "error")

    async def test_offline_then_online_delivers_exactly_once(self):
        sync = OfflineSync(self.queue, self.pipeline.submit, self.connectivity, self.notifier)
        sync.attach()
        await self.connectivity.set_online(False)
        await self.pipeline.run(payload(), photo())

        await self.connectivity.set_online(True)

        self.assertEqual(len(self.repo), 1)
        self.assertEqual(self.queue.list_queued_drafts(), [])
        issue = (await self.repo.list_issues())[0]
        self.assertTrue(issue.before_image_url)

    async def test_invalid_draft_is_never_queued(self):
        outcome = self.pipeline.save_draft(payload(title=""))

        self.assertEqual(outcome.kind, OutcomeKind.VALIDATION_ERROR)
        self.assertEqual(outcome.missing, ["title"])
        self.assertEqual(self.queue.list_queued_drafts(), [])

    async def test_rejected_draft_cannot_block_later_drafts(self):
        self.pipeline.save_draft(payload(title=""))
        valid = self.pipeline.save_draft(payload())
        sync = OfflineSync(self.queue, self.pipeline.submit, self.connectivity, self.notifier)

        report = await sync.process_queue()

        self.assertEqual(report.delivered, [valid.draft_id])
        self.assertIsNone(report.failed)
        self.assertEqual(len(self.repo), 1)

    async def test_offline_save_over_unreadable_queue_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "queue.json")
            with open(path, "wb") as f:
                f.write(b"\xff\xfe garbage")
            self.pipeline.queue = OfflineDraftQueue(JsonFileStorage(path))
            await self.connectivity.set_online(False)

            with self.assertLogs("offline_queue", level="WARNING"):
                outcome = await self.pipeline.run(payload())

            self.assertEqual(outcome.kind, OutcomeKind.QUEUED_OFFLINE)
            self.assertEqual(len(self.pipeline.queue.list_queued_drafts()), 1)

    async def test_cancelled_outcome(self):
        cancel = asyncio.Event()
        cancel.set()

        outcome = await self.pipeline.run(payload(), photo(), cancel_event=cancel)

        self.assertEqual(outcome.kind, OutcomeKind.CANCELLED)
        self.assertEqual(len(self.repo), 0)


class IssueServiceTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.repo = InMemoryIssueRepository()
        self.assets = InMemoryAssetStore()
        self.sink = AsyncMock()
        self.tracker = EventTracker(self.sink)
        self.service = IssueService(self.repo, self.assets, tracker=self.tracker)
        self.pipeline = IssueSubmissionPipeline(self.repo, self.assets)

    async def test_in_progress_adds_assigned_and_in_progress(self):
        issue_id = await self.pipeline.submit(payload())

        issue = await self.service.update_status(issue_id, IssueStatus.IN_PROGRESS, "staff-1", staff_name="Ravi")

        self.assertEqual(issue.status, IssueStatus.IN_PROGRESS)
        self.assertEqual(issue.staff_id, "staff-1")
        stages = [entry.stage for entry in issue.status_history]
        self.assertEqual(stages, [IssueStage.SUBMITTED, IssueStage.ASSIGNED, IssueStage.IN_PROGRESS])
        self.assertEqual(issue.status_history[1].note, "Assigned to Ravi")

    async def test_resolving_requires_an_after_image(self):
        issue_id = await self.pipeline.submit(payload())

        with self.assertRaises(ResolutionImageRequiredError):
            await self.service.update_status(issue_id, IssueStatus.RESOLVED, "staff-1")

        self.assertEqual((await self.repo.get(issue_id)).status, IssueStatus.SUBMITTED)

    async def test_resolve_with_image(self):
        issue_id = await self.pipeline.submit(payload())
        await self.service.update_status(issue_id, IssueStatus.IN_PROGRESS, "staff-1")

        issue = await self.service.update_status(issue_id, IssueStatus.RESOLVED, "staff-1", file=photo("fixed.jpg"))
        await self.tracker.drain()

        self.assertEqual(issue.status, IssueStatus.RESOLVED)
        self.assertTrue(issue.after_image_url.startswith(f"memory://assets/issue-resolutions/{issue_id}/"))
        stages = [entry.stage for entry in issue.status_history]
        self.assertEqual(stages.count(IssueStage.IN_PROGRESS), 1)
        self.assertEqual(stages[-1], IssueStage.RESOLVED)
        self.assertEqual(issue.status_history[-1].note, "City Staff resolved the issue")
        self.sink.emit.assert_awaited_once_with("issue_resolved", {"issue_id": issue_id, "staff_id": "staff-1"})

    async def test_failed_status_write_removes_resolution_image(self):
        issue_id = await self.pipeline.submit(payload())

        with patch.object(self.repo, "update", AsyncMock(side_effect=RuntimeError("down"))):
            with self.assertRaises(PersistenceError):
                await self.service.update_status(issue_id, IssueStatus.RESOLVED, "staff-1", file=photo())

        self.assertEqual(self.assets.assets, {})

    async def test_toggle_upvote(self):
        issue_id = await self.pipeline.submit(payload())

        self.assertEqual(await self.service.toggle_upvote(issue_id, "neighbour"), 1)
        issue = await self.repo.get(issue_id)
        self.assertEqual((issue.upvotes, issue.upvoted_by), (1, ["neighbour"]))

        self.assertEqual(await self.service.toggle_upvote(issue_id, "neighbour"), -1)
        issue = await self.repo.get(issue_id)
        self.assertEqual((issue.upvotes, issue.upvoted_by), (0, []))

    async def test_list_issues_filters(self):
        await self.pipeline.submit(payload(user_id="a"))
        await self.pipeline.submit(payload(user_id="b"))

        mine = await self.service.list_issues(user_id="a")
        self.assertEqual([issue.user_id for issue in mine], ["a"])
        self.assertEqual(len(await self.service.list_issues(status=IssueStatus.RESOLVED)), 0)

    async def test_subscribe_delivers_updates(self):
        seen = []
        unsubscribe = self.repo.subscribe(lambda issues: seen.append(len(issues)))

        await self.pipeline.submit(payload())
        unsubscribe()
        await self.pipeline.submit(payload())

        self.assertEqual(seen, [0, 1])


class MapIssueDataTests(unittest.TestCase):
    def test_legacy_resolved_document_gets_synthetic_history(self):
        created = datetime(2025, 1, 1, tzinfo=timezone.utc)
        updated = datetime(2025, 1, 3, tzinfo=timezone.utc)
        issue = map_issue_data("legacy", {
            "title": "Broken light",
            "category": "Streetlight",
            "status": "Resolved",
            "staff_id": "staff-9",
            "created_at": created,
            "updated_at": updated,
            "resolution_image_url": "https://img/after.jpg",
            "image_url": "https://img/before.jpg",
        })

        self.assertEqual([e.stage for e in issue.status_history],
                         [IssueStage.SUBMITTED, IssueStage.IN_PROGRESS, IssueStage.RESOLVED])
        self.assertEqual(issue.status_history[-1].changed_at, updated)
        self.assertEqual(issue.after_image_url, "https://img/after.jpg")
        self.assertEqual(issue.before_image_url, "https://img/before.jpg")
        self.assertEqual(issue.department, "Electrical")
        self.assertIsNone(issue.lat)


if __name__ == "__main__":
    unittest.main()
