from typing import List, Optional


class CivicFixError(Exception):
    """Base class for every error raised by the reporting core."""


class ValidationError(CivicFixError):
    """The payload is missing required fields. Raised before any network call."""

    def __init__(self, missing: List[str], message: Optional[str] = None):
        self.missing = list(missing)
        super().__init__(message or f"Missing or invalid fields: {', '.join(self.missing)}")


class SubmissionError(CivicFixError):
    code = "submission-failed"

    def __init__(self, message: str, cause: Optional[BaseException] = None, code: Optional[str] = None):
        super().__init__(message)
        if code:
            self.code = code
        self.cause = cause


class AttachmentUploadError(SubmissionError):
    code = "storage-upload-failed"


class PersistenceError(SubmissionError):
    code = "firestore-write-failed"


class SubmissionCancelled(SubmissionError):
    code = "submission-cancelled"


class DuplicateCheckError(CivicFixError):
    """Raised by the detector; callers treat it as "no duplicate found"."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class OfflineQueueError(CivicFixError):
    """Local draft storage is unavailable, so nothing was queued."""


class IssueNotFoundError(CivicFixError):
    def __init__(self, issue_id: str):
        super().__init__(f"Issue not found: {issue_id}")
        self.issue_id = issue_id


class ResolutionImageRequiredError(CivicFixError):
    def __init__(self):
        super().__init__("An after image is required to resolve this issue.")
