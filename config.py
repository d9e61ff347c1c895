import os

from dotenv import load_dotenv

load_dotenv()

basedir = os.path.abspath(os.path.dirname(__file__))


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Config:
    # ============ FIREBASE ============
    FIREBASE_CREDENTIALS = os.environ.get('FIREBASE_CREDENTIALS')
    FIREBASE_PROJECT_ID = os.environ.get('FIREBASE_PROJECT_ID')
    ISSUES_COLLECTION = os.environ.get('ISSUES_COLLECTION', 'issues')
    EVENTS_COLLECTION = os.environ.get('EVENTS_COLLECTION', 'events')

    # ============ CLOUDINARY ============
    CLOUDINARY_CLOUD_NAME = os.environ.get('CLOUDINARY_CLOUD_NAME')
    CLOUDINARY_API_KEY = os.environ.get('CLOUDINARY_API_KEY')
    CLOUDINARY_API_SECRET = os.environ.get('CLOUDINARY_API_SECRET')

    # ============ DUPLICATE DETECTION ============
    DUPLICATE_RADIUS_METERS = float(os.environ.get('DUPLICATE_RADIUS_METERS', 60))
    DUPLICATE_WINDOW_MINUTES = float(os.environ.get('DUPLICATE_WINDOW_MINUTES', 60))
    DUPLICATE_QUERY_LIMIT = int(os.environ.get('DUPLICATE_QUERY_LIMIT', 100))
    DUPLICATE_CHECK_TIMEOUT_SECONDS = float(os.environ.get('DUPLICATE_CHECK_TIMEOUT_SECONDS', 10))

    # ============ OFFLINE QUEUE ============
    OFFLINE_QUEUE_PATH = os.environ.get('OFFLINE_QUEUE_PATH') or \
                         os.path.join(basedir, 'data', 'offline_issues.json')
    OFFLINE_QUEUE_KEY = os.environ.get('OFFLINE_QUEUE_KEY', 'civicfix-offline-issues')
    START_ONLINE = _env_bool('START_ONLINE', True)

    # ============ OBSERVABILITY ============
    TELEMETRY_SINK = os.environ.get('TELEMETRY_SINK', 'log')  # log / firestore / none
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').upper()

    # ============ HTTP ============
    ALLOWED_ORIGINS = [
        origin.strip()
        for origin in os.environ.get('ALLOWED_ORIGINS', '*').split(',')
        if origin.strip()
    ]
