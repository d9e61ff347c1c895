import logging

import firebase_admin
from firebase_admin import credentials, firestore

from config import Config

logger = logging.getLogger(__name__)

_db = None


def get_db():
    """Return the Firestore client, initialising the Firebase app on first use."""
    global _db
    if _db is not None:
        return _db

    if not firebase_admin._apps:
        if Config.FIREBASE_CREDENTIALS:
            cred = credentials.Certificate(Config.FIREBASE_CREDENTIALS)
        else:
            cred = credentials.ApplicationDefault()
        options = {"projectId": Config.FIREBASE_PROJECT_ID} if Config.FIREBASE_PROJECT_ID else None
        firebase_admin.initialize_app(cred, options)
        logger.info("Firebase initialized (project=%s)", Config.FIREBASE_PROJECT_ID or "default")

    _db = firestore.client()
    return _db
