import logging
import os
from typing import Optional

import firebase_admin
from firebase_admin import credentials, firestore

from .settings import Settings, settings as default_settings
from .storage import DualStore, FirestoreBackend, JsonFileBackend

logger = logging.getLogger(__name__)


def init_firestore(cfg: Settings):
    """Return a Firestore client, or None when no service account is configured."""
    path = (cfg.FIREBASE_CREDENTIALS_PATH or "").strip()
    if not path:
        logger.info("Firestore not configured; using file store only")
        return None
    if not os.path.exists(path):
        logger.warning("Firestore credentials not found at %s; using file store only", path)
        return None

    # Initialize Firebase only once
    if not firebase_admin._apps:
        cred = credentials.Certificate(path)
        firebase_admin.initialize_app(cred)
    return firestore.client()


def build_store(cfg: Optional[Settings] = None, client=None) -> DualStore:
    """Select the backends once at startup."""
    cfg = cfg or default_settings
    if client is None:
        client = init_firestore(cfg)
    primary = FirestoreBackend(client, timeout=cfg.FIRESTORE_TIMEOUT_SECONDS) if client is not None else None
    return DualStore(primary=primary, fallback=JsonFileBackend(base_dir=cfg.DATA_DIR))
