# services/session_store.py
import logging
from datetime import timedelta
from typing import Optional

import redis

from config import StorageSettings
from models.upload_models import MultipartSessionRecord

logger = logging.getLogger(__name__)

KEY_PREFIX = "upload_session:"


class SessionStore:
    """Redis registry of open multipart sessions, keyed by session id"""

    def __init__(self, redis_client=None, ttl: Optional[timedelta] = None,
                 settings: Optional[StorageSettings] = None):
        settings = settings or StorageSettings()
        if redis_client is None:
            redis_client = redis.Redis(
                host=settings.redis_host,
                port=settings.redis_port,
                password=settings.redis_password or None,
                db=settings.redis_db,
                decode_responses=False,
                socket_connect_timeout=5,
                health_check_interval=30,
            )
        self.redis_client = redis_client
        self.ttl = ttl or settings.session_ttl

    def save(self, record: MultipartSessionRecord) -> None:
        self.redis_client.setex(
            f"{KEY_PREFIX}{record.session_id}",
            int(self.ttl.total_seconds()),
            record.model_dump_json(),
        )

    def get(self, session_id: str) -> Optional[MultipartSessionRecord]:
        data = self.redis_client.get(f"{KEY_PREFIX}{session_id}")
        if not data:
            return None
        return MultipartSessionRecord.model_validate_json(data)

    def delete(self, session_id: str) -> None:
        self.redis_client.delete(f"{KEY_PREFIX}{session_id}")
