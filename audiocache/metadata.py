from __future__ import annotations

import json
import logging
import threading
from typing import Any, Callable, Dict, Optional

import requests
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_fixed

from audiocache.models import DownloadRecord, InvalidRequest, JobKind, WorkerStatus
from audiocache.store import JobStore
from audiocache.utils.formatting import is_valid_media_id

logger = logging.getLogger(__name__)

YOUTUBE_VIDEOS_URL = "https://www.googleapis.com/youtube/v3/videos"


class MetadataNotFound(LookupError):
    pass


class MetadataService:
    """Look up media metadata: local info json first, then the YouTube Data API."""

    def __init__(
        self,
        store: JobStore,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        http_get: Optional[Callable[..., Any]] = None,
    ) -> None:
        self.store = store
        self.api_key = api_key
        self.timeout = timeout
        self._http_get = http_get or requests.get
        self._cache: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get(self, media_id: str) -> Dict[str, Any]:
        if not is_valid_media_id(media_id):
            raise InvalidRequest(f"invalid media id: {media_id!r}")
        local = self._from_info_json(media_id)
        if local is not None:
            return local
        with self._lock:
            cached = self._cache.get(media_id)
        if cached is not None:
            return cached
        if not self.api_key:
            raise MetadataNotFound(media_id)
        remote = self._fetch_remote(media_id)
        if remote is None:
            raise MetadataNotFound(media_id)
        with self._lock:
            self._cache[media_id] = remote
        return remote

    def _from_info_json(self, media_id: str) -> Optional[Dict[str, Any]]:
        for record in self.store.list(JobKind.DOWNLOAD):
            if record.media_id != media_id or record.status is not WorkerStatus.FINISHED:
                continue
            if not isinstance(record, DownloadRecord) or record.info_json_path is None:
                continue
            try:
                with open(record.info_json_path, "r", encoding="utf-8") as f:
                    data = json.load(f)
            except (OSError, ValueError) as exc:
                logger.warning("Unreadable info json %s: %s", record.info_json_path, exc)
                continue
            if isinstance(data, dict):
                return data
        return None

    @retry(
        retry=retry_if_exception_type(requests.RequestException),
        stop=stop_after_attempt(3),
        wait=wait_fixed(1),
        reraise=True,
    )
    def _fetch_remote(self, media_id: str) -> Optional[Dict[str, Any]]:
        resp = self._http_get(
            YOUTUBE_VIDEOS_URL,
            params={"part": "snippet,contentDetails", "id": media_id, "key": self.api_key},
            timeout=self.timeout,
        )
        resp.raise_for_status()
        items = resp.json().get("items") or []
        if not items:
            logger.info("No remote metadata for %s", media_id)
            return None
        return items[0]
