import pytest
import requests

from audiocache.metadata import YOUTUBE_VIDEOS_URL, MetadataNotFound, MetadataService
from audiocache.models import InvalidRequest
from audiocache.store import JobStore


class DummyResponse:
    def __init__(self, payload, status=200):
        self.payload = payload
        self.status = status

    def raise_for_status(self):
        if self.status >= 400:
            raise requests.HTTPError(f"status {self.status}")

    def json(self):
        return self.payload


class DummyHttp:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def __call__(self, url, params=None, timeout=None):
        self.calls.append((url, params, timeout))
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


@pytest.fixture
def store(tmp_path):
    s = JobStore(tmp_path / "downloads", tmp_path / "transcodes")
    s.rebuild()
    return s


def test_remote_lookup_is_memoised(store):
    http = DummyHttp([DummyResponse({"items": [{"id": "abc123", "snippet": {"title": "Hi"}}]})])
    service = MetadataService(store, api_key="k", http_get=http)

    first = service.get("abc123")
    second = service.get("abc123")

    assert first["snippet"]["title"] == "Hi"
    assert second is first
    assert len(http.calls) == 1
    url, params, timeout = http.calls[0]
    assert url == YOUTUBE_VIDEOS_URL
    assert params["id"] == "abc123"
    assert params["key"] == "k"
    assert timeout == service.timeout


def test_remote_lookup_retries_transient_errors(store):
    http = DummyHttp([requests.ConnectionError("reset"), DummyResponse({"items": [{"id": "abc123"}]})])
    service = MetadataService(store, api_key="k", http_get=http)
    assert service.get("abc123") == {"id": "abc123"}
    assert len(http.calls) == 2


def test_remote_lookup_without_items_is_not_found(store):
    service = MetadataService(store, api_key="k", http_get=DummyHttp([DummyResponse({"items": []})]))
    with pytest.raises(MetadataNotFound):
        service.get("abc123")


def test_without_api_key_only_local_data_is_used(store):
    http = DummyHttp([])
    service = MetadataService(store, api_key=None, http_get=http)
    with pytest.raises(MetadataNotFound):
        service.get("abc123")
    assert http.calls == []


def test_invalid_media_id(store):
    with pytest.raises(InvalidRequest):
        MetadataService(store).get("../../etc/passwd")
