import base64
import json

import pytest
from fastapi.testclient import TestClient

from audiocache.web.app import create_app

API = "/api/v1"


@pytest.fixture
def client(config, fake_runners, monkeypatch):
    monkeypatch.delenv("BASIC_AUTH_USER", raising=False)
    monkeypatch.delenv("BASIC_AUTH_PASS", raising=False)
    app = create_app(config, runner_factory=fake_runners)
    with TestClient(app) as c:
        yield c


def test_download_lifecycle(client, fake_runners):
    r = client.post(f"{API}/downloads/abc123/m4a")
    assert r.status_code == 200
    assert r.json()["status"] == "queued"
    assert r.json()["kind"] == "download"

    assert client.get(f"{API}/downloads/abc123/m4a").json()["status"] == "running"
    progress = client.get(f"{API}/downloads/abc123/m4a/progress").json()
    assert progress["worker_status"] == "running"
    assert progress["percentage"] is None

    fake_runners.named("download-abc123.m4a").finish()

    body = client.get(f"{API}/downloads/abc123/m4a").json()
    assert body["status"] == "finished"
    assert body["audio_path"].endswith("abc123/abc123.m4a")
    assert [d["media_id"] for d in client.get(f"{API}/downloads").json()] == ["abc123"]


def test_link_streams_finished_artifact(client, fake_runners):
    client.post(f"{API}/downloads/abc123/m4a")
    assert client.get(f"{API}/downloads/abc123/m4a/link").status_code == 404

    fake_runners.named("download-abc123.m4a").finish()

    r = client.get(f"{API}/downloads/abc123/m4a/link", params={"name": 'My/Song?'})
    assert r.status_code == 200
    assert r.content == b"audio"
    assert "MySong.m4a" in r.headers["content-disposition"]
    assert r.headers["content-type"].startswith("audio/mp4")

    r = client.get(f"{API}/downloads/abc123/m4a/link")
    assert "abc123.m4a" in r.headers["content-disposition"]


def test_delete_returns_success_then_not_found(client, fake_runners):
    client.post(f"{API}/downloads/abc123/m4a")
    fake_runners.named("download-abc123.m4a").finish()

    r = client.delete(f"{API}/downloads/abc123/m4a")
    assert r.status_code == 200
    assert r.json() == {"type": "success"}
    assert client.get(f"{API}/downloads/abc123/m4a").status_code == 404
    assert client.get(f"{API}/downloads/abc123/m4a/progress").status_code == 404
    assert client.delete(f"{API}/downloads/abc123/m4a").status_code == 404


def test_unknown_keys_are_not_found(client):
    assert client.get(f"{API}/transcodes/abc123/mp3").status_code == 404
    assert client.get(f"{API}/transcodes/abc123/mp3/progress").status_code == 404
    assert client.get(f"{API}/transcodes/abc123/mp3/link").status_code == 404


def test_bad_input_is_rejected(client, fake_runners):
    assert client.post(f"{API}/downloads/abc123/exe").status_code == 400
    assert client.post(f"{API}/downloads/bad.id/m4a").status_code == 400
    r = client.post(f"{API}/transcodes/abc123/m4a")
    assert r.status_code == 400
    assert "m4a" in r.json()["detail"]
    assert fake_runners.runners == []


def test_transcode_submission_creates_both_records(client, fake_runners):
    r = client.post(f"{API}/transcodes/abc123/mp3")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "queued"
    assert body["source"] == {"media_id": "abc123", "ext": "m4a"}

    assert client.get(f"{API}/downloads/abc123/m4a").json()["status"] == "running"
    assert [t["ext"] for t in client.get(f"{API}/transcodes").json()] == ["mp3"]

    fake_runners.named("download-abc123.m4a").finish()
    fake_runners.named("transcode-abc123.mp3").emit("  Duration: 00:00:10.00, start: 0.000000, bitrate: 128 kb/s")
    fake_runners.named("transcode-abc123.mp3").emit("size=  64KiB time=00:00:05.00 bitrate= 128.0kbits/s speed=10x")
    progress = client.get(f"{API}/transcodes/abc123/mp3/progress").json()
    assert progress["kind"] == "transcode"
    assert progress["percentage"] == 50.0
    assert progress["source_duration_ms"] == 10000


def test_request_transcode_summary(client, fake_runners):
    r = client.get(f"{API}/request_transcode/abc123/mp3")
    assert r.status_code == 200
    assert r.json() == {
        "download_status": "running",
        "transcode_status": "queued",
        "is_skip_transcode": False,
    }


def test_request_transcode_for_source_format_skips_transcode(client, fake_runners):
    r = client.get(f"{API}/request_transcode/abc123/m4a")
    assert r.json() == {
        "download_status": "queued",
        "transcode_status": "none",
        "is_skip_transcode": True,
    }
    assert client.get(f"{API}/transcodes").json() == []


def test_failed_download_is_reported_as_data(client, fake_runners):
    client.post(f"{API}/transcodes/abc123/wav")
    fake_runners.named("download-abc123.m4a").finish(success=False, reason="ERROR: Private video")

    download = client.get(f"{API}/downloads/abc123/m4a").json()
    assert download["status"] == "failed"
    assert download["fail_reason"] == "ERROR: Private video"
    transcode = client.get(f"{API}/transcodes/abc123/wav").json()
    assert transcode["status"] == "failed"
    assert transcode["fail_reason"] == "source download failed"


def test_metadata_from_info_json(config, fake_runners):
    media_dir = config.download_dir / "abc123"
    media_dir.mkdir(parents=True)
    (media_dir / "abc123.m4a").write_bytes(b"audio")
    (media_dir / "abc123.m4a.info.json").write_text(json.dumps({"id": "abc123", "title": "A Song"}))
    app = create_app(config, runner_factory=fake_runners)
    with TestClient(app) as c:
        r = c.get(f"{API}/metadata/abc123")
        assert r.status_code == 200
        assert r.json()["title"] == "A Song"
        assert c.get(f"{API}/metadata/zzz999").status_code == 404


def test_basic_auth_when_configured(config, fake_runners, monkeypatch):
    monkeypatch.setenv("BASIC_AUTH_USER", "admin")
    monkeypatch.setenv("BASIC_AUTH_PASS", "secret")
    app = create_app(config, runner_factory=fake_runners)
    with TestClient(app) as c:
        r = c.get(f"{API}/downloads")
        assert r.status_code == 401
        assert r.headers["www-authenticate"] == "Basic"
        bad = base64.b64encode(b"admin:wrong").decode()
        assert c.get(f"{API}/downloads", headers={"Authorization": f"Basic {bad}"}).status_code == 401
        good = base64.b64encode(b"admin:secret").decode()
        assert c.get(f"{API}/downloads", headers={"Authorization": f"Basic {good}"}).status_code == 200
