from pathlib import Path

import pytest

from audiocache import cli
from audiocache.config import AppConfig


def test_config_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("AUDIOCACHE_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("DOWNLOAD_CONCURRENCY", "3")
    monkeypatch.setenv("TRANSCODE_CONCURRENCY", "not-a-number")
    monkeypatch.setenv("SOURCE_AUDIO_EXT", ".M4A")
    monkeypatch.setenv("CORS_ORIGINS", "http://a.test, http://b.test")
    monkeypatch.delenv("YOUTUBE_API_KEY", raising=False)

    config = AppConfig.from_env()

    assert config.data_dir == tmp_path
    assert config.download_dir == tmp_path / "downloads"
    assert config.download_concurrency == 3
    assert config.transcode_concurrency >= 1
    assert config.source_ext == "m4a"
    assert config.cors_origins == ["http://a.test", "http://b.test"]
    assert config.metadata_api_key is None


def test_config_rejects_unknown_source_ext():
    with pytest.raises(ValueError):
        AppConfig(source_ext="exe")


def test_media_url_template():
    config = AppConfig(media_url_template="https://media.test/{media_id}")
    assert config.media_url("abc123") == "https://media.test/abc123"


def test_parser_defaults():
    args = cli.build_parser().parse_args([])
    assert args.host == "0.0.0.0"
    assert args.port == 8080
    assert args.verbose is False


def test_overrides_only_replace_given_flags(tmp_path):
    base = AppConfig(data_dir=tmp_path / "env", ffmpeg_binary="/opt/ffmpeg", download_concurrency=2)
    args = cli.build_parser().parse_args(["--data-dir", str(tmp_path / "cli"), "--transcode-workers", "4"])
    config = cli.apply_overrides(base, args)
    assert config.data_dir == tmp_path / "cli"
    assert config.ffmpeg_binary == "/opt/ffmpeg"
    assert config.download_concurrency == 2
    assert config.transcode_concurrency == 4


def test_run_cli_serves_app(monkeypatch, tmp_path):
    served = {}

    def fake_run(app, host, port, log_level):
        served.update(app=app, host=host, port=port, log_level=log_level)

    monkeypatch.setattr(cli.uvicorn, "run", fake_run)
    monkeypatch.chdir(tmp_path)
    args = cli.build_parser().parse_args(["--data-dir", str(tmp_path / "data"), "--port", "9999"])

    assert cli.run_cli(args) == 0
    assert served["port"] == 9999
    assert served["app"].state.config.data_dir == Path(tmp_path / "data")
    assert (tmp_path / "data" / "downloads").is_dir()
    assert (tmp_path / "data" / "transcodes").is_dir()
