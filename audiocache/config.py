from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from audiocache.utils.formatting import normalize_ext

DEFAULT_MEDIA_URL_TEMPLATE = "https://www.youtube.com/watch?v={media_id}"


def _cpu_count() -> int:
    return max(1, os.cpu_count() or 1)


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, "") or default)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, "") or default)
    except ValueError:
        return default


@dataclass
class AppConfig:
    data_dir: Path = Path("data")
    ytdlp_binary: str = "yt-dlp"
    ffmpeg_binary: str = "ffmpeg"
    download_concurrency: int = field(default_factory=_cpu_count)
    transcode_concurrency: int = field(default_factory=_cpu_count)
    source_ext: str = "m4a"
    cancel_grace_seconds: float = 5.0
    media_url_template: str = DEFAULT_MEDIA_URL_TEMPLATE
    metadata_api_key: Optional[str] = None
    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    def __post_init__(self) -> None:
        self.data_dir = Path(self.data_dir)
        if self.download_concurrency <= 0:
            self.download_concurrency = _cpu_count()
        if self.transcode_concurrency <= 0:
            self.transcode_concurrency = _cpu_count()
        source_ext = normalize_ext(self.source_ext)
        if source_ext is None:
            raise ValueError(f"Unsupported source audio extension: {self.source_ext}")
        self.source_ext = source_ext

    @property
    def download_dir(self) -> Path:
        return self.data_dir / "downloads"

    @property
    def transcode_dir(self) -> Path:
        return self.data_dir / "transcodes"

    def media_url(self, media_id: str) -> str:
        return self.media_url_template.format(media_id=media_id)

    def seed_directories(self) -> None:
        self.download_dir.mkdir(parents=True, exist_ok=True)
        self.transcode_dir.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_env(cls) -> "AppConfig":
        """Build config from the environment (call load_dotenv() first)."""
        origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
        return cls(
            data_dir=Path(os.getenv("AUDIOCACHE_DATA_DIR", "data")),
            ytdlp_binary=os.getenv("YTDLP_BINARY", "yt-dlp"),
            ffmpeg_binary=os.getenv("FFMPEG_BINARY", "ffmpeg"),
            download_concurrency=_env_int("DOWNLOAD_CONCURRENCY", 0),
            transcode_concurrency=_env_int("TRANSCODE_CONCURRENCY", 0),
            source_ext=os.getenv("SOURCE_AUDIO_EXT", "m4a"),
            cancel_grace_seconds=_env_float("CANCEL_GRACE_SECONDS", 5.0),
            media_url_template=os.getenv("MEDIA_URL_TEMPLATE", DEFAULT_MEDIA_URL_TEMPLATE),
            metadata_api_key=os.getenv("YOUTUBE_API_KEY") or None,
            cors_origins=origins or ["*"],
        )
