from __future__ import annotations

import argparse
import dataclasses
import logging
from typing import Optional

import uvicorn
from colorama import Fore, Style, init as colorama_init
from dotenv import load_dotenv

from audiocache.config import AppConfig
from audiocache.utils.logging import setup_logger
from audiocache.web.app import create_app


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Audio download/transcode cache server (yt-dlp + ffmpeg)")
    p.add_argument("--host", default="0.0.0.0", help="Interface to bind")
    p.add_argument("--port", type=int, default=8080, help="Port to listen on")
    p.add_argument("--data-dir", help="Cache root (holds downloads/ and transcodes/)")
    p.add_argument("--ytdlp-binary", help="yt-dlp executable")
    p.add_argument("--ffmpeg-binary", help="ffmpeg executable")
    p.add_argument("--download-workers", type=int, help="Concurrent downloads (0 = CPU count)")
    p.add_argument("--transcode-workers", type=int, help="Concurrent transcodes (0 = CPU count)")
    p.add_argument("--log-file", help="Also write the server log to this file")
    p.add_argument("--verbose", action="store_true", help="Log progress updates (DEBUG)")
    return p


def banner() -> None:
    print(Fore.GREEN + r"""
                   _ _                       _
  __ _ _   _  __| (_) ___   ___ __ _  ___| |__   ___
 / _` | | | |/ _` | |/ _ \ / __/ _` |/ __| '_ \ / _ \
| (_| | |_| | (_| | | (_) | (_| (_| | (__| | | |  __/
 \__,_|\__,_|\__,_|_|\___/ \___\__,_|\___|_| |_|\___|
    """ + Style.RESET_ALL)


def apply_overrides(config: AppConfig, args: argparse.Namespace) -> AppConfig:
    overrides = {
        "data_dir": args.data_dir,
        "ytdlp_binary": args.ytdlp_binary,
        "ffmpeg_binary": args.ffmpeg_binary,
        "download_concurrency": args.download_workers,
        "transcode_concurrency": args.transcode_workers,
    }
    return dataclasses.replace(config, **{k: v for k, v in overrides.items() if v is not None})


def run_cli(args: Optional[argparse.Namespace] = None) -> int:
    load_dotenv()
    colorama_init(autoreset=True)
    if args is None:
        args = build_parser().parse_args()
    logger = setup_logger(logfile=args.log_file, level=logging.DEBUG if args.verbose else logging.INFO)
    banner()

    try:
        config = apply_overrides(AppConfig.from_env(), args)
    except ValueError as e:
        print(Fore.RED + f"Invalid configuration: {e}")
        return 2

    print(Fore.CYAN + f"Cache root:  {config.data_dir.resolve()}")
    print(Fore.CYAN + f"yt-dlp:      {config.ytdlp_binary}")
    print(Fore.CYAN + f"ffmpeg:      {config.ffmpeg_binary}")
    print(Fore.CYAN + f"Workers:     {config.download_concurrency} download / {config.transcode_concurrency} transcode")
    if not config.metadata_api_key:
        print(Fore.YELLOW + "YOUTUBE_API_KEY not set: metadata only from downloaded info json")

    app = create_app(config)
    logger.info("Listening on http://%s:%d/api/v1", args.host, args.port)
    uvicorn.run(app, host=args.host, port=args.port, log_level="debug" if args.verbose else "info")
    return 0
