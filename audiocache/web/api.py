from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

import requests
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import FileResponse
from pydantic import BaseModel

from audiocache.metadata import MetadataNotFound, MetadataService
from audiocache.models import InvalidRequest, JobKind, JobNotFound, WorkerStatus
from audiocache.scheduler import Scheduler
from audiocache.utils.formatting import AUDIO_MEDIA_TYPES, safe_filename
from audiocache.web.basic_auth import require_basic_auth

router = APIRouter(prefix="/api/v1", dependencies=[Depends(require_basic_auth)])


class DeleteResponse(BaseModel):
    type: str = "success"


class RequestTranscodeResponse(BaseModel):
    download_status: WorkerStatus
    transcode_status: WorkerStatus
    is_skip_transcode: bool


def get_scheduler(request: Request) -> Scheduler:
    return request.app.state.scheduler


def get_metadata_service(request: Request) -> MetadataService:
    return request.app.state.metadata


@contextmanager
def _api_errors() -> Iterator[None]:
    try:
        yield
    except InvalidRequest as e:
        raise HTTPException(status_code=400, detail=str(e))
    except JobNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


def _submit(scheduler: Scheduler, kind: JobKind, media_id: str, ext: str) -> Dict[str, Any]:
    with _api_errors():
        if kind is JobKind.DOWNLOAD:
            record = scheduler.request_download(media_id, ext)
        else:
            record = scheduler.request_transcode(media_id, ext)
    return record.to_dict()


def _record(scheduler: Scheduler, kind: JobKind, media_id: str, ext: str) -> Dict[str, Any]:
    with _api_errors():
        return scheduler.get_record(kind, scheduler.make_key(media_id, ext)).to_dict()


def _progress(scheduler: Scheduler, kind: JobKind, media_id: str, ext: str) -> Dict[str, Any]:
    with _api_errors():
        key = scheduler.make_key(media_id, ext)
        # a finished record whose file vanished must not keep reporting progress
        scheduler.get_record(kind, key)
        return scheduler.get_progress(kind, key).to_dict()


def _delete(scheduler: Scheduler, kind: JobKind, media_id: str, ext: str) -> DeleteResponse:
    with _api_errors():
        scheduler.delete(kind, scheduler.make_key(media_id, ext))
    return DeleteResponse()


def _link(scheduler: Scheduler, kind: JobKind, media_id: str, ext: str, name: Optional[str]) -> FileResponse:
    with _api_errors():
        key = scheduler.make_key(media_id, ext)
        path = scheduler.artifact_path(kind, key)
    stem = safe_filename(name) if name else ""
    filename = f"{stem or key.media_id}.{key.ext}"
    return FileResponse(
        str(path),
        media_type=AUDIO_MEDIA_TYPES.get(key.ext, "application/octet-stream"),
        filename=filename,
    )


# downloads


@router.post("/downloads/{media_id}/{ext}")
def submit_download(media_id: str, ext: str, scheduler: Scheduler = Depends(get_scheduler)):
    return _submit(scheduler, JobKind.DOWNLOAD, media_id, ext)


@router.get("/downloads")
def list_downloads(scheduler: Scheduler = Depends(get_scheduler)) -> List[Dict[str, Any]]:
    return [r.to_dict() for r in scheduler.list_records(JobKind.DOWNLOAD)]


@router.get("/downloads/{media_id}/{ext}")
def get_download(media_id: str, ext: str, scheduler: Scheduler = Depends(get_scheduler)):
    return _record(scheduler, JobKind.DOWNLOAD, media_id, ext)


@router.get("/downloads/{media_id}/{ext}/progress")
def get_download_progress(media_id: str, ext: str, scheduler: Scheduler = Depends(get_scheduler)):
    return _progress(scheduler, JobKind.DOWNLOAD, media_id, ext)


@router.get("/downloads/{media_id}/{ext}/link")
def get_download_link(
    media_id: str,
    ext: str,
    name: Optional[str] = None,
    scheduler: Scheduler = Depends(get_scheduler),
):
    return _link(scheduler, JobKind.DOWNLOAD, media_id, ext, name)


@router.delete("/downloads/{media_id}/{ext}", response_model=DeleteResponse)
def delete_download(media_id: str, ext: str, scheduler: Scheduler = Depends(get_scheduler)):
    return _delete(scheduler, JobKind.DOWNLOAD, media_id, ext)


# transcodes


@router.post("/transcodes/{media_id}/{ext}")
def submit_transcode(media_id: str, ext: str, scheduler: Scheduler = Depends(get_scheduler)):
    return _submit(scheduler, JobKind.TRANSCODE, media_id, ext)


@router.get("/transcodes")
def list_transcodes(scheduler: Scheduler = Depends(get_scheduler)) -> List[Dict[str, Any]]:
    return [r.to_dict() for r in scheduler.list_records(JobKind.TRANSCODE)]


@router.get("/transcodes/{media_id}/{ext}")
def get_transcode(media_id: str, ext: str, scheduler: Scheduler = Depends(get_scheduler)):
    return _record(scheduler, JobKind.TRANSCODE, media_id, ext)


@router.get("/transcodes/{media_id}/{ext}/progress")
def get_transcode_progress(media_id: str, ext: str, scheduler: Scheduler = Depends(get_scheduler)):
    return _progress(scheduler, JobKind.TRANSCODE, media_id, ext)


@router.get("/transcodes/{media_id}/{ext}/link")
def get_transcode_link(
    media_id: str,
    ext: str,
    name: Optional[str] = None,
    scheduler: Scheduler = Depends(get_scheduler),
):
    return _link(scheduler, JobKind.TRANSCODE, media_id, ext, name)


@router.delete("/transcodes/{media_id}/{ext}", response_model=DeleteResponse)
def delete_transcode(media_id: str, ext: str, scheduler: Scheduler = Depends(get_scheduler)):
    return _delete(scheduler, JobKind.TRANSCODE, media_id, ext)


# combined


@router.get("/request_transcode/{media_id}/{ext}", response_model=RequestTranscodeResponse)
def request_transcode(media_id: str, ext: str, scheduler: Scheduler = Depends(get_scheduler)):
    """Submit whatever is needed to end up with ``media_id`` in ``ext`` and report both stages."""
    with _api_errors():
        key = scheduler.make_key(media_id, ext)
        if key.ext == scheduler.config.source_ext:
            download = scheduler.request_download(key.media_id, key.ext)
            return RequestTranscodeResponse(
                download_status=download.status,
                transcode_status=WorkerStatus.NONE,
                is_skip_transcode=True,
            )
        transcode = scheduler.request_transcode(key.media_id, key.ext)
        download = scheduler.find_record(JobKind.DOWNLOAD, transcode.source)
    return RequestTranscodeResponse(
        download_status=download.status if download is not None else WorkerStatus.NONE,
        transcode_status=transcode.status,
        is_skip_transcode=False,
    )


@router.get("/metadata/{media_id}")
def get_metadata(media_id: str, metadata: MetadataService = Depends(get_metadata_service)):
    try:
        return metadata.get(media_id)
    except InvalidRequest as e:
        raise HTTPException(status_code=400, detail=str(e))
    except MetadataNotFound:
        raise HTTPException(status_code=404, detail="Metadata not found")
    except requests.RequestException as e:
        raise HTTPException(status_code=502, detail=f"Metadata lookup failed: {e}")
