"""
Evidex Analyses API Routes
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, File, HTTPException, Query, Request, UploadFile
from pydantic import BaseModel, Field

from ...analysis import ErrorKind, RESULT_ANALYSIS
from ...services import Services

logger = logging.getLogger(__name__)

router = APIRouter()


# Error kinds answered with an HTTP error instead of the failed record
ERROR_STATUS_CODES = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.UNSUPPORTED_FORMAT: 415,
}


class AnalysisRequest(BaseModel):
    """Analysis options; unset fields fall back to the analysis config."""
    preferred_parser_id: Optional[str] = None
    map_to_mitre: Optional[bool] = None
    generate_timeline: Optional[bool] = None
    max_events: Optional[int] = Field(default=None, ge=0)
    timeout_seconds: Optional[float] = Field(default=None, ge=0)


class UploadResponse(BaseModel):
    upload_id: str
    file_name: str
    size_bytes: int


def _services(request: Request) -> Services:
    return request.app.state.services


async def _load_analysis(services: Services, analysis_id: str) -> Dict[str, Any]:
    active = services.orchestrator.get_active(analysis_id)
    if active is not None:
        return active.model_dump(mode="json")

    data = await services.storage.get_result(analysis_id, RESULT_ANALYSIS)
    if data is None:
        raise HTTPException(404, f"Analysis not found: {analysis_id}")
    return data


@router.post("/upload", response_model=UploadResponse)
async def upload_evidence(
    request: Request,
    file: UploadFile = File(...),
    upload_id: Optional[str] = Query(None),
):
    """Store an evidence file and return its upload id."""
    services = _services(request)
    content = await file.read()
    file_name = file.filename or "evidence"

    upload_id = await services.storage.save_file(file_name, content, upload_id=upload_id)
    return UploadResponse(upload_id=upload_id, file_name=file_name, size_bytes=len(content))


@router.post("/{upload_id}")
async def start_analysis(
    upload_id: str,
    request: Request,
    body: Optional[AnalysisRequest] = None,
    background: bool = Query(False),
):
    """
    Analyze the evidence of an upload.

    - **background**: return immediately with the analysis id instead of
      waiting for the result
    """
    services = _services(request)
    body = body or AnalysisRequest()
    options = services.default_options(**body.model_dump())

    if background:
        analysis, task = services.orchestrator.submit(upload_id, options)
        request.app.state.tasks.add(task)
        task.add_done_callback(request.app.state.tasks.discard)
        return {"analysis_id": analysis.id, "status": analysis.status.value}

    outcome = await services.orchestrator.run(upload_id, options)
    if outcome.error_kind in ERROR_STATUS_CODES:
        raise HTTPException(ERROR_STATUS_CODES[outcome.error_kind], outcome.message)

    return outcome.analysis.model_dump(mode="json")


@router.get("/{analysis_id}")
async def get_analysis(analysis_id: str, request: Request):
    """Get an analysis, running or finished."""
    return await _load_analysis(_services(request), analysis_id)


@router.get("/{analysis_id}/timeline")
async def get_timeline(analysis_id: str, request: Request):
    """Get the timeline and its statistics."""
    data = await _load_analysis(_services(request), analysis_id)
    return {
        "analysis_id": analysis_id,
        "timeline": data.get("timeline", []),
        "statistics": data.get("timeline_statistics"),
    }


@router.get("/{analysis_id}/mitre")
async def get_mitre(analysis_id: str, request: Request):
    """Get the MITRE ATT&CK mapping."""
    data = await _load_analysis(_services(request), analysis_id)
    if data.get("mitre") is None:
        raise HTTPException(404, f"No MITRE ATT&CK mapping for analysis {analysis_id}")
    return data["mitre"]


@router.get("/{analysis_id}/progress")
async def get_progress(analysis_id: str, request: Request):
    """Get the latest progress of an analysis."""
    services = _services(request)
    data = await _load_analysis(services, analysis_id)
    latest = services.notifier.latest_progress(analysis_id)

    return {
        "analysis_id": analysis_id,
        "status": data["status"],
        "progress": data["progress"],
        "message": latest["message"] if latest else None,
        "messages": services.notifier.get_messages(analysis_id),
    }


@router.post("/{analysis_id}/cancel")
async def cancel_analysis(analysis_id: str, request: Request):
    """Cancel a running analysis."""
    services = _services(request)
    if not await services.orchestrator.cancel(analysis_id):
        raise HTTPException(409, f"Analysis {analysis_id} is not running")
    return {"analysis_id": analysis_id, "status": "cancelled"}


@router.delete("/{analysis_id}")
async def delete_analysis(analysis_id: str, request: Request):
    """Delete the stored results of an analysis."""
    services = _services(request)
    if services.orchestrator.get_active(analysis_id) is not None:
        raise HTTPException(409, f"Analysis {analysis_id} is still running")

    if not await services.orchestrator.delete(analysis_id):
        raise HTTPException(404, f"Analysis not found: {analysis_id}")

    services.notifier.clear(analysis_id)
    return {"deleted": True, "analysis_id": analysis_id}
