"""Asynchronous usage export endpoints."""

from __future__ import annotations

import logging

from fastapi import APIRouter, status
from fastapi.responses import Response
from metering_engine.models.usage import UsageExport

from api.dependencies import ExportServiceDep
from api.schemas import ExportRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/exports", tags=["exports"])


@router.post("", response_model=UsageExport, status_code=status.HTTP_202_ACCEPTED)
async def request_export(body: ExportRequest, exports: ExportServiceDep) -> UsageExport:
    """Queue an export of raw usage events; poll ``GET /exports/{id}`` for status."""
    return await exports.request_export(body.organization_id, body.to_range(), body.format)


@router.get("/{export_id}", response_model=UsageExport)
async def get_export_status(export_id: str, exports: ExportServiceDep) -> UsageExport:
    return await exports.get_export_status(export_id)


@router.get("/{export_id}/download")
async def download_export(export_id: str, exports: ExportServiceDep) -> Response:
    """Return the export content; 409 until the export has completed."""
    content, media_type, filename = await exports.get_export_content(export_id)
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
