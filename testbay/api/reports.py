"""REST router serving task report files behind short-lived tokens."""

from __future__ import annotations

import logging
from pathlib import Path

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import FileResponse

from testbay.execution.artifacts import reports_dir_for
from testbay.security.report_tokens import ReportTokenService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reports", tags=["reports"])


def _get_token_service(request: Request) -> ReportTokenService:
    service = getattr(request.app.state, "report_tokens", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Report access is not configured.",
        )
    return service


def _get_reports_root(request: Request) -> Path:
    return Path(getattr(request.app.state, "reports_root", "reports"))


def resolve_report_file(root: Path, organization_id: str, task_id: str, file_path: str) -> Path:
    """Resolve ``file_path`` inside the task's report directory.

    Raises ``FileNotFoundError`` for anything outside it or missing.
    """

    try:
        base = reports_dir_for(root, organization_id, task_id).resolve()
    except ValueError as exc:
        raise FileNotFoundError(file_path) from exc
    candidate = (base / file_path).resolve()
    if not candidate.is_relative_to(base):
        raise FileNotFoundError(file_path)
    if candidate.is_dir():
        candidate = candidate / "index.html"
    if not candidate.is_file():
        raise FileNotFoundError(file_path)
    return candidate


@router.get("/{organization_id}/{task_id}/{file_path:path}")
async def get_report_file(
    *,
    organization_id: str,
    task_id: str,
    file_path: str,
    token: str = Query(default=""),
    tokens: ReportTokenService = Depends(_get_token_service),
    reports_root: Path = Depends(_get_reports_root),
) -> FileResponse:
    """Stream one report file when ``token`` grants access to the task."""

    if not token or not tokens.verify(token, organization_id=organization_id, task_id=task_id):
        logger.info(
            "Rejected report access",
            extra={"organization_id": organization_id, "task_id": task_id},
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid or expired report token.",
        )
    try:
        target = resolve_report_file(reports_root, organization_id, task_id, file_path)
    except FileNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Report file not found.",
        ) from exc
    return FileResponse(target)


__all__ = ["resolve_report_file", "router"]
