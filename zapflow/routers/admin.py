"""Admin endpoints for WhatsApp session maintenance."""

import os
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from zapflow.database import get_db
from zapflow.schemas.webhook import FixContactNamesResponse, MergeDuplicatesResponse
from zapflow.services.merge_service import fix_contact_names, merge_duplicate_conversations
from zapflow.services.session_service import get_session

router = APIRouter(prefix="/admin", tags=["admin"])


class VersionResponse(BaseModel):
    version: str
    git_commit: Optional[str] = None
    build_time: Optional[str] = None


def _require_admin_token(provided: Optional[str]) -> None:
    expected = os.environ.get("ADMIN_TOKEN")
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="ADMIN_TOKEN not configured",
        )
    if not provided or provided != expected:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin token")


def _get_live_session(db: Session, session_id: str):
    session = get_session(db, session_id)
    if session is None or session.deleted_at is not None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    return session


@router.post("/whatsapp/sessions/{session_id}/merge-duplicates", response_model=MergeDuplicatesResponse)
def merge_duplicates(
    session_id: str,
    dry_run: bool = Query(default=False),
    db: Session = Depends(get_db),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    _require_admin_token(x_admin_token)
    session = _get_live_session(db, session_id)
    report = merge_duplicate_conversations(db, session, dry_run=dry_run)
    return MergeDuplicatesResponse(
        success=True,
        merged=report.merged,
        dry_run=report.dry_run,
        groups=[group.__dict__ for group in report.groups],
    )


@router.post("/whatsapp/sessions/{session_id}/fix-contact-names", response_model=FixContactNamesResponse)
def repair_contact_names(
    session_id: str,
    db: Session = Depends(get_db),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    _require_admin_token(x_admin_token)
    session = _get_live_session(db, session_id)
    report = fix_contact_names(db, session)
    return FixContactNamesResponse(
        success=True,
        message=f"Contact names {report.summary}",
        fixed=report.fixed,
        cleared=report.cleared,
        already_ok=report.already_ok,
        skipped=report.skipped,
    )


@router.get("/version", response_model=VersionResponse)
async def get_version():
    """Return build metadata for diagnostics."""
    return VersionResponse(
        version=os.environ.get("APP_VERSION", "unknown"),
        git_commit=os.environ.get("GIT_COMMIT"),
        build_time=os.environ.get("BUILD_TIME"),
    )
