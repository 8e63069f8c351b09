from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, Request, UploadFile, status
from sqlalchemy.orm import Session

from ..auth.security import get_current_user, require_admin
from ..db import get_db
from ..errors import BadRequest
from ..models.models import User
from ..schemas.cases import CaseUpdate, CommentCreate
from ..services.cases import CaseKind, SERVICE_REQUEST, TICKET
from ..services.lifecycle import CaseLifecycle
from ..services.notifications import NotificationDispatcher, get_dispatcher
from ..services.uploads import discard_images, store_case_images


def _parse_visit(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    try:
        # Support both date-only and ISO datetime strings
        if len(raw) == 10:
            return datetime.fromisoformat(raw + "T00:00:00")
        return datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError as exc:
        raise BadRequest("Invalid preferred_visit_at format") from exc


def build_case_router(kind: CaseKind, prefix: str) -> APIRouter:
    router = APIRouter(prefix=prefix, tags=[prefix.strip("/")])

    def lifecycle(
        background: BackgroundTasks,
        db: Session = Depends(get_db),
        dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    ) -> CaseLifecycle:
        return CaseLifecycle(db, kind, dispatcher, background.add_task)

    @router.post("", status_code=status.HTTP_201_CREATED)
    def create_case(
        request: Request,
        category: Optional[str] = Form(None),
        title: Optional[str] = Form(None),
        description: Optional[str] = Form(None),
        preferred_visit_at: Optional[str] = Form(None),
        images: Optional[List[UploadFile]] = File(None),
        me: User = Depends(get_current_user),
        svc: CaseLifecycle = Depends(lifecycle),
    ):
        settings = request.app.state.settings
        data = {
            "category": category,
            "title": title,
            "description": description,
            "preferred_visit_at": _parse_visit(preferred_visit_at),
        }
        svc.validate_new_case(me, data)
        storage = request.app.state.storage
        stored = store_case_images(storage, kind.key, images, settings.max_case_images)
        try:
            case = svc.create_case(me, data, [img.url for img in stored])
        except Exception:
            # the case was never persisted, so nothing references these uploads
            discard_images(storage, stored)
            raise
        return svc.serialize(case)

    @router.get("")
    def list_cases(me: User = Depends(get_current_user), svc: CaseLifecycle = Depends(lifecycle)):
        return [svc.serialize(c) for c in svc.list_cases(me)]

    @router.get("/{case_id}")
    def get_case(case_id: str, me: User = Depends(get_current_user), svc: CaseLifecycle = Depends(lifecycle)):
        return svc.serialize(svc.get_case(me, case_id))

    @router.put("/{case_id}")
    def update_case(
        case_id: str,
        payload: CaseUpdate,
        admin: User = Depends(require_admin),
        svc: CaseLifecycle = Depends(lifecycle),
    ):
        case = svc.update_case(admin, case_id, status=payload.status, assigned_visit_at=payload.assigned_visit_at)
        return svc.serialize(case)

    @router.post("/{case_id}/comments")
    def add_comment(
        case_id: str,
        payload: CommentCreate,
        me: User = Depends(get_current_user),
        svc: CaseLifecycle = Depends(lifecycle),
    ):
        return svc.serialize(svc.add_comment(me, case_id, payload.note))

    @router.put("/{case_id}/replies/{timeline_index}/seen")
    def mark_reply_seen(
        case_id: str,
        timeline_index: int,
        me: User = Depends(get_current_user),
        svc: CaseLifecycle = Depends(lifecycle),
    ):
        return svc.serialize(svc.mark_seen(me, case_id, timeline_index))

    return router


tickets_router = build_case_router(TICKET, "/tickets")
service_requests_router = build_case_router(SERVICE_REQUEST, "/service-requests")
