"""
Case lifecycle: creation, admin updates, comments and acknowledgements for
tickets and service requests, plus the notifications each step triggers.

Notifications are built inside the request and handed to ``schedule`` so the
SMTP work happens after the response. A committed mutation stays committed
whatever happens to its notification.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..errors import BadRequest, Forbidden
from ..models.models import User
from .cases import CaseChange, CaseKind, CaseStore
from .notifications import NotificationDispatcher, Scheduler


def has_location(user: User) -> bool:
    # (0, 0) is the registration default and counts as "not set"
    if user.lat is None or user.lng is None:
        return False
    return not (user.lat == 0 and user.lng == 0)


def change_summary(kind: CaseKind, change: CaseChange) -> str:
    """Human-readable summary of an admin update; empty when nothing worth reporting changed."""
    parts = []
    if change.visit_changed:
        parts.append(f"A visit has been scheduled for your {kind.noun}.")
    if change.status_changed:
        if change.new_status == kind.terminal_status:
            closing = f"Your {kind.noun} has been {change.new_status.lower()}"
            if change.new_status != "Completed":
                closing += " as the service is completed"
            parts.append(closing + ".")
            parts.append(f"Thank you for using our service. If you have any further issues, please create a new {kind.noun}.")
        else:
            parts.append(f"Your {kind.noun} status has been updated to: {change.new_status}.")
    if not parts:
        return ""
    if not is_final(kind, change):
        parts.append("Please check your dashboard for more details.")
    return "\n\n".join(parts)


def is_final(kind: CaseKind, change: CaseChange) -> bool:
    return change.status_changed and change.new_status == kind.terminal_status


class CaseLifecycle:
    def __init__(self, db: Session, kind: CaseKind, dispatcher: NotificationDispatcher, schedule: Scheduler):
        self.db = db
        self.kind = kind
        self.store = CaseStore(db, kind)
        self.dispatcher = dispatcher
        self.schedule = schedule

    def validate_new_case(self, owner: User, data: Dict[str, Any]) -> None:
        for field in ("category", "title", "description"):
            if not str(data.get(field) or "").strip():
                raise BadRequest("Please provide category, title and description")
        if not has_location(owner):
            raise BadRequest("Location not set. Please update your profile.")

    def create_case(self, owner: User, data: Dict[str, Any], images: Optional[List[str]] = None):
        self.validate_new_case(owner, data)

        case = self.store.create(owner, {**data, "images": images or []})

        self.dispatcher.dispatch(self.schedule, self.dispatcher.new_case_for_admin(self.kind, case, owner))
        self.dispatcher.dispatch(self.schedule, self.dispatcher.case_confirmation(self.kind, case, owner))
        return case

    def list_cases(self, actor: User):
        return self.store.list_for(actor)

    def get_case(self, actor: User, case_id):
        return self.store.get_by_id(case_id, actor)

    def update_case(
        self,
        actor: User,
        case_id,
        status: Optional[str] = None,
        assigned_visit_at: Optional[datetime] = None,
    ):
        if not actor.is_admin:
            raise Forbidden("Admin access required")
        case = self.store.get_by_id(case_id, actor)
        change = self.store.update_status_and_visit(case, status=status, assigned_visit_at=assigned_visit_at)

        summary = change_summary(self.kind, change)
        if summary and case.owner is not None:
            message = self.dispatcher.owner_update(
                self.kind,
                case,
                case.owner,
                summary,
                visit_at=change.new_visit_at,
                is_final=is_final(self.kind, change),
            )
            self.dispatcher.dispatch(self.schedule, message)
        return case

    def add_comment(self, actor: User, case_id, note: Optional[str]):
        if not (note or "").strip():
            raise BadRequest("Please provide a note")
        case = self.store.get_by_id(case_id, actor)
        self.store.append_timeline_entry(case, note.strip(), actor.name)

        if actor.is_admin and case.owner is not None:
            message = self.dispatcher.owner_update(
                self.kind, case, case.owner, note.strip(), visit_at=case.assigned_visit_at
            )
            self.dispatcher.dispatch(self.schedule, message)
        return case

    def mark_seen(self, actor: User, case_id, timeline_index: int):
        return self.store.mark_seen(case_id, timeline_index, actor)

    def serialize(self, case) -> Dict[str, Any]:
        return self.store.serialize(case)
