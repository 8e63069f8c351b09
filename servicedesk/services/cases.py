"""
Case store for tickets and service requests.

Both kinds share one implementation parameterised by ``CaseKind``. Timeline
entries live in their own table so every append is an independent INSERT and
concurrent comments are never lost; an entry's index is its position when
ordered by id.
"""
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Type, Union

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..errors import BadRequest, Forbidden, Internal, NotFound
from ..models.models import ServiceRequest, Ticket, TimelineEntry, TimelineSeen, User


log = structlog.get_logger(__name__)

CaseModel = Union[Ticket, ServiceRequest]


@dataclass(frozen=True)
class CaseKind:
    key: str
    model: Type
    prefix: str
    noun: str
    label: str
    statuses: Tuple[str, ...]
    terminal_status: str
    initial_status: str = "Open"


TICKET = CaseKind(
    key="ticket",
    model=Ticket,
    prefix="TKT",
    noun="ticket",
    label="Ticket",
    statuses=("Open", "In-Progress", "Closed"),
    terminal_status="Closed",
)

SERVICE_REQUEST = CaseKind(
    key="service_request",
    model=ServiceRequest,
    prefix="SR",
    noun="service request",
    label="Service Request",
    statuses=("Open", "In-Progress", "Completed"),
    terminal_status="Completed",
)

CASE_KINDS = {k.key: k for k in (TICKET, SERVICE_REQUEST)}


@dataclass
class CaseChange:
    old_status: str
    new_status: str
    old_visit_at: Optional[datetime]
    new_visit_at: Optional[datetime]

    @property
    def status_changed(self) -> bool:
        return self.old_status != self.new_status

    @property
    def visit_changed(self) -> bool:
        return self.new_visit_at is not None and self.old_visit_at != self.new_visit_at


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored as UTC
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


def owner_summary(user: Optional[User]) -> Optional[Dict[str, Any]]:
    if user is None:
        return None
    return {
        "id": str(user.id),
        "name": user.name,
        "company_name": user.company_name,
        "email": user.email,
        "phone": user.phone,
        "address": user.address,
        "location": {"lat": user.lat, "lng": user.lng},
    }


def delete_cases_for_owner(db: Session, model: Type, owner_id: uuid.UUID) -> int:
    """Remove every case of ``model`` owned by ``owner_id`` along with its timeline. Caller commits."""
    kind = next(k for k in CASE_KINDS.values() if k.model is model)
    case_ids = [row[0] for row in db.query(model.id).filter(model.user_id == owner_id).all()]
    if not case_ids:
        return 0
    entry_ids = [
        row[0]
        for row in db.query(TimelineEntry.id)
        .filter(TimelineEntry.case_kind == kind.key, TimelineEntry.case_id.in_(case_ids))
        .all()
    ]
    if entry_ids:
        db.query(TimelineSeen).filter(TimelineSeen.entry_id.in_(entry_ids)).delete(synchronize_session=False)
        db.query(TimelineEntry).filter(TimelineEntry.id.in_(entry_ids)).delete(synchronize_session=False)
    count = db.query(model).filter(model.id.in_(case_ids)).delete(synchronize_session=False)
    log.info("cases_deleted_for_owner", kind=kind.key, owner_id=str(owner_id), count=count)
    return count


class CaseStore:
    REFERENCE_ATTEMPTS = 8

    def __init__(self, db: Session, kind: CaseKind):
        self.db = db
        self.kind = kind
        self.model = kind.model

    # -- identifiers ----------------------------------------------------------

    def _new_reference(self) -> str:
        stamp = datetime.now(timezone.utc).strftime("%y%m%d")
        return f"{self.kind.prefix}-{stamp}-{secrets.token_hex(3).upper()}"

    def _available_reference(self) -> str:
        for _ in range(self.REFERENCE_ATTEMPTS):
            candidate = self._new_reference()
            if not self.db.query(self.model.id).filter(self.model.reference == candidate).first():
                return candidate
        raise Internal("Could not allocate a case reference")

    # -- reads ----------------------------------------------------------------

    def _load(self, case_id) -> CaseModel:
        try:
            case_uuid = uuid.UUID(str(case_id))
        except ValueError:
            raise NotFound(f"{self.kind.label} not found")
        case = self.db.get(self.model, case_uuid)
        if case is None:
            raise NotFound(f"{self.kind.label} not found")
        return case

    def get_by_id(self, case_id, actor: User) -> CaseModel:
        case = self._load(case_id)
        if not actor.is_admin and case.user_id != actor.id:
            raise Forbidden("Access denied")
        return case

    def list_for(self, actor: User) -> List[CaseModel]:
        q = self.db.query(self.model)
        if not actor.is_admin:
            q = q.filter(self.model.user_id == actor.id)
        return q.order_by(self.model.created_at.desc()).all()

    def timeline(self, case: CaseModel) -> List[TimelineEntry]:
        return (
            self.db.query(TimelineEntry)
            .filter(TimelineEntry.case_kind == self.kind.key, TimelineEntry.case_id == case.id)
            .order_by(TimelineEntry.id.asc())
            .all()
        )

    # -- writes ---------------------------------------------------------------

    def create(self, owner: User, data: Dict[str, Any]) -> CaseModel:
        case = self.model(
            reference=self._available_reference(),
            user_id=owner.id,
            category=data["category"].strip(),
            title=data["title"].strip(),
            description=data["description"].strip(),
            images=list(data.get("images") or []),
            lat=owner.lat,
            lng=owner.lng,
            preferred_visit_at=as_utc(data.get("preferred_visit_at")),
            status=self.kind.initial_status,
        )
        self.db.add(case)
        try:
            self.db.commit()
        except IntegrityError:
            # reference collided with a concurrent insert; one more try
            self.db.rollback()
            case.reference = self._available_reference()
            self.db.add(case)
            self.db.commit()
        log.info("case_created", kind=self.kind.key, case_id=str(case.id), reference=case.reference)
        return case

    def append_timeline_entry(self, case: CaseModel, note: str, author_display_name: Optional[str]) -> TimelineEntry:
        entry = TimelineEntry(
            case_kind=self.kind.key,
            case_id=case.id,
            note=note,
            added_by=author_display_name,
        )
        self.db.add(entry)
        case.updated_at = datetime.now(timezone.utc)
        self.db.commit()
        return entry

    def mark_seen(self, case_id, timeline_index: int, user: User) -> CaseModel:
        case = self._load(case_id)
        if case.user_id != user.id:
            raise Forbidden("Access denied")
        entries = self.timeline(case)
        if timeline_index < 0 or timeline_index >= len(entries):
            raise NotFound("Timeline item not found")
        entry = entries[timeline_index]
        if any(s.user_id == user.id for s in entry.seen_by):
            return case
        self.db.add(TimelineSeen(entry_id=entry.id, user_id=user.id))
        try:
            self.db.commit()
        except IntegrityError:
            # a concurrent request recorded the same acknowledgement
            self.db.rollback()
        self.db.refresh(entry)
        return case

    def update_status_and_visit(
        self,
        case: CaseModel,
        status: Optional[str] = None,
        assigned_visit_at: Optional[datetime] = None,
    ) -> CaseChange:
        if status is not None and status not in self.kind.statuses:
            raise BadRequest(f"Invalid status. Allowed: {', '.join(self.kind.statuses)}")
        change = CaseChange(
            old_status=case.status,
            new_status=case.status,
            old_visit_at=as_utc(case.assigned_visit_at),
            new_visit_at=None,
        )
        if status:
            case.status = status
            change.new_status = status
        if assigned_visit_at is not None:
            case.assigned_visit_at = as_utc(assigned_visit_at)
            change.new_visit_at = as_utc(assigned_visit_at)
        case.updated_at = datetime.now(timezone.utc)
        self.db.commit()
        log.info(
            "case_updated",
            kind=self.kind.key,
            case_id=str(case.id),
            status=case.status,
            status_changed=change.status_changed,
            visit_changed=change.visit_changed,
        )
        return change

    # -- serialization --------------------------------------------------------

    def serialize(self, case: CaseModel, include_owner: bool = True) -> Dict[str, Any]:
        entries = self.timeline(case)
        data: Dict[str, Any] = {
            "id": str(case.id),
            "kind": self.kind.key,
            "reference": case.reference,
            "user_id": str(case.user_id),
            "category": case.category,
            "title": case.title,
            "description": case.description,
            "images": list(case.images or []),
            "location": {"lat": case.lat, "lng": case.lng},
            "preferred_visit_at": to_iso(case.preferred_visit_at),
            "assigned_visit_at": to_iso(case.assigned_visit_at),
            "status": case.status,
            "timeline": [
                {
                    "index": i,
                    "note": e.note,
                    "added_by": e.added_by,
                    "seen_by": [str(s.user_id) for s in e.seen_by],
                    "created_at": to_iso(e.created_at),
                }
                for i, e in enumerate(entries)
            ],
            "created_at": to_iso(case.created_at),
            "updated_at": to_iso(case.updated_at),
        }
        if include_owner:
            data["owner"] = owner_summary(case.owner)
        return data
