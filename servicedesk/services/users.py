"""
Credential store: user records, profile updates, password reset tokens and
admin-side user management.
"""
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..auth.passwords import get_password_hash
from ..errors import BadRequest, Conflict, Forbidden, NotFound
from ..models.models import ServiceRequest, Ticket, User
from .cases import as_utc, delete_cases_for_owner, to_iso


log = structlog.get_logger(__name__)

REQUIRED_PROFILE_FIELDS = ("name", "company_name", "phone", "email", "password", "address")

# contact details given to provisioned admin accounts; never available to registrations
ADMIN_EMAIL_DOMAIN = "system.local"
ADMIN_PHONE_PREFIX = "admin-"


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def admin_email_for(username: str) -> str:
    return f"admin-{username}@{ADMIN_EMAIL_DOMAIN}"


def admin_phone_for(username: str) -> str:
    return f"{ADMIN_PHONE_PREFIX}{username}"


def _check_not_reserved(email: Optional[str] = None, phone: Optional[str] = None) -> None:
    if email and normalize_email(email).endswith("@" + ADMIN_EMAIL_DOMAIN):
        raise BadRequest("This email address is reserved")
    if phone and phone.strip().lower().startswith(ADMIN_PHONE_PREFIX):
        raise BadRequest("This phone number is reserved")


def _clean_outlets(outlets: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    cleaned = []
    for o in outlets or []:
        name = (o.get("outlet_name") or "").strip()
        address = (o.get("address") or "").strip()
        if not name or not address:
            raise BadRequest("Each outlet needs a name and an address")
        location = o.get("location") or {}
        cleaned.append({
            "outlet_name": name,
            "address": address,
            "location": {
                "lat": float(location.get("lat") or 0.0),
                "lng": float(location.get("lng") or 0.0),
            },
        })
    return cleaned


def public_profile(user: User) -> Dict[str, Any]:
    return {
        "id": str(user.id),
        "name": user.name,
        "company_name": user.company_name,
        "email": user.email,
        "phone": user.phone,
        "address": user.address,
        "location": {"lat": user.lat, "lng": user.lng},
        "outlets": user.outlets or [],
        "role": user.role,
        "created_at": to_iso(user.created_at),
        "updated_at": to_iso(user.updated_at),
    }


class UserStore:
    def __init__(self, db: Session):
        self.db = db

    def find_by_id(self, user_id) -> Optional[User]:
        try:
            user_uuid = uuid.UUID(str(user_id))
        except ValueError:
            return None
        return self.db.get(User, user_uuid)

    def find_by_email(self, email: str) -> Optional[User]:
        return self.db.query(User).filter(User.email == normalize_email(email)).first()

    def _phone_taken(self, phone: str, exclude_id: Optional[uuid.UUID] = None) -> bool:
        q = self.db.query(User).filter(User.phone == phone)
        if exclude_id is not None:
            q = q.filter(User.id != exclude_id)
        return q.first() is not None

    def register(self, profile: Dict[str, Any]) -> User:
        missing = [f for f in REQUIRED_PROFILE_FIELDS if not str(profile.get(f) or "").strip()]
        if missing:
            raise BadRequest("Please provide all required fields")

        email = normalize_email(profile["email"])
        phone = profile["phone"].strip()
        _check_not_reserved(email=email, phone=phone)
        if self.find_by_email(email):
            raise Conflict("User already exists with this email")
        if self._phone_taken(phone):
            raise Conflict("User already exists with this phone number")

        lat, lng = profile.get("lat"), profile.get("lng")
        if lat is None or lng is None:
            lat, lng = 0.0, 0.0

        user = User(
            name=profile["name"].strip(),
            company_name=profile["company_name"].strip(),
            phone=phone,
            email=email,
            password_hash=get_password_hash(profile["password"]),
            address=profile["address"].strip(),
            lat=float(lat),
            lng=float(lng),
            outlets=_clean_outlets(profile.get("outlets")),
            role="user",
        )
        self.db.add(user)
        try:
            self.db.commit()
        except IntegrityError:
            # lost a race with a concurrent registration
            self.db.rollback()
            raise Conflict("User already exists with this email or phone number")
        log.info("user_registered", user_id=str(user.id))
        return user

    def update_profile(self, user: User, patch: Dict[str, Any]) -> User:
        # email is fixed at registration
        if patch.get("name"):
            user.name = patch["name"].strip()
        if patch.get("phone"):
            phone = patch["phone"].strip()
            _check_not_reserved(phone=phone)
            if self._phone_taken(phone, exclude_id=user.id):
                raise Conflict("Phone number already in use")
            user.phone = phone
        if patch.get("company_name"):
            user.company_name = patch["company_name"].strip()
        if patch.get("address"):
            user.address = patch["address"].strip()
        location = patch.get("location") or {}
        if location.get("lat") is not None and location.get("lng") is not None:
            user.lat = float(location["lat"])
            user.lng = float(location["lng"])
        if patch.get("outlets") is not None:
            user.outlets = _clean_outlets(patch["outlets"])
        user.updated_at = datetime.now(timezone.utc)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise Conflict("Phone number already in use")
        self.db.refresh(user)
        return user

    # -- password reset -------------------------------------------------------

    def start_password_reset(self, email: str, ttl_seconds: int) -> Optional[str]:
        user = self.find_by_email(email)
        if user is None or user.is_admin:
            return None
        token = secrets.token_urlsafe(32)
        user.reset_password_token = token
        user.reset_password_expires = datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds)
        self.db.commit()
        return token

    def finish_password_reset(self, token: str, new_password: str) -> User:
        if not token or not new_password:
            raise BadRequest("Token and new password are required")
        user = self.db.query(User).filter(User.reset_password_token == token).first()
        expires_at = as_utc(user.reset_password_expires) if user else None
        if user is None or expires_at is None or expires_at < datetime.now(timezone.utc):
            raise BadRequest("Invalid or expired reset token")
        user.password_hash = get_password_hash(new_password)
        user.reset_password_token = None
        user.reset_password_expires = None
        user.updated_at = datetime.now(timezone.utc)
        self.db.commit()
        log.info("password_reset_completed", user_id=str(user.id))
        return user

    # -- admin ----------------------------------------------------------------

    def list_users(self) -> List[Dict[str, Any]]:
        counts = dict(
            self.db.query(Ticket.user_id, func.count(Ticket.id)).group_by(Ticket.user_id).all()
        )
        rows = self.db.query(User).order_by(User.created_at.desc()).all()
        return [{**public_profile(u), "ticket_count": int(counts.get(u.id, 0))} for u in rows]

    def get_user(self, user_id) -> Dict[str, Any]:
        user = self.find_by_id(user_id)
        if user is None:
            raise NotFound("User not found")
        ticket_count = self.db.query(func.count(Ticket.id)).filter(Ticket.user_id == user.id).scalar() or 0
        return {**public_profile(user), "ticket_count": int(ticket_count)}

    def delete_user(self, user_id) -> None:
        user = self.find_by_id(user_id)
        if user is None:
            raise NotFound("User not found")
        if user.is_admin:
            raise Forbidden("Cannot delete admin users")
        for model in (Ticket, ServiceRequest):
            delete_cases_for_owner(self.db, model, user.id)
        self.db.delete(user)
        self.db.commit()
        log.info("user_deleted", user_id=str(user_id))
