import hmac
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
import structlog
from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import Settings
from ..db import get_db
from ..errors import BadRequest, Forbidden, Unauthorized
from ..models.models import User
from ..services.users import admin_email_for, admin_phone_for, public_profile
from .passwords import get_password_hash, verify_password


log = structlog.get_logger(__name__)

http_bearer = HTTPBearer(auto_error=False)


class AccessGate:
    """Authenticates callers, issues session tokens and enforces the admin role."""

    def __init__(self, settings: Settings):
        self._secret = settings.jwt_secret
        self._algorithm = settings.jwt_algorithm
        self._ttl_seconds = settings.jwt_ttl_seconds
        self._admin_accounts = settings.admin_accounts

    # -- tokens ---------------------------------------------------------------

    def issue_token(self, user: User) -> str:
        now = datetime.now(tz=timezone.utc)
        payload = {
            "sub": str(user.id),
            "role": user.role,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=self._ttl_seconds)).timestamp()),
            "jti": str(uuid.uuid4()),
        }
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)

    def decode_token(self, token: str) -> dict:
        try:
            return jwt.decode(token, self._secret, algorithms=[self._algorithm])
        except jwt.ExpiredSignatureError:
            raise Unauthorized("Token expired")
        except jwt.InvalidTokenError:
            raise Unauthorized("Invalid token")

    def authorize(self, db: Session, token: Optional[str], required_role: Optional[str] = None) -> User:
        if not token:
            raise Unauthorized("Not authenticated")
        payload = self.decode_token(token)
        try:
            user_id = uuid.UUID(str(payload.get("sub")))
        except ValueError:
            raise Unauthorized("Invalid subject")
        user = db.get(User, user_id)
        if user is None:
            raise Unauthorized("User not found")
        if required_role == "admin" and not user.is_admin:
            raise Forbidden("Admin access required")
        return user

    # -- authentication -------------------------------------------------------

    def authenticate(self, db: Session, credentials: dict) -> dict:
        """
        Single login entry point. Dispatches on which credential fields are present:
        ``admin_username``/``admin_password`` for allow-listed admins, otherwise
        ``email``/``password`` for registered users. Both return the same contract.
        """
        if credentials.get("admin_username") and credentials.get("admin_password"):
            user = self._authenticate_admin(db, credentials["admin_username"], credentials["admin_password"])
        elif credentials.get("email") and credentials.get("password"):
            user = self._authenticate_user(db, credentials["email"], credentials["password"])
        else:
            raise BadRequest("Email & password required")
        return {
            "access_token": self.issue_token(user),
            "token_type": "bearer",
            "user": public_profile(user),
        }

    def _authenticate_user(self, db: Session, email: str, password: str) -> User:
        user = db.query(User).filter(User.email == email.strip().lower()).first()
        if not user or not verify_password(password, user.password_hash):
            log.info("login_failed", email=email.strip().lower())
            raise Unauthorized("Invalid email or password")
        return user

    def _authenticate_admin(self, db: Session, username: str, password: str) -> User:
        expected = self._admin_accounts.get(username)
        # compare against a dummy value for unknown usernames to keep timing flat
        matched = hmac.compare_digest((expected or "\0").encode("utf-8"), password.encode("utf-8"))
        if expected is None or not matched:
            log.info("admin_login_failed", username=username)
            raise Unauthorized("Invalid admin credentials")
        return self.ensure_admin_account(db, username, password)

    def ensure_admin_account(self, db: Session, username: str, password: str) -> User:
        """
        Return the admin account for ``username``, creating it on first login.
        The unique email/phone columns make concurrent first logins converge on one row.
        """
        email = admin_email_for(username)
        existing = db.query(User).filter(User.email == email, User.role == "admin").first()
        if existing:
            return existing
        user = User(
            name=f"Admin {username}",
            company_name="System Admin",
            phone=admin_phone_for(username),
            email=email,
            password_hash=get_password_hash(password),
            address="System",
            lat=0.0,
            lng=0.0,
            outlets=[],
            role="admin",
        )
        db.add(user)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            existing = db.query(User).filter(User.email == email, User.role == "admin").first()
            if existing is None:
                raise
            return existing
        log.info("admin_account_created", username=username, user_id=str(user.id))
        return user


def get_gate(request: Request) -> AccessGate:
    return request.app.state.gate


def get_current_user(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
    db: Session = Depends(get_db),
    gate: AccessGate = Depends(get_gate),
) -> User:
    return gate.authorize(db, creds.credentials if creds else None)


def require_admin(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
    db: Session = Depends(get_db),
    gate: AccessGate = Depends(get_gate),
) -> User:
    return gate.authorize(db, creds.credentials if creds else None, required_role="admin")
