import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, Request, status
from sqlalchemy.orm import Session

from ..db import get_db
from ..models.models import User
from ..schemas.auth import (
    ForgotPasswordRequest,
    LoginRequest,
    ProfileUpdate,
    RegisterRequest,
    ResetPasswordRequest,
    TokenResponse,
    UserProfile,
)
from ..services.notifications import NotificationDispatcher, get_dispatcher
from ..services.users import UserStore, public_profile
from .security import AccessGate, get_current_user, get_gate


log = structlog.get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/login", response_model=TokenResponse)
def login(req: LoginRequest, db: Session = Depends(get_db), gate: AccessGate = Depends(get_gate)):
    return gate.authenticate(db, req.model_dump())


@router.post("/register", response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
def register(payload: RegisterRequest, db: Session = Depends(get_db), gate: AccessGate = Depends(get_gate)):
    user = UserStore(db).register(payload.model_dump())
    return {
        "access_token": gate.issue_token(user),
        "token_type": "bearer",
        "user": public_profile(user),
    }


@router.get("/me", response_model=UserProfile)
def me(user: User = Depends(get_current_user)):
    return public_profile(user)


@router.put("/profile", response_model=UserProfile)
def update_profile(payload: ProfileUpdate, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    updated = UserStore(db).update_profile(user, payload.model_dump(exclude_unset=True))
    return public_profile(updated)


@router.post("/password/forgot")
def forgot_password(
    payload: ForgotPasswordRequest,
    request: Request,
    background: BackgroundTasks,
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    store = UserStore(db)
    token = store.start_password_reset(payload.email, request.app.state.settings.password_reset_ttl_seconds)
    if token:
        user = store.find_by_email(payload.email)
        dispatcher.dispatch(background.add_task, dispatcher.password_reset(user, token))
    else:
        log.info("password_reset_unknown_email")
    # same answer whether or not the email is registered
    return {"message": "If that email is registered, a reset link has been sent"}


@router.post("/password/reset")
def reset_password(payload: ResetPasswordRequest, db: Session = Depends(get_db)):
    UserStore(db).finish_password_reset(payload.token, payload.password)
    return {"message": "Password updated"}
