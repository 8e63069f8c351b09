from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth.security import require_admin
from ..db import get_db
from ..services.users import UserStore


router = APIRouter(prefix="/users", tags=["users"])


@router.get("")
def list_users(db: Session = Depends(get_db), _=Depends(require_admin)):
    """All users, newest first, each with its ticket count."""
    return UserStore(db).list_users()


@router.get("/{user_id}")
def get_user(user_id: str, db: Session = Depends(get_db), _=Depends(require_admin)):
    return UserStore(db).get_user(user_id)


@router.delete("/{user_id}")
def delete_user(user_id: str, db: Session = Depends(get_db), _=Depends(require_admin)):
    # Also removes the user's tickets and service requests; admin accounts are refused
    UserStore(db).delete_user(user_id)
    return {"message": "User deleted successfully"}
