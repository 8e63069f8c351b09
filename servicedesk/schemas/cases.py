from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class CaseUpdate(BaseModel):
    status: Optional[str] = None
    assigned_visit_at: Optional[datetime] = None


class CommentCreate(BaseModel):
    note: Optional[str] = None
