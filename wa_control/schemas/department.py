from typing import Optional
from uuid import UUID

from pydantic import BaseModel


class AssignDepartmentRequest(BaseModel):
    department: str
    reassign: bool = False
    stage_id: Optional[str] = None


class AssignDepartmentResponse(BaseModel):
    success: bool
    conversation_id: UUID
    department: Optional[str] = None
    channel: Optional[str] = None
