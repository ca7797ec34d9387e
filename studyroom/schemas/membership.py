from pydantic import BaseModel
from typing import Optional
from datetime import datetime


class MembershipIdentityResponse(BaseModel):
    user_id: str
    membership_id: str
    period_key: str
    sequence: int
    issued_at: Optional[datetime] = None
    newly_issued: bool = False

    class Config:
        from_attributes = True
