from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session
import logging

from ..database import get_db
from ..exceptions import PermissionDeniedError
from ..models.user import User
from ..schemas.membership import MembershipIdentityResponse
from ..services.notification_service import get_notifier
from ..services.sequence_issuer import SequenceIssuer
from ..utils.dependencies import Actor, get_current_actor
from ..utils.rate_limiter import limiter, get_rate_limit

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/memberships", tags=["Memberships"])


@router.post("/{user_id}/identifier")
@router.post("/{user_id}/identifier/", response_model=MembershipIdentityResponse)
@limiter.limit(get_rate_limit("admin"))
async def issue_membership_identifier(
    request: Request,
    user_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    """
    Issue the member's identifier, or return the one they already hold.

    Safe to call repeatedly; only the first successful call assigns a number.
    """
    if user_id != actor.user_id and not actor.is_admin:
        raise PermissionDeniedError("You can only request your own membership ID")

    identity = SequenceIssuer(db).issue_identifier(user_id)

    if identity.newly_issued:
        user = db.query(User).filter(User.id == user_id).first()
        email = user.email if user else None
        db.commit()
        get_notifier().notify(
            email,
            "Your membership ID",
            f"Welcome aboard! Your membership ID is {identity.membership_id}.",
        )

    return MembershipIdentityResponse.model_validate(identity)
