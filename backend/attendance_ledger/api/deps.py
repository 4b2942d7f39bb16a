"""
Request dependencies. Authentication happens upstream; the gateway passes the
authenticated identity and tenant in headers.
"""

from fastapi import Depends, Header, HTTPException, status

from attendance_ledger.core.exceptions import ErrorCategory, LedgerError
from attendance_ledger.models.user import ActorKind
from attendance_ledger.schemas.attendance import Actor


STATUS_BY_CATEGORY = {
    ErrorCategory.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorCategory.AUTHORIZATION: status.HTTP_403_FORBIDDEN,
    ErrorCategory.NOT_FOUND: status.HTTP_404_NOT_FOUND,
}


async def get_actor(
    x_actor_id: int = Header(..., description="Authenticated actor id"),
    x_actor_kind: ActorKind = Header(..., description="teacher, admin or system")
) -> Actor:
    return Actor(kind=x_actor_kind, id=x_actor_id)


async def get_school_id(x_school_id: int = Header(..., description="Tenant school id")) -> int:
    return x_school_id


async def require_admin(actor: Actor = Depends(get_actor)) -> Actor:
    if actor.kind == ActorKind.TEACHER:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )
    return actor


def http_status_for(error: LedgerError) -> int:
    return STATUS_BY_CATEGORY.get(error.category, status.HTTP_500_INTERNAL_SERVER_ERROR)
