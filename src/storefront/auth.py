from dataclasses import dataclass
from typing import Optional

from fastapi import Header

from storefront.errors import Forbidden, Unauthorized
from storefront.schemas import Order


@dataclass(frozen=True)
class Identity:
    user_id: str
    is_admin: bool = False


async def get_identity(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> Identity:
    # the gateway authenticates the caller and forwards who it is
    if not x_user_id:
        raise Unauthorized()
    return Identity(user_id=x_user_id, is_admin=(x_user_role or "").lower() == "admin")


def ensure_can_access(identity: Identity, order: Order) -> None:
    if not identity.is_admin and order.user_id != identity.user_id:
        raise Forbidden("Not authorized to access this order")
