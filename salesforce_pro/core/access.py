"""Ownership scoping shared by every seller-owned resource.

Sellers are pinned to their own rows; directors and managers act on any owner and may
narrow reads to one through the ``ownerSellerId`` query parameter.
"""

from __future__ import annotations

import uuid

from fastapi import HTTPException, status

from salesforce_pro.core.auth import AuthUser


def resolve_owner_id(user: AuthUser, requested_owner_id: uuid.UUID | None) -> uuid.UUID:
    if user.is_seller:
        return user.id
    return requested_owner_id or user.id


def seller_where(user: AuthUser, requested_owner_id: uuid.UUID | None = None) -> dict[str, uuid.UUID]:
    if user.is_seller:
        return {"owner_seller_id": user.id}
    if requested_owner_id is not None:
        return {"owner_seller_id": requested_owner_id}
    return {}


def ensure_owner(user: AuthUser, owner_seller_id: uuid.UUID, *, entity: str) -> None:
    if user.is_seller and owner_seller_id != user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"{entity} belongs to another seller")
