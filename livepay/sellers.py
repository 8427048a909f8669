from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from livepay.models import Seller


async def find_seller(session: AsyncSession, seller_entity_id=None, seller_user_id=None):
    """
    Canonical lookup (sellers.id) first, then the legacy one (sellers.user_id).

    Orders created before the seller entity existed only carry the seller's
    auth user id.
    """
    seller = None
    if seller_entity_id:
        seller = (await session.execute(
            select(Seller).where(Seller.id == seller_entity_id)
        )).scalar_one_or_none()
    if seller is None and seller_user_id:
        seller = (await session.execute(
            select(Seller).where(Seller.user_id == seller_user_id)
        )).scalar_one_or_none()
    return seller
