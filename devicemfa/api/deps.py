"""FastAPI dependencies shared by the endpoint modules."""

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from devicemfa.database import get_db
from devicemfa.services.credential_authority import CredentialAuthority
from devicemfa.services.delivery import CodeDelivery, LoggingCodeDelivery

_default_delivery = LoggingCodeDelivery()


def get_code_delivery() -> CodeDelivery:
    """Delivery sink for out-of-band codes (override to plug in a gateway)."""
    return _default_delivery


async def get_authority(
    db: AsyncSession = Depends(get_db),
    delivery: CodeDelivery = Depends(get_code_delivery),
) -> CredentialAuthority:
    """Credential authority bound to the request's database session."""
    return CredentialAuthority(db, delivery=delivery)
