"""Application follow-ups after an application fee: documents and cart."""

import uuid

from libs.common.logging import get_logger
from services.payments_service.models import (
    ScholarshipApplication,
    StudentProfile,
    UserCartItem,
)
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


def _document_key(doc: dict) -> tuple:
    return (doc.get("type"), doc.get("url"))


async def migrate_profile_documents(
    db: AsyncSession, *, user_id: str, application_id: uuid.UUID
) -> int:
    """Copy documents uploaded on the profile onto the application.

    Documents already on the application (same type and url) are left alone.
    Returns how many were added.
    """
    profile = (
        await db.execute(select(StudentProfile).where(StudentProfile.user_id == user_id))
    ).scalar_one_or_none()
    application = await db.get(ScholarshipApplication, application_id)
    if profile is None or application is None or not profile.documents:
        return 0

    current = list(application.documents or [])
    seen = {_document_key(doc) for doc in current}
    added = [
        {**doc, "source": "profile"}
        for doc in profile.documents
        if isinstance(doc, dict) and _document_key(doc) not in seen
    ]
    if not added:
        return 0

    # Reassign so the JSON column registers the change.
    application.documents = current + added
    await db.commit()
    logger.info(
        "Migrated %d profile documents onto application %s", len(added), application_id
    )
    return len(added)


async def clear_cart(db: AsyncSession, *, user_id: str) -> int:
    result = await db.execute(delete(UserCartItem).where(UserCartItem.user_id == user_id))
    await db.commit()
    if result.rowcount:
        logger.info("Cleared %d cart items for user %s", result.rowcount, user_id)
    return result.rowcount or 0
