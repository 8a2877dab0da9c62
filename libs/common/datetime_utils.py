"""Timezone-aware UTC timestamps.

Usage:
    from libs.common.datetime_utils import utc_now

    paid_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
"""

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Current time as an aware UTC datetime, for column defaults and paid-at stamps."""
    return datetime.now(timezone.utc)
