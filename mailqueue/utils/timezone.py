"""
Timezone helpers.

All scheduling comparisons happen on timezone-aware datetimes in the
configured zone. Backends such as SQLite hand back naive datetimes, which
are localized here before any comparison.
"""

from datetime import datetime
from typing import Optional
import pytz

from mailqueue.core.config import settings

TZ = pytz.timezone(settings.TIMEZONE)


def now() -> datetime:
    """Current time in the configured timezone."""
    return datetime.now(TZ)


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    """Localize naive datetimes to the configured timezone."""
    if value is None:
        return None
    if value.tzinfo is None:
        return TZ.localize(value)
    return value.astimezone(TZ)
