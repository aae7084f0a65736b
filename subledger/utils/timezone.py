from datetime import datetime
from datetime import timezone as dt_timezone


class TimeZone:
    """UTC clock used for every persisted timestamp."""

    def __init__(self) -> None:
        self.tz_info = dt_timezone.utc

    def now(self) -> datetime:
        """Get the current time in UTC"""
        return datetime.now(self.tz_info)

    def from_timestamp(self, value: int | float | None) -> datetime | None:
        """Convert a unix timestamp (as sent by Stripe) to an aware datetime"""
        if value is None:
            return None
        return datetime.fromtimestamp(value, self.tz_info)

    def ensure_aware(self, value: datetime | None) -> datetime | None:
        """Attach UTC to naive datetimes returned by drivers that drop tzinfo"""
        if value is None or value.tzinfo is not None:
            return value
        return value.replace(tzinfo=self.tz_info)


timezone = TimeZone()
