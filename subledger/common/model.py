import uuid

from datetime import datetime
from typing import Annotated

import sqlalchemy as sa

from sqlalchemy.orm import DeclarativeBase, MappedAsDataclass, mapped_column

from subledger.utils.timezone import timezone


def uuid4_str() -> str:
    """Generate a string primary key"""
    return str(uuid.uuid4())


# String UUID primary key shared by every billing table
id_key = Annotated[
    str,
    mapped_column(sa.String(36), primary_key=True, index=True, comment='Primary key'),
]


class TimeZone(sa.TypeDecorator[datetime]):
    """Timezone-aware datetime column that always reads back in UTC"""

    impl = sa.DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: sa.Dialect) -> datetime | None:
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.tz_info)
        return value

    def process_result_value(self, value: datetime | None, dialect: sa.Dialect) -> datetime | None:
        return timezone.ensure_aware(value)


class Base(MappedAsDataclass, DeclarativeBase):
    """Declarative base for all ledger tables"""

    __abstract__ = True
