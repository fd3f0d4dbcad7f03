from datetime import datetime, timezone

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


def utcnow() -> datetime:
    """Horodatage UTC aware, utilisé par les defaults des colonnes."""
    return datetime.now(timezone.utc)
