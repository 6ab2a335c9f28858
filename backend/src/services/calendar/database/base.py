# Base class for scheduling engine database models
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all scheduling engine ORM models."""

    pass
