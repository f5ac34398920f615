"""Opaque links from a job to records owned by the surrounding application."""

import json

from sqlalchemy import ForeignKey, String, inspect
from sqlalchemy.orm import Mapped, mapped_column

from jobqueue.errors import InvalidOperationError
from jobqueue.models.base import Base, IdType


class RelatedEntity(Base):
    """A (type tag, external id) pair attached to a job."""

    __tablename__ = "job_related_entities"

    job_id: Mapped[int] = mapped_column(
        IdType, ForeignKey("jobs.id", ondelete="CASCADE"), primary_key=True
    )
    related_class: Mapped[str] = mapped_column(String(150), primary_key=True)
    related_id: Mapped[str] = mapped_column(String(100), primary_key=True)

    def __repr__(self) -> str:
        return f"<RelatedEntity job={self.job_id} {self.related_class}:{self.related_id}>"


def related_entity_key(entity: object) -> tuple[str, str]:
    """Derive the (type tag, id) pair for a persisted SQLAlchemy instance.

    Composite primary keys are encoded as a JSON list.
    """
    identity = inspect(entity).identity
    if identity is None:
        raise InvalidOperationError(f"The identifier for {entity!r} is empty; flush it first.")

    cls = type(entity)
    tag = f"{cls.__module__}.{cls.__qualname__}"
    if len(identity) == 1:
        return tag, str(identity[0])
    return tag, json.dumps(list(identity))
