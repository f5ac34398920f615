"""Cron job model - last-run bookkeeping for periodic commands."""

from datetime import datetime

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from jobqueue.models.base import Base


class CronJob(Base):
    """When a periodic command last ran."""

    __tablename__ = "cron_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    command: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)
    last_run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<CronJob {self.command!r} last_run_at={self.last_run_at}>"
