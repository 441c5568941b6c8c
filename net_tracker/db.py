"""Database utilities and ORM models."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, List

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, create_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, sessionmaker


class Base(DeclarativeBase):
    pass


class Measurement(Base):
    """One completed speedtest run."""
    __tablename__ = "measurements"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # Start record timestamp, naive UTC
    timestamp: Mapped[datetime] = mapped_column(DateTime, index=True)
    server_json: Mapped[str] = mapped_column(Text)

    records: Mapped[List["MeasurementRecord"]] = relationship(
        "MeasurementRecord",
        back_populates="measurement",
        order_by="MeasurementRecord.id",
        cascade="all, delete-orphan",
    )


class MeasurementRecord(Base):
    """A single start/ping/download/upload/result record of a measurement."""
    __tablename__ = "records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    measurement_id: Mapped[int] = mapped_column(Integer, ForeignKey("measurements.id"), index=True)
    kind: Mapped[str] = mapped_column(String(16), index=True)  # 'start', 'ping', 'download', 'upload', 'result'
    details_json: Mapped[str] = mapped_column(Text)

    measurement: Mapped["Measurement"] = relationship("Measurement", back_populates="records")


def init_db(data_dir: Path, database_name: str = "results.db") -> sessionmaker:
    db_path = data_dir / database_name
    engine = create_engine(f"sqlite:///{db_path}", future=True)
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, future=True, expire_on_commit=False)


@contextmanager
def get_session(Session: sessionmaker) -> Iterator:
    session = Session()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
