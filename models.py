from datetime import date, datetime
from typing import Optional

from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy import (
    Integer, String, Float, Date, DateTime, Boolean, JSON, ForeignKey, UniqueConstraint,
)
from database import Base
from utils import utcnow


class User(Base):
    __tablename__ = "users"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String(120))
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    password_hash: Mapped[str] = mapped_column(String(256))
    role: Mapped[str] = mapped_column(String(20))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    batches: Mapped[list["Batch"]] = relationship("Batch", back_populates="farmer")

    def __repr__(self):
        return f"<User {self.email} {self.role}>"


class Batch(Base):
    __tablename__ = "batches"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    batch_id: Mapped[str] = mapped_column(String(32), unique=True, index=True)
    title: Mapped[str] = mapped_column(String(255))
    variety: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    quantity: Mapped[float] = mapped_column(Float)
    unit: Mapped[str] = mapped_column(String(32))
    harvest_date: Mapped[date] = mapped_column(Date)
    location: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    images: Mapped[list] = mapped_column(JSON, default=list)
    farmer_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
    farmer: Mapped[User] = relationship("User", back_populates="batches")
    events: Mapped[list["Event"]] = relationship(
        "Event", back_populates="batch", order_by="Event.seq",
    )


class Event(Base):
    __tablename__ = "events"
    __table_args__ = (UniqueConstraint("batch_pk", "seq", name="uq_events_batch_seq"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    batch_pk: Mapped[int] = mapped_column(Integer, ForeignKey("batches.id"), index=True)
    # position of the event inside its batch, starting at 1 for CREATED
    seq: Mapped[int] = mapped_column(Integer)
    actor_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"))
    actor_role: Mapped[str] = mapped_column(String(20))
    action: Mapped[str] = mapped_column(String(64))
    details: Mapped[dict] = mapped_column(JSON, default=dict)
    tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    confirmed: Mapped[bool] = mapped_column(Boolean, default=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    batch: Mapped[Batch] = relationship("Batch", back_populates="events")
    actor: Mapped[User] = relationship("User")


class MockTransaction(Base):
    __tablename__ = "mock_transactions"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    tx_hash: Mapped[str] = mapped_column(String(66), unique=True, index=True)
    batch_id: Mapped[str] = mapped_column(String(32), index=True)
    action: Mapped[str] = mapped_column(String(64))
    status: Mapped[str] = mapped_column(String(16), default="pending")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class BatchCounter(Base):
    __tablename__ = "batch_counters"
    name: Mapped[str] = mapped_column(String(32), primary_key=True)
    value: Mapped[int] = mapped_column(Integer, default=0)
