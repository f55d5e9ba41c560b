import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from errors import AuthorizationError, ConflictError, NotFoundError
from ledger import EventLedger
from lifecycle import Role
from models import Batch, BatchCounter, User
from schemas import BatchOut, CreateBatch, UpdateBatch
from utils import utcnow

logger = logging.getLogger(__name__)

COUNTER_NAME = "batch"


def format_batch_id(seq: int, year: Optional[int] = None) -> str:
    year = year or datetime.now().year
    return f"FARM-{year}-{seq:04d}"


def next_batch_sequence(db: Session) -> int:
    """Atomically bump the deployment-wide batch counter and return the new value.

    The UPDATE takes the row (or database) write lock until the caller
    commits, so concurrent creators serialize on it.
    """
    res = db.execute(
        update(BatchCounter).where(BatchCounter.name == COUNTER_NAME).values(value=BatchCounter.value + 1)
    )
    if res.rowcount == 0:
        # first batch of the deployment; a racing first creator fails on the primary key
        db.add(BatchCounter(name=COUNTER_NAME, value=1))
        db.flush()
        return 1
    return db.scalar(select(BatchCounter.value).where(BatchCounter.name == COUNTER_NAME))


def create_batch(db: Session, farmer: User, body: CreateBatch) -> Batch:
    if farmer.role != Role.FARMER.value:
        raise AuthorizationError("Only farmers can create batches")

    try:
        batch = Batch(
            batch_id=format_batch_id(next_batch_sequence(db)),
            title=body.title,
            variety=body.variety,
            quantity=body.quantity,
            unit=body.unit,
            harvest_date=body.harvest_date,
            location=body.location,
            images=list(body.images),
            farmer_id=farmer.id,
        )
        db.add(batch)
        db.flush()
    except IntegrityError:
        db.rollback()
        raise ConflictError("Batch id allocation collided with a concurrent request; retry") from None
    EventLedger(db).record_creation(batch, farmer, {
        "message": "Batch created and ready for distribution",
        "initial_quantity": batch.quantity,
        "harvest_date": batch.harvest_date,
        "images_count": len(batch.images),
    })
    db.commit()
    db.refresh(batch)
    logger.info("batch %s created by farmer %s (%s %s)", batch.batch_id, farmer.id, batch.quantity, batch.unit)
    return batch


def update_batch(db: Session, batch_id: str, user: User, body: UpdateBatch) -> Batch:
    batch = db.scalar(select(Batch).where(Batch.batch_id == batch_id))
    if not batch:
        raise NotFoundError("Batch not found")
    if batch.farmer_id != user.id:
        raise AuthorizationError("You can only update your own batches")

    for field, value in body.model_dump(exclude_unset=True).items():
        if value is None and field in ("title", "quantity", "unit", "harvest_date", "images"):
            continue
        setattr(batch, field, list(value) if field == "images" else value)
    batch.updated_at = utcnow()
    db.commit()
    db.refresh(batch)
    logger.info("batch %s updated by farmer %s", batch_id, user.id)
    return batch


def get_batch(db: Session, batch_id: str) -> BatchOut:
    ledger = EventLedger(db)
    batch = ledger.get_batch(batch_id)
    return BatchOut.from_batch(batch, ledger.list_events(batch_id))


def list_batches(db: Session, user: User) -> List[BatchOut]:
    """Batches visible to ``user``, newest first, each with its latest event.

    Farmers see their own batches; every other role sees all of them.
    """
    q = select(Batch)
    if user.role == Role.FARMER.value:
        q = q.where(Batch.farmer_id == user.id)
    rows = db.scalars(q.order_by(Batch.created_at.desc(), Batch.id.desc())).all()

    items = []
    ledger = EventLedger(db)
    for batch in rows:
        latest = ledger.latest_for(batch)
        items.append(BatchOut.from_batch(batch, [latest] if latest else []))
    return items
