"""Append-only event ledger.

Events of a batch form a total order by ``(timestamp, seq)``. Appends check
the lifecycle rules against the latest recorded position and insert with
the next per-batch ``seq``; the ``(batch, seq)`` unique constraint makes two
racing appends collide so only one of them lands. The single post-creation
mutation is :meth:`EventLedger.attach_transaction`.
"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import lifecycle
from errors import AuthorizationError, ConflictError, IllegalTransitionError, NotFoundError, ValidationError
from lifecycle import Action, Role
from models import Batch, Event, MockTransaction, User
from schemas import parse_details
from utils import utcnow

logger = logging.getLogger(__name__)


class EventLedger:
    def __init__(self, db: Session):
        self.db = db

    # ---------- reads ----------
    def get_batch(self, batch_id: str) -> Batch:
        batch = self.db.scalar(select(Batch).where(Batch.batch_id == batch_id))
        if not batch:
            raise NotFoundError("Batch not found")
        return batch

    def _events(self, batch: Batch) -> List[Event]:
        return list(self.db.scalars(
            select(Event).where(Event.batch_pk == batch.id).order_by(Event.timestamp.asc(), Event.seq.asc())
        ).all())

    def list_events(self, batch_id: str) -> List[Event]:
        return self._events(self.get_batch(batch_id))

    def latest_event(self, batch_id: str) -> Optional[Event]:
        batch = self.get_batch(batch_id)
        return self.latest_for(batch)

    def latest_for(self, batch: Batch) -> Optional[Event]:
        return self.db.scalar(
            select(Event).where(Event.batch_pk == batch.id)
            .order_by(Event.timestamp.desc(), Event.seq.desc()).limit(1)
        )

    def allowed_actions(self, batch_id: str, role: Role) -> List[str]:
        events = self.list_events(batch_id)
        position = lifecycle.derive_position(events)
        allowed = set()
        if position is not None:
            allowed = {a.value for a in lifecycle.allowed_actions(position, role)}
            allowed.add(Action.VERIFIED_ON_CHAIN.value)
        return sorted(allowed)

    # ---------- writes ----------
    def record_creation(self, batch: Batch, farmer: User, details: Dict[str, Any]) -> Event:
        """Write the CREATED event. Runs once, inside the batch-creation transaction."""
        if self.latest_for(batch) is not None:
            raise ConflictError(f"Batch {batch.batch_id} already has a creation event")
        ev = Event(
            batch_pk=batch.id,
            seq=1,
            actor_id=farmer.id,
            actor_role=Role.FARMER.value,
            action=Action.CREATED.value,
            details=parse_details(Action.CREATED.value, details),
            confirmed=False,
            timestamp=utcnow(),
        )
        self.db.add(ev)
        self.db.flush()
        return ev

    def append_event(self, batch_id: str, actor: User, action: str, details: Optional[Dict[str, Any]] = None) -> Event:
        action = (action or "").strip()
        if not action:
            raise ValidationError("Action is required")
        if len(action) > 64:
            raise ValidationError("Action must be at most 64 characters")
        if action == Action.CREATED.value:
            raise IllegalTransitionError(
                "CREATED is recorded when the batch is created and cannot be appended", action=action,
            )

        batch = self.get_batch(batch_id)
        events = self._events(batch)
        position = lifecycle.derive_position(events)
        if position is None:
            raise IllegalTransitionError(f"Batch {batch_id} has no creation event", action=action)

        if actor.role == Role.CONSUMER.value and action != Action.VERIFIED_ON_CHAIN.value:
            raise IllegalTransitionError("Consumers can only verify batches on chain", action=action)
        if lifecycle.is_gated(action):
            try:
                lifecycle.check_transition(position, actor.role, action)
            except IllegalTransitionError:
                logger.info("rejected %s by %s on %s at %s", action, actor.role, batch_id, position.status.value)
                raise

        payload = parse_details(action, details)
        tx_hash, confirmed = None, False
        if action == Action.VERIFIED_ON_CHAIN.value and payload.get("txHash"):
            tx_hash = payload["txHash"]
            confirmed = self._linked_status(batch, tx_hash) == "confirmed"

        latest = events[-1]
        now = utcnow()
        ev = Event(
            batch_pk=batch.id,
            seq=latest.seq + 1,
            actor_id=actor.id,
            actor_role=actor.role,
            action=action,
            details=payload,
            tx_hash=tx_hash,
            confirmed=confirmed,
            # never earlier than the event it follows
            timestamp=max(now, latest.timestamp),
        )
        self.db.add(ev)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.info("concurrent append lost on %s (%s by %s)", batch_id, action, actor.role)
            raise IllegalTransitionError(
                f"Batch {batch_id} was updated concurrently; reload and retry", action=action,
            ) from None
        self.db.refresh(ev)
        logger.info("event %s #%d on %s by %s (user %s)", action, ev.seq, batch_id, actor.role, actor.id)
        return ev

    def attach_transaction(self, batch_id: str, event_id: int, actor: User, tx_hash: str) -> Event:
        """Link a mock transaction to an existing event of the same batch.

        Only the actor who wrote the event may link it, and a linked hash is
        never replaced by a different one.
        """
        batch = self.get_batch(batch_id)
        event = self.db.scalar(select(Event).where(Event.id == event_id, Event.batch_pk == batch.id))
        if not event:
            raise NotFoundError("Event not found")
        if event.actor_id != actor.id:
            raise AuthorizationError("You can only link transactions to your own events")
        if event.tx_hash and event.tx_hash != tx_hash:
            raise ConflictError("Event is already linked to another transaction")
        event.tx_hash = tx_hash
        event.confirmed = self._linked_status(batch, tx_hash) == "confirmed"
        self.db.commit()
        self.db.refresh(event)
        return event

    def _linked_status(self, batch: Batch, tx_hash: str) -> str:
        tx = self.db.scalar(select(MockTransaction).where(MockTransaction.tx_hash == tx_hash))
        if not tx:
            raise NotFoundError("Transaction not found")
        if tx.batch_id != batch.batch_id:
            raise ValidationError("Transaction belongs to a different batch")
        return tx.status
