"""Mock blockchain: submission now, confirmation later.

``submit`` records a pending transaction and returns its hash at once. The
outcome is decided by a one-shot task that fires after a random delay and
flips the status to ``confirmed`` (90%) or ``failed`` (10%). Tasks live in a
:class:`TaskRegistry` driven by a clock, so tests can use a
:class:`ManualClock` and ``advance()`` instead of sleeping.
"""
import heapq
import itertools
import logging
import random
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from errors import NotFoundError
from ledger import EventLedger
from lifecycle import Action
from models import Event, MockTransaction, User
from schemas import TxOut
from utils import utcnow

logger = logging.getLogger(__name__)

EXPLORER_URL = "https://mockchain.local/tx/{}"
CONFIRM_PROBABILITY = 0.9
PENDING, CONFIRMED, FAILED = "pending", "confirmed", "failed"


def explorer_url(tx_hash: str) -> str:
    return EXPLORER_URL.format(tx_hash)


def tx_out(tx: MockTransaction) -> TxOut:
    return TxOut(
        tx_hash=tx.tx_hash,
        status=tx.status,
        batch_id=tx.batch_id,
        action=tx.action,
        created_at=tx.created_at,
        confirmed_at=tx.confirmed_at,
        explorer_url=explorer_url(tx.tx_hash),
    )


# ---------- scheduling ----------
class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@dataclass(order=True)
class ScheduledTask:
    due: float
    order: int
    name: str = field(compare=False)
    fn: Callable[[], None] = field(compare=False, repr=False)
    cancelled: bool = field(default=False, compare=False)
    done: bool = field(default=False, compare=False)


class TaskRegistry:
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self._heap: List[ScheduledTask] = []
        self._counter = itertools.count()
        self._lock = threading.Lock()

    def schedule(self, delay: float, fn: Callable[[], None], name: str = "task") -> ScheduledTask:
        task = ScheduledTask(self.clock() + delay, next(self._counter), name, fn)
        with self._lock:
            heapq.heappush(self._heap, task)
        return task

    def cancel(self, task: ScheduledTask) -> bool:
        with self._lock:
            if task.done or task.cancelled:
                return False
            task.cancelled = True
            return True

    def pending(self) -> int:
        with self._lock:
            return sum(1 for t in self._heap if not t.cancelled)

    def next_due(self) -> Optional[float]:
        with self._lock:
            live = [t.due for t in self._heap if not t.cancelled]
        return min(live) if live else None

    def run_due(self) -> int:
        """Run every task whose due time has passed. Returns how many ran."""
        ran = 0
        while True:
            with self._lock:
                if not self._heap or self._heap[0].due > self.clock():
                    break
                task = heapq.heappop(self._heap)
                if task.cancelled:
                    continue
                task.done = True
            try:
                task.fn()
            except Exception:
                logger.exception("scheduled task %s failed", task.name)
            ran += 1
        return ran

    def advance(self, seconds: float) -> int:
        """Move a ManualClock forward and run what became due."""
        self.clock.advance(seconds)
        return self.run_due()


class TaskRunner(threading.Thread):
    """Background thread that drives a registry on the real clock."""

    def __init__(self, registry: TaskRegistry, interval: float = 0.25):
        super().__init__(name="mockchain-runner", daemon=True)
        self.registry = registry
        self.interval = interval
        self._stop_event = threading.Event()

    def run(self):
        while not self._stop_event.is_set():
            self.registry.run_due()
            self._stop_event.wait(self.interval)

    def stop(self, timeout: float = 2.0):
        self._stop_event.set()
        self.join(timeout)


# ---------- engine ----------
class ConfirmationEngine:
    def __init__(
        self,
        session_factory: sessionmaker,
        registry: TaskRegistry,
        rng: Optional[random.Random] = None,
        min_delay_ms: int = 5000,
        max_delay_ms: int = 15000,
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.rng = rng or random.SystemRandom()
        self.min_delay_ms = min_delay_ms
        self.max_delay_ms = max_delay_ms

    def new_hash(self) -> str:
        return "0x%064x" % self.rng.getrandbits(256)

    def confirmation_delay(self) -> float:
        """Seconds until the outcome is decided, uniform in [min, max)."""
        span = self.max_delay_ms - self.min_delay_ms
        return (self.min_delay_ms + self.rng.random() * span) / 1000.0

    def submit(self, db: Session, batch_id: str, action: str) -> MockTransaction:
        EventLedger(db).get_batch(batch_id)
        tx = MockTransaction(tx_hash=self.new_hash(), batch_id=batch_id, action=action, status=PENDING)
        db.add(tx)
        db.commit()
        db.refresh(tx)
        delay = self.confirmation_delay()
        self.registry.schedule(delay, lambda h=tx.tx_hash: self._settle(h), name=f"confirm {tx.tx_hash}")
        logger.info("tx %s submitted for %s/%s, settles in %.1fs", tx.tx_hash, batch_id, action, delay)
        return tx

    def _settle(self, tx_hash: str):
        confirmed = self.rng.random() < CONFIRM_PROBABILITY
        values = {"status": CONFIRMED, "confirmed_at": utcnow()} if confirmed else {"status": FAILED}
        try:
            with self.session_factory() as db:
                # only a still-pending transaction moves, so a force-confirm is never undone
                res = db.execute(
                    update(MockTransaction)
                    .where(MockTransaction.tx_hash == tx_hash, MockTransaction.status == PENDING)
                    .values(**values)
                )
                db.commit()
        except Exception:
            logger.exception("mock confirmation of %s failed", tx_hash)
            return
        if res.rowcount == 0:
            logger.warning("tx %s vanished or already settled before confirmation", tx_hash)
        else:
            logger.info("tx %s %s", tx_hash, values["status"])

    def get_status(self, db: Session, tx_hash: str) -> MockTransaction:
        tx = db.scalar(select(MockTransaction).where(MockTransaction.tx_hash == tx_hash))
        if not tx:
            raise NotFoundError("Transaction not found")
        return tx

    def force_confirm(self, db: Session, tx_hash: str) -> MockTransaction:
        tx = self.get_status(db, tx_hash)
        tx.status = CONFIRMED
        tx.confirmed_at = utcnow()
        db.commit()
        db.refresh(tx)
        logger.info("tx %s force-confirmed", tx_hash)
        return tx

    def list_transactions(self, db: Session) -> List[MockTransaction]:
        return list(db.scalars(
            select(MockTransaction).order_by(MockTransaction.created_at.desc(), MockTransaction.id.desc())
        ).all())

    def verify_on_chain(self, db: Session, batch_id: str, actor: User):
        """Submit, confirm at once and record a VERIFIED_ON_CHAIN event carrying the hash."""
        tx = self.submit(db, batch_id, "CONSUMER_VERIFY")
        tx = self.force_confirm(db, tx.tx_hash)
        event: Event = EventLedger(db).append_event(
            batch_id, actor, Action.VERIFIED_ON_CHAIN.value,
            {"txHash": tx.tx_hash, "explorerUrl": explorer_url(tx.tx_hash)},
        )
        return tx, event
