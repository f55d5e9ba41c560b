"""Public trace projection of a batch. Read-only; nothing here is stored."""
from sqlalchemy.orm import Session

import lifecycle
from config import settings
from ledger import EventLedger
from schemas import BatchOut, TraceView
from utils import trace_url, trust_score


def build_trace(db: Session, batch_id: str) -> TraceView:
    ledger = EventLedger(db)
    batch = ledger.get_batch(batch_id)
    events = ledger.list_events(batch_id)
    position = lifecycle.derive_position(events)
    out = BatchOut.from_batch(batch, events)
    return TraceView(
        batch=out,
        current_status=lifecycle.current_status(events),
        lifecycle_status=position.status.value if position else None,
        total_events=len(events),
        verified_events=sum(1 for e in events if e.tx_hash),
        trust_score=trust_score([{"txHash": e.tx_hash} for e in events]),
        trace_url=trace_url(settings.FRONTEND_URL, batch.batch_id),
    )
