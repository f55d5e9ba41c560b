"""Demo data for local development."""
import logging
from datetime import date

from sqlalchemy import delete
from sqlalchemy.orm import Session

from batches import create_batch
from models import Batch, Event, MockTransaction, User
from schemas import CreateBatch
from werkzeug.security import generate_password_hash

logger = logging.getLogger(__name__)

DEMO_PASSWORD = "password123"

USERS = [
    ("Maria Santos", "farmer@farmchain.io", "FARMER"),
    ("Green Valley Farm", "farmer2@farmchain.io", "FARMER"),
    ("FreshRoute Logistics", "distributor@farmchain.io", "DISTRIBUTOR"),
    ("Corner Market", "retailer@farmchain.io", "RETAILER"),
    ("Alex Consumer", "consumer@farmchain.io", "CONSUMER"),
]

BATCHES = [
    ("farmer@farmchain.io", dict(title="Organic Tomatoes", variety="Roma", quantity=100, unit="kg",
                                    harvest_date=date(2025, 8, 15), location="Salinas Valley, CA")),
    ("farmer@farmchain.io", dict(title="Butter Lettuce", variety="Bibb", quantity=250, unit="heads",
                                    harvest_date=date(2025, 8, 18), location="Salinas Valley, CA")),
    ("farmer2@farmchain.io", dict(title="Strawberries", variety="Albion", quantity=60, unit="kg",
                                     harvest_date=date(2025, 8, 20), location="Watsonville, CA")),
]


def seed_demo(db: Session) -> dict:
    """Wipe users, batches, events and transactions, then load the demo set.

    The batch id counter is left alone so ids are never handed out twice.
    """
    db.execute(delete(Event))
    db.execute(delete(Batch))
    db.execute(delete(MockTransaction))
    db.execute(delete(User))
    db.commit()
    logger.info("cleared existing data")

    users = {}
    for name, email, role in USERS:
        user = User(name=name, email=email, password_hash=generate_password_hash(DEMO_PASSWORD), role=role)
        db.add(user)
        users[email] = user
    db.commit()

    created = []
    for email, data in BATCHES:
        batch = create_batch(db, users[email], CreateBatch(**data))
        created.append(batch.batch_id)

    logger.info("seeded %d users and %d batches", len(users), len(created))
    return {"message": "Database seeded successfully", "users": len(users), "batches": created}
