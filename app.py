import logging
import os
from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI, Depends, File, Request, Response, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

import batches
from auth import authenticate, get_current_user, issue_token, register_user, require_admin, require_role
from config import settings
from database import SessionLocal, get_db, init_db
from errors import AuthorizationError, FarmChainError, ValidationError
from ledger import EventLedger
import lifecycle
from lifecycle import Role
from mockchain import ConfirmationEngine, TaskRegistry, TaskRunner, explorer_url, tx_out
from models import User
from schemas import (
    AllowedActions, AuthResponse, BatchList, BatchResponse, CreateBatch, CreateEvent, EventList,
    EventOut, EventResponse, LoginRequest, RegisterRequest, SubmitTx, TraceView, TxConfirmed, TxList, TxOut,
    TxSubmitted, UpdateBatch, UploadedFile, UploadListResponse, UploadResponse, UserOut, VerifyResponse,
    LinkTx, first_error,
)
from seed import seed_demo
from storage import ImageStorage, URL_PREFIX
from traceview import build_trace
from utils import iso, qr_png, qr_svg, trace_url, utcnow

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("farmchain")

# ---------- Collaborators ----------
registry = TaskRegistry()
chain = ConfirmationEngine(
    SessionLocal, registry, min_delay_ms=settings.CONFIRM_MIN_MS, max_delay_ms=settings.CONFIRM_MAX_MS,
)
storage = ImageStorage(settings.UPLOAD_DIR, settings.MAX_UPLOAD_BYTES, settings.ALLOWED_IMAGE_EXTENSIONS)


def get_chain() -> ConfirmationEngine:
    return chain


def get_storage() -> ImageStorage:
    return storage


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    os.makedirs(settings.UPLOAD_DIR, exist_ok=True)
    runner = TaskRunner(registry)
    runner.start()
    logger.info("FarmChain API started (%s)", settings.APP_ENV)
    try:
        yield
    finally:
        runner.stop()


app = FastAPI(title="FarmChain", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------- Errors ----------
@app.exception_handler(FarmChainError)
async def farmchain_error(request: Request, exc: FarmChainError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    body = {"error": exc.message}
    if getattr(exc, "allowed", None) is not None and getattr(exc, "action", None):
        body["allowedActions"] = exc.allowed
    return JSONResponse(status_code=exc.status_code, content=body)


@app.exception_handler(RequestValidationError)
async def request_validation_error(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"error": first_error(exc)})


@app.exception_handler(StarletteHTTPException)
async def http_error(request: Request, exc: StarletteHTTPException):
    message = "Route not found" if exc.status_code == 404 else str(exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"error": message})


@app.exception_handler(Exception)
async def unexpected_error(request: Request, exc: Exception):
    logger.exception("%s %s crashed", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# ---------- Auth ----------
@app.post("/api/auth/register", response_model=AuthResponse, status_code=201)
def register(body: RegisterRequest, db: Session = Depends(get_db)):
    user = register_user(db, body)
    return AuthResponse(message="User registered successfully", token=issue_token(user),
                        user=UserOut.model_validate(user))


@app.post("/api/auth/login", response_model=AuthResponse)
def login(body: LoginRequest, db: Session = Depends(get_db)):
    user = authenticate(db, body.email, body.password)
    return AuthResponse(message="Login successful", token=issue_token(user), user=UserOut.model_validate(user))


@app.get("/api/auth/me", response_model=UserOut)
def me(user: User = Depends(get_current_user)):
    return UserOut.model_validate(user)


# ---------- Batches ----------
@app.post("/api/batches", response_model=BatchResponse, status_code=201)
def create_batch(
    body: CreateBatch,
    db: Session = Depends(get_db),
    user: User = Depends(require_role(Role.FARMER)),
):
    batch = batches.create_batch(db, user, body)
    return BatchResponse(message="Batch created successfully", batch=batches.get_batch(db, batch.batch_id))


@app.get("/api/batches", response_model=BatchList)
def list_batches(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return BatchList(batches=batches.list_batches(db, user))


@app.get("/api/batches/{batch_id}", response_model=BatchResponse)
def get_batch(batch_id: str, db: Session = Depends(get_db)):
    return BatchResponse(batch=batches.get_batch(db, batch_id))


@app.put("/api/batches/{batch_id}", response_model=BatchResponse)
def update_batch(
    batch_id: str,
    body: UpdateBatch,
    db: Session = Depends(get_db),
    user: User = Depends(require_role(Role.FARMER)),
):
    batches.update_batch(db, batch_id, user, body)
    return BatchResponse(message="Batch updated successfully", batch=batches.get_batch(db, batch_id))


@app.get("/api/batches/{batch_id}/actions", response_model=AllowedActions)
def allowed_actions(batch_id: str, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    ledger = EventLedger(db)
    events = ledger.list_events(batch_id)
    position = lifecycle.derive_position(events)
    return AllowedActions(
        batch_id=batch_id,
        role=user.role,
        status=events[-1].action if events else None,
        lifecycle_status=position.status.value if position else None,
        allowed=ledger.allowed_actions(batch_id, Role(user.role)),
    )


@app.post("/api/batches/{batch_id}/verify", response_model=VerifyResponse, status_code=201)
def verify_batch(
    batch_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    engine: ConfirmationEngine = Depends(get_chain),
):
    tx, event = engine.verify_on_chain(db, batch_id, user)
    return VerifyResponse(message="Batch verified on chain", transaction=tx_out(tx),
                          event=EventOut.from_event(event, batch_id))


# ---------- Events ----------
@app.post("/api/events/{batch_id}/events", response_model=EventResponse, status_code=201)
def create_event(
    batch_id: str,
    body: CreateEvent,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    event = EventLedger(db).append_event(batch_id, user, body.action, body.details)
    return EventResponse(message="Event created successfully", event=EventOut.from_event(event, batch_id))


@app.get("/api/events/{batch_id}/events", response_model=EventList)
def list_events(batch_id: str, db: Session = Depends(get_db)):
    events = EventLedger(db).list_events(batch_id)
    return EventList(events=[EventOut.from_event(e, batch_id) for e in events])


@app.post("/api/events/{batch_id}/events/{event_id}/tx", response_model=EventResponse)
def link_transaction(
    batch_id: str,
    event_id: int,
    body: LinkTx,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    event = EventLedger(db).attach_transaction(batch_id, event_id, user, body.tx_hash)
    return EventResponse(message="Transaction linked", event=EventOut.from_event(event, batch_id))


# ---------- Mock chain ----------
@app.post("/api/mock/tx", response_model=TxSubmitted, status_code=201, dependencies=[Depends(get_current_user)])
def submit_tx(
    body: SubmitTx,
    db: Session = Depends(get_db),
    engine: ConfirmationEngine = Depends(get_chain),
):
    tx = engine.submit(db, body.batch_id, body.action)
    return TxSubmitted(tx_hash=tx.tx_hash, status=tx.status, explorer_url=explorer_url(tx.tx_hash),
                       submitted_at=tx.created_at)


@app.get("/api/mock/tx", response_model=TxList, dependencies=[Depends(require_admin)])
def list_txs(db: Session = Depends(get_db), engine: ConfirmationEngine = Depends(get_chain)):
    return TxList(transactions=[tx_out(tx) for tx in engine.list_transactions(db)])


@app.get("/api/mock/tx/{tx_hash}", response_model=TxOut)
def get_tx(tx_hash: str, db: Session = Depends(get_db), engine: ConfirmationEngine = Depends(get_chain)):
    return tx_out(engine.get_status(db, tx_hash))


@app.post("/api/mock/tx/{tx_hash}/confirm", response_model=TxConfirmed, dependencies=[Depends(require_admin)])
def confirm_tx(tx_hash: str, db: Session = Depends(get_db), engine: ConfirmationEngine = Depends(get_chain)):
    return TxConfirmed(message="Transaction confirmed", transaction=tx_out(engine.force_confirm(db, tx_hash)))


# ---------- Trace & QR ----------
@app.get("/api/trace/{batch_id}", response_model=TraceView)
def trace(batch_id: str, db: Session = Depends(get_db)):
    return build_trace(db, batch_id)


@app.get("/api/qr/{batch_id}/qr")
def batch_qr_png(batch_id: str, db: Session = Depends(get_db)):
    batch = EventLedger(db).get_batch(batch_id)
    url = trace_url(settings.FRONTEND_URL, batch.batch_id)
    return Response(
        content=qr_png(url),
        media_type="image/png",
        headers={"Content-Disposition": f'inline; filename="batch-{batch.batch_id}-qr.png"'},
    )


@app.get("/api/qr/{batch_id}/qr.svg")
def batch_qr_svg(batch_id: str, db: Session = Depends(get_db)):
    batch = EventLedger(db).get_batch(batch_id)
    url = trace_url(settings.FRONTEND_URL, batch.batch_id)
    return Response(
        content=qr_svg(url),
        media_type="image/svg+xml",
        headers={"Content-Disposition": f'inline; filename="batch-{batch.batch_id}-qr.svg"'},
    )


# ---------- Uploads ----------
@app.post("/api/upload/image", response_model=UploadResponse, dependencies=[Depends(get_current_user)])
def upload_image(
    image: UploadFile = File(...),
    store: ImageStorage = Depends(get_storage),
):
    stored = store.save(image)
    return UploadResponse(message="File uploaded successfully", file=UploadedFile(**stored))


@app.post("/api/upload/images", response_model=UploadListResponse, dependencies=[Depends(get_current_user)])
def upload_images(
    images: List[UploadFile] = File(...),
    store: ImageStorage = Depends(get_storage),
):
    if len(images) > 5:
        raise ValidationError("At most 5 files per upload")
    files = [UploadedFile(**store.save(f)) for f in images]
    return UploadListResponse(message="Files uploaded successfully", files=files)


@app.delete("/api/upload/{filename}", dependencies=[Depends(get_current_user)])
def delete_upload(
    filename: str,
    store: ImageStorage = Depends(get_storage),
):
    store.delete(filename)
    return {"message": "File deleted successfully"}


# ---------- Dev ----------
@app.post("/api/seed/demo")
def seed(db: Session = Depends(get_db)):
    if settings.is_production:
        raise AuthorizationError("Seeding not allowed in production")
    return seed_demo(db)


@app.get("/api/health")
def health():
    return {"status": "ok", "timestamp": iso(utcnow())}


# ---------- Static (always last) ----------
app.mount(URL_PREFIX, StaticFiles(directory=settings.UPLOAD_DIR, check_dir=False), name="uploads")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("app:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
