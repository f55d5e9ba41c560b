from datetime import date, datetime
from typing import Optional, Any, Dict, List, Literal

from pydantic import (
    AliasChoices, BaseModel, ConfigDict, EmailStr, Field, ValidationError as PydanticValidationError,
)
from pydantic.alias_generators import to_camel

import errors
from lifecycle import Action, Role, display_name

TX_HASH_PATTERN = r"^0x[0-9a-f]{64}$"


class ApiModel(BaseModel):
    # JSON uses camelCase; python code uses snake_case
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def first_error(exc) -> str:
    errs = exc.errors()
    if not errs:
        return "Invalid input"
    err = errs[0]
    loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
    msg = err.get("msg", "Invalid input")
    return f"{loc}: {msg}" if loc else msg


# ---------- Auth ----------
class RegisterRequest(ApiModel):
    name: str = Field(..., min_length=2, max_length=120)
    email: EmailStr
    password: str = Field(..., min_length=8)
    role: Role


class LoginRequest(ApiModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class UserOut(ApiModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)
    id: int
    name: str
    email: str
    role: Role
    created_at: datetime


class AuthResponse(ApiModel):
    message: str
    token: str
    user: UserOut


class ActorOut(ApiModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)
    id: int
    name: str
    role: Role


# ---------- Batches ----------
class CreateBatch(ApiModel):
    title: str = Field(..., min_length=1, max_length=255)
    variety: Optional[str] = None
    quantity: float = Field(..., gt=0)
    unit: str = Field(..., min_length=1, max_length=32)
    harvest_date: date
    location: Optional[str] = None
    images: List[str] = Field(default_factory=list)


class UpdateBatch(ApiModel):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    variety: Optional[str] = None
    quantity: Optional[float] = Field(None, gt=0)
    unit: Optional[str] = Field(None, min_length=1, max_length=32)
    harvest_date: Optional[date] = None
    location: Optional[str] = None
    images: Optional[List[str]] = None


# ---------- Event details ----------
class Details(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)
    notes: Optional[str] = None


class LocationDetails(Details):
    location: Optional[str] = None


class PriceDetails(Details):
    price: float = Field(..., ge=0)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)


class QualityDetails(Details):
    rating: Literal["excellent", "good", "fair", "poor"] = Field(
        ..., validation_alias=AliasChoices("rating", "quality"),
    )


class VerificationDetails(Details):
    tx_hash: Optional[str] = Field(
        None, pattern=TX_HASH_PATTERN, validation_alias=AliasChoices("txHash", "tx_hash"), serialization_alias="txHash",
    )
    explorer_url: Optional[str] = Field(
        None, validation_alias=AliasChoices("explorerUrl", "explorer_url"), serialization_alias="explorerUrl",
    )


class CreatedDetails(Details):
    message: str
    initial_quantity: float = Field(..., serialization_alias="initialQuantity")
    harvest_date: date = Field(..., serialization_alias="harvestDate")
    images_count: int = Field(0, serialization_alias="imagesCount")


DETAILS_BY_ACTION = {
    Action.CREATED.value: CreatedDetails,
    Action.PICKED_UP.value: LocationDetails,
    Action.IN_TRANSIT.value: LocationDetails,
    Action.DELIVERED.value: LocationDetails,
    Action.SOLD.value: LocationDetails,
    Action.PRICE_SET.value: PriceDetails,
    Action.QUALITY_CHECK.value: QualityDetails,
    Action.VERIFIED_ON_CHAIN.value: VerificationDetails,
}


def parse_details(action: str, raw: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Validate a details payload against its action's schema.

    Unknown actions keep their payload as an open map.
    """
    raw = raw or {}
    model = DETAILS_BY_ACTION.get(action)
    if model is None:
        return dict(raw)
    try:
        parsed = model.model_validate(raw)
    except PydanticValidationError as exc:
        raise errors.ValidationError(first_error(exc)) from None
    return parsed.model_dump(mode="json", by_alias=True, exclude_none=True)


class CreateEvent(ApiModel):
    action: str = Field(..., min_length=1, max_length=64)
    details: Optional[Dict[str, Any]] = None


class LinkTx(ApiModel):
    tx_hash: str = Field(..., pattern=TX_HASH_PATTERN)


class EventOut(ApiModel):
    id: int
    batch_id: str
    seq: int
    actor: ActorOut
    actor_role: Role
    action: str
    display_name: str
    details: Dict[str, Any]
    tx_hash: Optional[str] = None
    confirmed: bool
    timestamp: datetime

    @classmethod
    def from_event(cls, ev, batch_id: str) -> "EventOut":
        return cls(
            id=ev.id,
            batch_id=batch_id,
            seq=ev.seq,
            actor=ActorOut.model_validate(ev.actor),
            actor_role=ev.actor_role,
            action=ev.action,
            display_name=display_name(ev.action),
            details=ev.details or {},
            tx_hash=ev.tx_hash,
            confirmed=ev.confirmed,
            timestamp=ev.timestamp,
        )


class FarmerOut(ApiModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)
    id: int
    name: str
    email: str
    role: Role


class BatchOut(ApiModel):
    batch_id: str
    title: str
    variety: Optional[str] = None
    quantity: float
    unit: str
    harvest_date: date
    location: Optional[str] = None
    images: List[str]
    farmer: FarmerOut
    created_at: datetime
    updated_at: datetime
    status: Optional[str] = None
    events: List[EventOut] = Field(default_factory=list)

    @classmethod
    def from_batch(cls, batch, events=()) -> "BatchOut":
        events = [EventOut.from_event(e, batch.batch_id) for e in events]
        return cls(
            batch_id=batch.batch_id,
            title=batch.title,
            variety=batch.variety,
            quantity=batch.quantity,
            unit=batch.unit,
            harvest_date=batch.harvest_date,
            location=batch.location,
            images=list(batch.images or []),
            farmer=FarmerOut.model_validate(batch.farmer),
            created_at=batch.created_at,
            updated_at=batch.updated_at,
            status=events[-1].action if events else None,
            events=events,
        )


class BatchResponse(ApiModel):
    message: Optional[str] = None
    batch: BatchOut


class BatchList(ApiModel):
    batches: List[BatchOut]


class EventResponse(ApiModel):
    message: str
    event: EventOut


class EventList(ApiModel):
    events: List[EventOut]


class AllowedActions(ApiModel):
    batch_id: str
    role: Role
    status: Optional[str] = None
    lifecycle_status: Optional[str] = None
    allowed: List[str]


# ---------- Mock chain ----------
class SubmitTx(ApiModel):
    batch_id: str = Field(..., min_length=1)
    action: str = Field(..., min_length=1, max_length=64)


class TxSubmitted(ApiModel):
    tx_hash: str
    status: str
    explorer_url: str
    submitted_at: datetime


class TxOut(ApiModel):
    tx_hash: str
    status: str
    batch_id: str
    action: str
    created_at: datetime
    confirmed_at: Optional[datetime] = None
    explorer_url: str


class TxConfirmed(ApiModel):
    message: str
    transaction: TxOut


class TxList(ApiModel):
    transactions: List[TxOut]


class VerifyResponse(ApiModel):
    message: str
    transaction: TxOut
    event: EventOut


# ---------- Trace ----------
class TraceView(ApiModel):
    batch: BatchOut
    current_status: Optional[str] = None
    lifecycle_status: Optional[str] = None
    total_events: int
    verified_events: int
    trust_score: int
    trace_url: str


# ---------- Uploads ----------
class UploadedFile(ApiModel):
    filename: str
    original_name: str
    size: int
    url: str


class UploadResponse(ApiModel):
    message: str
    file: UploadedFile


class UploadListResponse(ApiModel):
    message: str
    files: List[UploadedFile]
