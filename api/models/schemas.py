from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from dateutil import parser
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, computed_field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from utils import parse_server_timestamp


class MatchStatus(str, Enum):
    PENDING = "PENDING"
    DONOR_CONFIRMED = "DONOR_CONFIRMED"
    RECIPIENT_CONFIRMED = "RECIPIENT_CONFIRMED"
    CONFIRMED = "CONFIRMED"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"
    CANCELLED_BY_DONOR = "CANCELLED_BY_DONOR"
    CANCELLED_BY_RECIPIENT = "CANCELLED_BY_RECIPIENT"


class MatchRole(str, Enum):
    DONOR = "DONOR"
    RECIPIENT = "RECIPIENT"
    UNKNOWN = "UNKNOWN"


class NotificationType(str, Enum):
    DONATION_CREATED = "DONATION_CREATED"
    REQUEST_CREATED = "REQUEST_CREATED"
    DONATION_CANCELLED = "DONATION_CANCELLED"
    REQUEST_CANCELLED = "REQUEST_CANCELLED"
    MATCH_FOUND = "MATCH_FOUND"
    SYSTEM = "SYSTEM"


class CamelModel(BaseModel):
    """Base for backend DTOs: camelCase on the wire, snake_case in Python."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        coerce_numbers_to_str=True,
        extra="ignore",
    )


MATCH_TIMESTAMP_FIELDS = (
    "donor_confirmed_at",
    "recipient_confirmed_at",
    "first_confirmed_at",
    "withdrawn_at",
    "expired_at",
    "completed_at",
    "matched_at",
    "confirmation_expires_at",
    "withdrawal_grace_period_expires_at",
    "reconfirmation_window_expires_at",
    "updated_at",
)


class MatchResult(CamelModel):
    """A candidate pairing between one donation and one receive-request.

    Identity fields never change once the record exists. Lifecycle fields are
    only changed through ``match_lifecycle`` transitions or by replacing the
    whole record with a server snapshot.
    """
    model_config = ConfigDict(frozen=True)

    match_id: str = Field(
        validation_alias=AliasChoices("matchResultId", "matchId", "match_id"),
        serialization_alias="matchResultId",
    )
    donation_id: str
    request_id: str = Field(
        validation_alias=AliasChoices("receiveRequestId", "requestId", "request_id"),
        serialization_alias="receiveRequestId",
    )
    donor_user_id: str
    recipient_user_id: str

    status: MatchStatus = MatchStatus.PENDING
    donor_confirmed: bool = False
    recipient_confirmed: bool = False
    donor_confirmed_at: Optional[datetime] = None
    recipient_confirmed_at: Optional[datetime] = None
    first_confirmer: Optional[MatchRole] = None
    first_confirmed_at: Optional[datetime] = None
    withdrawn_by: Optional[MatchRole] = None
    withdrawn_at: Optional[datetime] = None
    withdrawal_reason: Optional[str] = None
    expired_at: Optional[datetime] = None
    expiry_reason: Optional[str] = None
    completed_at: Optional[datetime] = None
    completion_notes: Optional[str] = None
    received_date: Optional[date] = None
    recipient_rating: Optional[int] = Field(
        None,
        validation_alias=AliasChoices("recipientRating", "rating", "recipient_rating"),
        serialization_alias="recipientRating",
    )
    hospital_name: Optional[str] = None
    can_confirm_completion: Optional[bool] = None

    # Descriptive fields supplied by the matching backend
    donation_type: Optional[str] = None
    request_type: Optional[str] = None
    blood_type: Optional[str] = None
    match_type: Optional[str] = None
    matched_at: Optional[datetime] = None
    distance: Optional[float] = None
    compatibility_score: Optional[float] = None
    blood_compatibility_score: Optional[float] = None
    location_compatibility_score: Optional[float] = None
    medical_compatibility_score: Optional[float] = None
    urgency_priority_score: Optional[float] = None
    match_reason: Optional[str] = None
    priority_rank: Optional[int] = None
    confirmation_expires_at: Optional[datetime] = None
    withdrawal_grace_period_expires_at: Optional[datetime] = None
    reconfirmation_window_expires_at: Optional[datetime] = None
    updated_at: Optional[datetime] = Field(
        None,
        validation_alias=AliasChoices("updatedAt", "lastModifiedAt", "updated_at"),
        serialization_alias="updatedAt",
    )

    @field_validator(*MATCH_TIMESTAMP_FIELDS, mode="before")
    @classmethod
    def _parse_timestamp(cls, value):
        return parse_server_timestamp(value)

    @field_validator("received_date", mode="before")
    @classmethod
    def _parse_date(cls, value):
        if value is None or value == "" or isinstance(value, date):
            return value or None
        return parser.isoparse(str(value)).date()

    @field_validator("first_confirmer", "withdrawn_by", mode="before")
    @classmethod
    def _normalize_role(cls, value):
        if isinstance(value, str):
            return value.strip().upper() or None
        return value

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value):
        if value is None:
            return MatchStatus.PENDING
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @computed_field
    @property
    def is_confirmed(self) -> bool:
        return self.donor_confirmed and self.recipient_confirmed


class NotificationRecord(CamelModel):
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: Optional[str] = None
    type: Union[NotificationType, str] = Field(NotificationType.SYSTEM, union_mode="left_to_right")
    title: str = ""
    message: str = ""
    is_read: bool = False
    created_at: Optional[datetime] = None
    metadata: Optional[Dict[str, Any]] = None

    @model_validator(mode="before")
    @classmethod
    def _normalize_read_flag(cls, data):
        # Older backends send "read" instead of "isRead".
        if not isinstance(data, dict):
            return data
        data = dict(data)
        is_read = data.pop("isRead", None)
        legacy = data.pop("read", None)
        if is_read is None:
            is_read = data.get("is_read")
        if is_read is None:
            is_read = legacy
        data["is_read"] = is_read if is_read is not None else False
        return data

    @field_validator("created_at", mode="before")
    @classmethod
    def _parse_created_at(cls, value):
        return parse_server_timestamp(value)


class ReasonRequest(CamelModel):
    reason: str


class CompletionDetails(CamelModel):
    received_date: Optional[date] = None
    notes: str = ""
    rating: Optional[int] = None
    hospital_name: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class CanConfirmCompletionResponse(CamelModel):
    can_confirm: bool = False


class UnreadCountResponse(CamelModel):
    unread_count: int = 0


class LoginResponse(CamelModel):
    access_token: str
    refresh_token: Optional[str] = None
    id: str
    username: Optional[str] = None
    email: Optional[str] = None
    roles: List[str] = []


class ManualMatchRequest(CamelModel):
    donation_id: str
    receive_request_id: str
    donor_location_id: str
    recipient_location_id: str


class ManualMatchResponse(CamelModel):
    success: bool
    message: str = ""
    match_result_id: Optional[str] = None
