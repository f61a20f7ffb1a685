"""Ingest event & dead-letter response shapes."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class IngestEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    event_key: str = Field(serialization_alias="eventId")
    idempotency_key: str = Field(serialization_alias="idempotencyKey")
    source_enum: str = Field(serialization_alias="source")
    external_booking_ref: str = Field(serialization_alias="externalBookingRef")
    event_type: str = Field(serialization_alias="eventType")
    event_time_normalized: datetime = Field(serialization_alias="eventTime")
    process_status: str = Field(serialization_alias="processStatus")
    attempt_count: int = Field(serialization_alias="attemptCount")
    error_message: Optional[str] = Field(default=None, serialization_alias="errorMessage")
    request_received_at: Optional[datetime] = Field(default=None, serialization_alias="receivedAt")
    processed_at: Optional[datetime] = Field(default=None, serialization_alias="processedAt")


class DeadLetterOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    dead_letter_key: str = Field(serialization_alias="deadLetterKey")
    event_key: str = Field(serialization_alias="eventKey")
    reason_code: str = Field(serialization_alias="reasonCode")
    reason_detail: Optional[str] = Field(default=None, serialization_alias="reasonDetail")
    poison_message: bool = Field(serialization_alias="poisonMessage")
    replay_count: int = Field(serialization_alias="replayCount")
    status: str
    first_failed_at: Optional[datetime] = Field(default=None, serialization_alias="firstFailedAt")
    last_failed_at: Optional[datetime] = Field(default=None, serialization_alias="lastFailedAt")
    raw_payload: Optional[dict[str, Any]] = Field(default=None, serialization_alias="rawPayload")


def dump(model: BaseModel) -> dict:
    return model.model_dump(mode="json", by_alias=True)


__all__ = ["IngestEventOut", "DeadLetterOut", "dump"]
