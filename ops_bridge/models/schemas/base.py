"""
Base schemas used across the API.
"""
from datetime import datetime, timezone
from typing import Optional, Any, Dict
from pydantic import BaseModel, Field, ConfigDict

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

class ResponseBase(BaseModel):
    """Envelope for every API response: success flag, message and a free-form data payload."""
    success: bool = True
    message: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)
    data: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(arbitrary_types_allowed=True)
