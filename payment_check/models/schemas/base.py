"""
Base schemas used across the application.
"""
from datetime import datetime, timezone
from typing import Optional, Any, Dict
from pydantic import BaseModel, Field, ConfigDict


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ResponseBase(BaseModel):
    """Envelope for endpoints that answer with a status message and an optional data payload."""
    success: bool = True
    message: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utc_now)
    data: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(arbitrary_types_allowed=True)
