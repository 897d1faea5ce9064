from __future__ import annotations
from typing import Any, List, Optional
from pydantic import BaseModel, Field, field_validator


class Sample(BaseModel):
    """A single temperature/fan reading from a device."""
    device_id: str = Field(description="Device identifier (e.g., pico-temp-001)")
    value: float = Field(description="Temperature reading")
    fan: float = Field(default=0.0, description="Fan duty reported by the device")
    mode: Optional[str] = Field(default=None, description="Fan mode (e.g., AUTO, FORCED_ON, FORCED_OFF)")
    timestamp: float = Field(description="Unix timestamp when the reading was accepted")

    model_config = {"frozen": True}


class PresenceView(BaseModel):
    """A device currently considered live."""
    device_id: str
    last_seen: float = Field(description="Unix timestamp of the most recent reading")
    age: float = Field(description="Seconds since last_seen")
    last_sample: Sample


class IngestRequest(BaseModel):
    """Reading pushed by a device."""
    device_id: str = Field(min_length=1, description="Device identifier")
    temp: float = Field(allow_inf_nan=False, description="Temperature reading; numeric strings are accepted")
    fan: Optional[float] = Field(default=None, allow_inf_nan=False, description="Fan duty (optional)")
    mode: Optional[str] = Field(default=None, description="Fan mode (optional)")

    model_config = {"extra": "allow"}

    @field_validator("mode", mode="before")
    @classmethod
    def _mode_must_be_text(cls, v: Any) -> Optional[str]:
        # anything that is not a string is dropped rather than rejected
        return v if isinstance(v, str) else None


class IngestResponse(BaseModel):
    status: str = "ok"


class DeviceMessageCreate(BaseModel):
    """Command queued by the dashboard for a device."""
    device_id: str = Field(min_length=1, description="Target device identifier")
    params: Any = Field(description="Arbitrary JSON payload delivered to the device")


class QueuedResponse(BaseModel):
    status: str = "queued"
    id: int = Field(description="Identifier of the queued command")


class DeviceMessage(BaseModel):
    """Mailbox entry as delivered to a polling device."""
    id: int
    device_id: str
    params: Any
    consumed: bool
    timestamp: float = Field(description="Unix timestamp when the command was queued")


class ReadingSummary(BaseModel):
    value: float
    fan: float
    mode: Optional[str] = None
    timestamp: float


class DeviceSummary(BaseModel):
    """Registered device with its most recent readings."""
    device_id: str
    name: str
    location: str = ""
    type: Optional[str] = None
    is_cooling: bool = False
    last_three: List[ReadingSummary] = Field(default_factory=list, description="Last three readings, oldest first")


class HealthResponse(BaseModel):
    """Health check response."""
    status: str = Field(description="Service status (always 'ok' if service is running)")
    storage: str = Field(description="'ok' when the database answers, otherwise 'error'")
    live_devices: int = Field(description="Devices currently in the live list")
    buffered_samples: int = Field(description="Samples held in the live ring")
    ttl_seconds: float = Field(description="Presence TTL in seconds")


class ErrorResponse(BaseModel):
    """Standard error response format."""
    detail: str = Field(description="Error message describing what went wrong")
