"""
Pydantic schemas for request/response validation.

This module contains:
- The inbound device payload model
- Response models for API responses
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


# =============================================================================
# Pydantic Request Models
# =============================================================================

class WebhookEvent(BaseModel):
    """
    Device event payload posted to /webhook.

    Only `type` and `devId` are always present; the rest depend on the
    event type. Unknown keys are kept so the raw payload stays complete.
    """
    type: int = Field(..., description="Event discriminator (501 sms, 601-603 call, 998 heartbeat, 2xx SIM status)")
    dev_id: str = Field(..., alias="devId", min_length=1, description="External device identifier")
    slot: Optional[int] = Field(None, ge=0, description="SIM slot on the device")
    phone_number: Optional[str] = Field(None, alias="phNum", description="Sender or caller number")
    body: Optional[str] = Field(None, alias="smsBd", description="SMS body")
    imsi: Optional[str] = None
    iccid: Optional[str] = Field(None, alias="iccId")
    msisdn: Optional[str] = Field(None, alias="msIsdn", description="Own number of the SIM")
    sim_name: Optional[str] = Field(None, alias="scName")
    net_channel: Optional[int] = Field(None, alias="netCh")
    msg_ts: Optional[int] = Field(None, alias="msgTs")
    sms_ts: Optional[int] = Field(None, alias="smsTs")
    count: Optional[int] = Field(None, alias="cnt", description="Heartbeat sequence counter")
    call_duration: Optional[int] = Field(
        None,
        ge=0,
        validation_alias=AliasChoices("duration", "callDuration"),
        description="Call length in seconds (call-ended only)",
    )
    call_status: Optional[str] = Field(None, alias="callStatus")

    model_config = ConfigDict(
        populate_by_name=True,
        extra="allow",
        json_schema_extra={
            "examples": [
                {
                    "type": 501,
                    "devId": "DEV1",
                    "slot": 1,
                    "phNum": "10086",
                    "smsBd": "您的验证码是1234",
                }
            ]
        },
    )


class ForwardTestRequest(BaseModel):
    """Body of POST /forward/{platform}/test."""
    config: dict[str, Any] = Field(..., description="Platform config to try")


# =============================================================================
# Pydantic Response Models
# =============================================================================

class WebhookResponse(BaseModel):
    """Acknowledgement returned for every webhook delivery."""
    success: bool = Field(default=True)
    message: str = Field(default="Request received successfully")
    timestamp: str = Field(..., description="Server receive time (ISO-8601)")


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class MessageResponse(BaseModel):
    """A persisted SMS or call record."""
    id: int
    device_id: int
    sim_card_id: int
    msg_type: str
    phone_number: Optional[str] = None
    body: Optional[str] = None
    net_channel: Optional[int] = None
    msg_ts: Optional[int] = None
    sms_ts: Optional[int] = None
    call_duration: Optional[int] = None
    call_status: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class MessagesListResponse(BaseModel):
    """
    Response model for GET /messages endpoint with pagination.
    """
    data: list[MessageResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0, description="Total messages matching filters (ignoring limit/offset)")
    limit: int = Field(..., ge=1, le=100)
    offset: int = Field(..., ge=0)


class PlatformStats(BaseModel):
    platform: str
    enabled: bool
    forward_count: int = Field(..., ge=0)
    fail_count: int = Field(..., ge=0)
    last_forward_time: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class StatsSummary(BaseModel):
    total_forwarded: int = Field(..., ge=0)
    total_failed: int = Field(..., ge=0)
    enabled_count: int = Field(..., ge=0)
    total_platforms: int = Field(..., ge=0)
    success_rate: str = Field(..., description="Percentage with two decimals, e.g. '95.00%'")


class StatsResponse(BaseModel):
    """Forwarding counters per platform plus totals."""
    platforms: list[PlatformStats] = Field(default_factory=list)
    summary: StatsSummary


class ForwardTestResponse(BaseModel):
    success: bool
    message: str


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
