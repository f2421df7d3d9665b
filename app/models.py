"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

import enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from app.storage import Base, utcnow


class DeviceStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    OFFLINE = "offline"


class SimStatus(str, enum.Enum):
    """SIM card status codes as reported by the device."""
    REGISTERING = "202"
    ID_READ = "203"
    READY = "204"
    EJECTED = "205"
    CARD_ERROR = "209"


class CallState(str, enum.Enum):
    IDLE = "idle"
    RINGING = "ringing"
    CONNECTED = "connected"
    ENDED = "ended"


class MessageType(str, enum.Enum):
    SMS = "sms"
    CALL = "call"


class Platform(str, enum.Enum):
    TELEGRAM = "telegram"
    BARK = "bark"
    WEBHOOK = "webhook"
    WXPUSHER = "wxpusher"


class Device(Base):
    """
    A registered SMS/call gateway device.

    Table: devices
    Rows are created by the admin surface only; inbound events never insert here.
    """
    __tablename__ = "devices"

    id = Column(Integer, primary_key=True, autoincrement=True)
    dev_id = Column(String(50), unique=True, nullable=False, index=True)
    name = Column(String(100), nullable=False, default="")
    status = Column(String(16), nullable=False, default=DeviceStatus.ACTIVE.value, index=True)
    last_active_time = Column(DateTime(timezone=True), nullable=True, default=utcnow)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class SimCard(Base):
    """
    One SIM slot of a device.

    Table: sim_cards
    Unique on (device_id, slot); created lazily by the first event for the slot.
    """
    __tablename__ = "sim_cards"
    __table_args__ = (
        UniqueConstraint("device_id", "slot", name="uq_sim_cards_device_slot"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    device_id = Column(Integer, ForeignKey("devices.id"), nullable=False, index=True)
    slot = Column(Integer, nullable=False)
    msisdn = Column(String(20), nullable=True)
    imsi = Column(String(50), nullable=True)
    iccid = Column(String(50), nullable=True)
    name = Column(String(100), nullable=False, default="")
    status = Column(String(8), nullable=False, default=SimStatus.READY.value)
    call_state = Column(String(16), nullable=False, default=CallState.IDLE.value)
    last_call_number = Column(String(20), nullable=True)
    last_call_time = Column(DateTime(timezone=True), nullable=True)
    last_active_time = Column(DateTime(timezone=True), nullable=True, default=utcnow)

    # Auto-answer settings, consumed by the device-control feature
    auto_answer_enabled = Column(Boolean, nullable=False, default=False)
    auto_answer_delay = Column(Integer, nullable=False, default=5)
    auto_answer_duration = Column(Integer, nullable=False, default=55)
    auto_answer_tts_template_id = Column(Integer, nullable=True)
    auto_answer_tts_repeat = Column(Integer, nullable=False, default=2)
    auto_answer_pause_time = Column(Integer, nullable=False, default=1)
    auto_answer_after_action = Column(Integer, nullable=False, default=1)


class Message(Base):
    """
    Immutable record of one inbound SMS or call event.

    Table: messages
    raw_data keeps the device payload verbatim for audit and manual replay.
    """
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    sim_card_id = Column(Integer, ForeignKey("sim_cards.id"), nullable=False, index=True)
    device_id = Column(Integer, ForeignKey("devices.id"), nullable=False, index=True)
    msg_type = Column(String(8), nullable=False, default=MessageType.SMS.value, index=True)
    net_channel = Column(Integer, nullable=True)
    msg_ts = Column(BigInteger, nullable=True)
    phone_number = Column(String(20), nullable=True, index=True)
    body = Column(Text, nullable=True)
    sms_ts = Column(BigInteger, nullable=True)
    call_duration = Column(Integer, nullable=True)
    call_status = Column(String(20), nullable=True)
    raw_data = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)


class ForwardSetting(Base):
    """
    Per-platform forwarding configuration and delivery counters.

    Table: forward_settings
    config and filter_rules are stored as JSON and decoded into typed models
    by app.forward_settings.
    """
    __tablename__ = "forward_settings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    platform = Column(String(16), unique=True, nullable=False)
    enabled = Column(Boolean, nullable=False, default=False, index=True)
    config = Column(JSON, nullable=False, default=dict)
    filter_rules = Column(JSON, nullable=False, default=dict)
    message_template = Column(Text, nullable=False, default="")
    last_forward_time = Column(DateTime(timezone=True), nullable=True)
    forward_count = Column(Integer, nullable=False, default=0)
    fail_count = Column(Integer, nullable=False, default=0)
