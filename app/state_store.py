"""
Transactional device/SIM state updates for inbound events.

One event is one transaction: device lookup, liveness refresh, SIM card
upsert, call state change and the message row all commit together or not
at all. Devices are never created here.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.classifier import ClassifiedEvent, EventKind, SIM_KINDS
from app.errors import DeviceNotFound, InvalidEvent, StateTransactionFailure
from app.metrics import record_device_transition
from app.models import CallState, Device, DeviceStatus, Message, MessageType, SimCard, SimStatus
from app.schemas import WebhookEvent
from app.storage import SessionLocal, create_message, utcnow

CALL_END_STATUSES = {"answered", "rejected", "missed"}

# A (device, slot) insert can lose a race with a concurrent event; retry once
MAX_ATTEMPTS = 2


@dataclass
class EventOutcome:
    """Committed result of one event; ORM objects are detached snapshots."""
    event: ClassifiedEvent
    device: Device
    sim_card: Optional[SimCard] = None
    message: Optional[Message] = None


class StateStore:
    """Applies classified events to the device, SIM card and message tables."""

    def __init__(
        self,
        session_factory: Callable[..., Session] = SessionLocal,
        logger: Optional[logging.Logger] = None,
    ):
        self._session_factory = session_factory
        self._log = logger or logging.getLogger(__name__)

    def _session(self) -> Session:
        # Objects handed to the forwarder must stay readable after commit
        return self._session_factory(expire_on_commit=False)

    # -------------------------------------------------------------------------
    # Device liveness
    # -------------------------------------------------------------------------

    def record_heartbeat(self, dev_id: str) -> Device:
        """Mark the device active and refresh its last-active time."""
        with self._session() as db:
            try:
                device = self._get_device(db, dev_id)
                self._touch_device(device, utcnow())
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                raise StateTransactionFailure(dev_id, e) from e
        return device

    def mark_device_offline(self, dev_id: str) -> bool:
        """
        Move an active device to offline.

        The status check is part of the UPDATE, so a device that was
        deactivated or already flagged in the meantime is left alone.

        Returns:
            True if this call performed the transition
        """
        with self._session() as db:
            try:
                result = db.execute(
                    update(Device)
                    .where(Device.dev_id == dev_id, Device.status == DeviceStatus.ACTIVE.value)
                    .values(status=DeviceStatus.OFFLINE.value)
                )
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                raise StateTransactionFailure(dev_id, e) from e

        changed = result.rowcount == 1
        if changed:
            record_device_transition(DeviceStatus.OFFLINE.value)
            self._log.warning(
                "Device went offline after heartbeat timeout",
                extra={"dev_id": dev_id, "status": DeviceStatus.OFFLINE.value},
            )
        else:
            self._log.debug("Heartbeat expiry ignored, device not active", extra={"dev_id": dev_id})
        return changed

    # -------------------------------------------------------------------------
    # SIM-bound events
    # -------------------------------------------------------------------------

    def apply_event(self, classified: ClassifiedEvent) -> EventOutcome:
        """
        Apply an sms, call or SIM status event in one transaction.

        Raises:
            InvalidEvent: the event kind does not touch a SIM card or has no slot
            DeviceNotFound: devId is not registered
            StateTransactionFailure: the database rejected the transaction
        """
        if classified.kind not in SIM_KINDS:
            raise InvalidEvent(f"{classified.kind.value} events do not carry SIM state")
        if classified.event.slot is None:
            raise InvalidEvent(f"{classified.kind.value} event from {classified.dev_id} has no slot")

        for attempt in range(1, MAX_ATTEMPTS + 1):
            with self._session() as db:
                try:
                    outcome = self._apply(db, classified)
                    db.commit()
                    return outcome
                except IntegrityError as e:
                    db.rollback()
                    if attempt == MAX_ATTEMPTS:
                        raise StateTransactionFailure(classified.dev_id, e) from e
                    self._log.info(
                        "SIM card created concurrently, retrying transaction",
                        extra={"dev_id": classified.dev_id, "slot": classified.event.slot},
                    )
                except SQLAlchemyError as e:
                    db.rollback()
                    raise StateTransactionFailure(classified.dev_id, e) from e

    def _apply(self, db: Session, classified: ClassifiedEvent) -> EventOutcome:
        now = utcnow()
        event = classified.event
        kind = classified.kind

        device = self._get_device(db, event.dev_id)
        self._touch_device(device, now)
        sim_card = self._find_or_create_sim_card(db, device, event, now)

        message = None
        if kind == EventKind.SIM_STATUS:
            if sim_card.status != classified.status_code:
                self._log.info(
                    "SIM card status changed",
                    extra={
                        "dev_id": device.dev_id,
                        "slot": sim_card.slot,
                        "from_status": sim_card.status,
                        "to_status": classified.status_code,
                    },
                )
            sim_card.status = classified.status_code
        else:
            # Traffic on the slot means the card is usable
            sim_card.status = SimStatus.READY.value

        if kind == EventKind.SMS:
            message = create_message(
                db,
                device,
                sim_card,
                msg_type=MessageType.SMS.value,
                raw_data=classified.raw,
                phone_number=event.phone_number,
                body=event.body,
                net_channel=event.net_channel,
                msg_ts=event.msg_ts,
                sms_ts=event.sms_ts,
            )
        elif kind == EventKind.CALL_RINGING:
            sim_card.call_state = CallState.RINGING.value
            if event.phone_number:
                sim_card.last_call_number = event.phone_number
            sim_card.last_call_time = now
            message = create_message(
                db,
                device,
                sim_card,
                msg_type=MessageType.CALL.value,
                raw_data=classified.raw,
                phone_number=event.phone_number or sim_card.last_call_number,
                body="来电响铃",
                net_channel=event.net_channel,
                msg_ts=event.msg_ts,
                sms_ts=event.sms_ts,
                call_status="ringing",
            )
        elif kind == EventKind.CALL_CONNECTED:
            if sim_card.call_state in (CallState.IDLE.value, CallState.RINGING.value):
                sim_card.call_state = CallState.CONNECTED.value
            else:
                self._log.debug(
                    "Connect event ignored for call state",
                    extra={"dev_id": device.dev_id, "slot": sim_card.slot, "call_state": sim_card.call_state},
                )
        elif kind == EventKind.CALL_ENDED:
            previous_state = sim_card.call_state
            sim_card.call_state = CallState.IDLE.value
            if event.call_duration is not None:
                message = create_message(
                    db,
                    device,
                    sim_card,
                    msg_type=MessageType.CALL.value,
                    raw_data=classified.raw,
                    phone_number=event.phone_number or sim_card.last_call_number,
                    body=f"通话结束，时长 {event.call_duration} 秒",
                    net_channel=event.net_channel,
                    msg_ts=event.msg_ts,
                    sms_ts=event.sms_ts,
                    call_duration=event.call_duration,
                    call_status=self._call_end_status(event, previous_state),
                )

        db.flush()
        return EventOutcome(event=classified, device=device, sim_card=sim_card, message=message)

    @staticmethod
    def _call_end_status(event: WebhookEvent, previous_state: str) -> str:
        if event.call_status in CALL_END_STATUSES:
            return event.call_status
        if previous_state == CallState.CONNECTED.value or (event.call_duration or 0) > 0:
            return "answered"
        return "missed"

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _get_device(self, db: Session, dev_id: str) -> Device:
        device = db.query(Device).filter(Device.dev_id == dev_id).first()
        if device is None:
            raise DeviceNotFound(dev_id)
        return device

    def _touch_device(self, device: Device, now: datetime) -> None:
        if device.status != DeviceStatus.ACTIVE.value:
            self._log.info(
                "Device back online",
                extra={"dev_id": device.dev_id, "from_status": device.status, "to_status": DeviceStatus.ACTIVE.value},
            )
            record_device_transition(DeviceStatus.ACTIVE.value)
            device.status = DeviceStatus.ACTIVE.value
        device.last_active_time = now

    def _find_or_create_sim_card(
        self,
        db: Session,
        device: Device,
        event: WebhookEvent,
        now: datetime,
    ) -> SimCard:
        sim_card = (
            db.query(SimCard)
            .filter(SimCard.device_id == device.id, SimCard.slot == event.slot)
            .first()
        )

        if sim_card is None:
            suffix = event.imsi[-4:] if event.imsi else "未知"
            sim_card = SimCard(
                device_id=device.id,
                slot=event.slot,
                msisdn=event.msisdn or None,
                imsi=event.imsi or None,
                iccid=event.iccid or None,
                name=event.sim_name or f"卡槽{event.slot}_{suffix}",
                status=SimStatus.READY.value,
                call_state=CallState.IDLE.value,
                last_active_time=now,
            )
            db.add(sim_card)
            # Surfaces a unique-key conflict with a concurrent creator now
            db.flush()
            self._log.info(
                "SIM card created",
                extra={"dev_id": device.dev_id, "slot": event.slot, "sim_card_id": sim_card.id},
            )
            return sim_card

        # Only overwrite with non-empty values that actually differ
        for attr, value in (
            ("msisdn", event.msisdn),
            ("imsi", event.imsi),
            ("iccid", event.iccid),
            ("name", event.sim_name),
        ):
            if value and value != getattr(sim_card, attr):
                setattr(sim_card, attr, value)
        sim_card.last_active_time = now
        return sim_card
