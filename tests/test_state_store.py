"""
Tests for the transactional device/SIM state store.

Tests cover:
- SMS scenario: SIM card created, message persisted, device marked active
- Unknown devices are dropped without side effects
- SIM field updates never null out stored values
- SIM status and call state transitions
- Concurrent first events for one slot
- Heartbeat refresh and offline transition
"""

from concurrent.futures import ThreadPoolExecutor

import pytest

from app.classifier import classify
from app.errors import DeviceNotFound, InvalidEvent
from app.models import CallState, Device, DeviceStatus, Message, SimCard, SimStatus
from app.schemas import WebhookEvent
from app.state_store import StateStore


def make_event(**payload):
    return classify(WebhookEvent.model_validate(payload), raw=payload)


@pytest.fixture
def store(db_tables):
    return StateStore()


class TestSmsEvent:
    """Test the SMS path end to end against the database."""

    def test_sms_creates_sim_and_message(self, store, db, device):
        outcome = store.apply_event(make_event(
            type=501, devId="DEV1", slot=1, phNum="10086", smsBd="您的验证码是1234"
        ))

        db.expire_all()
        sims = db.query(SimCard).all()
        messages = db.query(Message).all()
        dev = db.query(Device).filter_by(dev_id="DEV1").one()

        assert len(sims) == 1
        assert sims[0].device_id == dev.id
        assert sims[0].slot == 1
        assert sims[0].status == SimStatus.READY.value

        assert len(messages) == 1
        assert messages[0].msg_type == "sms"
        assert messages[0].phone_number == "10086"
        assert messages[0].body == "您的验证码是1234"
        assert messages[0].sim_card_id == sims[0].id
        assert messages[0].device_id == dev.id
        assert messages[0].raw_data["smsBd"] == "您的验证码是1234"

        assert dev.status == DeviceStatus.ACTIVE.value
        assert dev.last_active_time is not None

        assert outcome.message.id == messages[0].id
        assert outcome.device.dev_id == "DEV1"
        assert outcome.sim_card.id == sims[0].id

    def test_second_sms_reuses_sim_card(self, store, db, device):
        store.apply_event(make_event(type=501, devId="DEV1", slot=1, phNum="10086", smsBd="a"))
        store.apply_event(make_event(type=501, devId="DEV1", slot=1, phNum="10010", smsBd="b"))

        assert db.query(SimCard).count() == 1
        assert db.query(Message).count() == 2

    def test_sms_resets_sim_status_to_ready(self, store, db, device):
        store.apply_event(make_event(type=209, devId="DEV1", slot=1))
        store.apply_event(make_event(type=501, devId="DEV1", slot=1, phNum="1", smsBd="x"))

        db.expire_all()
        assert db.query(SimCard).one().status == SimStatus.READY.value


class TestUnknownDevice:
    """Events for unregistered devices leave no trace."""

    def test_unknown_device_raises_and_writes_nothing(self, store, db, device):
        with pytest.raises(DeviceNotFound):
            store.apply_event(make_event(type=501, devId="NOPE", slot=1, phNum="1", smsBd="x"))

        assert db.query(SimCard).count() == 0
        assert db.query(Message).count() == 0
        assert db.query(Device).count() == 1

    def test_unknown_device_heartbeat(self, store, db_tables):
        with pytest.raises(DeviceNotFound):
            store.record_heartbeat("NOPE")


class TestInvalidEvents:

    def test_missing_slot(self, store, device):
        with pytest.raises(InvalidEvent):
            store.apply_event(make_event(type=501, devId="DEV1", phNum="1", smsBd="x"))

    def test_heartbeat_is_not_a_sim_event(self, store, device):
        with pytest.raises(InvalidEvent):
            store.apply_event(make_event(type=998, devId="DEV1", cnt=1))


class TestSimCardFields:
    """SIM attributes are filled lazily and never overwritten with blanks."""

    def test_new_sim_takes_payload_fields(self, store, db, device):
        store.apply_event(make_event(
            type=204, devId="DEV1", slot=2, imsi="460001234567890", iccId="8986001", msIsdn="13800000000"
        ))

        sim = db.query(SimCard).one()
        assert sim.imsi == "460001234567890"
        assert sim.iccid == "8986001"
        assert sim.msisdn == "13800000000"
        assert sim.name == "卡槽2_7890"

    def test_later_events_do_not_null_fields(self, store, db, device):
        store.apply_event(make_event(
            type=204, devId="DEV1", slot=1, imsi="460001234567890", iccId="8986001",
            msIsdn="13800000000", scName="主卡"
        ))
        store.apply_event(make_event(type=501, devId="DEV1", slot=1, phNum="10086", smsBd="x", imsi="", iccId=None))

        db.expire_all()
        sim = db.query(SimCard).one()
        assert sim.imsi == "460001234567890"
        assert sim.iccid == "8986001"
        assert sim.msisdn == "13800000000"
        assert sim.name == "主卡"

    def test_changed_values_are_applied(self, store, db, device):
        store.apply_event(make_event(type=204, devId="DEV1", slot=1, msIsdn="13800000000"))
        store.apply_event(make_event(type=204, devId="DEV1", slot=1, msIsdn="13900000000"))

        db.expire_all()
        assert db.query(SimCard).one().msisdn == "13900000000"


class TestSimStatus:

    @pytest.mark.parametrize("code", ["202", "203", "204", "205", "209"])
    def test_status_code_stored_verbatim(self, store, db, device, code):
        outcome = store.apply_event(make_event(type=int(code), devId="DEV1", slot=1))

        db.expire_all()
        assert db.query(SimCard).one().status == code
        assert outcome.message is None
        assert db.query(Message).count() == 0


class TestCallEvents:
    """Call state transitions and call records."""

    def test_ringing(self, store, db, device):
        outcome = store.apply_event(make_event(type=601, devId="DEV1", slot=1, phNum="13711112222"))

        sim = db.query(SimCard).one()
        assert sim.call_state == CallState.RINGING.value
        assert sim.last_call_number == "13711112222"
        assert sim.last_call_time is not None

        assert outcome.message.msg_type == "call"
        assert outcome.message.call_status == "ringing"
        assert outcome.message.phone_number == "13711112222"

    def test_connected_has_no_message(self, store, db, device):
        store.apply_event(make_event(type=601, devId="DEV1", slot=1, phNum="13711112222"))
        outcome = store.apply_event(make_event(type=602, devId="DEV1", slot=1))

        db.expire_all()
        assert db.query(SimCard).one().call_state == CallState.CONNECTED.value
        assert outcome.message is None
        assert db.query(Message).count() == 1

    def test_connected_from_idle(self, store, db, device):
        store.apply_event(make_event(type=602, devId="DEV1", slot=1))
        assert db.query(SimCard).one().call_state == CallState.CONNECTED.value

    def test_ended_with_duration_records_answered_call(self, store, db, device):
        store.apply_event(make_event(type=601, devId="DEV1", slot=1, phNum="13711112222"))
        store.apply_event(make_event(type=602, devId="DEV1", slot=1))
        outcome = store.apply_event(make_event(type=603, devId="DEV1", slot=1, duration=75))

        db.expire_all()
        assert db.query(SimCard).one().call_state == CallState.IDLE.value
        assert outcome.message.call_status == "answered"
        assert outcome.message.call_duration == 75
        # Caller falls back to the number seen while ringing
        assert outcome.message.phone_number == "13711112222"

    def test_ended_zero_duration_is_missed(self, store, device):
        store.apply_event(make_event(type=601, devId="DEV1", slot=1, phNum="13711112222"))
        outcome = store.apply_event(make_event(type=603, devId="DEV1", slot=1, duration=0))

        assert outcome.message.call_status == "missed"

    def test_ended_explicit_status(self, store, device):
        outcome = store.apply_event(make_event(
            type=603, devId="DEV1", slot=1, phNum="1", duration=0, callStatus="rejected"
        ))
        assert outcome.message.call_status == "rejected"

    def test_ended_without_duration_has_no_message(self, store, db, device):
        store.apply_event(make_event(type=601, devId="DEV1", slot=1, phNum="13711112222"))
        outcome = store.apply_event(make_event(type=603, devId="DEV1", slot=1))

        db.expire_all()
        assert outcome.message is None
        assert db.query(SimCard).one().call_state == CallState.IDLE.value
        assert db.query(Message).count() == 1


class TestConcurrentFirstEvent:

    def test_single_sim_row_under_concurrent_creation(self, store, db, device):
        """Near-simultaneous first events for a new slot produce one SIM card."""
        def send(i):
            return store.apply_event(make_event(type=501, devId="DEV1", slot=1, phNum=str(i), smsBd="x"))

        with ThreadPoolExecutor(max_workers=4) as pool:
            outcomes = list(pool.map(send, range(8)))

        assert db.query(SimCard).filter_by(slot=1).count() == 1
        assert db.query(Message).count() == 8
        assert len({o.sim_card.id for o in outcomes}) == 1


class TestDeviceLiveness:

    def test_heartbeat_marks_active(self, store, db, device):
        store.record_heartbeat("DEV1")

        db.expire_all()
        assert db.query(Device).one().status == DeviceStatus.ACTIVE.value

    def test_mark_offline_only_once(self, store, db, device):
        store.record_heartbeat("DEV1")

        assert store.mark_device_offline("DEV1") is True
        assert store.mark_device_offline("DEV1") is False

        db.expire_all()
        assert db.query(Device).one().status == DeviceStatus.OFFLINE.value

    def test_mark_offline_leaves_inactive_device(self, store, db, device):
        db.query(Device).update({"status": DeviceStatus.INACTIVE.value})
        db.commit()

        assert store.mark_device_offline("DEV1") is False
        db.expire_all()
        assert db.query(Device).one().status == DeviceStatus.INACTIVE.value
