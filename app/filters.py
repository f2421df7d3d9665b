"""
Per-platform forwarding filter.

Calls are forwarded unless blocked; SMS are forwarded when no rule is
configured or when any configured rule matches.
"""

from app.forward_settings import FilterRules
from app.models import MessageType


def _device_listed(entries: list[str], device) -> bool:
    # Entries may hold the internal id (admin UI) or the external devId
    return str(device.id) in entries or device.dev_id in entries


def _sim_listed(entries: list[str], sim_card) -> bool:
    return sim_card is not None and str(sim_card.id) in entries


def matches(rules: FilterRules, message, device, sim_card) -> bool:
    """Return True if the message should be forwarded under these rules."""
    if message.msg_type == MessageType.CALL.value:
        return _call_matches(rules, message, device, sim_card)
    return _sms_matches(rules, message, device, sim_card)


def _call_matches(rules: FilterRules, message, device, sim_card) -> bool:
    caller = message.phone_number or ""
    if any(blocked in caller for blocked in rules.block_call_numbers):
        return False
    if rules.devices and not _device_listed(rules.devices, device):
        return False
    if rules.sim_cards and not _sim_listed(rules.sim_cards, sim_card):
        return False
    return True


def _sms_matches(rules: FilterRules, message, device, sim_card) -> bool:
    if not rules.has_sms_rules:
        return True

    body = message.body or ""
    sender = message.phone_number or ""

    if rules.keywords and any(keyword in body for keyword in rules.keywords):
        return True
    if rules.senders and any(number in sender for number in rules.senders):
        return True
    if rules.devices and _device_listed(rules.devices, device):
        return True
    if rules.sim_cards and _sim_listed(rules.sim_cards, sim_card):
        return True
    return False
