"""
Renders the text sent to notification platforms.
"""

import re
from typing import Callable, Optional

from app.models import MessageType
from app.utils import format_duration, format_local_time

CALL_TITLE = "来电通知"

PLACEHOLDER_RE = re.compile(r"\{(device|simcard|sender|content|time)\}")

CALL_STATUS_TEXT = {
    "ringing": "响铃中",
    "rejected": "已拒绝",
    "missed": "未接来电",
}


def call_status_text(call_status, call_duration=None) -> str:
    if call_status == "answered":
        return f"已接听 ({format_duration(call_duration)})"
    return CALL_STATUS_TEXT.get(call_status, "来电")


def _device_label(device) -> str:
    return device.name or device.dev_id


def _sim_label(sim_card) -> str:
    if sim_card is None:
        return ""
    return sim_card.name or sim_card.msisdn or ""


Escape = Optional[Callable[[str], str]]


def format_message(template: str, message, device, sim_card, escape: Escape = None) -> str:
    """
    Fill a platform template for an SMS, or render the fixed call layout.

    Placeholders other than {device}, {simcard}, {sender}, {content} and
    {time} are left as they are. `escape` is applied to the substituted
    values only, never to the template text itself.
    """
    if message.msg_type == MessageType.CALL.value:
        return format_call(message, device, sim_card, escape)

    values = {
        "device": _device_label(device),
        "simcard": _sim_label(sim_card),
        "sender": message.phone_number or "",
        "content": message.body or "",
        "time": format_local_time(message.created_at),
    }
    if escape is not None:
        values = {key: escape(value) for key, value in values.items()}
    # Single pass, so braces inside the SMS body are never expanded
    return PLACEHOLDER_RE.sub(lambda m: values[m.group(1)], template)


def format_call(message, device, sim_card, escape: Escape = None) -> str:
    escape = escape or (lambda value: value)
    lines = [
        f"📞 {CALL_TITLE}",
        f"设备: {escape(_device_label(device))}",
        f"SIM卡: {escape(_sim_label(sim_card))}",
        f"来电号码: {escape(message.phone_number or '未知号码')}",
        f"状态: {call_status_text(message.call_status, message.call_duration)}",
        f"时间: {format_local_time(message.created_at)}",
    ]
    return "\n".join(lines)
