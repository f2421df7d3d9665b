"""
Forward orchestration for persisted messages.

For one message, every enabled platform runs filter -> format -> dispatch on
its own; a failure on one platform is counted and logged but never stops the
others.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Union

from app.errors import ConfigIncomplete, PlatformDispatchFailure
from app.dispatchers import PlatformDispatcher
from app.filters import matches
from app.formatter import format_message
from app.forward_settings import ForwardSettingStore, PlatformSettings, decode_config
from app.metrics import record_forward_outcome
from app.models import MessageType, Platform

TEST_MESSAGE = "📱 测试消息\n这是一条来自短信转发服务的测试消息，收到说明配置正确。"

SUCCESS = "success"
FAILED = "failed"
FILTERED = "filtered"


@dataclass(frozen=True)
class ForwardResult:
    platform: Platform
    outcome: str
    error: Optional[str] = None


class ForwardOrchestrator:
    """Fans one message out to all enabled platforms."""

    def __init__(
        self,
        settings_store: ForwardSettingStore,
        dispatchers: Mapping[Platform, PlatformDispatcher],
        logger: Optional[logging.Logger] = None,
    ):
        self._store = settings_store
        self._dispatchers = dict(dispatchers)
        self._log = logger or logging.getLogger(__name__)

    async def forward(self, message, device, sim_card) -> list[ForwardResult]:
        settings = await asyncio.to_thread(self._store.list_enabled)
        if not settings:
            self._log.debug("No forwarding platform enabled", extra={"message_pk": message.id})
            return []

        results = await asyncio.gather(
            *(self._forward_one(setting, message, device, sim_card) for setting in settings)
        )
        return list(results)

    async def _forward_one(self, setting: PlatformSettings, message, device, sim_card) -> ForwardResult:
        platform = setting.platform
        log_fields = {
            "platform": platform.value,
            "msg_type": message.msg_type,
            "message_pk": message.id,
            "dev_id": device.dev_id,
            "sim_card_id": sim_card.id if sim_card is not None else None,
        }

        try:
            if setting.config_error is not None:
                raise ConfigIncomplete(platform.value, f"stored settings do not validate: {setting.config_error}")

            if not matches(setting.filter_rules, message, device, sim_card):
                record_forward_outcome(platform.value, FILTERED)
                self._log.info("Forward skipped by filter rules", extra={**log_fields, "outcome": FILTERED})
                return ForwardResult(platform, FILTERED)

            dispatcher = self._dispatchers.get(platform)
            if dispatcher is None:
                raise ConfigIncomplete(platform.value, "no dispatcher registered")

            text = format_message(
                setting.message_template, message, device, sim_card,
                escape=dispatcher.value_escaper(setting.config),
            )
            await dispatcher.send(text, setting.config, message.msg_type)
        except Exception as e:
            if isinstance(e, PlatformDispatchFailure):
                detail = e.detail
            else:
                detail = f"{type(e).__name__}: {e}"
            await self._count(self._store.record_failure, platform, log_fields)
            record_forward_outcome(platform.value, FAILED)
            self._log.error("Forward failed", extra={**log_fields, "outcome": FAILED, "error": detail})
            return ForwardResult(platform, FAILED, detail)

        await self._count(self._store.record_success, platform, log_fields)
        record_forward_outcome(platform.value, SUCCESS)
        self._log.info("Forward succeeded", extra={**log_fields, "outcome": SUCCESS})
        return ForwardResult(platform, SUCCESS)

    async def _count(self, increment, platform: Platform, log_fields: dict) -> None:
        try:
            await asyncio.to_thread(increment, platform)
        except Exception:
            # The dispatch outcome stands even if the counter write is lost
            self._log.exception("Failed to update forward counters", extra=log_fields)

    async def test_forward(self, platform: Union[Platform, str], raw_config: dict[str, Any]) -> None:
        """
        Send a fixed test message with a caller-supplied config.

        Counters are left untouched.

        Raises:
            ValueError: unknown platform or config that does not validate
            PlatformDispatchFailure: the platform rejected the message
        """
        platform = Platform(platform)
        config = decode_config(platform, raw_config)
        await self._dispatchers[platform].send(TEST_MESSAGE, config, MessageType.SMS.value)
        self._log.info("Test forward succeeded", extra={"platform": platform.value})
