"""
Outbound adapters for the notification platforms.

Every adapter turns a rendered message plus its typed config into one HTTP
call and either returns normally or raises PlatformDispatchFailure carrying
the platform's own error text.
"""

import html
from functools import partial
from typing import Any, Callable, Optional

import httpx

from app.errors import ConfigIncomplete, PlatformDispatchFailure
from app.forward_settings import BarkConfig, TelegramConfig, WebhookConfig, WxPusherConfig
from app.formatter import CALL_TITLE
from app.models import MessageType, Platform
from app.storage import utcnow


TELEGRAM_API_URL = "https://api.telegram.org"
WXPUSHER_SEND_URL = "https://wxpusher.zjiecode.com/api/send/message"
SMS_TITLE = "新短信"

ERROR_KEYS = ("description", "message", "msg", "error")


def _json_body(response: httpx.Response) -> dict:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _error_detail(response: httpx.Response, data: Optional[dict] = None) -> str:
    """Best human-readable error text from a platform response."""
    data = _json_body(response) if data is None else data
    for key in ERROR_KEYS:
        value = data.get(key)
        if value:
            return str(value)
    return f"HTTP {response.status_code}"


class PlatformDispatcher:
    """Base adapter: owns the HTTP call and transport error mapping."""

    platform: Platform

    def __init__(self, timeout: float = 10.0):
        self.timeout = timeout

    async def send(self, text: str, config: Any, msg_type: str = MessageType.SMS.value) -> None:
        raise NotImplementedError

    def value_escaper(self, config: Any) -> Optional[Callable[[str], str]]:
        """Escaping for values substituted into this platform's template, if any."""
        return None

    async def _request(
        self,
        url: str,
        *,
        method: str = "POST",
        json: Optional[dict] = None,
        headers: Optional[dict] = None,
        timeout: Optional[float] = None,
        proxy: Optional[str] = None,
    ) -> httpx.Response:
        timeout = self.timeout if timeout is None else timeout
        try:
            async with httpx.AsyncClient(timeout=timeout, proxy=proxy) as client:
                return await client.request(method, url, json=json, headers=headers)
        except httpx.TimeoutException as e:
            raise PlatformDispatchFailure(self.platform.value, f"request timed out after {timeout}s") from e
        except httpx.RequestError as e:
            raise PlatformDispatchFailure(self.platform.value, f"{type(e).__name__}: {e}") from e

    def _fail(self, detail: str) -> PlatformDispatchFailure:
        return PlatformDispatchFailure(self.platform.value, detail)

    def _incomplete(self, detail: str) -> ConfigIncomplete:
        return ConfigIncomplete(self.platform.value, detail)


class TelegramDispatcher(PlatformDispatcher):
    """Bot API sendMessage; success is `ok: true` in the response body."""

    platform = Platform.TELEGRAM

    def value_escaper(self, config: TelegramConfig) -> Optional[Callable[[str], str]]:
        # Template markup is kept; only message data is escaped
        if config.parse_mode.upper() == "HTML":
            return partial(html.escape, quote=False)
        return None

    async def send(self, text: str, config: TelegramConfig, msg_type: str = MessageType.SMS.value) -> None:
        if not config.bot_token or not config.chat_id:
            raise self._incomplete("botToken and chatId are required")

        payload = {
            "chat_id": config.chat_id,
            "text": text,
            "parse_mode": config.parse_mode,
            "disable_notification": config.silent_mode,
        }
        response = await self._request(
            f"{TELEGRAM_API_URL}/bot{config.bot_token}/sendMessage",
            json=payload,
            proxy=config.proxy.url(),
        )
        data = _json_body(response)
        if data.get("ok") is not True:
            raise self._fail(_error_detail(response, data))


class BarkDispatcher(PlatformDispatcher):
    """Bark push; success is `code: 200` in the response body."""

    platform = Platform.BARK

    async def send(self, text: str, config: BarkConfig, msg_type: str = MessageType.SMS.value) -> None:
        if not config.server_url or not config.device_key:
            raise self._incomplete("serverUrl and deviceKey are required")

        is_call = msg_type == MessageType.CALL.value
        payload = {
            "title": CALL_TITLE if is_call else SMS_TITLE,
            "body": text,
            "sound": config.call_sound if is_call else config.sound,
            "group": config.group,
            "level": config.level,
            "icon": config.icon,
            "autoCopy": "1" if config.auto_copy else "0",
            "isArchive": 1 if config.is_archive else 0,
        }
        response = await self._request(
            f"{config.server_url.rstrip('/')}/{config.device_key}",
            json=payload,
        )
        data = _json_body(response)
        if data.get("code") != 200:
            raise self._fail(_error_detail(response, data))


class WebhookDispatcher(PlatformDispatcher):
    """Generic JSON webhook; any 2xx/3xx answer counts as delivered."""

    platform = Platform.WEBHOOK

    def __init__(self, timeout: float = 10.0, max_timeout: float = 60.0):
        super().__init__(timeout)
        self.max_timeout = max_timeout

    async def send(self, text: str, config: WebhookConfig, msg_type: str = MessageType.SMS.value) -> None:
        if not config.url:
            raise self._incomplete("url is required")

        payload = {
            "type": "call_forward" if msg_type == MessageType.CALL.value else "sms_forward",
            "message": text,
            "timestamp": utcnow().isoformat(),
        }
        headers = {"Content-Type": "application/json", **config.headers}
        response = await self._request(
            config.url,
            method=(config.method or "POST").upper(),
            json=payload,
            headers=headers,
            timeout=min(config.timeout / 1000, self.max_timeout),
        )
        if response.status_code >= 400:
            raise self._fail(f"HTTP {response.status_code}: {_error_detail(response)}")


class WxPusherDispatcher(PlatformDispatcher):
    """WxPusher send/message; success is `code: 1000` in the response body."""

    platform = Platform.WXPUSHER

    async def send(self, text: str, config: WxPusherConfig, msg_type: str = MessageType.SMS.value) -> None:
        if not config.app_token:
            raise self._incomplete("appToken is required")
        if not config.uids and not config.topic_ids:
            raise self._incomplete("at least one of uids or topicIds is required")

        payload = {
            "appToken": config.app_token,
            "content": text,
            "summary": text.split("\n", 1)[0][:100],
            "contentType": 1,
            "uids": config.uids,
            "topicIds": config.topic_ids,
        }
        if config.url:
            payload["url"] = config.url

        response = await self._request(WXPUSHER_SEND_URL, json=payload)
        data = _json_body(response)
        if data.get("code") != 1000:
            raise self._fail(_error_detail(response, data))


def build_dispatchers(timeout: float = 10.0, webhook_max_timeout: float = 60.0) -> dict[Platform, PlatformDispatcher]:
    return {
        Platform.TELEGRAM: TelegramDispatcher(timeout),
        Platform.BARK: BarkDispatcher(timeout),
        Platform.WEBHOOK: WebhookDispatcher(timeout, webhook_max_timeout),
        Platform.WXPUSHER: WxPusherDispatcher(timeout),
    }
