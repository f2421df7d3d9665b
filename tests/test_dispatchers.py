"""
Tests for the platform adapters.

Outbound HTTP is replaced by patching httpx.AsyncClient.request.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from app.dispatchers import (
    BarkDispatcher,
    TelegramDispatcher,
    WebhookDispatcher,
    WxPusherDispatcher,
    build_dispatchers,
)
from app.errors import ConfigIncomplete, PlatformDispatchFailure
from app.forward_settings import BarkConfig, TelegramConfig, WebhookConfig, WxPusherConfig
from app.models import Platform


def mock_response(status_code=200, body=None):
    response = MagicMock()
    response.status_code = status_code
    if body is None:
        response.json.side_effect = ValueError("no json")
    else:
        response.json.return_value = body
    return response


def patch_request(response=None, side_effect=None):
    mock = AsyncMock(return_value=response, side_effect=side_effect)
    return patch.object(httpx.AsyncClient, "request", new=mock), mock


class TestTelegram:

    @pytest.mark.asyncio
    async def test_success(self):
        config = TelegramConfig(botToken="123:abc", chatId=42, silentMode=True)
        patcher, mock = patch_request(mock_response(200, {"ok": True, "result": {}}))
        with patcher:
            await TelegramDispatcher().send("<b>a &lt; b</b>", config)

        method, url = mock.call_args.args
        assert method == "POST"
        assert url == "https://api.telegram.org/bot123:abc/sendMessage"
        payload = mock.call_args.kwargs["json"]
        assert payload["chat_id"] == "42"
        assert payload["text"] == "<b>a &lt; b</b>"
        assert payload["parse_mode"] == "HTML"
        assert payload["disable_notification"] is True

    @pytest.mark.asyncio
    async def test_api_error_description(self):
        config = TelegramConfig(botToken="t", chatId="1")
        body = {"ok": False, "error_code": 400, "description": "Bad Request: chat not found"}
        patcher, _ = patch_request(mock_response(400, body))
        with patcher, pytest.raises(PlatformDispatchFailure) as exc:
            await TelegramDispatcher().send("x", config)

        assert exc.value.platform == "telegram"
        assert exc.value.detail == "Bad Request: chat not found"

    @pytest.mark.asyncio
    async def test_missing_credentials_fail_before_request(self):
        patcher, mock = patch_request(mock_response(200, {"ok": True}))
        with patcher, pytest.raises(ConfigIncomplete):
            await TelegramDispatcher().send("x", TelegramConfig(botToken="t"))
        mock.assert_not_awaited()

    def test_html_mode_escapes_values(self):
        escape = TelegramDispatcher().value_escaper(TelegramConfig(parseMode="HTML"))
        assert escape("a < b & \"c\"") == "a &lt; b &amp; \"c\""

    def test_markdown_mode_has_no_escaper(self):
        assert TelegramDispatcher().value_escaper(TelegramConfig(parseMode="Markdown")) is None

    def test_other_platforms_have_no_escaper(self):
        assert BarkDispatcher().value_escaper(BarkConfig()) is None

    def test_proxy_url(self):
        config = TelegramConfig.model_validate({
            "proxy": {
                "enabled": True,
                "host": "127.0.0.1",
                "port": 7890,
                "auth": {"username": "u", "password": "p"},
            }
        })
        assert config.proxy.url() == "http://u:p@127.0.0.1:7890"

    def test_proxy_disabled(self):
        config = TelegramConfig.model_validate({"proxy": {"enabled": False, "host": "127.0.0.1"}})
        assert config.proxy.url() is None


class TestBark:

    @pytest.mark.asyncio
    async def test_sms_payload(self):
        config = BarkConfig(serverUrl="https://api.day.app/", deviceKey="KEY")
        patcher, mock = patch_request(mock_response(200, {"code": 200, "message": "success"}))
        with patcher:
            await BarkDispatcher().send("hello", config, "sms")

        method, url = mock.call_args.args
        assert url == "https://api.day.app/KEY"
        payload = mock.call_args.kwargs["json"]
        assert payload["title"] == "新短信"
        assert payload["body"] == "hello"
        assert payload["sound"] == "default"
        assert payload["group"] == "短信接收"

    @pytest.mark.asyncio
    async def test_call_title_and_sound(self):
        config = BarkConfig(deviceKey="KEY", callSound="alarm")
        patcher, mock = patch_request(mock_response(200, {"code": 200}))
        with patcher:
            await BarkDispatcher().send("ring", config, "call")

        payload = mock.call_args.kwargs["json"]
        assert payload["title"] == "来电通知"
        assert payload["sound"] == "alarm"

    @pytest.mark.asyncio
    async def test_non_200_code_fails(self):
        config = BarkConfig(deviceKey="KEY")
        patcher, _ = patch_request(mock_response(400, {"code": 400, "message": "failed to get device token"}))
        with patcher, pytest.raises(PlatformDispatchFailure) as exc:
            await BarkDispatcher().send("x", config)
        assert exc.value.detail == "failed to get device token"

    @pytest.mark.asyncio
    async def test_missing_device_key(self):
        with pytest.raises(ConfigIncomplete):
            await BarkDispatcher().send("x", BarkConfig())


class TestWebhook:

    @pytest.mark.asyncio
    async def test_payload_headers_and_timeout(self):
        config = WebhookConfig(url="https://example.com/hook", headers={"X-Token": "s"}, timeout=90000)
        patcher, mock = patch_request(mock_response(204))
        with patcher, patch.object(httpx, "AsyncClient", wraps=httpx.AsyncClient) as client_cls:
            await WebhookDispatcher(timeout=10, max_timeout=60).send("ring", config, "call")

        assert client_cls.call_args.kwargs["timeout"] == 60
        method, url = mock.call_args.args
        assert (method, url) == ("POST", "https://example.com/hook")
        assert mock.call_args.kwargs["headers"]["X-Token"] == "s"
        payload = mock.call_args.kwargs["json"]
        assert payload["type"] == "call_forward"
        assert payload["message"] == "ring"
        assert "timestamp" in payload

    @pytest.mark.asyncio
    async def test_sms_type(self):
        patcher, mock = patch_request(mock_response(200))
        with patcher:
            await WebhookDispatcher().send("x", WebhookConfig(url="http://h"), "sms")
        assert mock.call_args.kwargs["json"]["type"] == "sms_forward"

    @pytest.mark.asyncio
    async def test_http_error_status(self):
        patcher, _ = patch_request(mock_response(500, {"error": "boom"}))
        with patcher, pytest.raises(PlatformDispatchFailure) as exc:
            await WebhookDispatcher().send("x", WebhookConfig(url="http://h"))
        assert exc.value.detail == "HTTP 500: boom"

    @pytest.mark.asyncio
    async def test_timeout_is_failure(self):
        patcher, _ = patch_request(side_effect=httpx.ReadTimeout("timed out"))
        with patcher, pytest.raises(PlatformDispatchFailure) as exc:
            await WebhookDispatcher().send("x", WebhookConfig(url="http://h", timeout=2000))
        assert "timed out" in exc.value.detail

    @pytest.mark.asyncio
    async def test_connection_error_is_failure(self):
        patcher, _ = patch_request(side_effect=httpx.ConnectError("refused"))
        with patcher, pytest.raises(PlatformDispatchFailure) as exc:
            await WebhookDispatcher().send("x", WebhookConfig(url="http://h"))
        assert exc.value.detail == "ConnectError: refused"

    @pytest.mark.asyncio
    async def test_missing_url(self):
        with pytest.raises(ConfigIncomplete):
            await WebhookDispatcher().send("x", WebhookConfig())


class TestWxPusher:

    def test_ids_accept_strings_or_lists(self):
        config = WxPusherConfig.model_validate({"appToken": "AT", "uids": "UID_1, UID_2,", "topicIds": [123, ""]})
        assert config.uids == ["UID_1", "UID_2"]
        assert config.topic_ids == ["123"]

    @pytest.mark.asyncio
    async def test_success(self):
        config = WxPusherConfig(appToken="AT", uids=["UID_1"])
        patcher, mock = patch_request(mock_response(200, {"code": 1000, "msg": "处理成功", "success": True}))
        with patcher:
            await WxPusherDispatcher().send("line1\nline2", config)

        method, url = mock.call_args.args
        assert url == "https://wxpusher.zjiecode.com/api/send/message"
        payload = mock.call_args.kwargs["json"]
        assert payload["appToken"] == "AT"
        assert payload["uids"] == ["UID_1"]
        assert payload["topicIds"] == []
        assert payload["summary"] == "line1"

    @pytest.mark.asyncio
    async def test_error_code(self):
        config = WxPusherConfig(appToken="AT", topicIds=["1"])
        patcher, _ = patch_request(mock_response(200, {"code": 1001, "msg": "appToken不正确"}))
        with patcher, pytest.raises(PlatformDispatchFailure) as exc:
            await WxPusherDispatcher().send("x", config)
        assert exc.value.detail == "appToken不正确"

    @pytest.mark.asyncio
    async def test_no_recipients_fails_fast(self):
        patcher, mock = patch_request(mock_response(200, {"code": 1000}))
        with patcher, pytest.raises(ConfigIncomplete):
            await WxPusherDispatcher().send("x", WxPusherConfig.model_validate({"appToken": "AT", "uids": " , "}))
        mock.assert_not_awaited()


class TestRegistry:

    def test_one_dispatcher_per_platform(self):
        dispatchers = build_dispatchers(timeout=5, webhook_max_timeout=30)
        assert set(dispatchers) == set(Platform)
        assert all(d.platform == p for p, d in dispatchers.items())
        assert dispatchers[Platform.WEBHOOK].max_timeout == 30
