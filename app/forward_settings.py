"""
Forwarding configuration store.

Rows in forward_settings hold JSON blobs; this module is the only place that
reads them, decoding each platform's config into its own typed model so the
dispatchers never handle untyped dicts.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models import ForwardSetting, Platform
from app.storage import SessionLocal, utcnow
from app.utils import split_list

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATE = "📱 新短信\n设备: {device}\nSIM卡: {simcard}\n发送方: {sender}\n内容: {content}\n时间: {time}"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


# =============================================================================
# Platform Config Models
# =============================================================================

class ProxyAuth(_CamelModel):
    username: str = ""
    password: str = ""


class ProxyConfig(_CamelModel):
    enabled: bool = False
    host: str = ""
    port: Union[int, str] = ""
    auth: ProxyAuth = Field(default_factory=ProxyAuth)

    def url(self) -> Optional[str]:
        """Proxy URL for httpx, or None when the proxy is off or unset."""
        if not self.enabled or not self.host:
            return None
        host = self.host
        if "://" not in host:
            host = f"http://{host}"
        scheme, _, address = host.partition("://")
        credentials = ""
        if self.auth.username:
            credentials = f"{self.auth.username}:{self.auth.password}@"
        port = f":{self.port}" if self.port not in ("", None) else ""
        return f"{scheme}://{credentials}{address}{port}"


class TelegramConfig(_CamelModel):
    bot_token: str = ""
    chat_id: str = ""
    parse_mode: str = "HTML"
    silent_mode: bool = False
    proxy: ProxyConfig = Field(default_factory=ProxyConfig)

    @field_validator("chat_id", mode="before")
    @classmethod
    def _chat_id_as_str(cls, v):
        return "" if v is None else str(v)


class BarkConfig(_CamelModel):
    server_url: str = "https://api.day.app"
    device_key: str = ""
    group: str = "短信接收"
    sound: str = "default"
    call_sound: str = "minuet"
    level: str = "active"
    auto_copy: bool = True
    icon: str = "https://day.app/assets/images/avatar.jpg"
    is_archive: bool = True


class WebhookConfig(_CamelModel):
    url: str = ""
    method: str = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    # milliseconds
    timeout: int = Field(default=10000, ge=1)


class WxPusherConfig(_CamelModel):
    app_token: str = ""
    uids: list[str] = Field(default_factory=list)
    topic_ids: list[str] = Field(default_factory=list)
    url: str = ""

    @field_validator("uids", "topic_ids", mode="before")
    @classmethod
    def _normalize_ids(cls, v):
        return split_list(v)


PlatformConfig = Union[TelegramConfig, BarkConfig, WebhookConfig, WxPusherConfig]

CONFIG_MODELS: dict[Platform, type] = {
    Platform.TELEGRAM: TelegramConfig,
    Platform.BARK: BarkConfig,
    Platform.WEBHOOK: WebhookConfig,
    Platform.WXPUSHER: WxPusherConfig,
}


class FilterRules(_CamelModel):
    keywords: list[str] = Field(default_factory=list)
    senders: list[str] = Field(default_factory=list)
    devices: list[str] = Field(default_factory=list)
    sim_cards: list[str] = Field(default_factory=list)
    block_call_numbers: list[str] = Field(default_factory=list)

    @field_validator("*", mode="before")
    @classmethod
    def _normalize(cls, v):
        return split_list(v)

    @property
    def has_sms_rules(self) -> bool:
        return bool(self.keywords or self.senders or self.devices or self.sim_cards)


def decode_config(platform: Union[Platform, str], raw: Optional[dict]) -> PlatformConfig:
    """Build the typed config model for a platform from its stored JSON."""
    model = CONFIG_MODELS[Platform(platform)]
    return model.model_validate(raw or {})


@dataclass(frozen=True)
class PlatformSettings:
    """Decoded, read-only view of one forward_settings row."""
    platform: Platform
    enabled: bool
    config: Optional[PlatformConfig]
    filter_rules: FilterRules
    message_template: str
    # Set when the stored config or filter rules did not validate; dispatch then fails
    config_error: Optional[str] = None


def _default_row(platform: Platform) -> ForwardSetting:
    return ForwardSetting(
        platform=platform.value,
        enabled=False,
        config=CONFIG_MODELS[platform]().model_dump(by_alias=True),
        filter_rules=FilterRules().model_dump(by_alias=True),
        message_template=DEFAULT_TEMPLATE,
        forward_count=0,
        fail_count=0,
    )


def _decode_row(row: ForwardSetting) -> PlatformSettings:
    return PlatformSettings(
        platform=Platform(row.platform),
        enabled=bool(row.enabled),
        config=decode_config(row.platform, row.config),
        filter_rules=FilterRules.model_validate(row.filter_rules or {}),
        message_template=row.message_template or DEFAULT_TEMPLATE,
    )


class ForwardSettingStore:
    """Read access to platform settings plus atomic counter updates."""

    def __init__(self, session_factory: Callable[..., Session] = SessionLocal):
        self._session_factory = session_factory

    def ensure_defaults(self) -> None:
        """Create a disabled default row for every platform that has none."""
        for platform in Platform:
            self._get_or_create(platform)

    def _get_or_create(self, platform: Platform) -> ForwardSetting:
        with self._session_factory(expire_on_commit=False) as db:
            row = db.query(ForwardSetting).filter(ForwardSetting.platform == platform.value).first()
            if row is not None:
                return row
            row = _default_row(platform)
            db.add(row)
            try:
                db.commit()
                logger.info("Created default forward setting", extra={"platform": platform.value})
                return row
            except IntegrityError:
                # Another worker created it first
                db.rollback()
                return db.query(ForwardSetting).filter(ForwardSetting.platform == platform.value).one()

    def get(self, platform: Union[Platform, str]) -> PlatformSettings:
        return _decode_row(self._get_or_create(Platform(platform)))

    def list_enabled(self) -> list[PlatformSettings]:
        with self._session_factory() as db:
            rows = (
                db.query(ForwardSetting)
                .filter(ForwardSetting.enabled.is_(True))
                .order_by(ForwardSetting.platform.asc())
                .all()
            )
            settings = []
            for row in rows:
                try:
                    platform = Platform(row.platform)
                except ValueError:
                    logger.error("Skipping forward setting for unknown platform", extra={"platform": row.platform})
                    continue
                try:
                    settings.append(_decode_row(row))
                except ValueError as e:
                    # pydantic.ValidationError is a ValueError
                    logger.error(
                        "Forward setting does not validate",
                        extra={"platform": row.platform, "error": str(e)},
                    )
                    settings.append(PlatformSettings(
                        platform=platform,
                        enabled=True,
                        config=None,
                        filter_rules=FilterRules(),
                        message_template=row.message_template or DEFAULT_TEMPLATE,
                        config_error=str(e),
                    ))
            return settings

    def update(
        self,
        platform: Union[Platform, str],
        enabled: Optional[bool] = None,
        config: Optional[dict[str, Any]] = None,
        filter_rules: Optional[dict[str, Any]] = None,
        message_template: Optional[str] = None,
    ) -> PlatformSettings:
        """Replace the given fields of a platform's settings."""
        platform = Platform(platform)
        self._get_or_create(platform)
        with self._session_factory(expire_on_commit=False) as db:
            row = db.query(ForwardSetting).filter(ForwardSetting.platform == platform.value).one()
            if enabled is not None:
                row.enabled = enabled
            if config is not None:
                row.config = decode_config(platform, config).model_dump(by_alias=True)
            if filter_rules is not None:
                row.filter_rules = FilterRules.model_validate(filter_rules).model_dump(by_alias=True)
            if message_template is not None:
                row.message_template = message_template
            db.commit()
            return _decode_row(row)

    def record_success(self, platform: Union[Platform, str]) -> None:
        self._increment(Platform(platform), success=True)

    def record_failure(self, platform: Union[Platform, str]) -> None:
        self._increment(Platform(platform), success=False)

    def _increment(self, platform: Platform, success: bool) -> None:
        # Single UPDATE so concurrent forwarders never lose an increment
        if success:
            values = {
                "forward_count": ForwardSetting.forward_count + 1,
                "last_forward_time": utcnow(),
            }
        else:
            values = {"fail_count": ForwardSetting.fail_count + 1}
        with self._session_factory() as db:
            db.execute(
                update(ForwardSetting)
                .where(ForwardSetting.platform == platform.value)
                .values(**values)
            )
            db.commit()

    def statistics(self) -> dict:
        """
        Forwarding counters per platform and overall.

        Returns:
            {"platforms": [ForwardSetting rows], "summary": {...}}
        """
        with self._session_factory(expire_on_commit=False) as db:
            rows = db.query(ForwardSetting).order_by(ForwardSetting.platform.asc()).all()

        total_forwarded = sum(row.forward_count or 0 for row in rows)
        total_failed = sum(row.fail_count or 0 for row in rows)
        attempts = total_forwarded + total_failed
        success_rate = f"{total_forwarded / attempts * 100:.2f}%" if attempts else "0%"

        return {
            "platforms": rows,
            "summary": {
                "total_forwarded": total_forwarded,
                "total_failed": total_failed,
                "enabled_count": sum(1 for row in rows if row.enabled),
                "total_platforms": len(rows),
                "success_rate": success_rate,
            },
        }
