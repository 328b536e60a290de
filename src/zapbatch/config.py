"""
Application settings.

Durations are expressed in seconds. Every processor accepts per-instance
overrides on top of these defaults.
"""

from __future__ import annotations

import os
import typing as t

import structlog
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, PositiveFloat, PositiveInt

log = structlog.get_logger(__name__)

ENV_PREFIX = "ZAPBATCH_"

ZAP_RECEIPT_KIND = 9735
PROFILE_METADATA_KIND = 0

DEFAULT_PROFILE_RELAYS: tuple[str, ...] = (
    "wss://relay.nostr.band",
    "wss://purplepag.es",
    "wss://relay.damus.io",
    "wss://nostr.wine",
    "wss://directory.yabu.me",
)


class BatchProcessorConfig(BaseModel):
    """
    Defaults shared by every batch processor.

    Parameters
    ----------
    batch_size : int
        Maximum number of keys resolved by one relay subscription.
    batch_delay : float
        Coalescing window before a batch is flushed.
    max_cache_age : float
        Age after which a cached lookup result is treated as absent.
    timeout_duration : float
        Hard deadline of a batch subscription.
    eose_grace_period : float
        Wait after end-of-stream before a batch is completed.
    relay_urls : list[str]
        Relays queried when a processor is not given its own list.
    """

    model_config = ConfigDict(validate_assignment=True)

    batch_size: PositiveInt = 20
    batch_delay: PositiveFloat = 0.1
    max_cache_age: PositiveFloat = 1800.0
    timeout_duration: PositiveFloat = 0.5
    eose_grace_period: float = Field(default=0.1, ge=0)
    relay_urls: list[str] = Field(default_factory=list)


class ReferenceProcessorConfig(BaseModel):
    batch_size: PositiveInt = 20
    batch_delay: PositiveFloat = 0.1


class ProfileConfig(BaseModel):
    batch_size: PositiveInt = 20
    batch_delay: PositiveFloat = 0.1
    relays: list[str] = Field(default_factory=lambda: list(DEFAULT_PROFILE_RELAYS))


class RequestConfig(BaseModel):
    request_timeout: PositiveFloat = 2.0
    cache_duration: PositiveFloat = 300.0
    nip05_timeout: PositiveFloat = 5.0


class ReqConfig(BaseModel):
    initial_load_count: PositiveInt = 15
    additional_load_count: PositiveInt = 20


class AppConfig(BaseModel):
    """
    Aggregate application settings.
    """

    batch_processor: BatchProcessorConfig = Field(default_factory=BatchProcessorConfig)
    reference_processor: ReferenceProcessorConfig = Field(
        default_factory=ReferenceProcessorConfig
    )
    profile: ProfileConfig = Field(default_factory=ProfileConfig)
    request: RequestConfig = Field(default_factory=RequestConfig)
    req: ReqConfig = Field(default_factory=ReqConfig)

    @classmethod
    def from_env(cls, *, environ: t.Mapping[str, str] | None = None) -> AppConfig:
        """
        Build settings from ``ZAPBATCH_*`` environment variables.

        Parameters
        ----------
        environ : typing.Mapping[str, str] | None, optional
            Explicit environment mapping. ``os.environ`` is used, after loading
            a ``.env`` file, when omitted.

        Returns
        -------
        AppConfig
            Settings with environment overrides applied.
        """
        if environ is None:
            load_dotenv()
            environ = os.environ

        def _get(name: str) -> str | None:
            value = environ.get(f"{ENV_PREFIX}{name}")
            return value.strip() if value is not None and value.strip() else None

        batch_overrides: dict[str, t.Any] = {}
        for field_name in ("batch_size", "batch_delay", "max_cache_age", "timeout_duration"):
            value = _get(field_name.upper())
            if value is not None:
                batch_overrides[field_name] = value

        profile_overrides: dict[str, t.Any] = {}
        profile_relays = _get("PROFILE_RELAYS")
        if profile_relays is not None:
            profile_overrides["relays"] = _split_urls(profile_relays)

        request_overrides: dict[str, t.Any] = {}
        request_timeout = _get("REQUEST_TIMEOUT")
        if request_timeout is not None:
            request_overrides["request_timeout"] = request_timeout

        config = cls(
            batch_processor=BatchProcessorConfig(**batch_overrides),
            profile=ProfileConfig(**profile_overrides),
            request=RequestConfig(**request_overrides),
        )
        log.debug(
            event="Loaded configuration from environment",
            batch_overrides=sorted(batch_overrides),
            profile_relay_count=len(config.profile.relays),
        )
        return config


class ViewerConfig(BaseModel):
    """
    Per-view settings of a zap list.

    Parameters
    ----------
    identifier : str
        Identifier of the content whose zaps are displayed.
    relay_urls : list[str]
        Relays the live zap subscription is opened against.
    color_mode : bool | str | None
        ``None`` selects the default; any other value is enabled only when it
        reads ``"true"`` case-insensitively.
    """

    identifier: str
    relay_urls: list[str] = Field(default_factory=list)
    color_mode: bool | str | None = None

    @property
    def is_color_mode_enabled(self) -> bool:
        if self.color_mode is None:
            return True
        return str(self.color_mode).lower() == "true"

    @classmethod
    def from_attributes(cls, *, attributes: t.Mapping[str, str]) -> ViewerConfig:
        """
        Build a view configuration from ``data-*`` style attributes.

        Parameters
        ----------
        attributes : typing.Mapping[str, str]
            Mapping holding ``data-nzv-id``, ``data-relay-urls`` and optionally
            ``data-zap-color-mode``.

        Returns
        -------
        ViewerConfig
            Parsed view configuration.
        """
        color_mode_attr = attributes.get("data-zap-color-mode")
        if color_mode_attr is None or color_mode_attr.lower() not in ("true", "false"):
            color_mode: bool | str | None = None
        else:
            color_mode = color_mode_attr
        return cls(
            identifier=attributes.get("data-nzv-id", ""),
            relay_urls=_split_urls(attributes.get("data-relay-urls", "")),
            color_mode=color_mode,
        )


def _split_urls(raw: str) -> list[str]:
    return [url.strip() for url in raw.split(",") if url.strip()]
