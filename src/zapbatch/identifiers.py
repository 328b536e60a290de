"""
Build live zap subscriptions from decoded NIP-19 identifiers.

Bech32 decoding itself is left to the caller: functions here take the decoded
``(type, data)`` pair.
"""

from __future__ import annotations

import typing as t

import structlog

from zapbatch.cache import CacheManager
from zapbatch.config import ZAP_RECEIPT_KIND, ReqConfig
from zapbatch.models import AddressPointer, SubscriptionSpec

log = structlog.get_logger(__name__)

SUPPORTED_TYPES = ("npub", "note", "nprofile", "nevent", "naddr")
EVENT_IDENTIFIER_PREFIXES = ("note1", "nevent1", "naddr1")
PROFILE_IDENTIFIER_PREFIXES = ("npub1", "nprofile1")


def _base_filter(identifier_type: str, data: t.Any) -> dict[str, t.Any] | None:
    if identifier_type == "npub":
        return {"kinds": [ZAP_RECEIPT_KIND], "#p": [data]}
    if identifier_type == "note":
        return {"kinds": [ZAP_RECEIPT_KIND], "#e": [data]}
    if identifier_type == "nprofile":
        return {"kinds": [ZAP_RECEIPT_KIND], "#p": [data["pubkey"]]}
    if identifier_type == "nevent":
        return {"kinds": [ZAP_RECEIPT_KIND], "#e": [data["id"]]}
    if identifier_type == "naddr":
        pointer = AddressPointer.model_validate(data)
        return {"kinds": [ZAP_RECEIPT_KIND], "#a": [pointer.to_key()]}
    return None


def create_req_from_type(
    identifier_type: str,
    data: t.Any,
    since: int | None = None,
    *,
    req_config: ReqConfig | None = None,
) -> SubscriptionSpec | None:
    """
    Build the zap receipt subscription for a decoded identifier.

    Parameters
    ----------
    identifier_type : str
        NIP-19 type: ``npub``, ``note``, ``nprofile``, ``nevent`` or ``naddr``.
    data : typing.Any
        Decoded payload: a hex string for ``npub``/``note``, a mapping for the
        other types.
    since : int | None, optional
        Pagination cursor. When set, only receipts up to this timestamp are
        requested, with the additional load count as limit.
    req_config : ReqConfig | None, optional
        Load counts.

    Returns
    -------
    SubscriptionSpec | None
        Subscription request, or ``None`` for unsupported types.
    """
    req_config = req_config or ReqConfig()
    req = _base_filter(identifier_type, data)
    if req is None:
        log.error(event="Unsupported identifier type", identifier_type=identifier_type)
        return None

    if since:
        req["limit"] = req_config.additional_load_count
        req["until"] = since
    else:
        req["limit"] = req_config.initial_load_count
    log.debug(event="Created request", req=req)
    return SubscriptionSpec(req=req)


def decode_identifier(
    identifier: str,
    decoded: tuple[str, t.Any] | None,
    since: int | None = None,
    *,
    cache: CacheManager,
    req_config: ReqConfig | None = None,
) -> SubscriptionSpec | None:
    """
    Memoised ``create_req_from_type`` keyed by identifier and cursor.

    Parameters
    ----------
    identifier : str
        Encoded identifier, used as cache key.
    decoded : tuple[str, typing.Any] | None
        Result of decoding ``identifier``; ``None`` when decoding failed.
    since : int | None, optional
        Pagination cursor.
    cache : CacheManager
        Cache holding memoised requests.
    req_config : ReqConfig | None, optional
        Load counts.

    Returns
    -------
    SubscriptionSpec | None
        Subscription request, or ``None`` when decoding failed.

    Raises
    ------
    ValueError
        If ``identifier`` is empty.
    """
    cache_key = f"{identifier}:{since}"
    if cache.has_decoded(cache_key):
        return cache.get_decoded(cache_key)

    if not is_valid_identifier(identifier):
        raise ValueError("Failed to decode identifier")
    if decoded is None:
        return None

    identifier_type, data = decoded
    result = create_req_from_type(identifier_type, data, since, req_config=req_config)
    if result is not None:
        cache.set_decoded(cache_key, result)
    return result


def is_valid_identifier(identifier: t.Any) -> bool:
    return isinstance(identifier, str) and len(identifier) > 0


def is_event_identifier(identifier: t.Any) -> bool:
    return is_valid_identifier(identifier) and identifier.startswith(EVENT_IDENTIFIER_PREFIXES)


def is_profile_identifier(identifier: t.Any) -> bool:
    return is_valid_identifier(identifier) and identifier.startswith(PROFILE_IDENTIFIER_PREFIXES)
