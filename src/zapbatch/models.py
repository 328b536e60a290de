import typing as t

import structlog
from pydantic import BaseModel, ConfigDict, Field

log = structlog.get_logger(__name__)

Filter = dict[str, t.Any]


class NostrEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str
    pubkey: str
    created_at: int
    kind: int
    tags: list[list[str]] = Field(default_factory=list)
    content: str = ""
    sig: str | None = None
    # Set by EventPool on live subscriptions: True when the event was created
    # at or after the subscription started.
    is_realtime_event: bool | None = Field(default=None, exclude=True)

    def get_tag(self, name: str, *, ignore_case: bool = False) -> list[str] | None:
        if ignore_case:
            name = name.lower()
        for tag in self.tags:
            if tag and (tag[0].lower() if ignore_case else tag[0]) == name:
                return tag
        return None

    def get_tag_value(self, name: str, *, ignore_case: bool = False) -> str | None:
        tag = self.get_tag(name, ignore_case=ignore_case)
        if tag is None or len(tag) < 2:
            return None
        return tag[1]

    def has_tag(self, name: str, value: str) -> bool:
        return any(len(tag) >= 2 and tag[0] == name and tag[1] == value for tag in self.tags)


class AddressPointer(BaseModel):
    kind: int
    pubkey: str
    identifier: str

    def to_key(self) -> str:
        return f"{self.kind}:{self.pubkey}:{self.identifier}"


class SubscriptionSpec(BaseModel):
    """
    Decoded live subscription request.

    Attributes
    ----------
    req : Filter
        Relay filter of the subscription. It must declare a ``kinds`` list to be
        accepted by ``EventPool.subscribe_to_zaps``.
    """

    req: Filter


class ProfileResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    name: str | None = None
    display_name: str | None = None
    picture: str | None = None
    about: str | None = None
    nip05: str | None = None
    last_updated: float | None = None
    event_created_at: int | None = None

    @classmethod
    def default(cls) -> "ProfileResult":
        return cls(name="anonymous", display_name="anonymous")

    @classmethod
    def from_metadata_event(cls, *, event: NostrEvent, now: float) -> "ProfileResult":
        """
        Parse a kind-0 event into a profile.

        Parameters
        ----------
        event : NostrEvent
            Profile metadata event.
        now : float
            Timestamp recorded as the profile's last update.

        Returns
        -------
        ProfileResult
            Parsed profile, or the default profile when the content is not a
            JSON object.
        """
        try:
            content = cls.model_validate_json(event.content)
        except ValueError as error:
            log.warning(event="Invalid profile content", pubkey=event.pubkey, error=str(error))
            return cls.default()
        content.name = get_profile_display_name(content)
        content.last_updated = now
        content.event_created_at = event.created_at
        return content


def get_profile_display_name(profile: ProfileResult | None) -> str:
    if profile is None:
        return "nameless"
    return profile.display_name or profile.name or "nameless"


class ZapStats(BaseModel):
    count: int = 0
    msats: int = 0
    max_msats: int = 0
    error: bool = False
    timeout: bool = False

    @classmethod
    def timeout_error(cls) -> "ZapStats":
        return cls(error=True, timeout=True)
