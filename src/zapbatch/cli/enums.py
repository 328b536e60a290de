from enum import StrEnum


class IdentifierType(StrEnum):
    npub = "npub"
    note = "note"
    nprofile = "nprofile"
    nevent = "nevent"
    naddr = "naddr"


class TagType(StrEnum):
    e = "e"
    a = "a"
