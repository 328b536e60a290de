from zapbatch.batching.core import BatchProcessor
from zapbatch.batching.lookups import (
    AddressLookup,
    BaseLookup,
    EventIdLookup,
    ProfileLookup,
    create_address_reference_processor,
    create_event_reference_processor,
    create_profile_processor,
)

__all__ = [
    "AddressLookup",
    "BaseLookup",
    "BatchProcessor",
    "EventIdLookup",
    "ProfileLookup",
    "create_address_reference_processor",
    "create_event_reference_processor",
    "create_profile_processor",
]
