from __future__ import annotations

import typing as t
from abc import ABC, abstractmethod

if t.TYPE_CHECKING:
    from zapbatch.batching.core import BatchProcessor


class BaseLookup(ABC):
    """
    Standard interface for resolving a batch of keys from relay events.

    Lookups implement:
    - process_batch: build the batch filter, open one subscription through
      ``processor.create_subscription_promise`` and resolve every key
    - check_ready: reject requests the lookup can never serve
    """

    name: str = "base"

    def check_ready(self, *, processor: BatchProcessor) -> None:
        """
        Validate that the processor can serve requests for this lookup.

        Parameters
        ----------
        processor : BatchProcessor
            Processor about to queue a key.

        Raises
        ------
        ConfigurationError
            If a required capability is missing.
        """
        return None

    @abstractmethod
    async def process_batch(self, *, keys: list[str], processor: BatchProcessor) -> None:
        """
        Resolve every key of a batch.

        Parameters
        ----------
        keys : list[str]
            Keys taken from the batch queue, at most ``processor.batch_size``.
        processor : BatchProcessor
            Processor owning the keys' futures, cache and relay list.
        """


def is_newer(*, candidate: t.Any, current: t.Any) -> bool:
    """
    Apply the latest-wins rule to two events.

    Parameters
    ----------
    candidate : typing.Any
        Newly received event.
    current : typing.Any
        Previously accepted event, or ``None``.

    Returns
    -------
    bool
        ``True`` when there is no current event or the candidate's
        ``created_at`` is strictly greater. Ties keep the first-seen event.
    """
    return current is None or candidate.created_at > current.created_at
