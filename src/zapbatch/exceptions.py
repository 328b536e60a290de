"""
Zapbatch-specific runtime exceptions.
"""

from __future__ import annotations


class ZapbatchError(Exception):
    """
    Base class for errors raised by zapbatch.
    """


class ConfigurationError(ZapbatchError):
    """
    Signal that a component was wired without a capability it requires.

    Notes
    -----
    Configuration errors are raised synchronously to the direct caller. They
    never travel through a batch, unlike transport errors which are contained
    by the coalescer and mapped to ``None`` results.
    """


class InvalidSubscriptionError(ConfigurationError):
    """
    Signal that a live subscription request does not declare any event kind.
    """
