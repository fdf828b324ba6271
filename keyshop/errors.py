"""Failures the core raises.

Business outcomes (expired order, already confirmed, empty stock) are result
values and never show up here.
"""


class KeyshopError(Exception):
    pass


class SourceUnavailable(KeyshopError):
    """The authoritative key file is missing or unreadable."""


class StoreUnavailable(KeyshopError):
    """Redis is unreachable or answered with an error."""


class InvalidInput(KeyshopError):
    """Malformed caller input, e.g. a missing order field."""
