"""Error taxonomy shared by the dashboard core and its routes."""

from typing import List, Optional


class DashboardError(Exception):
    """Base class for failures reported back to a caller."""


class NotFound(DashboardError):
    """The managed container could not be located."""


class RuntimeOperationFailed(DashboardError):
    """Docker or a compose run reported a failure. ``reason`` is kept verbatim."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class DecodeError(DashboardError):
    """A malformed frame header was found in a log buffer.

    ``records`` holds whatever was decoded before the bad header so callers
    can still deliver them. ``offset`` and ``length`` locate the bad frame so a
    streaming caller can skip its payload and resync on the next header.
    """

    def __init__(self, message: str, records: Optional[List] = None, offset: int = 0, length: int = 0):
        super().__init__(message)
        self.records = list(records or [])
        self.offset = offset
        self.length = length


class UpgradeTimeout(DashboardError):
    """The old container never disappeared within the poll bound."""


class ValidationError(DashboardError):
    """A request was missing a required parameter."""


class UpgradeInProgress(DashboardError):
    """Another upgrade is already running against the container."""
