# votestream/errors.py
from typing import Optional


class VoteStreamError(Exception):
    """Base class for every failure raised by the vote pipeline."""


class ValidationFailure(VoteStreamError):
    """Client input rejected before it enters the pipeline."""


class AppendFailure(VoteStreamError):
    """The event log did not accept a vote at publish time."""


class ParseFailure(VoteStreamError):
    """A log entry is missing fields or carries malformed values."""

    def __init__(self, message: str, entry_id: Optional[str] = None):
        super().__init__(message)
        self.entry_id = entry_id


class PersistFailure(VoteStreamError):
    """A vote could not be written to the system-of-record store."""


class TransportFailure(VoteStreamError):
    """A live relay connection was lost."""


class EventLogError(VoteStreamError):
    """A round trip to the event log failed."""


class CounterStoreError(VoteStreamError):
    """A round trip to the aggregate counter store failed."""
