"""
Error taxonomy for daybook.

Reads that fail surface as TransientFetchError and leave in-memory state
untouched. Writes that fail after an optimistic local apply are rolled back
by the MutationCoordinator and reported as MutationRejected. A write against
a row the remote store no longer has raises StaleReference, which callers
treat as non-fatal.
"""
from __future__ import annotations

from typing import Optional


class DaybookError(Exception):
    """Base class for every error raised by daybook."""


class GatewayError(DaybookError):
    """A DataGateway call failed (transport or constraint error)."""


class TransientFetchError(GatewayError):
    """A DataGateway read failed. Retry is caller-initiated."""


class GatewayWriteError(GatewayError):
    """A DataGateway write failed."""


class StaleReference(DaybookError):
    """The targeted item no longer exists in the remote store."""

    def __init__(self, kind: str, item_id: str):
        super().__init__(f"{kind} {item_id} no longer exists")
        self.kind = kind
        self.item_id = item_id


class MutationRejected(DaybookError):
    """A write failed after an optimistic apply; local state was rolled back."""

    def __init__(self, action: str, kind: str, item_id: str, reason: Optional[str] = None):
        message = f"{action} on {kind} {item_id} was rejected"
        if reason:
            message += f": {reason}"
        super().__init__(message)
        self.action = action
        self.kind = kind
        self.item_id = item_id


class ProcessingStall(DaybookError):
    """A recording stayed unprocessed past the configured stall timeout."""

    def __init__(self, recording_id: str, waited_seconds: float):
        super().__init__(
            f"recording {recording_id} still unprocessed after {waited_seconds:.0f}s"
        )
        self.recording_id = recording_id
        self.waited_seconds = waited_seconds


class EnrichmentError(DaybookError):
    """The enrichment service refused or failed a reprocess request."""
