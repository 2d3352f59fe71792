"""Error taxonomy for webhook ingestion and aggregation."""

from __future__ import annotations


class IngestionError(Exception):
    """Base class for every failure raised by the enrichment pipeline."""


class PayloadTooLargeError(IngestionError):
    """Body exceeds the hard ceiling, or degraded processing failed.

    Attributes:
        size_bytes: Observed (or declared) body size.
    """

    def __init__(self, message: str, size_bytes: int) -> None:
        super().__init__(message)
        self.size_bytes = size_bytes


class MalformedPayloadError(IngestionError):
    """Body is not a JSON object."""


class StorageError(IngestionError):
    """A per-device enrichment write failed.

    The webhook caller gets a failure acknowledgement so the provider redelivers.
    """


class AggregationError(IngestionError):
    """Rebuilding a daily aggregate failed.

    Never propagated to the webhook caller; the per-device write stands.
    """

    def __init__(self, message: str, user_id: object, score_date: object) -> None:
        super().__init__(message)
        self.user_id = user_id
        self.score_date = score_date
