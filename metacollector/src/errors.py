from __future__ import annotations


class CollectorError(Exception):
    """Base class for errors raised while reconciling tracked resources."""


class FetchError(CollectorError):
    """The API server could not be reached or returned an unusable response.

    Retryable: the work queue re-schedules the key with backoff.
    """


class ResolveError(CollectorError):
    """Listing the pods related to a resource failed. Retryable."""


class SerializationError(CollectorError):
    """Object metadata could not be normalized into the subscriber payload. Retryable."""


class DispatchFailure(CollectorError):
    """A single event could not be handed to a subscriber stream.

    Never aborts a reconciliation: the cache stays the source of truth and a
    later replay corrects the subscriber.
    """
