class ReconciliationError(Exception):
    """Base for domain errors surfaced to HTTP callers as {ok: false, error}."""

    http_status = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class InvalidSignature(ReconciliationError):
    http_status = 401


class MalformedPayload(ReconciliationError):
    http_status = 400


class InvalidEvent(MalformedPayload):
    """Event fields failed validation; nothing was written."""


class NotFound(ReconciliationError):
    http_status = 404


class InvalidStatus(ReconciliationError):
    http_status = 400


class TransactionFailure(ReconciliationError):
    """Database error while applying; the transaction was rolled back and may be retried."""

    http_status = 500


class DownstreamOrchestrationFailure(ReconciliationError):
    http_status = 502


class TrelloNotConfigured(ReconciliationError):
    http_status = 503
