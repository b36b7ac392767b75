"""
errors.py - Failure kinds surfaced by the provenance gateway.

Clients raise these with the underlying library exception chained, so the
HTTP layer can map them to status codes without knowing about web3 or
requests.
"""


class SpiceGatewayError(Exception):
    """Base class for every gateway failure."""
    code = "SERVER_ERROR"


class StoreError(SpiceGatewayError):
    """Content upload failed. submit_batch aborts before any ledger write."""
    code = "STORE_FAILED"


class RetrievalError(SpiceGatewayError):
    """Primary content store and every fallback gateway failed."""
    code = "RETRIEVAL_FAILED"


class AnchorError(SpiceGatewayError):
    """Ledger write or confirmation failed. Never retried internally."""
    code = "ANCHOR_FAILED"


class ConfirmationTimeout(AnchorError):
    """Transaction was sent but no receipt arrived within the confirm timeout."""
    code = "CONFIRMATION_TIMEOUT"


class ResolveTransportError(SpiceGatewayError):
    """Transport failure during a point lookup on the registry."""
    code = "LEDGER_UNAVAILABLE"


class ListingError(SpiceGatewayError):
    """Event-log reconstruction failed (only raised in strict listing mode)."""
    code = "LISTING_FAILED"


class BatchNotFound(SpiceGatewayError):
    """The registry holds no record for the requested batch id."""
    code = "BATCH_NOT_FOUND"

    def __init__(self, batch_id: str):
        super().__init__(f"batch {batch_id} not found")
        self.batch_id = batch_id


class TelemetryNotReady(SpiceGatewayError):
    """No live sample to promote, or the sensor is still warming up."""
    code = "TELEMETRY_NOT_READY"
