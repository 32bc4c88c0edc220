"""
Error taxonomy for the proof review workflow.

Every failure a caller can act on is a ``SwaglyError`` subclass carrying an
HTTP status and a stable machine-readable code. The FastAPI exception
handler in ``swagly.main`` renders them; services never build responses.
"""
from typing import Any, Dict, Optional


class SwaglyError(Exception):
    """Base exception for all handled service errors."""
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def extras(self) -> Dict[str, Any]:
        """Additional fields rendered next to the error body."""
        return {}


class NotFound(SwaglyError):
    """Referenced proof, passport, activity, user or event does not exist."""
    status_code = 404
    code = "NOT_FOUND"


class InvalidState(SwaglyError):
    """Operation attempted on a record that is not in the expected state."""
    status_code = 409
    code = "INVALID_STATE"

    def __init__(self, message: str, current_status: Optional[str] = None):
        super().__init__(message)
        self.current_status = current_status

    def extras(self) -> Dict[str, Any]:
        if self.current_status is None:
            return {}
        return {"currentStatus": self.current_status}


class Conflict(SwaglyError):
    """Request collides with an existing record or a concurrent operation."""
    status_code = 409
    code = "CONFLICT"


class InvalidInput(SwaglyError):
    """Malformed request: missing content, blank reason, bad quantity."""
    status_code = 400
    code = "INVALID_INPUT"


class Internal(SwaglyError):
    """Storage or unexpected failure."""
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, transaction_hash: Optional[str] = None):
        super().__init__(message)
        self.transaction_hash = transaction_hash

    def extras(self) -> Dict[str, Any]:
        if self.transaction_hash is None:
            return {}
        return {"transactionHash": self.transaction_hash}


class GatewayError(SwaglyError):
    """
    The external token claim failed.

    ``kind`` is one of:
    - ``unconfigured``: backend credentials missing, no call was made
    - ``rejected``: the API answered with a non-2xx status
    - ``timeout``: no answer within the bounded timeout
    - ``network``: transport failure

    For ``timeout`` and ``network`` the claim may still land on-chain, so
    ``outcome_unknown`` is set and the attempt must be reconciled before a
    new claim is tried.
    """
    code = "GATEWAY_ERROR"

    UNCONFIGURED = "unconfigured"
    REJECTED = "rejected"
    TIMEOUT = "timeout"
    NETWORK = "network"

    _STATUS_BY_KIND = {
        UNCONFIGURED: 500,
        TIMEOUT: 504,
        NETWORK: 502,
    }

    def __init__(
        self,
        kind: str,
        message: str,
        upstream_status: Optional[int] = None,
        payload: Any = None
    ):
        super().__init__(message)
        self.kind = kind
        self.upstream_status = upstream_status
        self.payload = payload

    @property
    def outcome_unknown(self) -> bool:
        return self.kind in (self.TIMEOUT, self.NETWORK)

    @property
    def status_code(self) -> int:
        if self.kind == self.REJECTED and self.upstream_status:
            return self.upstream_status
        return self._STATUS_BY_KIND.get(self.kind, 502)

    def extras(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "details": self.message,
            "upstreamStatus": self.upstream_status,
            "thirdwebResponse": self.payload,
            "outcomeUnknown": self.outcome_unknown,
        }
