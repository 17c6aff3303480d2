"""
Attribution Engine Exceptions
=============================

Typed errors raised by the identity, ingestion and attribution services.

WHY THIS FILE EXISTS
--------------------
Services must not know about HTTP, but callers need to tell a bad request
from a missing reference row from a storage failure. Each error carries the
status code the HTTP adapter should answer with, so routers never translate
errors by hand.

TAXONOMY
--------
- InvalidInputError: missing identifiers, bad run config, n < 1 weights
- NotFoundError: unknown channel/currency/event source/model/run/interaction
- ConflictError: run already executing
- TransactionFailureError: commit/rollback failure in the store
- InternalError: anything unexpected

RELATED FILES
-------------
- attribution_engine/main.py: Registers the exception handler
- attribution_engine/services/*.py: Raise these exceptions
"""

from typing import Any, Dict, Optional


class AttributionEngineError(Exception):
    """
    Base exception for all attribution engine errors.

    USAGE:
        try:
            service.ingest_conversion(tenant_id, request)
        except AttributionEngineError as e:
            return e.to_dict()
    """

    code = "internal"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.code, "detail": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class InvalidInputError(AttributionEngineError):
    """Request is structurally valid but semantically unusable."""

    code = "invalid_input"
    status_code = 400


class NotFoundError(AttributionEngineError):
    """A referenced row (channel, currency, run, ...) does not exist."""

    code = "not_found"
    status_code = 404


class ConflictError(AttributionEngineError):
    """Operation collides with the current state of a resource."""

    code = "conflict"
    status_code = 409


class TransactionFailureError(AttributionEngineError):
    """Commit or rollback failed in the underlying store."""

    code = "transaction_failure"
    status_code = 500


class InternalError(AttributionEngineError):
    code = "internal"
    status_code = 500
