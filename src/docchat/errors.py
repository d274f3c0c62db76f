"""
Error taxonomy for the chat pipeline.

Every error carries the HTTP status the API layer answers with. Only
``AuthError`` bypasses the orchestrator; the others are raised from inside it
and converted into ``{"error": message}`` responses.
"""
from __future__ import annotations


class PipelineError(Exception):
    """Base class for failures the API layer knows how to report."""

    kind = "pipeline_error"
    status_code = 500

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class AuthError(PipelineError):
    kind = "auth_error"
    status_code = 401


class ValidationError(PipelineError):
    """Malformed or empty request, raised before any external call."""

    kind = "validation_error"
    status_code = 400


class UpstreamModelError(PipelineError):
    """The rewriting or synthesis model call failed or produced unusable output."""

    kind = "upstream_model_error"
    status_code = 502


class RetrievalError(PipelineError):
    """The vector index search failed or the namespace is invalid."""

    kind = "retrieval_error"
    status_code = 502


class SerializationError(PipelineError):
    kind = "serialization_error"
    status_code = 500
