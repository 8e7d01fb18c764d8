"""
Error taxonomy for the generation pipeline.

Every error carries a short ``category`` string. That category is the only
thing a caller ever sees about a failure; messages stay in the logs.
"""

from typing import Optional


class GenerationError(Exception):
    """Base class for pipeline failures."""

    category = "generation_error"


class NormalizationError(GenerationError):
    """Input could not be turned into an Intent (empty columns, non-SELECT, blank text)."""

    category = "normalization_error"


class TemplateNotFoundError(GenerationError):
    """No active template for the Intent's (product, kind)."""

    category = "template_not_found"

    def __init__(self, product: str, kind: str):
        super().__init__(f"No active template for product={product} kind={kind}")
        self.product = product
        self.kind = kind


class KnowledgeLoadError(GenerationError):
    """Both the primary and the fallback knowledge corpus were unavailable or empty."""

    category = "knowledge_unavailable"


class BackendError(GenerationError):
    """
    A model provider call failed.

    Args:
        message: Description for logs
        transient: True for timeout / connection refused / rate limited
        reason: Short machine-readable cause ("timeout", "auth", ...)
        status_code: HTTP status when the provider answered
    """

    category = "backend_error"

    def __init__(
        self,
        message: str,
        transient: bool = False,
        reason: str = "unknown",
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.transient = transient
        self.reason = reason
        self.status_code = status_code


class TransientBackendError(BackendError):
    def __init__(self, message: str, reason: str = "timeout", status_code: Optional[int] = None):
        super().__init__(message, transient=True, reason=reason, status_code=status_code)


class PermanentBackendError(BackendError):
    def __init__(self, message: str, reason: str = "bad_request", status_code: Optional[int] = None):
        super().__init__(message, transient=False, reason=reason, status_code=status_code)


class BackendUnavailableError(GenerationError):
    """Health check failed before any generation call was made."""

    category = "backend_unavailable"


class AuditWriteError(GenerationError):
    """Writing an audit record failed. Logged, never returned to callers."""

    category = "audit_write_error"
