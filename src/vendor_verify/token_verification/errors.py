"""Token verification error taxonomy and helpers."""

from __future__ import annotations


class VerificationError(RuntimeError):
    """Stable, policy-safe error surfaced as a reason code."""

    retryable: bool = False

    def __init__(self, code: str, detail: str | None = None) -> None:
        self.code = code
        self.detail = detail
        message = f"{code}:{detail}" if detail else code
        super().__init__(message)


class VerificationInputError(VerificationError):
    """Raised when an operator supplies an unusable argument."""


class TokenNotFoundError(VerificationError):
    """Raised when a product id or token does not resolve to a record."""


class TokenConflictError(VerificationError):
    """Raised when a token value collides with a live record."""

    retryable = True


class StoreUnavailableError(VerificationError):
    """Raised when a backing store cannot be read or written."""

    retryable = True


class ArtifactRenderError(VerificationError):
    """Raised when the QR artifact for a token cannot be produced."""

    retryable = True


def reason_code(exc: Exception) -> str:
    if isinstance(exc, VerificationError):
        return exc.code
    text = str(exc or "").strip()
    if text.isupper():
        return text
    if ":" in text:
        head = text.split(":", 1)[0].strip()
        if head.isupper():
            return head
    return "INTERNAL_ERROR"


def is_retryable(exc: Exception) -> bool:
    return bool(getattr(exc, "retryable", False))
