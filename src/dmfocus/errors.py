"""Summary: Exception types shared across DM Focus services.

Importance: Lets the HTTP layer and sweeps tell transient upstream failures from integrity and crypto failures.
Alternatives: Raise bare ValueError/RuntimeError and inspect messages.
"""

from __future__ import annotations


class CryptoError(ValueError):
    """Summary: Raised when a token cannot be encrypted or decrypted.

    Importance: Forces callers to fail hard instead of storing plaintext.
    Alternatives: Return None and let callers guess what went wrong.
    """


class NotFoundError(ValueError):
    """Summary: Raised when a referenced message, profile, or workspace is missing.

    Importance: Marks a unit of work as skippable with no retry.
    Alternatives: Return None from every service method.
    """


class ProviderError(RuntimeError):
    """Summary: Raised when the LLM, Instagram, or payment API fails or times out.

    Importance: Identifies transient failures that leave rows untouched for a later retry.
    Alternatives: Let urllib errors propagate unchanged.
    """


class InvalidClassificationError(ProviderError):
    """Summary: Raised when the LLM response does not match the classification schema.

    Importance: Keeps malformed model output retryable instead of crashing the caller.
    Alternatives: Accept any JSON and coerce missing fields to defaults.
    """
