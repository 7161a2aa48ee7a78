"""
errors.py — lifestream Error Taxonomy

Coded errors for the event store. Parse-level errors are recovered by the
log reader; everything else propagates to the caller. Storage failures are
left as plain ``OSError`` and never wrapped.
"""

from typing import Optional

__all__ = [
    "LifeStreamError",
    "MalformedRecordError",
    "InvalidTimestampError",
    "InvalidEventKindError",
    "IdentifierOverflowError",
    "InvalidIdPrefixError",
    "MissingExternalIdError",
    "InvalidServiceNameError",
    "UnknownConverterError",
    "ExternalRecordInvalidError",
]

class LifeStreamError(Exception):
    """Base class for all lifestream errors."""
    def __init__(
        self,
        code: str,
        message: str,
        context: Optional[str] = None,
    ):
        self.code = code
        self.message = message
        self.context = context

        full_msg = f"[{code}] {message}"
        if context:
            full_msg += f" Context: {context}"

        super().__init__(full_msg)

# Record Format Errors (E1xx)
class MalformedRecordError(LifeStreamError):
    def __init__(self, context: Optional[str] = None, code: str = "LS_E100", message: Optional[str] = None):
        super().__init__(code, message or "A log line is not a structurally valid event record.", context)

class InvalidTimestampError(MalformedRecordError):
    def __init__(self, context: Optional[str] = None):
        super().__init__(context, "LS_E101", "A timestamp is not a parseable ISO 8601 instant.")

class InvalidEventKindError(LifeStreamError):
    def __init__(self, context: Optional[str] = None):
        super().__init__("LS_E102", "An event kind must be a dotted 'domain.action' string.", context)

# Identifier Errors (E2xx)
class IdentifierOverflowError(LifeStreamError):
    def __init__(self, context: Optional[str] = None):
        super().__init__("LS_E200", "More than 999 identifiers were requested for one period.", context)

class InvalidIdPrefixError(LifeStreamError):
    def __init__(self, context: Optional[str] = None):
        super().__init__("LS_E201", "The identifier prefix is not a known entity prefix.", context)

# External Merge Errors (E3xx)
class MissingExternalIdError(LifeStreamError):
    def __init__(self, context: Optional[str] = None):
        super().__init__("LS_E300", "An external record does not carry its external id field.", context)

class InvalidServiceNameError(LifeStreamError):
    def __init__(self, context: Optional[str] = None):
        super().__init__("LS_E301", "A service name must be a single non-empty path segment.", context)

class UnknownConverterError(LifeStreamError):
    def __init__(self, context: Optional[str] = None):
        super().__init__("LS_E302", "No converter is registered under the requested name.", context)

class ExternalRecordInvalidError(LifeStreamError):
    def __init__(self, context: Optional[str] = None):
        super().__init__("LS_E303", "A raw external record does not match its converter schema.", context)
