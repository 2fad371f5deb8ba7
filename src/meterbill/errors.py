"""Exceptions raised while reading meters and producing invoices."""

from enum import Enum


class MeterBillError(Exception):
    """Base exception for meterbill errors."""
    pass


class ImageDecodeError(MeterBillError):
    """The uploaded file could not be decoded as an image."""

    user_message = "Could not read this image. Please upload a JPEG or PNG photo."


class ErrorKind(str, Enum):
    """Categories every provider failure is mapped onto."""

    MISSING_CREDENTIAL = "missing_credential"
    INVALID_CREDENTIAL = "invalid_credential"
    RATE_LIMITED = "rate_limited"
    SERVICE_UNAVAILABLE = "service_unavailable"
    MODEL_UNAVAILABLE = "model_unavailable"
    MALFORMED_RESPONSE = "malformed_response"
    UNKNOWN = "unknown"


USER_MESSAGES = {
    ErrorKind.MISSING_CREDENTIAL: (
        "Setup Error: API key not found. Set GEMINI_API_KEY in your environment or .env file."
    ),
    ErrorKind.INVALID_CREDENTIAL: (
        "Setup Error: the API key was rejected. Check GEMINI_API_KEY and try again."
    ),
    ErrorKind.RATE_LIMITED: "Server is busy (Quota Limit). Please try again in 1 minute.",
    ErrorKind.SERVICE_UNAVAILABLE: "The AI service is temporarily unavailable. Please try again later.",
    ErrorKind.MODEL_UNAVAILABLE: "AI Model unavailable. Please contact support or try again later.",
    ErrorKind.MALFORMED_RESPONSE: "The AI response could not be read as meter readings. Please retry.",
    ErrorKind.UNKNOWN: "Failed to analyze the image.",
}


class ExtractionError(MeterBillError):
    """A classified failure talking to the inference provider.

    ``detail`` keeps the raw provider/transport text for logs; ``user_message``
    is what end users see.
    """

    kind = ErrorKind.UNKNOWN

    def __init__(self, detail: str = "", status_code: int | None = None):
        self.detail = detail
        self.status_code = status_code
        super().__init__(detail or self.user_message)

    @property
    def user_message(self) -> str:
        return USER_MESSAGES[self.kind]

    @property
    def is_transient(self) -> bool:
        return self.kind in (
            ErrorKind.RATE_LIMITED,
            ErrorKind.SERVICE_UNAVAILABLE,
            ErrorKind.MODEL_UNAVAILABLE,
        )

    @property
    def is_credential_error(self) -> bool:
        return self.kind in (ErrorKind.MISSING_CREDENTIAL, ErrorKind.INVALID_CREDENTIAL)


class MissingCredential(ExtractionError):
    kind = ErrorKind.MISSING_CREDENTIAL


class InvalidCredential(ExtractionError):
    kind = ErrorKind.INVALID_CREDENTIAL


class RateLimited(ExtractionError):
    kind = ErrorKind.RATE_LIMITED


class ServiceUnavailable(ExtractionError):
    kind = ErrorKind.SERVICE_UNAVAILABLE


class ModelUnavailable(ExtractionError):
    kind = ErrorKind.MODEL_UNAVAILABLE


class MalformedResponse(ExtractionError):
    kind = ErrorKind.MALFORMED_RESPONSE


SchemaViolation = MalformedResponse


class UnknownProviderError(ExtractionError):
    kind = ErrorKind.UNKNOWN


ERRORS_BY_KIND: dict[ErrorKind, type[ExtractionError]] = {
    cls.kind: cls
    for cls in (
        MissingCredential,
        InvalidCredential,
        RateLimited,
        ServiceUnavailable,
        ModelUnavailable,
        MalformedResponse,
        UnknownProviderError,
    )
}


class ShareLinkParseError(MeterBillError):
    """A share link could not be decoded into an invoice."""
    pass


class ReadOnlySessionError(MeterBillError):
    """A shared (read-only) session was asked to change."""
    pass


class UnknownItemError(MeterBillError):
    """No analysis item or tenant exists with the given id."""
    pass


class ExportError(MeterBillError):
    """Rendering a PDF or summary card failed."""
    pass
