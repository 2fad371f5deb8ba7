"""Gemini client for reading meter photos.

Sends one structured-output request per photo and absorbs transient provider
failures by retrying with exponential backoff and falling back across an
ordered list of models.
"""

import asyncio
import json
import logging
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable

import httpx

from ..config import Settings
from ..errors import (
    ERRORS_BY_KIND,
    ErrorKind,
    ExtractionError,
    MalformedResponse,
)
from ..imaging import compress_image
from ..models import AnalysisResult
from .normalizer import parse_result
from .prompt import build_request_body

logger = logging.getLogger(__name__)


class Action(str, Enum):
    RETRY = "retry"  # same model, exponential backoff, then next model
    FALLBACK = "fallback"  # next model straight away
    FAIL_FAST = "fail_fast"


RESILIENCE_POLICY: dict[ErrorKind, Action] = {
    ErrorKind.RATE_LIMITED: Action.RETRY,
    ErrorKind.SERVICE_UNAVAILABLE: Action.RETRY,
    ErrorKind.MODEL_UNAVAILABLE: Action.FALLBACK,
    ErrorKind.INVALID_CREDENTIAL: Action.FAIL_FAST,
    ErrorKind.MISSING_CREDENTIAL: Action.FAIL_FAST,
    ErrorKind.MALFORMED_RESPONSE: Action.FAIL_FAST,
    ErrorKind.UNKNOWN: Action.FAIL_FAST,
}

STATUS_KINDS = {
    401: ErrorKind.INVALID_CREDENTIAL,
    403: ErrorKind.INVALID_CREDENTIAL,
    404: ErrorKind.MODEL_UNAVAILABLE,
    429: ErrorKind.RATE_LIMITED,
    500: ErrorKind.SERVICE_UNAVAILABLE,
    502: ErrorKind.SERVICE_UNAVAILABLE,
    503: ErrorKind.SERVICE_UNAVAILABLE,
    504: ErrorKind.SERVICE_UNAVAILABLE,
}

PROVIDER_STATUS_KINDS = {
    "RESOURCE_EXHAUSTED": ErrorKind.RATE_LIMITED,
    "UNAVAILABLE": ErrorKind.SERVICE_UNAVAILABLE,
    "INTERNAL": ErrorKind.SERVICE_UNAVAILABLE,
    "DEADLINE_EXCEEDED": ErrorKind.SERVICE_UNAVAILABLE,
    "NOT_FOUND": ErrorKind.MODEL_UNAVAILABLE,
    "UNAUTHENTICATED": ErrorKind.INVALID_CREDENTIAL,
    "PERMISSION_DENIED": ErrorKind.INVALID_CREDENTIAL,
}

# Checked against the lower-cased error message when codes are inconclusive
MESSAGE_MARKERS = (
    ("api key not valid", ErrorKind.INVALID_CREDENTIAL),
    ("api_key_invalid", ErrorKind.INVALID_CREDENTIAL),
    ("quota", ErrorKind.RATE_LIMITED),
    ("exhausted", ErrorKind.RATE_LIMITED),
    ("too many requests", ErrorKind.RATE_LIMITED),
    ("overloaded", ErrorKind.SERVICE_UNAVAILABLE),
    ("is not found", ErrorKind.MODEL_UNAVAILABLE),
)


def _error_fields(response: httpx.Response) -> tuple[str, str]:
    """Pull (status, message) out of a provider error body."""
    try:
        body = response.json()
    except ValueError:
        return "", response.text
    if not isinstance(body, dict):
        return "", response.text
    error = body.get("error") or {}
    if not isinstance(error, dict):
        return "", str(error)
    return str(error.get("status") or ""), str(error.get("message") or "")


def classify_response(response: httpx.Response) -> ExtractionError:
    """Map a non-2xx provider response onto the error taxonomy."""
    status, message = _error_fields(response)
    lowered = message.lower()

    kind = None
    for marker, marker_kind in MESSAGE_MARKERS:
        if marker_kind is ErrorKind.INVALID_CREDENTIAL and marker in lowered:
            kind = marker_kind
            break
    if kind is None:
        kind = PROVIDER_STATUS_KINDS.get(status) or STATUS_KINDS.get(response.status_code)
    if kind is None:
        for marker, marker_kind in MESSAGE_MARKERS:
            if marker in lowered:
                kind = marker_kind
                break
    if kind is None and response.status_code >= 500:
        kind = ErrorKind.SERVICE_UNAVAILABLE
    if kind is None:
        kind = ErrorKind.UNKNOWN

    detail = f"HTTP {response.status_code} {status}: {message}".strip()
    return ERRORS_BY_KIND[kind](detail, status_code=response.status_code)


def classify_transport_error(error: httpx.TransportError) -> ExtractionError:
    """Timeouts and connection failures are treated as service outages."""
    return ERRORS_BY_KIND[ErrorKind.SERVICE_UNAVAILABLE](f"{type(error).__name__}: {error}")


def extract_text(body: dict) -> str:
    """Return the reply text of a generateContent response."""
    if not isinstance(body, dict):
        raise MalformedResponse(f"Expected a JSON object, got {type(body).__name__}")
    candidates = body.get("candidates") or []
    if not isinstance(candidates, list):
        raise MalformedResponse("candidates is not a list")
    if not candidates:
        feedback = body.get("promptFeedback")
        reason = feedback.get("blockReason") if isinstance(feedback, dict) else None
        raise MalformedResponse(f"No candidates in response (blockReason={reason})")

    candidate = candidates[0]
    if not isinstance(candidate, dict):
        raise MalformedResponse("First candidate is not an object")
    content = candidate.get("content") or {}
    parts = (content.get("parts") or []) if isinstance(content, dict) else []
    if not isinstance(parts, list):
        raise MalformedResponse("content.parts is not a list")
    text = "".join(str(part.get("text") or "") for part in parts if isinstance(part, dict))
    if not text.strip():
        raise MalformedResponse(
            f"Empty reply (finishReason={candidate.get('finishReason')})"
        )
    return text


class GeminiClient:
    """Reads start/end readings from meter photos via the Gemini REST API.

    The httpx client and the sleep function are injectable so the retry
    policy can be exercised without a network or real delays.
    """

    def __init__(
        self,
        settings: Settings,
        http: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings
        self._http = http
        self._owns_http = http is None
        self._sleep = sleep

    async def __aenter__(self) -> "GeminiClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http and self._http is not None:
            await self._http.aclose()
            self._http = None

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.settings.request_timeout)
        return self._http

    async def _send(self, model: str, body: dict, api_key: str) -> str:
        url = f"{self.settings.api_base_url.rstrip('/')}/models/{model}:generateContent"
        headers = {"x-goog-api-key": api_key, "Content-Type": "application/json"}

        try:
            response = await self._client().post(url, json=body, headers=headers)
        except httpx.DecodingError as e:
            raise MalformedResponse(f"Could not decode provider response: {e}") from e
        except httpx.TransportError as e:
            raise classify_transport_error(e) from e

        if response.status_code >= 400:
            raise classify_response(response)

        try:
            data = response.json()
        except (json.JSONDecodeError, ValueError) as e:
            raise MalformedResponse(f"Provider returned non-JSON body: {e}") from e
        return extract_text(data)

    async def generate(self, image_b64: str, mime_type: str = "image/jpeg") -> str:
        """Send one photo and return the raw JSON reply text.

        Raises a classified ExtractionError once the policy gives up.
        """
        api_key = self.settings.require_api_key()
        body = build_request_body(image_b64, mime_type)
        models = list(self.settings.models)
        if not models:
            raise ValueError("No models configured")

        last_error: ExtractionError | None = None
        for model_idx, model in enumerate(models):
            delay = self.settings.initial_retry_delay
            for attempt in range(1, self.settings.max_attempts + 1):
                try:
                    text = await self._send(model, body, api_key)
                    if model_idx or attempt > 1:
                        logger.info("Request succeeded on %s (attempt %d)", model, attempt)
                    return text
                except ExtractionError as e:
                    last_error = e
                    action = RESILIENCE_POLICY[e.kind]
                    logger.debug("%s on %s: %s", e.kind.value, model, e.detail)

                    if action is Action.FAIL_FAST:
                        raise
                    if action is Action.FALLBACK:
                        break
                    if attempt < self.settings.max_attempts:
                        logger.warning(
                            "%s on %s. Retrying in %.1fs... (attempt %d/%d)",
                            e.kind.value, model, delay, attempt, self.settings.max_attempts,
                        )
                        await self._sleep(delay)
                        delay *= 2

            if model_idx < len(models) - 1:
                logger.warning(
                    "Giving up on %s (%s), falling back to %s",
                    model, last_error.kind.value, models[model_idx + 1],
                )
                await self._sleep(self.settings.fallback_delay)

        raise last_error

    async def analyze_image(self, image: bytes | Path | str) -> AnalysisResult:
        """Compress a photo, send it, and normalize the reply."""
        image_b64 = await asyncio.to_thread(
            compress_image,
            image,
            self.settings.max_image_side,
            self.settings.image_quality,
        )
        text = await self.generate(image_b64)
        return parse_result(text)
