import base64
import json
import logging
import re

import httpx
from pydantic import ValidationError

from backend.config import MATCHER_API_KEY, MATCHER_TIMEOUT_SECONDS, MATCHER_URL
from backend.errors import ExternalServiceUnavailable
from backend.schemas import VerificationResult

logger = logging.getLogger(__name__)

_FENCE_OPEN = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\s*```$")


def strip_data_url(value: str) -> str:
    parts = value.split(",", 1)
    return parts[1] if len(parts) > 1 else value


def _error_message(data) -> str | None:
    if not isinstance(data, dict):
        return None
    error = data.get("error")
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    if isinstance(error, str) and error:
        return error
    if "match" in data:
        return None
    detail = data.get("detail")
    return str(detail) if detail else None


def _loads_first_object(text: str):
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass
    start, end = text.find("{"), text.rfind("}")
    if start == -1 or end <= start:
        raise ExternalServiceUnavailable("Invalid JSON structure in matcher response.")
    try:
        return json.loads(text[start : end + 1])
    except json.JSONDecodeError as exc:
        raise ExternalServiceUnavailable("Invalid JSON structure in matcher response.") from exc


def extract_payload(text: str, _depth: int = 0) -> VerificationResult:
    """
    Pull ``{match, confidence}`` out of a matcher response body.

    Tolerates markdown code fences, prose around the object, a JSON string
    holding the object, and a ``text``/``result`` wrapper field.
    """
    cleaned = _FENCE_CLOSE.sub("", _FENCE_OPEN.sub("", (text or "").strip())).strip()
    data = _loads_first_object(cleaned)

    message = _error_message(data)
    if message:
        raise ExternalServiceUnavailable(f"AI Service Error: {message}")

    if _depth < 2:
        if isinstance(data, str):
            return extract_payload(data, _depth + 1)
        if isinstance(data, dict) and "match" not in data:
            for key in ("result", "text"):
                inner = data.get(key)
                if isinstance(inner, dict):
                    data = inner
                    break
                if isinstance(inner, str):
                    return extract_payload(inner, _depth + 1)

    try:
        return VerificationResult.model_validate(data)
    except ValidationError as exc:
        raise ExternalServiceUnavailable("Invalid JSON structure in matcher response.") from exc


class BiometricMatcher:
    """Client for the external face-match service."""

    def __init__(
        self,
        url: str = MATCHER_URL,
        api_key: str = MATCHER_API_KEY,
        timeout: float = MATCHER_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    async def verify(self, reference: str, live: bytes) -> VerificationResult:
        if not self.url:
            raise ExternalServiceUnavailable(
                "Biometric matcher is not configured. Face verification is disabled."
            )

        payload = {
            "reference": strip_data_url(reference),
            "live": base64.b64encode(live).decode("ascii"),
        }
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            logger.error("Matcher request failed: %s", exc)
            raise ExternalServiceUnavailable(
                "Face verification service is unreachable. Please try again."
            ) from exc

        if response.is_error:
            try:
                message = _error_message(response.json())
            except ValueError:
                message = None
            logger.error("Matcher returned HTTP %s", response.status_code)
            raise ExternalServiceUnavailable(
                f"AI Service Error: {message or f'HTTP {response.status_code}'}"
            )

        return extract_payload(response.text)
