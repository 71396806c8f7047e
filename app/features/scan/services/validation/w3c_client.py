import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import httpx

from app.features.scan.schemas.scan import ValidationMessage, ValidationResult
from app.platform.config import settings
from app.platform.exceptions import ResourceUnavailableError

logger = logging.getLogger(__name__)

SEVERITY_BY_SUBTYPE = {
    "fatal": "critical",
    "error": "high",
    "warning": "medium",
    "info": "low",
}


def map_severity(sub_type: Any) -> str:
    if not isinstance(sub_type, str):
        return "medium"
    return SEVERITY_BY_SUBTYPE.get(sub_type, "medium")


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    return None


def _as_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


class W3CValidatorClient:
    """
    Thin client for the W3C Nu HTML Checker JSON API.

    A result is only ever built from a real validator response. Anything that
    prevents reading one (network, HTTP status, body) raises
    ResourceUnavailableError instead of producing an "invalid" result.
    """

    def __init__(
        self,
        http_client: Optional[httpx.Client] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        status_timeout: Optional[float] = None,
    ):
        self.base_url = base_url or settings.W3C_VALIDATOR_URL
        self.timeout = timeout or settings.W3C_REQUEST_TIMEOUT_SECONDS
        self.status_timeout = status_timeout or settings.W3C_STATUS_TIMEOUT_SECONDS
        self._client = http_client
        self._owns_client = http_client is None

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                follow_redirects=True,
                headers={"User-Agent": settings.W3C_USER_AGENT},
            )
        return self._client

    def close(self) -> None:
        if self._client is not None and self._owns_client:
            self._client.close()
            self._client = None

    def validate_url(self, url: str) -> ValidationResult:
        logger.debug(f"Validating {url} with W3C")
        try:
            response = self.client.get(
                self.base_url,
                params={"doc": url, "out": "json"},
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            raise self._failure(url, str(e) or e.__class__.__name__) from e

        return self._build_result(url, response)

    def validate_html(self, html: str, content_type: str = "text/html; charset=utf-8") -> ValidationResult:
        """Validate a document body directly instead of letting W3C fetch it."""
        label = "direct-input"
        try:
            response = self.client.post(
                self.base_url,
                params={"out": "json"},
                content=html.encode("utf-8"),
                headers={"Content-Type": content_type, "Accept": "application/json"},
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            raise self._failure(label, str(e) or e.__class__.__name__) from e

        return self._build_result(label, response)

    def get_status(self) -> Dict[str, Any]:
        """Reachability of the validator service. Never raises."""
        checked_at = datetime.now(timezone.utc).isoformat()
        try:
            response = self.client.head(self.base_url, timeout=self.status_timeout)
        except httpx.HTTPError as e:
            logger.warning(f"W3C validator unreachable: {e}")
            return {
                "available": False,
                "status": None,
                "checked_at": checked_at,
                "error": str(e) or e.__class__.__name__,
            }

        return {
            "available": response.is_success,
            "status": response.status_code,
            "checked_at": checked_at,
        }

    # ── parsing ─────────────────────────────────

    @staticmethod
    def parse_messages(payload: Any) -> Tuple[List[ValidationMessage], List[ValidationMessage]]:
        """Split a Nu checker payload into (errors, warnings)."""
        errors: List[ValidationMessage] = []
        warnings: List[ValidationMessage] = []

        if not isinstance(payload, dict):
            return errors, warnings

        messages = payload.get("messages")
        if not isinstance(messages, list):
            return errors, warnings

        for raw in messages:
            if not isinstance(raw, dict):
                continue

            msg_type = raw.get("type")
            sub_type = raw.get("subType")

            if msg_type == "error":
                target = errors
            elif msg_type == "info" and sub_type == "warning":
                target = warnings
            else:
                continue

            line = _as_int(raw.get("lastLine"))
            if line is None:
                line = _as_int(raw.get("firstLine"))
            column = _as_int(raw.get("lastColumn"))
            if column is None:
                column = _as_int(raw.get("firstColumn"))

            target.append(
                ValidationMessage(
                    type=msg_type,
                    message=_as_str(raw.get("message")) or "No message provided",
                    line=line,
                    column=column,
                    extract=_as_str(raw.get("extract")),
                    severity=map_severity(sub_type),
                )
            )

        return errors, warnings

    def _build_result(self, url: str, response: httpx.Response) -> ValidationResult:
        if not response.is_success:
            raise self._failure(url, f"HTTP {response.status_code}: {response.reason_phrase}")

        try:
            payload = response.json()
        except ValueError as e:
            raise self._failure(url, f"invalid JSON response ({e})") from e

        errors, warnings = self.parse_messages(payload)
        logger.debug(f"W3C result for {url}: {len(errors)} errors, {len(warnings)} warnings")
        return ValidationResult(url=url, errors=errors, warnings=warnings)

    @staticmethod
    def _failure(url: str, reason: str) -> ResourceUnavailableError:
        logger.error(f"W3C validation failed for {url}: {reason}")
        return ResourceUnavailableError(f"W3C validation failed for {url}: {reason}")
