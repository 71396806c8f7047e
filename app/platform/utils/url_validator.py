from typing import Tuple
from urllib.parse import urlparse

MAX_URL_LENGTH = 2000


def is_http_url(url: str) -> bool:
    """True for absolute http(s) URLs with a host; no scheme guessing."""
    if not url or not isinstance(url, str):
        return False
    try:
        parsed = urlparse(url.strip())
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc) and bool(parsed.hostname)


def validate_url(url: str) -> Tuple[bool, str, str]:
    """
    Returns (is_valid, cleaned_url, error_message).
    """
    if not url or not url.strip():
        return False, "", "URL cannot be empty"

    cleaned = url.strip()

    if len(cleaned) > MAX_URL_LENGTH:
        return False, cleaned, f"URL too long (max {MAX_URL_LENGTH} characters)"

    try:
        parsed = urlparse(cleaned)
    except ValueError as e:
        return False, cleaned, f"URL parsing error: {str(e)}"

    if not parsed.scheme:
        return False, cleaned, "Invalid URL format: missing scheme (must be http or https)"

    if parsed.scheme not in ("http", "https"):
        return False, cleaned, f"Invalid URL scheme: {parsed.scheme} (must be http or https)"

    if not parsed.netloc or not parsed.hostname:
        return False, cleaned, "Invalid URL format: missing domain"

    return True, cleaned, ""
