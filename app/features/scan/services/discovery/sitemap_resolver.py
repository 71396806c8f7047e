import logging
from datetime import datetime, timezone
from typing import List, Optional, Tuple
from urllib.parse import urlparse

import httpx
from defusedxml import DefusedXmlException
from defusedxml.ElementTree import ParseError, fromstring

from app.features.scan.schemas.scan import SitemapProbe, SitemapResolution
from app.platform.config import settings
from app.platform.exceptions import ResourceUnavailableError, ValidationInputError
from app.platform.utils.url_validator import is_http_url, validate_url

logger = logging.getLogger(__name__)

SITEMAP_INDEX_WARNING = (
    "Sitemap index detected - nested sitemaps are not fetched, "
    "their locations are scanned as pages"
)


def _localname(tag: str) -> str:
    if "}" in tag:
        return tag.rsplit("}", 1)[-1]
    return tag


def _child_text(node, name: str) -> Optional[str]:
    for child in node:
        if isinstance(child.tag, str) and _localname(child.tag) == name and child.text:
            return child.text.strip()
    return None


class SitemapResolver:
    """
    Fetches a sitemap, extracts its page URLs and reports advisories.

    Sitemap indexes are not followed: the index's own <loc> entries are
    returned as URLs and a warning says so.
    """

    def __init__(
        self,
        http_client: Optional[httpx.Client] = None,
        max_urls: Optional[int] = None,
        large_sitemap_threshold: Optional[int] = None,
        fetch_timeout: Optional[float] = None,
        probe_timeout: Optional[float] = None,
        max_redirects: Optional[int] = None,
    ):
        self.max_urls = max_urls or settings.MAX_SITEMAP_URLS
        self.large_sitemap_threshold = large_sitemap_threshold or settings.LARGE_SITEMAP_WARNING_THRESHOLD
        self.fetch_timeout = fetch_timeout or settings.SITEMAP_FETCH_TIMEOUT_SECONDS
        self.probe_timeout = probe_timeout or settings.SITEMAP_PROBE_TIMEOUT_SECONDS
        self.max_redirects = max_redirects if max_redirects is not None else settings.SITEMAP_MAX_REDIRECTS
        self._client = http_client
        self._owns_client = http_client is None

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                follow_redirects=True,
                max_redirects=self.max_redirects,
                headers={"User-Agent": settings.SITEMAP_USER_AGENT},
            )
        return self._client

    def close(self) -> None:
        if self._client is not None and self._owns_client:
            self._client.close()
            self._client = None

    # ── public API ──────────────────────────────

    def resolve(self, sitemap_url: str) -> SitemapResolution:
        """Fetch + parse + validate. Raises on every hard failure."""
        logger.info(f"Resolving sitemap {sitemap_url}")

        content = self.fetch(sitemap_url)
        urls, is_index, skipped = self.parse(content)

        if not urls:
            raise ValidationInputError("No URLs found in sitemap")

        if len(urls) > self.max_urls:
            raise ValidationInputError(
                f"Sitemap contains {len(urls)} URLs, maximum allowed is {self.max_urls}"
            )

        warnings: List[str] = []
        if is_index:
            warnings.append(SITEMAP_INDEX_WARNING)

        if len(urls) > self.large_sitemap_threshold:
            warnings.append("Large sitemap with many URLs - scanning may take a while")

        domains = list(dict.fromkeys(urlparse(u).hostname for u in urls))
        if len(domains) > 1:
            warnings.append("Sitemap contains URLs from multiple domains")

        http_urls = [u for u in urls if u.lower().startswith("http://")]
        if http_urls:
            warnings.append(f"{len(http_urls)} URLs use HTTP instead of HTTPS")

        logger.info(
            f"Sitemap {sitemap_url} resolved: {len(urls)} URLs, "
            f"{len(warnings)} warnings, {len(domains)} domains, {skipped} skipped"
        )

        return SitemapResolution(
            urls=urls,
            warnings=warnings,
            metadata={
                "sitemap_url": sitemap_url,
                "fetched_at": datetime.now(timezone.utc).isoformat(),
                "content_size": len(content),
                "is_index": is_index,
                "skipped_entries": skipped,
                "domains": domains,
            },
        )

    def fetch(self, sitemap_url: str) -> bytes:
        url = self._require_http_url(sitemap_url)

        try:
            response = self.client.get(
                url,
                headers={"Accept": "application/xml, text/xml, */*"},
                timeout=self.fetch_timeout,
            )
        except httpx.TooManyRedirects as e:
            logger.error(f"Too many redirects fetching sitemap {url}: {e}")
            raise ResourceUnavailableError(
                f"Failed to fetch sitemap: more than {self.max_redirects} redirects"
            ) from e
        except httpx.TimeoutException as e:
            logger.error(f"Timed out fetching sitemap {url}: {e}")
            raise ResourceUnavailableError("Failed to fetch sitemap: request timed out") from e
        except httpx.HTTPError as e:
            logger.error(f"Failed to fetch sitemap {url}: {e}")
            raise ResourceUnavailableError(f"Failed to fetch sitemap: {e}") from e

        if not response.is_success:
            logger.error(f"Sitemap {url} returned HTTP {response.status_code}")
            raise ResourceUnavailableError(
                f"Failed to fetch sitemap: HTTP {response.status_code}: {response.reason_phrase}"
            )

        content_type = response.headers.get("content-type", "")
        if "xml" not in content_type and "text" not in content_type:
            logger.warning(f"Unexpected content type for sitemap {url}: {content_type!r}")

        content = response.content
        if not content or not content.strip():
            raise ValidationInputError("Failed to fetch sitemap: Empty sitemap content")

        logger.info(f"Fetched sitemap {url} ({len(content)} bytes)")
        return content

    def parse(self, content) -> Tuple[List[str], bool, int]:
        """
        Returns (unique valid URLs in document order, is_index, skipped count).
        """
        try:
            root = fromstring(content)
        except (ParseError, DefusedXmlException) as e:
            logger.error(f"Sitemap XML parsing failed: {e}")
            raise ValidationInputError(f"XML parsing failed: {e}") from e

        root_name = _localname(root.tag)
        if root_name == "urlset":
            entry_name, is_index = "url", False
        elif root_name == "sitemapindex":
            logger.warning("Sitemap index detected - only processing first-level URLs")
            entry_name, is_index = "sitemap", True
        else:
            logger.warning(f"Unsupported sitemap root element: {root_name}")
            return [], False, 0

        found: List[str] = []
        skipped = 0
        for node in root:
            if not isinstance(node.tag, str) or _localname(node.tag) != entry_name:
                continue
            loc = _child_text(node, "loc")
            if not loc:
                continue
            if not is_http_url(loc):
                skipped += 1
                logger.warning(f"Skipping invalid URL in sitemap: {loc!r}")
                continue
            found.append(loc)

        return list(dict.fromkeys(found)), is_index, skipped

    def probe(self, sitemap_url: str) -> SitemapProbe:
        """Cheap reachability check. Never raises for network problems."""
        try:
            url = self._require_http_url(sitemap_url)
        except ValidationInputError as e:
            return SitemapProbe(accessible=False, error=e.message)

        try:
            response = self.client.head(url, timeout=self.probe_timeout)
            if response.status_code in (405, 501):
                # HEAD not supported, ask for headers only
                with self.client.stream("GET", url, timeout=self.probe_timeout) as streamed:
                    response = streamed
        except httpx.HTTPError as e:
            logger.warning(f"Failed to probe sitemap {url}: {e}")
            return SitemapProbe(accessible=False, error=str(e) or e.__class__.__name__)

        headers = response.headers
        probe = SitemapProbe(
            accessible=response.is_success,
            status_code=response.status_code,
            content_type=headers.get("content-type"),
            content_length=headers.get("content-length"),
            last_modified=headers.get("last-modified"),
            server=headers.get("server"),
            error=None if response.is_success else f"HTTP {response.status_code}: {response.reason_phrase}",
        )
        logger.debug(f"Sitemap probe for {url}: {probe.model_dump()}")
        return probe

    @staticmethod
    def _require_http_url(url: str) -> str:
        is_valid, cleaned, error_message = validate_url(url)
        if not is_valid:
            raise ValidationInputError(f"Invalid sitemap URL: {error_message}")
        return cleaned
