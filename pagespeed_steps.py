# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "httpx",
#   "pandas",
#   "rich",
# ]
# ///
"""PageSpeed Insights workflow steps.

Wraps the Google PageSpeed Insights v5 API as four reusable steps (analyze
one URL, analyze many URLs, analyze a sitemap, compare URLs) that a workflow
host or the bundled CLI can call. Each step normalizes its input URLs, runs
the API calls in fixed-size concurrent batches with classified retries, and
returns JSON-serializable result records.
"""

from __future__ import annotations

import argparse
import asyncio
import html
import ipaddress
import json
import logging
import math
import os
import re
import sys
import time
import tomllib
from contextlib import asynccontextmanager
from dataclasses import dataclass, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Mapping, Sequence
from urllib.parse import unquote_plus, urlsplit, urlunsplit

import httpx
import pandas as pd
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

__version__ = "1.0.0"

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

PAGESPEED_API_URL = "https://www.googleapis.com/pagespeedonline/v5/runPagespeed"
USER_AGENT = f"pagespeed-steps/{__version__}"

VALID_STRATEGIES = ("mobile", "desktop", "both", "auto")
VALID_CATEGORIES = ("performance", "accessibility", "best-practices", "seo")
VALID_OUTPUT_FORMATS = ("complete", "scoresOnly", "coreMetrics", "summary")
VALID_URL_TYPES = ("all", "pages", "posts")
COMPARE_MODES = ("compareTwo", "beforeAfter", "batch")

DEFAULT_STRATEGY = "mobile"
DEFAULT_CATEGORIES = ("performance", "accessibility", "best-practices", "seo")
DEFAULT_OUTPUT_FORMAT = "complete"

# Timeouts in seconds
DEFAULT_TIMEOUT = 60.0
HEAD_REQUEST_TIMEOUT = 10.0
SITEMAP_FETCH_TIMEOUT = 30.0

DEFAULT_BATCH_SIZE = 3
MAX_BATCH_SIZE = 10
DEFAULT_BATCH_DELAY = 1.0
DEFAULT_MAX_URLS = 50
ESTIMATED_SECONDS_PER_REQUEST = 15

DEFAULT_RETRY_ATTEMPTS = 2
RETRY_BASE_DELAY = 1.0
RETRY_MAX_DELAY = 10.0

MAX_NESTED_SITEMAPS = 10
NESTED_SITEMAP_DELAY = 0.5

SIGNIFICANT_SCORE_CHANGE = 5

TRACKING_PARAMS = frozenset({
    "utm_source",
    "utm_medium",
    "utm_campaign",
    "utm_content",
    "utm_term",
    "fbclid",
    "gclid",
})

# Placeholder domains never sent to the API (subdomains included).
BLOCKED_DOMAINS = ("example.com", "example.org", "example.net", "test.com")

NON_HTML_EXTENSIONS = (
    ".xml", ".json", ".pdf", ".jpg", ".jpeg", ".png", ".gif", ".webp", ".svg",
    ".css", ".js", ".txt", ".csv", ".zip", ".rar", ".gz", ".doc", ".docx",
    ".xls", ".xlsx", ".rss", ".atom",
)

POST_PATH_MARKERS = ("/blog/", "/post/", "/news/", "/article/")

# Field names checked, in order, when a URL arrives inside an input record.
DEFAULT_URL_FIELDS = (
    "url",
    "URL",
    "URL To be Analyzed",
    "website",
    "Website",
    "link",
    "Link",
    "domain",
    "Domain",
    "page_url",
    "pageUrl",
    "site_url",
    "siteUrl",
    "web_url",
    "webUrl",
    "href",
    "uri",
    "URI",
)

SITEMAP_URL_FIELDS = ("sitemapUrl", "sitemap_url", "sitemap", *DEFAULT_URL_FIELDS)

SITEMAP_HEADERS = {
    "User-Agent": f"{USER_AGENT} (Sitemap Parser)",
    "Accept": "application/xml, text/xml, */*",
}

# Error types
INVALID_URL = "INVALID_URL"
INVALID_CONTENT_TYPE = "INVALID_CONTENT_TYPE"
NOT_HTML = "NOT_HTML"
API_ERROR = "API_ERROR"
TIMEOUT = "TIMEOUT"
RATE_LIMITED = "RATE_LIMITED"
NETWORK_ERROR = "NETWORK_ERROR"
AUTHENTICATION_ERROR = "AUTHENTICATION_ERROR"
QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
UNKNOWN = "UNKNOWN"

RETRYABLE_ERROR_TYPES = frozenset({TIMEOUT, NETWORK_ERROR, RATE_LIMITED, UNKNOWN})

USER_FRIENDLY_ERROR_MESSAGES = {
    INVALID_URL: "The provided URL is not valid. Please ensure it follows the format: https://www.site.com",
    INVALID_CONTENT_TYPE: "The URL does not return HTML content. PageSpeed Insights can only analyze web pages.",
    NOT_HTML: "The URL appears to be an API endpoint or file. Please provide a web page URL.",
    API_ERROR: "There was an error with the PageSpeed Insights API. Please try again later.",
    TIMEOUT: "The analysis timed out. The website may be slow to respond.",
    RATE_LIMITED: "API rate limit exceeded. Please wait a moment before trying again.",
    NETWORK_ERROR: "Network error occurred. Please check your internet connection.",
    AUTHENTICATION_ERROR: "API key is invalid or missing. Please check your credentials.",
    QUOTA_EXCEEDED: "API quota exceeded for today. Please try again tomorrow or upgrade your plan.",
    UNKNOWN: "An unexpected error occurred. Please try again.",
}

NETWORK_ERROR_MARKERS = (
    "network",
    "econnrefused",
    "enotfound",
    "connection",
    "name or service not known",
    "name resolution",
    "dns",
)

# (lighthouse category id, output key)
CATEGORY_KEYS = (
    ("performance", "performance"),
    ("accessibility", "accessibility"),
    ("best-practices", "bestPractices"),
    ("seo", "seo"),
)

# (audit id, output key); every metric here is lower-is-better
METRIC_AUDITS = (
    ("first-contentful-paint", "firstContentfulPaint"),
    ("largest-contentful-paint", "largestContentfulPaint"),
    ("cumulative-layout-shift", "cumulativeLayoutShift"),
    ("speed-index", "speedIndex"),
    ("interactive", "timeToInteractive"),
    ("total-blocking-time", "totalBlockingTime"),
)

# Core Web Vitals thresholds (ms, except CLS)
CWV_THRESHOLDS = {
    "lcp": {"good": 2500, "poor": 4000, "audit": "largest-contentful-paint"},
    "fcp": {"good": 1800, "poor": 3000, "audit": "first-contentful-paint"},
    "cls": {"good": 0.1, "poor": 0.25, "audit": "cumulative-layout-shift"},
    "tbt": {"good": 200, "poor": 600, "audit": "total-blocking-time"},
    "fid": {"good": 100, "poor": 300, "audit": "max-potential-fid"},
    "ttfb": {"good": 800, "poor": 1800, "audit": "server-response-time"},
}

GRADE_THRESHOLDS = ((90, "A"), (80, "B"), (70, "C"), (60, "D"))

KEY_AUDITS = (
    "first-contentful-paint",
    "largest-contentful-paint",
    "speed-index",
    "interactive",
    "cumulative-layout-shift",
    "total-blocking-time",
    "server-response-time",
    "render-blocking-resources",
    "unused-css-rules",
    "unused-javascript",
    "modern-image-formats",
    "uses-optimized-images",
    "prioritize-lcp-image",
)

OPPORTUNITY_AUDITS = (
    "render-blocking-resources",
    "unused-css-rules",
    "unused-javascript",
    "modern-image-formats",
    "uses-responsive-images",
    "offscreen-images",
    "unminified-css",
    "unminified-javascript",
    "efficient-animated-content",
    "uses-optimized-images",
    "prioritize-lcp-image",
    "font-display",
    "uses-text-compression",
    "server-response-time",
)

OPTIMIZATION_GROUPS = {
    "images": (
        "modern-image-formats",
        "efficient-animated-content",
        "offscreen-images",
        "properly-size-images",
        "uses-webp-images",
        "uses-optimized-images",
    ),
    "javascript": ("unminified-javascript", "unused-javascript", "legacy-javascript"),
    "css": ("unminified-css", "unused-css-rules"),
    "fonts": ("font-display",),
    "network": ("uses-http2", "uses-long-cache-ttl", "uses-rel-preconnect", "prioritize-lcp-image"),
}

ACCESSIBILITY_SEVERITY_AUDITS = {
    "critical": ("color-contrast", "image-alt", "link-name"),
    "serious": ("heading-order", "landmark-one-main", "page-has-heading-one"),
    "moderate": ("html-has-lang", "meta-viewport"),
    "minor": (),
}

KEY_ACCESSIBILITY_ISSUES = {
    "color-contrast": "Poor color contrast detected",
    "image-alt": "Images missing alt text",
    "link-name": "Links missing accessible names",
    "heading-order": "Heading elements not in sequentially-descending order",
    "html-has-lang": "Page missing language declaration",
}

KEY_SEO_ISSUES = {
    "document-title": "Missing or poor page title",
    "meta-description": "Missing meta description",
    "link-text": "Poor link text detected",
    "is-crawlable": "Page blocked from indexing",
    "hreflang": "Missing hreflang attributes",
}

SECURITY_VULNERABILITIES = {
    "is-on-https": "Not using HTTPS",
    "no-mixed-content": "Mixed content detected",
    "no-vulnerable-libraries": "Vulnerable JavaScript libraries detected",
}

CONFIG_FILENAMES = ["pagespeed.toml"]
CONFIG_SEARCH_PATHS = [
    Path.cwd(),
    Path.home() / ".config" / "pagespeed",
]


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class PageSpeedError(Exception):
    """Base class for failures that abort a whole step."""


class InvalidUrlError(PageSpeedError):
    """Raised when a URL cannot be normalized or is not allowed for analysis."""


class AuthenticationError(PageSpeedError):
    """Raised when the API key is missing or rejected by the API."""


class NoUrlsError(PageSpeedError):
    """Raised when a step ends up with nothing to analyze."""


class SitemapError(PageSpeedError):
    """Raised when the top-level sitemap cannot be fetched."""


class ComparisonError(PageSpeedError):
    """Raised when two analyses cannot be compared."""


# ---------------------------------------------------------------------------
# Logging & Consoles
# ---------------------------------------------------------------------------

logger = logging.getLogger("pagespeed_steps")
logger.addHandler(logging.NullHandler())

err_console = Console(stderr=True)


def configure_logging(verbose: bool = False) -> logging.Logger:
    """Send library log records to stderr through rich (CLI use)."""
    for handler in list(logger.handlers):
        if isinstance(handler, RichHandler):
            logger.removeHandler(handler)
    handler = RichHandler(console=err_console, show_path=False, markup=False)
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    return logger


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Value Objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NormalizedUrl:
    """A user-supplied URL and its canonical form, or the reason it has none."""

    original: str
    normalized: str
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class UrlFilters:
    """Sitemap filtering rules, applied once per sitemap step."""

    include_pattern: str | None = None
    exclude_pattern: str | None = None
    max_urls: int = DEFAULT_MAX_URLS
    url_type: str = "all"

    def __post_init__(self):
        if self.max_urls is None:
            object.__setattr__(self, "max_urls", DEFAULT_MAX_URLS)
        if int(self.max_urls) < 1:
            raise ValueError(f"max_urls must be at least 1, got {self.max_urls}")
        object.__setattr__(self, "max_urls", int(self.max_urls))
        if self.url_type not in VALID_URL_TYPES:
            raise ValueError(f"Invalid URL type {self.url_type!r}. Choose from: {', '.join(VALID_URL_TYPES)}")

    @classmethod
    def from_mapping(cls, params: Mapping[str, Any] | None) -> UrlFilters:
        aliases = {
            "includePattern": "include_pattern",
            "excludePattern": "exclude_pattern",
            "maxUrls": "max_urls",
            "urlType": "url_type",
        }
        return cls(**_collect_fields(cls, params or {}, aliases))

    def to_dict(self) -> dict:
        return {
            "includePattern": self.include_pattern,
            "excludePattern": self.exclude_pattern,
            "maxUrls": self.max_urls,
            "urlType": self.url_type,
        }


@dataclass(frozen=True)
class RequestConfig:
    """One PageSpeed API call: a single URL under a single strategy."""

    url: str
    strategy: str
    categories: tuple[str, ...] = DEFAULT_CATEGORIES
    locale: str | None = None
    screenshot: bool = False
    timeout: float = DEFAULT_TIMEOUT
    retry_attempts: int = DEFAULT_RETRY_ATTEMPTS
    original_url: str | None = None


@dataclass(frozen=True)
class AnalysisOptions:
    """Host parameters shared by every step."""

    strategy: str = DEFAULT_STRATEGY
    categories: tuple[str, ...] = DEFAULT_CATEGORIES
    output_format: str = DEFAULT_OUTPUT_FORMAT
    locale: str | None = None
    screenshot: bool = False
    skip_content_validation: bool = False
    retry_attempts: int = DEFAULT_RETRY_ATTEMPTS
    timeout: float = DEFAULT_TIMEOUT
    batch_size: int = DEFAULT_BATCH_SIZE
    batch_delay: float = DEFAULT_BATCH_DELAY
    significance_threshold: float = SIGNIFICANT_SCORE_CHANGE
    include_opportunities: bool = True
    include_raw_data: bool = False

    def __post_init__(self):
        if self.strategy not in VALID_STRATEGIES:
            raise ValueError(f"Invalid strategy {self.strategy!r}. Choose from: {', '.join(VALID_STRATEGIES)}")
        categories = (self.categories,) if isinstance(self.categories, str) else tuple(self.categories or ())
        if not categories:
            raise ValueError("At least one category is required")
        unknown = [c for c in categories if c not in VALID_CATEGORIES]
        if unknown:
            raise ValueError(f"Invalid categories: {', '.join(unknown)}")
        object.__setattr__(self, "categories", categories)
        if self.output_format not in VALID_OUTPUT_FORMATS:
            raise ValueError(
                f"Invalid output format {self.output_format!r}. Choose from: {', '.join(VALID_OUTPUT_FORMATS)}"
            )
        for name in ("screenshot", "skip_content_validation", "include_opportunities", "include_raw_data"):
            object.__setattr__(self, name, _as_bool(getattr(self, name)))
        for name in ("timeout", "batch_delay", "significance_threshold"):
            object.__setattr__(self, name, float(getattr(self, name)))
        object.__setattr__(self, "retry_attempts", int(self.retry_attempts))
        if self.retry_attempts < 0:
            raise ValueError("retry_attempts cannot be negative")
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")
        if self.batch_delay < 0:
            raise ValueError("batch_delay cannot be negative")
        object.__setattr__(self, "batch_size", clamp_batch_size(self.batch_size))

    @classmethod
    def from_mapping(cls, params: Mapping[str, Any] | None) -> AnalysisOptions:
        """Build options from host parameters (camelCase or snake_case keys)."""
        aliases = {
            "outputFormat": "output_format",
            "skipContentValidation": "skip_content_validation",
            "retryAttempts": "retry_attempts",
            "customTimeout": "timeout",
            "batchSize": "batch_size",
            "batchDelay": "batch_delay",
            "significanceThreshold": "significance_threshold",
            "includeOpportunities": "include_opportunities",
            "includeRawData": "include_raw_data",
        }
        return cls(**_collect_fields(cls, params or {}, aliases))


def _collect_fields(cls, params: Mapping[str, Any], aliases: dict[str, str]) -> dict:
    names = {f.name for f in fields(cls)}
    collected = {}
    for key, value in params.items():
        target = aliases.get(key, key)
        if target in names and value is not None:
            collected[target] = value
    return collected


def clamp_batch_size(batch_size: int | None) -> int:
    if not batch_size:
        return DEFAULT_BATCH_SIZE
    return max(1, min(int(batch_size), MAX_BATCH_SIZE))


def _as_bool(value: Any) -> bool:
    """Coerce host flag values, which may arrive as strings."""
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "1", "yes", "on"):
            return True
        if lowered in ("false", "0", "no", "off", ""):
            return False
        raise ValueError(f"Cannot interpret {value!r} as a boolean")
    return bool(value)


# ---------------------------------------------------------------------------
# Config & Profile
# ---------------------------------------------------------------------------


def discover_config_path() -> Path | None:
    """Find the first existing config file in search paths."""
    for search_dir in CONFIG_SEARCH_PATHS:
        for filename in CONFIG_FILENAMES:
            candidate = search_dir / filename
            if candidate.is_file():
                return candidate
    return None


def load_config(config_path: Path | None) -> dict:
    """Parse a TOML config file and return its contents as a dict."""
    if config_path is None:
        return {}
    try:
        with open(config_path, "rb") as fh:
            return tomllib.load(fh)
    except tomllib.TOMLDecodeError as exc:
        print(f"Error: malformed config file {config_path}: {exc}", file=sys.stderr)
        sys.exit(1)
    except OSError as exc:
        print(f"Error: cannot read config file {config_path}: {exc}", file=sys.stderr)
        sys.exit(1)


def apply_profile(args: argparse.Namespace, config: dict, profile_name: str | None) -> argparse.Namespace:
    """Merge config [settings] and optional profile into args.

    Resolution order (highest priority wins):
      1. Explicit CLI flags
      2. Profile values
      3. [settings] defaults from config
      4. Built-in defaults (already in args)
    """
    settings = config.get("settings", {})
    profile = {}
    if profile_name:
        profiles = config.get("profiles", {})
        if profile_name not in profiles:
            available = ", ".join(profiles.keys()) if profiles else "(none)"
            print(
                f"Error: profile '{profile_name}' not found in config. Available: {available}",
                file=sys.stderr,
            )
            sys.exit(1)
        profile = profiles[profile_name]

    # Map config keys to argparse dest names
    config_key_map = {
        "api_key": "api_key",
        "strategy": "strategy",
        "categories": "categories",
        "output_format": "output_format",
        "locale": "locale",
        "screenshot": "screenshot",
        "skip_content_validation": "skip_content_validation",
        "include_opportunities": "include_opportunities",
        "include_raw_data": "include_raw_data",
        "retry_attempts": "retry_attempts",
        "timeout": "timeout",
        "batch_size": "batch_size",
        "batch_delay": "batch_delay",
        "include_pattern": "include_pattern",
        "exclude_pattern": "exclude_pattern",
        "max_urls": "max_urls",
        "url_type": "url_type",
        "threshold": "threshold",
        "verbose": "verbose",
    }

    cli_explicit = set(getattr(args, "_explicit_args", []))

    for config_key, arg_dest in config_key_map.items():
        if arg_dest in cli_explicit:
            continue
        if config_key in profile:
            setattr(args, arg_dest, profile[config_key])
        elif config_key in settings:
            setattr(args, arg_dest, settings[config_key])

    if not getattr(args, "api_key", None):
        env_key = os.environ.get("PAGESPEED_API_KEY")
        if env_key:
            args.api_key = env_key

    return args


# ---------------------------------------------------------------------------
# URL Handling
# ---------------------------------------------------------------------------

_URL_LABEL_RE = re.compile(r"^url\s*[=:]\s*", re.IGNORECASE)
_SCHEME_RE = re.compile(r"^[a-z][a-z0-9+.-]*://", re.IGNORECASE)
_HOSTNAME_RE = re.compile(r"^[\w.:-]+$")


def canonicalize_url(raw_url: Any, context: str | None = None) -> str:
    """Turn user input into a canonical HTTPS URL, raising InvalidUrlError on failure.

    Plain HTTP is upgraded to HTTPS, tracking parameters are removed and the
    trailing slash is dropped. Applying it to its own output is a no-op.
    """
    suffix = f" for {context}" if context else ""
    if not isinstance(raw_url, str) or not raw_url.strip():
        raise InvalidUrlError(f"URL is required{suffix}")

    candidate = raw_url.strip().strip("'\"").strip()
    candidate = _URL_LABEL_RE.sub("", candidate)
    tokens = candidate.split()
    candidate = tokens[0].strip("'\"").lstrip("/.") if tokens else ""
    if not candidate:
        raise InvalidUrlError(f"URL is empty after cleaning{suffix}")

    lowered = candidate.lower()
    if lowered.startswith("http://"):
        candidate = "https://" + candidate[len("http://"):]
    elif lowered.startswith("https://"):
        candidate = "https://" + candidate[len("https://"):]
    elif _SCHEME_RE.match(candidate):
        raise InvalidUrlError(f'Cannot create valid URL from "{raw_url}": unsupported protocol')
    else:
        candidate = "https://" + candidate

    try:
        parts = urlsplit(candidate)
        hostname = parts.hostname or ""
        port = parts.port
    except ValueError as exc:
        raise InvalidUrlError(f'Cannot create valid URL from "{raw_url}": {exc}') from exc

    if not hostname:
        raise InvalidUrlError(f'Cannot create valid URL from "{raw_url}": missing hostname')
    if hostname != "localhost" and "." not in hostname:
        raise InvalidUrlError(f'Cannot create valid URL from "{raw_url}": invalid domain "{hostname}"')
    if not _HOSTNAME_RE.match(hostname) or any(not label for label in hostname.split(".")):
        raise InvalidUrlError(f'Cannot create valid URL from "{raw_url}": invalid domain "{hostname}"')

    netloc = f"[{hostname}]" if ":" in hostname else hostname
    if port is not None and port != 443:
        netloc = f"{netloc}:{port}"

    query = _strip_tracking_params(parts.query)
    path = parts.path.rstrip("/")
    if not path and query:
        path = "/"

    return urlunsplit(("https", netloc, path, query, ""))


def _strip_tracking_params(query: str) -> str:
    """Drop tracking parameters, leaving the other pairs byte-for-byte intact."""
    if not query:
        return ""
    kept = []
    for pair in query.split("&"):
        if not pair:
            continue
        key = unquote_plus(pair.split("=", 1)[0]).lower()
        if key not in TRACKING_PARAMS:
            kept.append(pair)
    return "&".join(kept)


def normalize_url(raw_url: Any) -> NormalizedUrl:
    """Normalize without raising; failures are reported in ``error``."""
    original = raw_url if isinstance(raw_url, str) else ("" if raw_url is None else str(raw_url))
    try:
        return NormalizedUrl(original=original, normalized=canonicalize_url(raw_url))
    except InvalidUrlError as exc:
        return NormalizedUrl(original=original, normalized=original.strip(), error=str(exc))


def _blocked_reason(url: str) -> str | None:
    try:
        hostname = (urlsplit(url).hostname or "").lower()
    except ValueError:
        return "unparseable URL"
    if not hostname:
        return "missing hostname"
    if hostname == "localhost" or hostname.endswith(".localhost"):
        return "local addresses cannot be reached by PageSpeed Insights"
    try:
        address = ipaddress.ip_address(hostname)
    except ValueError:
        address = None
    if address is not None and (
        address.is_loopback or address.is_unspecified or address.is_private or address.is_link_local
    ):
        return "local or private addresses cannot be reached by PageSpeed Insights"
    for domain in BLOCKED_DOMAINS:
        if hostname == domain or hostname.endswith("." + domain):
            return f"{domain} is a placeholder domain"
    return None


def is_allowed_for_analysis(url: str) -> bool:
    """Whether a normalized URL may be sent to the PageSpeed API."""
    return _blocked_reason(url) is None


def prepare_url(raw_url: Any) -> NormalizedUrl:
    """Normalize a URL and apply the analysis gate."""
    result = normalize_url(raw_url)
    if result.error:
        return result
    reason = _blocked_reason(result.normalized)
    if reason:
        return NormalizedUrl(
            original=result.original,
            normalized=result.normalized,
            error=f'URL "{result.normalized}" is not allowed for analysis: {reason}',
        )
    return result


def prepare_urls(raw_urls: Iterable[Any]) -> list[NormalizedUrl]:
    return [prepare_url(raw) for raw in raw_urls]


def extract_url_from_item(item: Mapping[str, Any], fields: Sequence[str] = DEFAULT_URL_FIELDS) -> str | None:
    """Return the first non-empty string found under ``fields``, in order."""
    for name in fields:
        value = item.get(name)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


# ---------------------------------------------------------------------------
# Content Validation
# ---------------------------------------------------------------------------

_FEED_SEGMENT_RE = re.compile(r"/(?:feed|rss)(?:/|\.|$)")


def looks_like_non_html(url: str) -> bool:
    """Cheap path check for resources that are clearly not web pages."""
    try:
        path = urlsplit(url).path.lower()
    except ValueError:
        return False
    if path.endswith(NON_HTML_EXTENSIONS):
        return True
    if "/api/" in path or "sitemap" in path:
        return True
    return bool(_FEED_SEGMENT_RE.search(path))


async def _content_request(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    timeout: float,
    headers: dict | None = None,
    logger: logging.Logger = logger,
) -> httpx.Response | None:
    try:
        response = await client.request(method, url, timeout=timeout, headers=headers, follow_redirects=True)
    except httpx.HTTPError as exc:
        logger.debug("%s content check failed for %s: %s", method, url, exc)
        return None
    if response.status_code >= 400:
        logger.debug("%s content check for %s answered HTTP %s", method, url, response.status_code)
        return None
    return response


async def validate_url_content(
    url: str,
    client: httpx.AsyncClient,
    timeout: float = HEAD_REQUEST_TIMEOUT,
    logger: logging.Logger = logger,
) -> dict:
    """Check that a URL serves HTML before spending API quota on it.

    Never raises. When neither the HEAD request nor the ranged GET fallback
    gets an answer the URL is let through, so the API call reports the
    real problem.
    """
    if looks_like_non_html(url):
        return {
            "isValid": False,
            "contentType": "likely-non-html",
            "error": "URL appears to be a non-HTML resource",
        }

    response = await _content_request(client, "HEAD", url, timeout, logger=logger)
    if response is None:
        response = await _content_request(client, "GET", url, timeout, headers={"Range": "bytes=0-1023"}, logger=logger)
    if response is None:
        return {"isValid": True, "contentType": "unknown"}

    content_type = (response.headers.get("content-type") or "").lower()
    if not content_type:
        return {"isValid": True, "contentType": "unknown"}

    is_html = "text/html" in content_type or "application/xhtml" in content_type
    result = {"isValid": is_html, "contentType": content_type}
    if not is_html:
        result["error"] = f"Content-Type '{content_type}' is not HTML"
    return result


# ---------------------------------------------------------------------------
# Sitemaps
# ---------------------------------------------------------------------------

_LOC_RE = re.compile(
    r"<(?:(?!image:|video:)[\w-]+:)?loc\b[^>]*>(.*?)</(?:[\w-]+:)?loc\s*>",
    re.IGNORECASE | re.DOTALL,
)
_SITEMAP_BLOCK_RE = re.compile(
    r"<(?:[\w-]+:)?sitemap\b[^>]*>(.*?)</(?:[\w-]+:)?sitemap\s*>",
    re.IGNORECASE | re.DOTALL,
)
_SITEMAP_INDEX_RE = re.compile(r"<(?:[\w-]+:)?sitemapindex\b", re.IGNORECASE)
_CDATA_RE = re.compile(r"^<!\[CDATA\[(.*)\]\]>$", re.DOTALL)


@asynccontextmanager
async def _client_scope(client: httpx.AsyncClient | None):
    """Yield the caller's client, or a short-lived one owned by this call."""
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient(headers={"User-Agent": USER_AGENT}) as owned:
        yield owned


def _clean_loc(value: str) -> str:
    value = value.strip()
    cdata = _CDATA_RE.match(value)
    if cdata:
        value = cdata.group(1).strip()
    return html.unescape(value)


def is_sitemap_index(xml_content: str) -> bool:
    return bool(_SITEMAP_INDEX_RE.search(xml_content) or _SITEMAP_BLOCK_RE.search(xml_content))


def parse_sitemap_xml(xml_content: str) -> list[str]:
    """Extract every non-empty <loc> value, in document order.

    Sitemaps in the wild are often malformed, so this is a tolerant pattern
    match rather than an XML parse.
    """
    urls = []
    for match in _LOC_RE.finditer(xml_content or ""):
        value = _clean_loc(match.group(1))
        if value:
            urls.append(value)
    return urls


def extract_nested_sitemaps(xml_content: str) -> list[str]:
    """Return the child sitemap URLs of a sitemap index, deduplicated."""
    blocks = _SITEMAP_BLOCK_RE.findall(xml_content)
    candidates = []
    if blocks:
        for block in blocks:
            candidates.extend(parse_sitemap_xml(block)[:1])
    else:
        candidates = parse_sitemap_xml(xml_content)

    seen: set[str] = set()
    nested = []
    for candidate in candidates:
        if not candidate.lower().startswith(("http://", "https://")) or candidate in seen:
            continue
        seen.add(candidate)
        nested.append(candidate)
    return nested


async def _fetch_sitemap_content(source: str, client: httpx.AsyncClient) -> str:
    """Fetch sitemap XML from a URL or read from a local file path."""
    if source.startswith(("http://", "https://")):
        response = await client.get(
            source,
            timeout=SITEMAP_FETCH_TIMEOUT,
            headers=SITEMAP_HEADERS,
            follow_redirects=True,
        )
        response.raise_for_status()
        return response.text
    return await asyncio.to_thread(Path(source).read_text)


async def collect_sitemap_urls(
    sitemap_url: str,
    client: httpx.AsyncClient,
    max_nested: int = MAX_NESTED_SITEMAPS,
    logger: logging.Logger = logger,
) -> list[str]:
    """Fetch a sitemap (or sitemap index) and return the raw <loc> URLs.

    Nested sitemaps of an index are fetched one at a time with a short pause;
    a nested sitemap that fails is skipped. Failure to fetch the top-level
    sitemap raises SitemapError.
    """
    logger.info("Fetching sitemap: %s", sitemap_url)
    try:
        content = await _fetch_sitemap_content(sitemap_url, client)
    except (httpx.HTTPError, OSError) as exc:
        raise SitemapError(f"Failed to fetch sitemap {sitemap_url}: {exc}") from exc

    if not content or not content.strip():
        raise SitemapError(f"Sitemap {sitemap_url} is empty")

    if not is_sitemap_index(content):
        urls = parse_sitemap_xml(content)
        logger.info("Found %d URL(s) in sitemap", len(urls))
        return urls

    nested = extract_nested_sitemaps(content)
    if not nested:
        logger.warning("Sitemap index %s lists no nested sitemaps", sitemap_url)
        return []
    if len(nested) > max_nested:
        logger.warning("Only processing the first %d of %d nested sitemaps", max_nested, len(nested))
        nested = nested[:max_nested]

    urls: list[str] = []
    for index, nested_url in enumerate(nested):
        if index:
            await asyncio.sleep(NESTED_SITEMAP_DELAY)
        logger.debug("Following nested sitemap %d/%d: %s", index + 1, len(nested), nested_url)
        try:
            nested_content = await _fetch_sitemap_content(nested_url, client)
        except (httpx.HTTPError, OSError) as exc:
            logger.warning("Skipping nested sitemap %s: %s", nested_url, exc)
            continue
        nested_urls = parse_sitemap_xml(nested_content)
        logger.debug("  %d URL(s) in %s", len(nested_urls), nested_url)
        urls.extend(nested_urls)

    logger.info("Found %d URL(s) across %d nested sitemap(s)", len(urls), len(nested))
    return urls


def _split_tokens(pattern: str | None) -> list[str]:
    return [token.strip() for token in (pattern or "").split(",") if token.strip()]


REGEX_TOKEN_PREFIX = "re:"


def _token_matches(url: str, token: str) -> bool:
    """Case-insensitive substring match; ``re:<pattern>`` tokens are regular expressions."""
    if not token.startswith(REGEX_TOKEN_PREFIX):
        return token.lower() in url.lower()
    try:
        return re.search(token[len(REGEX_TOKEN_PREFIX):], url, re.IGNORECASE) is not None
    except re.error:
        return False


def _is_post_url(url: str) -> bool:
    lowered = url.lower()
    return any(marker in lowered for marker in POST_PATH_MARKERS)


def filter_sitemap_entries(
    urls: Iterable[str],
    filters: UrlFilters | None = None,
    logger: logging.Logger = logger,
) -> list[NormalizedUrl]:
    """Normalize, filter, deduplicate and truncate sitemap URLs.

    Include and exclude patterns are comma-separated tokens, each matched
    as a case-insensitive substring, or as a regular expression when written
    ``re:<pattern>``. Truncation keeps the first ``max_urls`` survivors in
    sitemap order. Each survivor keeps its raw ``<loc>`` text as ``original``.
    """
    filters = filters or UrlFilters()
    urls = list(urls)

    entries = []
    for raw in urls:
        prepared = prepare_url(raw)
        if prepared.error:
            logger.debug("Skipping sitemap entry %r: %s", raw, prepared.error)
            continue
        entries.append(prepared)
    logger.debug("%d of %d URL(s) normalized", len(entries), len(urls))

    include_tokens = _split_tokens(filters.include_pattern)
    if include_tokens:
        entries = [e for e in entries if any(_token_matches(e.normalized, t) for t in include_tokens)]
        logger.debug("%d URL(s) after include filter %r", len(entries), filters.include_pattern)

    exclude_tokens = _split_tokens(filters.exclude_pattern)
    if exclude_tokens:
        entries = [e for e in entries if not any(_token_matches(e.normalized, t) for t in exclude_tokens)]
        logger.debug("%d URL(s) after exclude filter %r", len(entries), filters.exclude_pattern)

    if filters.url_type == "pages":
        entries = [e for e in entries if not _is_post_url(e.normalized)]
    elif filters.url_type == "posts":
        entries = [e for e in entries if _is_post_url(e.normalized)]

    entries = [e for e in entries if not looks_like_non_html(e.normalized)]

    seen: set[str] = set()
    unique = []
    for entry in entries:
        key = entry.normalized.lower()
        if key not in seen:
            seen.add(key)
            unique.append(entry)

    if len(unique) > filters.max_urls:
        logger.info("Limiting URLs: %d -> %d", len(unique), filters.max_urls)
        unique = unique[: filters.max_urls]

    return unique


def apply_url_filters(
    urls: Iterable[str],
    filters: UrlFilters | None = None,
    logger: logging.Logger = logger,
) -> list[str]:
    """Like filter_sitemap_entries(), returning only the normalized URLs."""
    return [entry.normalized for entry in filter_sitemap_entries(urls, filters, logger=logger)]


async def fetch_sitemap_urls(
    sitemap_url: str,
    filters: UrlFilters | None = None,
    client: httpx.AsyncClient | None = None,
    logger: logging.Logger = logger,
) -> list[str]:
    """Fetch a sitemap and return its normalized, filtered page URLs."""
    async with _client_scope(client) as active:
        urls = await collect_sitemap_urls(sitemap_url, active, logger=logger)
    return apply_url_filters(urls, filters, logger=logger)


# ---------------------------------------------------------------------------
# API Client
# ---------------------------------------------------------------------------


def build_request_params(config: RequestConfig, api_key: str) -> list[tuple[str, str]]:
    """Query parameters for one API call; ``category`` repeats once per category."""
    params = [("url", config.url), ("strategy", config.strategy)]
    params.extend(("category", category) for category in config.categories)
    params.append(("key", api_key))
    if config.locale:
        params.append(("locale", config.locale))
    if config.screenshot:
        params.append(("screenshot", "true"))
    return params


def classify_error(status_code: int | None, message: str = "") -> str:
    """Map an HTTP status and error message onto an error type."""
    text = (message or "").lower()
    if status_code == 401 or "api key" in text or "authentication" in text:
        return AUTHENTICATION_ERROR
    if status_code == 403 and ("quota" in text or "billing" in text):
        return QUOTA_EXCEEDED
    if status_code == 429 or "rate limit" in text or "quota" in text:
        return RATE_LIMITED
    if "timeout" in text or "timed out" in text or "etimedout" in text:
        return TIMEOUT
    if "not_html" in text:
        return NOT_HTML
    if any(marker in text for marker in NETWORK_ERROR_MARKERS):
        return NETWORK_ERROR
    if status_code is not None and 400 <= status_code < 500:
        return API_ERROR
    return UNKNOWN


def is_retryable(error_type: str) -> bool:
    return error_type in RETRYABLE_ERROR_TYPES


def compute_backoff(attempt: int, base_delay: float = RETRY_BASE_DELAY, max_delay: float = RETRY_MAX_DELAY) -> float:
    return min(base_delay * (2**attempt), max_delay)


def next_retry_delay(
    error_type: str,
    attempt: int,
    max_retries: int,
    base_delay: float = RETRY_BASE_DELAY,
    max_delay: float = RETRY_MAX_DELAY,
) -> float | None:
    """Seconds to wait before retrying attempt ``attempt`` (0-based), or None to stop."""
    if not is_retryable(error_type) or attempt >= max_retries:
        return None
    return compute_backoff(attempt, base_delay, max_delay)


def _error_record(url: str, strategy: str, error_type: str, detail: str, retry_count: int = 0, **extra) -> dict:
    record = {
        "error": True,
        "errorType": error_type,
        "errorMessage": USER_FRIENDLY_ERROR_MESSAGES.get(error_type, USER_FRIENDLY_ERROR_MESSAGES[UNKNOWN]),
        "errorDetail": detail,
        "url": url,
        "strategy": strategy,
        "analysisTime": _now_iso(),
        "retryCount": retry_count,
        "canRetry": False,
    }
    record.update(extra)
    return record


def _is_error_record(response: Mapping[str, Any]) -> bool:
    return response.get("error") is True


def _decode_json(response: httpx.Response) -> dict | None:
    try:
        payload = response.json()
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else None


async def _request_once(
    client: httpx.AsyncClient,
    params: list[tuple[str, str]],
    timeout: float,
) -> tuple[dict | None, str, str]:
    """Run a single API call. Returns (payload, error_type, detail); payload is None on failure."""
    try:
        response = await client.get(
            PAGESPEED_API_URL,
            params=params,
            timeout=timeout,
            headers={"User-Agent": USER_AGENT},
        )
    except httpx.TimeoutException as exc:
        return None, TIMEOUT, f"Request timed out: {exc}"
    except (httpx.TransportError, OSError) as exc:
        return None, NETWORK_ERROR, f"Network error: {exc}"

    payload = _decode_json(response)

    if response.status_code == 200:
        if payload is None:
            return None, UNKNOWN, "Invalid API response: body is not a JSON object"
        api_error = payload.get("error")
        if isinstance(api_error, dict):
            message = str(api_error.get("message", "Unknown API error"))
            code = api_error.get("code") if isinstance(api_error.get("code"), int) else None
            return None, classify_error(code, message), message
        if not payload.get("lighthouseResult"):
            return None, UNKNOWN, "Invalid API response: missing lighthouseResult"
        return payload, "", ""

    detail = ""
    if payload is not None and isinstance(payload.get("error"), dict):
        detail = str(payload["error"].get("message", ""))
    if not detail:
        detail = (response.text or "")[:200]
    return None, classify_error(response.status_code, detail), f"HTTP {response.status_code}: {detail}"


async def fetch_pagespeed_result(
    config: RequestConfig,
    api_key: str,
    *,
    client: httpx.AsyncClient,
    retry_attempts: int | None = None,
    base_delay: float = RETRY_BASE_DELAY,
    max_delay: float = RETRY_MAX_DELAY,
    logger: logging.Logger = logger,
) -> dict:
    """Fetch PageSpeed Insights results for one RequestConfig.

    Returns the raw API payload on success. Every failure, including
    exhausted retries, comes back as an error record (``error: True``)
    rather than an exception. Only TIMEOUT, NETWORK_ERROR, RATE_LIMITED
    and UNKNOWN failures are retried, with exponential backoff.
    """
    max_retries = max(0, config.retry_attempts if retry_attempts is None else retry_attempts)
    params = build_request_params(config, api_key)

    attempt = 0
    while True:
        payload, error_type, detail = await _request_once(client, params, config.timeout)
        if payload is not None:
            if attempt:
                logger.info("Analysis of %s (%s) succeeded after %d retries", config.url, config.strategy, attempt)
            return payload

        logger.warning(
            "PageSpeed attempt %d/%d failed for %s (%s): %s",
            attempt + 1,
            max_retries + 1,
            config.url,
            config.strategy,
            detail,
        )
        delay = next_retry_delay(error_type, attempt, max_retries, base_delay, max_delay)
        if delay is None:
            return _error_record(config.url, config.strategy, error_type, detail, retry_count=attempt)
        await asyncio.sleep(delay)
        attempt += 1


async def validate_api_key(
    api_key: str | None,
    client: httpx.AsyncClient | None = None,
    logger: logging.Logger = logger,
) -> bool:
    """Make one test request; False only when the key is missing or rejected."""
    if not api_key:
        return False
    config = RequestConfig(
        url="https://www.google.com",
        strategy="mobile",
        categories=("performance",),
        timeout=HEAD_REQUEST_TIMEOUT,
        retry_attempts=0,
    )
    async with _client_scope(client) as active:
        result = await fetch_pagespeed_result(config, api_key, client=active, logger=logger)
    return not (_is_error_record(result) and result["errorType"] == AUTHENTICATION_ERROR)


# ---------------------------------------------------------------------------
# Response Formatting
# ---------------------------------------------------------------------------


def _round_half_up(value: float) -> int:
    return int(math.floor(float(value) + 0.5))


def score_to_int(score: float | None) -> int:
    """Convert a 0..1 Lighthouse score to 0..100, rounding halves up; None is 0."""
    if score is None:
        return 0
    return _round_half_up(float(score) * 100)


def format_scores(categories: Mapping[str, Any]) -> dict:
    return {
        key: score_to_int((categories.get(category_id) or {}).get("score"))
        for category_id, key in CATEGORY_KEYS
    }


def _metric_value(audits: Mapping[str, Any], audit_id: str) -> float | int | None:
    value = (audits.get(audit_id) or {}).get("numericValue")
    if value is None:
        return None
    if audit_id == "cumulative-layout-shift":
        return round(value, 4)
    return round(value)


def extract_metrics(audits: Mapping[str, Any]) -> dict:
    return {key: _metric_value(audits, audit_id) for audit_id, key in METRIC_AUDITS}


def rate_metric(name: str, value: float | None) -> str:
    """Rate a Core Web Vitals value as good, needs-improvement or poor."""
    threshold = CWV_THRESHOLDS.get(name.lower())
    if threshold is None or value is None:
        return "unknown"
    if value <= threshold["good"]:
        return "good"
    if value <= threshold["poor"]:
        return "needs-improvement"
    return "poor"


def rate_core_web_vitals(audits: Mapping[str, Any]) -> dict:
    vitals = {}
    for name, threshold in CWV_THRESHOLDS.items():
        value = _metric_value(audits, threshold["audit"])
        vitals[name] = {"value": value, "rating": rate_metric(name, value)}
    return vitals


def build_summary(
    scores: Mapping[str, int],
    metrics: Mapping[str, Any],
    categories_present: Iterable[str] | None = None,
    optimization: Mapping[str, Mapping[str, Any]] | None = None,
) -> dict:
    """Overall letter grade plus recommendations from threshold checks.

    With ``optimization`` groups the summary also carries ``estimatedSavings``.
    """
    present = set(categories_present) if categories_present is not None else {key for _, key in CATEGORY_KEYS}
    graded = [scores[key] for _, key in CATEGORY_KEYS if key in present] or list(scores.values())
    average = sum(graded) / len(graded) if graded else 0

    grade = "F"
    for minimum, letter in GRADE_THRESHOLDS:
        if average >= minimum:
            grade = letter
            break

    recommendations = []
    if "performance" in present and scores.get("performance", 0) < 70:
        recommendations.append("Improve page loading performance")
    if rate_metric("lcp", metrics.get("largestContentfulPaint")) == "poor":
        recommendations.append("Optimize Largest Contentful Paint")
    if rate_metric("cls", metrics.get("cumulativeLayoutShift")) == "poor":
        recommendations.append("Reduce Cumulative Layout Shift")
    if rate_metric("tbt", metrics.get("totalBlockingTime")) == "poor":
        recommendations.append("Reduce Total Blocking Time from long JavaScript tasks")
    if "accessibility" in present and scores.get("accessibility", 0) < 80:
        recommendations.append("Improve accessibility compliance")
    if "bestPractices" in present and scores.get("bestPractices", 0) < 80:
        recommendations.append("Address failing best-practice audits")
    if "seo" in present and scores.get("seo", 0) < 85:
        recommendations.append("Enhance SEO optimization")

    summary = {
        "overallGrade": grade,
        "averageScore": _round_half_up(average),
        "keyRecommendations": recommendations,
    }
    if optimization is not None:
        summary["estimatedSavings"] = estimate_savings(optimization)
    return summary


def extract_audit_details(audits: Mapping[str, Any], audit_ids: Sequence[str] = KEY_AUDITS) -> dict:
    details = {}
    for audit_id in audit_ids:
        audit = audits.get(audit_id)
        if not audit:
            continue
        details[audit_id] = {
            "score": audit.get("score"),
            "numericValue": audit.get("numericValue"),
            "displayValue": audit.get("displayValue"),
            "title": audit.get("title"),
        }
    return details


def extract_opportunities(audits: Mapping[str, Any]) -> list[dict]:
    """Audits with estimated time savings, largest saving first."""
    opportunities = []
    for audit_id in OPPORTUNITY_AUDITS:
        audit = audits.get(audit_id) or {}
        details = audit.get("details") or {}
        savings_ms = details.get("overallSavingsMs") or 0
        if savings_ms <= 0:
            continue
        if savings_ms > 1000:
            impact = "high"
        elif savings_ms > 500:
            impact = "medium"
        else:
            impact = "low"
        opportunities.append({
            "audit": audit_id,
            "title": audit.get("title"),
            "savings": {"time": round(savings_ms), "bytes": details.get("overallSavingsBytes") or 0},
            "impact": impact,
        })
    return sorted(opportunities, key=lambda item: item["savings"]["time"], reverse=True)


def _audit_failed(audits: Mapping[str, Any], audit_id: str) -> bool:
    # Not-applicable audits carry a null score and never count as failures.
    score = (audits.get(audit_id) or {}).get("score")
    return isinstance(score, (int, float)) and not isinstance(score, bool) and score < 1


def _audit_passed(audits: Mapping[str, Any], audit_id: str) -> bool:
    return bool((audits.get(audit_id) or {}).get("score"))


def extract_optimization_data(audits: Mapping[str, Any], audit_ids: Sequence[str]) -> dict:
    """Score and summed savings for one group of optimization audits.

    The score averages over every id in the group, so audits missing from
    the payload count as 0. An empty group scores 100.
    """
    total_score = 0.0
    total_ms = 0
    total_bytes = 0
    details = {}
    for audit_id in audit_ids:
        audit = audits.get(audit_id)
        if not audit:
            continue
        savings = audit.get("details") or {}
        savings_ms = savings.get("overallSavingsMs") or 0
        savings_bytes = savings.get("overallSavingsBytes") or 0
        total_score += audit.get("score") or 0
        total_ms += savings_ms
        total_bytes += savings_bytes
        details[audit_id] = {
            "score": audit.get("score"),
            "title": audit.get("title"),
            "description": audit.get("description"),
            "savingsMs": savings_ms,
            "savingsBytes": savings_bytes,
        }

    average = total_score / len(audit_ids) if audit_ids else 1
    if total_ms > 1000:
        potential = f"{_round_half_up(total_ms / 1000)}s potential savings"
    elif total_ms > 0:
        potential = f"{_round_half_up(total_ms)}ms potential savings"
    else:
        potential = "No significant savings identified"

    return {
        "score": score_to_int(average),
        "potential": potential,
        "details": details,
        "totalMsSavings": total_ms,
        "totalByteSavings": total_bytes,
    }


def extract_optimization_groups(audits: Mapping[str, Any]) -> dict:
    return {group: extract_optimization_data(audits, ids) for group, ids in OPTIMIZATION_GROUPS.items()}


def estimate_savings(optimization: Mapping[str, Mapping[str, Any]]) -> dict:
    """Total savings across optimization groups, in seconds and KiB."""
    total_ms = sum(group.get("totalMsSavings", 0) for group in optimization.values())
    total_bytes = sum(group.get("totalByteSavings", 0) for group in optimization.values())
    return {"time": _round_half_up(total_ms / 1000), "bytes": _round_half_up(total_bytes / 1024)}


def categorize_accessibility_issues(audits: Mapping[str, Any]) -> dict:
    return {
        severity: sum(1 for audit_id in audit_ids if _audit_failed(audits, audit_id))
        for severity, audit_ids in ACCESSIBILITY_SEVERITY_AUDITS.items()
    }


def extract_key_accessibility_issues(audits: Mapping[str, Any]) -> list[str]:
    return [message for audit_id, message in KEY_ACCESSIBILITY_ISSUES.items() if _audit_failed(audits, audit_id)]


def extract_key_seo_issues(audits: Mapping[str, Any]) -> list[str]:
    return [message for audit_id, message in KEY_SEO_ISSUES.items() if _audit_failed(audits, audit_id)]


def extract_security_vulnerabilities(audits: Mapping[str, Any]) -> list[str]:
    return [message for audit_id, message in SECURITY_VULNERABILITIES.items() if _audit_failed(audits, audit_id)]


def format_response(
    response: Mapping[str, Any],
    output_format: str = DEFAULT_OUTPUT_FORMAT,
    strategy: str = DEFAULT_STRATEGY,
    url: str = "",
    original_url: str | None = None,
    include_opportunities: bool = True,
    include_raw_data: bool = False,
) -> dict:
    """Reshape an API payload or an error record into an AnalysisResult.

    ``include_raw_data`` attaches the untouched payload as ``rawData``;
    ``include_opportunities=False`` leaves ``opportunities`` as None.
    """
    result: dict[str, Any] = {
        "url": url or response.get("url", ""),
        "originalUrl": original_url or url or response.get("url", ""),
        "strategy": strategy,
        "analysisTime": _now_iso(),
    }

    if _is_error_record(response):
        result.update({
            "error": response.get("errorMessage") or "Analysis failed",
            "errorType": response.get("errorType", UNKNOWN),
            "errorDetail": response.get("errorDetail"),
            "canRetry": False,
            "retryCount": response.get("retryCount", 0),
            "skipped": True,
        })
        if response.get("contentType"):
            result["contentType"] = response["contentType"]
        return result

    if include_raw_data:
        result["rawData"] = response

    lighthouse = response.get("lighthouseResult") or {}
    categories = lighthouse.get("categories") or {}
    audits = lighthouse.get("audits") or {}

    scores = format_scores(categories)
    result["scores"] = scores
    if output_format == "scoresOnly":
        return result

    metrics = extract_metrics(audits)
    result["metrics"] = metrics
    result["coreWebVitals"] = rate_core_web_vitals(audits)
    if output_format == "coreMetrics":
        return result

    optimization = extract_optimization_groups(audits)
    present = [key for category_id, key in CATEGORY_KEYS if category_id in categories]
    result["summary"] = build_summary(scores, metrics, present or None, optimization)
    if output_format == "summary":
        return result

    screenshot = ((audits.get("final-screenshot") or {}).get("details") or {}).get("data")
    result.update({
        "optimization": optimization,
        "accessibility": {
            "score": scores["accessibility"],
            "issues": categorize_accessibility_issues(audits),
            "keyIssues": extract_key_accessibility_issues(audits),
        },
        "seo": {
            "score": scores["seo"],
            "keyIssues": extract_key_seo_issues(audits),
            "structured": _audit_passed(audits, "structured-data"),
            "crawlable": _audit_passed(audits, "is-crawlable"),
        },
        "security": {
            "https": _audit_passed(audits, "is-on-https"),
            "mixedContent": not _audit_passed(audits, "no-mixed-content"),
            "vulnerabilities": extract_security_vulnerabilities(audits),
        },
        "audits": extract_audit_details(audits),
        "opportunities": extract_opportunities(audits) if include_opportunities else None,
        "lighthouseVersion": lighthouse.get("lighthouseVersion"),
        "finalUrl": lighthouse.get("finalUrl") or lighthouse.get("finalDisplayedUrl"),
        "fetchTime": lighthouse.get("fetchTime"),
        "screenshot": screenshot,
    })
    return result


def summarize_results(results: Sequence[Mapping[str, Any]]) -> dict:
    """Aggregate AnalysisResults into a batch summary record."""
    successful = [r for r in results if not r.get("error")]
    failed = [r for r in results if r.get("error")]
    total = len(results)

    average_scores: dict[str, int] = {}
    scored = [r["scores"] for r in successful if r.get("scores")]
    if scored:
        means = pd.DataFrame(scored).mean(numeric_only=True)
        average_scores = {column: int(math.floor(float(value) + 0.5)) for column, value in means.items()}

    errors_by_type: dict[str, int] = {}
    for record in failed:
        error_type = record.get("errorType", UNKNOWN)
        errors_by_type[error_type] = errors_by_type.get(error_type, 0) + 1

    domains = set()
    for record in results:
        try:
            hostname = urlsplit(record.get("url") or "").hostname
        except ValueError:
            hostname = None
        if hostname:
            domains.add(hostname)

    return {
        "type": "batch-summary",
        "total": total,
        "successful": len(successful),
        "failed": len(failed),
        "successRate": round(len(successful) / total * 100) if total else 0,
        "averageScores": average_scores,
        "domains": sorted(domains),
        "errorsByType": errors_by_type,
    }


# ---------------------------------------------------------------------------
# Batch Processing
# ---------------------------------------------------------------------------


def expand_strategies(strategy: str, logger: logging.Logger = logger) -> list[str]:
    """Resolve a strategy option into the concrete strategies to request."""
    if strategy == "both":
        return ["mobile", "desktop"]
    if strategy == "auto":
        logger.info("Strategy 'auto' resolves to 'mobile'")
        return ["mobile"]
    if strategy in ("mobile", "desktop"):
        return [strategy]
    raise ValueError(f"Invalid strategy {strategy!r}. Choose from: {', '.join(VALID_STRATEGIES)}")


def build_request_configs(
    urls: Sequence[NormalizedUrl],
    options: AnalysisOptions,
    logger: logging.Logger = logger,
) -> list[RequestConfig]:
    strategies = expand_strategies(options.strategy, logger=logger)
    return [
        RequestConfig(
            url=item.normalized,
            strategy=strategy,
            categories=options.categories,
            locale=options.locale,
            screenshot=options.screenshot,
            timeout=float(options.timeout),
            retry_attempts=options.retry_attempts,
            original_url=item.original,
        )
        for item in urls
        for strategy in strategies
    ]


def estimate_quota_usage(url_count: int, strategy: str) -> int:
    """API requests needed to analyze ``url_count`` URLs."""
    return url_count * (2 if strategy == "both" else 1)


def estimate_batch_time(
    request_count: int,
    batch_size: int = DEFAULT_BATCH_SIZE,
    batch_delay: float = DEFAULT_BATCH_DELAY,
) -> int:
    """Rough wall-clock seconds for a batch run."""
    if request_count <= 0:
        return 0
    batches = math.ceil(request_count / clamp_batch_size(batch_size))
    return round(batches * ESTIMATED_SECONDS_PER_REQUEST + (batches - 1) * batch_delay)


async def process_in_batches(
    items: Iterable[Any],
    worker: Callable[[Any], Awaitable[Any]],
    *,
    batch_size: int = DEFAULT_BATCH_SIZE,
    batch_delay: float = DEFAULT_BATCH_DELAY,
    on_error: Callable[[Any, Exception], Any] | None = None,
    after_batch: Callable[[list], None] | None = None,
    on_progress: Callable[[int, int], None] | None = None,
    logger: logging.Logger = logger,
) -> list:
    """Run ``worker`` over ``items`` in fixed windows, preserving input order.

    Every item of a window runs concurrently and the whole window settles
    before the next one starts, with ``batch_delay`` seconds in between.
    A worker exception is turned into that item's result by ``on_error``
    (re-raised when no handler is given). ``after_batch`` sees each window's
    results and may raise to stop the run.
    """
    items = list(items)
    size = clamp_batch_size(batch_size)
    total = len(items)
    batch_count = math.ceil(total / size) if total else 0
    results: list = []

    for batch_number, start in enumerate(range(0, total, size), start=1):
        chunk = items[start:start + size]
        outcomes = await asyncio.gather(*(worker(item) for item in chunk), return_exceptions=True)

        batch_results = []
        for item, outcome in zip(chunk, outcomes):
            if isinstance(outcome, BaseException):
                if on_error is None or not isinstance(outcome, Exception):
                    raise outcome
                outcome = on_error(item, outcome)
            batch_results.append(outcome)
        results.extend(batch_results)

        logger.info("Completed batch %d/%d (%d/%d)", batch_number, batch_count, len(results), total)
        if on_progress is not None:
            on_progress(len(results), total)
        if after_batch is not None:
            after_batch(batch_results)

        if start + size < total:
            await asyncio.sleep(batch_delay)

    return results


def _format_for(response: Mapping[str, Any], config: RequestConfig, options: AnalysisOptions) -> dict:
    return format_response(
        response,
        options.output_format,
        config.strategy,
        config.url,
        config.original_url,
        include_opportunities=options.include_opportunities,
        include_raw_data=options.include_raw_data,
    )


async def analyze_config(
    config: RequestConfig,
    api_key: str,
    options: AnalysisOptions,
    client: httpx.AsyncClient,
    logger: logging.Logger = logger,
    check_content: Callable[[str], Awaitable[dict]] | None = None,
) -> dict:
    """Content-type gate, API call with retries, then formatting, for one config.

    ``check_content`` replaces the direct validate_url_content() call, so a
    caller can share one content check between the strategies of a URL.
    """
    logger.debug("Fetching %s (%s)", config.url, config.strategy)
    if not options.skip_content_validation:
        if check_content is not None:
            validation = await check_content(config.url)
        else:
            validation = await validate_url_content(config.url, client, logger=logger)
        if not validation["isValid"]:
            content_type = validation["contentType"]
            logger.warning("Skipping %s: %s", config.url, validation.get("error") or content_type)
            response = _error_record(
                config.url,
                config.strategy,
                INVALID_CONTENT_TYPE,
                validation.get("error") or f"URL returns {content_type} instead of HTML",
                contentType=content_type,
            )
            return _format_for(response, config, options)

    response = await fetch_pagespeed_result(config, api_key, client=client, logger=logger)
    return _format_for(response, config, options)


def _raise_on_authentication_failure(batch_results: list[dict]) -> None:
    for result in batch_results:
        if result.get("errorType") == AUTHENTICATION_ERROR:
            detail = result.get("errorDetail") or result.get("error")
            raise AuthenticationError(
                f"PageSpeed API rejected the API key while analyzing {result.get('url')}: {detail}"
            )


async def process_all(
    configs: Iterable[RequestConfig],
    api_key: str,
    options: AnalysisOptions | None = None,
    *,
    client: httpx.AsyncClient | None = None,
    on_progress: Callable[[int, int], None] | None = None,
    logger: logging.Logger = logger,
) -> list[dict]:
    """Analyze every config in fixed-size concurrent batches.

    Results line up with ``configs``. A failing URL yields an error result
    and never stops its siblings; an authentication failure raises
    AuthenticationError once its batch has settled. Each URL's content type
    is checked once per run, however many strategies it is analyzed with.
    """
    options = options or AnalysisOptions()
    configs = list(configs)
    logger.info(
        "Analyzing %d request(s) in batches of %d (estimated %ds)",
        len(configs),
        options.batch_size,
        estimate_batch_time(len(configs), options.batch_size, options.batch_delay),
    )

    async with _client_scope(client) as active:
        content_checks: dict[str, asyncio.Future] = {}

        def check_content(url: str) -> asyncio.Future:
            if url not in content_checks:
                content_checks[url] = asyncio.ensure_future(validate_url_content(url, active, logger=logger))
            return content_checks[url]

        async def worker(config: RequestConfig) -> dict:
            return await analyze_config(config, api_key, options, active, logger=logger, check_content=check_content)

        def on_error(config: RequestConfig, exc: Exception) -> dict:
            logger.error("Unexpected failure analyzing %s (%s): %s", config.url, config.strategy, exc)
            response = _error_record(config.url, config.strategy, UNKNOWN, str(exc))
            return _format_for(response, config, options)

        return await process_in_batches(
            configs,
            worker,
            batch_size=options.batch_size,
            batch_delay=options.batch_delay,
            on_error=on_error,
            after_batch=_raise_on_authentication_failure,
            on_progress=on_progress,
            logger=logger,
        )


# ---------------------------------------------------------------------------
# Comparison
# ---------------------------------------------------------------------------


def score_differences(baseline: Mapping[str, Any], current: Mapping[str, Any]) -> dict:
    """Per-category ``current - baseline``; positive means improvement."""
    return {key: (current.get(key) or 0) - (baseline.get(key) or 0) for _, key in CATEGORY_KEYS}


def metric_differences(baseline: Mapping[str, Any] | None, current: Mapping[str, Any] | None) -> dict:
    """Per-metric ``current - baseline`` where both sides are known; negative means improvement."""
    baseline = baseline or {}
    current = current or {}
    differences = {}
    for _, key in METRIC_AUDITS:
        before, after = baseline.get(key), current.get(key)
        if before is None or after is None:
            continue
        diff = after - before
        differences[key] = round(diff, 4) if key == "cumulativeLayoutShift" else round(diff)
    return differences


def determine_improvement(score_diffs: Mapping[str, float], metric_diffs: Mapping[str, float]) -> bool:
    improvements = sum(1 for d in score_diffs.values() if d > 0) + sum(1 for d in metric_diffs.values() if d < 0)
    regressions = sum(1 for d in score_diffs.values() if d < 0) + sum(1 for d in metric_diffs.values() if d > 0)
    return improvements > regressions


def has_significant_change(score_diffs: Mapping[str, float], threshold: float = SIGNIFICANT_SCORE_CHANGE) -> bool:
    return any(abs(diff) >= threshold for diff in score_diffs.values())


def describe_changes(
    score_diffs: Mapping[str, float],
    metric_diffs: Mapping[str, float],
    threshold: float = SIGNIFICANT_SCORE_CHANGE,
) -> list[str]:
    labels = {"performance": "Performance", "accessibility": "Accessibility", "bestPractices": "Best practices", "seo": "SEO"}
    changes = []
    for key, diff in score_diffs.items():
        if abs(diff) >= threshold:
            direction = "improved" if diff > 0 else "decreased"
            changes.append(f"{labels.get(key, key)} score {direction} by {abs(diff)} points")

    metric_labels = (
        ("largestContentfulPaint", "Largest Contentful Paint", "ms"),
        ("firstContentfulPaint", "First Contentful Paint", "ms"),
        ("totalBlockingTime", "Total Blocking Time", "ms"),
        ("cumulativeLayoutShift", "Cumulative Layout Shift", ""),
    )
    for key, label, unit in metric_labels:
        diff = metric_diffs.get(key)
        if not diff:
            continue
        direction = "improved" if diff < 0 else "increased"
        amount = f"{abs(diff):.3f}" if key == "cumulativeLayoutShift" else f"{abs(diff)}{unit}"
        changes.append(f"{label} {direction} by {amount}")
    return changes


def recommend_after_change(
    score_diffs: Mapping[str, float],
    metric_diffs: Mapping[str, float],
    threshold: float = SIGNIFICANT_SCORE_CHANGE,
) -> list[str]:
    recommendations = []
    if score_diffs.get("performance", 0) <= -threshold:
        recommendations.append("Performance has regressed. Review recent changes to scripts, images, and third-party resources.")
    if (metric_diffs.get("largestContentfulPaint") or 0) > 500:
        recommendations.append("Largest Contentful Paint has increased significantly. Check for new large images or slow server responses.")
    if (metric_diffs.get("cumulativeLayoutShift") or 0) > 0.1:
        recommendations.append("Layout shifts have increased. Ensure all images and videos have size attributes.")
    if score_diffs.get("accessibility", 0) <= -threshold:
        recommendations.append("Accessibility has regressed. Review color contrast, alt text, and semantic structure.")
    if score_diffs.get("seo", 0) <= -threshold:
        recommendations.append("SEO score has decreased. Check meta tags, heading structure, and mobile optimization.")
    if not recommendations:
        recommendations.append("Continue monitoring performance and consider A/B testing optimizations.")
    return recommendations


def compare_results(
    baseline: Mapping[str, Any],
    current: Mapping[str, Any],
    comparison_type: str = "before-after",
    threshold: float = SIGNIFICANT_SCORE_CHANGE,
    url: str | None = None,
) -> dict:
    """Pair two AnalysisResults and derive score/metric deltas and a verdict."""
    if not baseline.get("scores") or not current.get("scores"):
        missing = baseline.get("url") if not baseline.get("scores") else current.get("url")
        raise ComparisonError(f"Both analyses must include scores for comparison (missing for {missing})")

    score_diffs = score_differences(baseline["scores"], current["scores"])
    metric_diffs = metric_differences(baseline.get("metrics"), current.get("metrics"))
    improvement = determine_improvement(score_diffs, metric_diffs)
    significant = has_significant_change(score_diffs, threshold)

    return {
        "url": url or current.get("url") or baseline.get("url"),
        "comparisonType": comparison_type,
        "baselineAnalysis": dict(baseline),
        "currentAnalysis": dict(current),
        "scoreDifferences": score_diffs,
        "metricDifferences": metric_diffs,
        "improvement": improvement,
        "significantChange": significant,
        "analysisTime": _now_iso(),
        "summary": {
            "overallImprovement": improvement,
            "significantChanges": significant,
            "keyChanges": describe_changes(score_diffs, metric_diffs, threshold),
            "recommendations": recommend_after_change(score_diffs, metric_diffs, threshold),
        },
    }


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------


def _require_api_key(api_key: str | None) -> str:
    if not api_key or not str(api_key).strip():
        raise AuthenticationError("A PageSpeed API key is required (use --api-key or set PAGESPEED_API_KEY)")
    return str(api_key).strip()


def _resolve_raw_url(raw: Any, url_fields: Sequence[str]) -> Any:
    if isinstance(raw, Mapping):
        return extract_url_from_item(raw, url_fields)
    return raw


def _invalid_url_result(item: NormalizedUrl, strategy: str) -> dict:
    return {
        "url": item.normalized or item.original,
        "originalUrl": item.original,
        "strategy": strategy,
        "analysisTime": _now_iso(),
        "error": item.error,
        "errorType": INVALID_URL,
        "errorDetail": item.error,
        "canRetry": False,
        "retryCount": 0,
        "skipped": True,
    }


async def analyze_single_url(
    raw_url: str | Mapping[str, Any],
    api_key: str | None,
    options: AnalysisOptions | None = None,
    *,
    url_fields: Sequence[str] = DEFAULT_URL_FIELDS,
    client: httpx.AsyncClient | None = None,
    logger: logging.Logger = logger,
) -> list[dict]:
    """Analyze one URL; returns one AnalysisResult per requested strategy."""
    options = options or AnalysisOptions()
    api_key = _require_api_key(api_key)
    raw = _resolve_raw_url(raw_url, url_fields)
    if not raw:
        raise InvalidUrlError(f"No URL provided. Looked in the fields: {', '.join(url_fields)}")

    prepared = prepare_url(raw)
    if prepared.error:
        raise InvalidUrlError(prepared.error)
    logger.info("URL normalized: %r -> %s", prepared.original, prepared.normalized)

    configs = build_request_configs([prepared], options, logger=logger)
    return await process_all(configs, api_key, options, client=client, logger=logger)


async def analyze_multiple_urls(
    raw_urls: Iterable[str | Mapping[str, Any]],
    api_key: str | None,
    options: AnalysisOptions | None = None,
    *,
    url_fields: Sequence[str] = DEFAULT_URL_FIELDS,
    client: httpx.AsyncClient | None = None,
    on_progress: Callable[[int, int], None] | None = None,
    logger: logging.Logger = logger,
) -> list[dict]:
    """Analyze a list of URLs in batches.

    Returns a ``batch-summary`` record followed by one result per
    (URL, strategy) in input order. URLs that fail normalization keep their
    position as INVALID_URL results; duplicates are analyzed once.
    """
    options = options or AnalysisOptions()
    raw_urls = [_resolve_raw_url(raw, url_fields) for raw in (raw_urls or [])]
    if not raw_urls:
        raise NoUrlsError("At least one URL is required for batch analysis")
    api_key = _require_api_key(api_key)

    layout: list[NormalizedUrl | dict] = []
    valid: list[NormalizedUrl] = []
    seen: set[str] = set()
    duplicates = 0
    for item in prepare_urls(raw_urls):
        if item.error:
            logger.warning("Skipping invalid URL %r: %s", item.original, item.error)
            layout.append(_invalid_url_result(item, options.strategy))
            continue
        if item.normalized in seen:
            logger.warning("Skipping duplicate URL %s", item.normalized)
            duplicates += 1
            continue
        seen.add(item.normalized)
        valid.append(item)
        layout.append(item)

    if not valid:
        raise NoUrlsError("No valid URLs found for analysis")

    logger.info(
        "Normalized URLs: %d valid, %d invalid, %d duplicate",
        len(valid),
        len(raw_urls) - len(valid) - duplicates,
        duplicates,
    )

    configs = build_request_configs(valid, options, logger=logger)
    started = time.monotonic()
    analyzed = await process_all(configs, api_key, options, client=client, on_progress=on_progress, logger=logger)
    duration = time.monotonic() - started

    by_url: dict[str, list[dict]] = {}
    for config, result in zip(configs, analyzed):
        by_url.setdefault(config.url, []).append(result)

    results: list[dict] = []
    for entry in layout:
        if isinstance(entry, NormalizedUrl):
            results.extend(by_url[entry.normalized])
        else:
            results.append(entry)

    summary = summarize_results(results)
    summary.update({
        "strategy": options.strategy,
        "categories": list(options.categories),
        "requests": estimate_quota_usage(len(valid), options.strategy),
        "durationSeconds": round(duration, 1),
        "urlBreakdown": {
            "total": len(raw_urls),
            "valid": len(valid),
            "invalid": len(raw_urls) - len(valid) - duplicates,
            "duplicates": duplicates,
        },
        "analysisTime": _now_iso(),
    })
    return [summary, *results]


def _is_local_file(source: str) -> bool:
    if source.lower().startswith(("http://", "https://")):
        return False
    try:
        return Path(source).is_file()
    except OSError:
        return False


async def analyze_sitemap(
    sitemap_url: str | Mapping[str, Any],
    api_key: str | None,
    filters: UrlFilters | None = None,
    options: AnalysisOptions | None = None,
    *,
    client: httpx.AsyncClient | None = None,
    on_progress: Callable[[int, int], None] | None = None,
    logger: logging.Logger = logger,
) -> list[dict]:
    """Analyze the pages listed in a sitemap.

    Returns a ``sitemap-metadata`` record followed by one result per
    (URL, strategy). Raises NoUrlsError when the filters leave nothing.
    """
    options = options or AnalysisOptions()
    filters = filters or UrlFilters()
    api_key = _require_api_key(api_key)

    raw = _resolve_raw_url(sitemap_url, SITEMAP_URL_FIELDS)
    if isinstance(raw, str) and _is_local_file(raw.strip()):
        target = raw.strip()
    else:
        target = canonicalize_url(raw, "sitemap analysis")

    async with _client_scope(client) as active:
        found = await collect_sitemap_urls(target, active, logger=logger)
        entries = filter_sitemap_entries(found, filters, logger=logger)
        logger.info("Extracted %d URL(s), %d after filtering", len(found), len(entries))
        if not entries:
            raise NoUrlsError(f"No valid URLs found in sitemap {target} after applying filters")

        configs = build_request_configs(entries, options, logger=logger)
        results = await process_all(configs, api_key, options, client=active, on_progress=on_progress, logger=logger)

    summary = summarize_results(results)
    metadata = {
        "type": "sitemap-metadata",
        "sitemapUrl": target,
        "originalSitemapUrl": raw,
        "totalUrlsFound": len(found),
        "urlsToAnalyze": len(entries),
        "filters": filters.to_dict(),
        "strategy": options.strategy,
        "categories": list(options.categories),
        "outputFormat": options.output_format,
        "successful": summary["successful"],
        "failed": summary["failed"],
        "successRate": summary["successRate"],
        "averageScores": summary["averageScores"],
        "analysisTime": _now_iso(),
    }
    return [metadata, *results]


async def compare_urls(
    mode: str,
    api_key: str | None = None,
    *,
    url1: str | None = None,
    url2: str | None = None,
    url: str | None = None,
    baseline: Mapping[str, Any] | None = None,
    items: Sequence[Mapping[str, Any]] | None = None,
    options: AnalysisOptions | None = None,
    client: httpx.AsyncClient | None = None,
    logger: logging.Logger = logger,
) -> list[dict]:
    """Compare analyses.

    Modes:
      compareTwo   analyze ``url1`` and ``url2`` now; ``url1`` is the baseline
      beforeAfter  analyze ``url`` now against a supplied ``baseline`` result
      batch        compare every supplied result with the first one (no API calls)
    """
    options = options or AnalysisOptions(output_format="coreMetrics")
    threshold = options.significance_threshold

    if mode == "batch":
        items = list(items or [])
        if len(items) < 2:
            raise ComparisonError("At least 2 results are required for batch comparison")
        reference = items[0]
        comparisons = []
        for item in items[1:]:
            try:
                comparisons.append(compare_results(reference, item, "batch-comparison", threshold))
            except ComparisonError as exc:
                logger.warning("Cannot compare %s: %s", item.get("url"), exc)
                comparisons.append({
                    "url": item.get("url"),
                    "comparisonType": "batch-comparison",
                    "error": str(exc),
                    "analysisTime": _now_iso(),
                })
        return comparisons

    if mode not in COMPARE_MODES:
        raise ValueError(f"Unknown comparison mode {mode!r}. Choose from: {', '.join(COMPARE_MODES)}")

    api_key = _require_api_key(api_key)

    if mode == "compareTwo":
        if not url1 or not url2:
            raise ComparisonError("Both URLs are required for comparison")
        first, second = prepare_url(url1), prepare_url(url2)
        for item in (first, second):
            if item.error:
                raise InvalidUrlError(item.error)
        logger.info("Comparing %s vs %s", first.normalized, second.normalized)
        strategies = expand_strategies(options.strategy, logger=logger)
        configs = [
            RequestConfig(
                url=item.normalized,
                strategy=strategy,
                categories=options.categories,
                locale=options.locale,
                screenshot=options.screenshot,
                timeout=float(options.timeout),
                retry_attempts=options.retry_attempts,
                original_url=item.original,
            )
            for strategy in strategies
            for item in (first, second)
        ]
        results = await process_all(configs, api_key, options, client=client, logger=logger)
        comparisons = []
        for index in range(0, len(results), 2):
            left, right = results[index], results[index + 1]
            for side in (left, right):
                if side.get("error"):
                    raise ComparisonError(f"Analysis failed for {side['url']}: {side['error']}")
            comparisons.append(compare_results(left, right, "url-comparison", threshold, url=first.normalized))
        return comparisons

    # beforeAfter
    if not url:
        raise ComparisonError("A URL is required for before/after comparison")
    if not baseline:
        raise ComparisonError("No baseline data provided for before/after comparison")
    current_url = prepare_url(url)
    if current_url.error:
        raise InvalidUrlError(current_url.error)

    strategy = baseline.get("strategy")
    if strategy not in ("mobile", "desktop"):
        strategy = expand_strategies(options.strategy, logger=logger)[0]
    logger.info("Before/after comparison for %s (%s)", current_url.normalized, strategy)
    config = RequestConfig(
        url=current_url.normalized,
        strategy=strategy,
        categories=options.categories,
        locale=options.locale,
        screenshot=options.screenshot,
        timeout=float(options.timeout),
        retry_attempts=options.retry_attempts,
        original_url=current_url.original,
    )
    [current] = await process_all([config], api_key, options, client=client, logger=logger)
    if current.get("error"):
        raise ComparisonError(f"Current analysis failed for {current['url']}: {current['error']}")
    return [compare_results(baseline, current, "before-after", threshold, url=current_url.normalized)]


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------


def write_results(records: Sequence[Mapping[str, Any]], output_path: str | Path) -> str:
    """Write records as JSON, or as a flattened CSV when the path ends in .csv."""
    path = Path(output_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.suffix.lower() == ".csv":
        dataframe = pd.json_normalize(list(records))
        dataframe.to_csv(path, index=False)
    else:
        with open(path, "w") as fh:
            json.dump(list(records), fh, indent=2, default=str)
    return str(path)


def _score_indicator(score: int | None) -> str:
    if score is None:
        return ""
    return "GOOD" if score >= 90 else ("NEEDS WORK" if score >= 50 else "POOR")


def format_terminal_table(records: Mapping[str, Any] | Sequence[Mapping[str, Any]]) -> Table:
    """Build a rich table of AnalysisResults (summary records are skipped)."""
    rows = [records] if isinstance(records, Mapping) else list(records)

    table = Table(title="PageSpeed Insights", show_lines=False)
    table.add_column("URL", overflow="fold")
    table.add_column("Strategy")
    table.add_column("Perf", justify="right")
    table.add_column("A11y", justify="right")
    table.add_column("BP", justify="right")
    table.add_column("SEO", justify="right")
    table.add_column("LCP", justify="right")
    table.add_column("CLS", justify="right")
    table.add_column("Status")

    for row in rows:
        if row.get("type"):
            continue
        url = str(row.get("url", "?"))
        strategy = str(row.get("strategy", "?"))
        if row.get("error"):
            table.add_row(url, strategy, "", "", "", "", "", "", f"{row.get('errorType', UNKNOWN)}: {row['error']}")
            continue
        scores = row.get("scores") or {}
        metrics = row.get("metrics") or {}
        performance = scores.get("performance")
        lcp = metrics.get("largestContentfulPaint")
        cls = metrics.get("cumulativeLayoutShift")
        table.add_row(
            url,
            strategy,
            f"{performance}/100" if performance is not None else "",
            str(scores.get("accessibility", "")),
            str(scores.get("bestPractices", "")),
            str(scores.get("seo", "")),
            f"{lcp} ms" if lcp is not None else "",
            str(cls) if cls is not None else "",
            _score_indicator(performance),
        )
    return table


def _emit_results(records: list[dict], args: argparse.Namespace) -> None:
    if getattr(args, "table", False):
        err_console.print(format_terminal_table(records))
    output = getattr(args, "output", None)
    if output:
        written = write_results(records, output)
        print(f"Results written to: {written}", file=sys.stderr)
    else:
        print(json.dumps(records, indent=2, default=str))


# ---------------------------------------------------------------------------
# CLI Argument Parser
# ---------------------------------------------------------------------------


class TrackingAction(argparse.Action):
    """Argparse action that records which flags were explicitly provided."""

    def __call__(self, parser, namespace, values, option_string=None):
        setattr(namespace, self.dest, values)
        explicit = getattr(namespace, "_explicit_args", [])
        explicit.append(self.dest)
        namespace._explicit_args = explicit


class TrackingStoreTrueAction(argparse.Action):
    """Like store_true but tracks that the flag was explicitly set."""

    def __init__(self, option_strings, dest, default=False, required=False, help=None):
        super().__init__(option_strings=option_strings, dest=dest, nargs=0, const=True, default=default, required=required, help=help)

    def __call__(self, parser, namespace, values, option_string=None):
        setattr(namespace, self.dest, self.const)
        explicit = getattr(namespace, "_explicit_args", [])
        explicit.append(self.dest)
        namespace._explicit_args = explicit


class TrackingStoreFalseAction(TrackingStoreTrueAction):
    """Like store_false but tracks that the flag was explicitly set."""

    def __init__(self, option_strings, dest, default=True, required=False, help=None):
        super().__init__(option_strings=option_strings, dest=dest, default=default, required=required, help=help)
        self.const = False


def _add_analysis_arguments(subparser: argparse.ArgumentParser, default_format: str = DEFAULT_OUTPUT_FORMAT) -> None:
    subparser.add_argument("-s", "--strategy", dest="strategy", action=TrackingAction, default=DEFAULT_STRATEGY, choices=VALID_STRATEGIES, help="Strategy: mobile, desktop, both, or auto (= mobile)")
    subparser.add_argument("--categories", dest="categories", action=TrackingAction, nargs="+", default=list(DEFAULT_CATEGORIES), choices=VALID_CATEGORIES, help="Lighthouse categories")
    subparser.add_argument("--output-format", dest="output_format", action=TrackingAction, default=default_format, choices=VALID_OUTPUT_FORMATS, help="Result detail level")
    subparser.add_argument("--locale", dest="locale", action=TrackingAction, default=None, help="Locale for audit texts (e.g. en, de, zh-CN)")
    subparser.add_argument("--screenshot", dest="screenshot", action=TrackingStoreTrueAction, default=False, help="Include the final screenshot as a data URL")
    subparser.add_argument("--skip-content-validation", dest="skip_content_validation", action=TrackingStoreTrueAction, default=False, help="Do not check URLs for HTML before analyzing")
    subparser.add_argument("--no-opportunities", dest="include_opportunities", action=TrackingStoreFalseAction, default=True, help="Leave optimization opportunities out of complete results")
    subparser.add_argument("--include-raw-data", dest="include_raw_data", action=TrackingStoreTrueAction, default=False, help="Attach the raw API payload to each result as rawData")
    subparser.add_argument("--retry-attempts", dest="retry_attempts", action=TrackingAction, type=int, default=DEFAULT_RETRY_ATTEMPTS, help=f"Retries per request (default: {DEFAULT_RETRY_ATTEMPTS})")
    subparser.add_argument("--timeout", dest="timeout", action=TrackingAction, type=float, default=DEFAULT_TIMEOUT, help=f"Seconds per API request (default: {DEFAULT_TIMEOUT:g})")
    subparser.add_argument("--batch-size", dest="batch_size", action=TrackingAction, type=int, default=DEFAULT_BATCH_SIZE, help=f"Concurrent requests per batch, 1-{MAX_BATCH_SIZE} (default: {DEFAULT_BATCH_SIZE})")
    subparser.add_argument("--batch-delay", dest="batch_delay", action=TrackingAction, type=float, default=DEFAULT_BATCH_DELAY, help=f"Seconds between batches (default: {DEFAULT_BATCH_DELAY:g})")
    subparser.add_argument("-o", "--output", dest="output", action=TrackingAction, default=None, help="Write results to a .json or .csv file instead of stdout")
    subparser.add_argument("--table", dest="table", action=TrackingStoreTrueAction, default=False, help="Print a results table to stderr")


def build_argument_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser with subcommands."""
    parser = argparse.ArgumentParser(
        prog="pagespeed-steps",
        description="Google PageSpeed Insights workflow steps",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--api-key", dest="api_key", action=TrackingAction, default=None, help="Google API key (or set PAGESPEED_API_KEY env var)")
    parser.add_argument("-c", "--config", dest="config", action=TrackingAction, default=None, help="Path to config TOML file")
    parser.add_argument("-p", "--profile", dest="profile", action=TrackingAction, default=None, help="Named profile from config file")
    parser.add_argument("-v", "--verbose", dest="verbose", action=TrackingStoreTrueAction, default=False, help="Debug logging to stderr")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # --- single ---
    single_parser = subparsers.add_parser("single", help="Analyze one URL")
    single_parser.add_argument("url", help="URL to analyze (protocol optional)")
    _add_analysis_arguments(single_parser)

    # --- multiple ---
    multiple_parser = subparsers.add_parser("multiple", help="Analyze many URLs in paced batches")
    multiple_parser.add_argument("urls", nargs="*", default=[], help="URLs to analyze")
    multiple_parser.add_argument("-f", "--file", dest="file", action=TrackingAction, default=None, help="File with one URL per line")
    multiple_parser.add_argument("--items", dest="items", action=TrackingAction, default=None, help="JSON file holding a list of records that contain a URL field")
    multiple_parser.add_argument("--url-field", dest="url_fields", action="append", default=None, help="Record field holding the URL (repeatable; default: common URL field names)")
    _add_analysis_arguments(multiple_parser)

    # --- sitemap ---
    sitemap_parser = subparsers.add_parser("sitemap", help="Analyze the pages of an XML sitemap")
    sitemap_parser.add_argument("sitemap_url", help="Sitemap URL or local sitemap.xml path")
    sitemap_parser.add_argument("--include", dest="include_pattern", action=TrackingAction, default=None, help="Comma-separated substrings a URL must contain (re:PATTERN for a regex)")
    sitemap_parser.add_argument("--exclude", dest="exclude_pattern", action=TrackingAction, default=None, help="Comma-separated substrings that drop a URL (re:PATTERN for a regex)")
    sitemap_parser.add_argument("--max-urls", dest="max_urls", action=TrackingAction, type=int, default=DEFAULT_MAX_URLS, help=f"Maximum URLs to analyze (default: {DEFAULT_MAX_URLS})")
    sitemap_parser.add_argument("--url-type", dest="url_type", action=TrackingAction, default="all", choices=VALID_URL_TYPES, help="all, pages (no blog/news/posts), or posts")
    _add_analysis_arguments(sitemap_parser)

    # --- compare ---
    compare_parser = subparsers.add_parser("compare", help="Compare two URLs, a URL against a baseline, or a set of results")
    compare_parser.add_argument("urls", nargs="*", default=[], help="Two URLs (baseline first), or one URL with --baseline")
    compare_parser.add_argument("--baseline", dest="baseline", action=TrackingAction, default=None, help="JSON file with a baseline AnalysisResult")
    compare_parser.add_argument("--items", dest="items", action=TrackingAction, default=None, help="JSON file with AnalysisResults; each is compared with the first")
    compare_parser.add_argument("--threshold", dest="threshold", action=TrackingAction, type=float, default=float(SIGNIFICANT_SCORE_CHANGE), help="Score change counted as significant (default: 5)")
    _add_analysis_arguments(compare_parser, default_format="coreMetrics")

    # --- check-key ---
    subparsers.add_parser("check-key", help="Verify that the API key is accepted")

    return parser


def _options_from_args(args: argparse.Namespace) -> AnalysisOptions:
    return AnalysisOptions(
        strategy=getattr(args, "strategy", DEFAULT_STRATEGY),
        categories=tuple(getattr(args, "categories", DEFAULT_CATEGORIES)),
        output_format=getattr(args, "output_format", DEFAULT_OUTPUT_FORMAT),
        locale=getattr(args, "locale", None),
        screenshot=getattr(args, "screenshot", False),
        skip_content_validation=getattr(args, "skip_content_validation", False),
        include_opportunities=getattr(args, "include_opportunities", True),
        include_raw_data=getattr(args, "include_raw_data", False),
        retry_attempts=getattr(args, "retry_attempts", DEFAULT_RETRY_ATTEMPTS),
        timeout=getattr(args, "timeout", DEFAULT_TIMEOUT),
        batch_size=getattr(args, "batch_size", DEFAULT_BATCH_SIZE),
        batch_delay=getattr(args, "batch_delay", DEFAULT_BATCH_DELAY),
        significance_threshold=getattr(args, "threshold", SIGNIFICANT_SCORE_CHANGE),
    )


def _read_json_file(file_path: str, label: str) -> Any:
    path = Path(file_path)
    if not path.is_file():
        print(f"Error: {label} file not found: {file_path}", file=sys.stderr)
        sys.exit(1)
    try:
        return json.loads(path.read_text())
    except json.JSONDecodeError as exc:
        print(f"Error: malformed JSON in {file_path}: {exc}", file=sys.stderr)
        sys.exit(1)


def _print_progress(completed: int, total: int) -> None:
    percentage = round(completed / total * 100) if total else 100
    err_console.print(f"  Progress: {completed}/{total} ({percentage}%)", highlight=False)


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------


async def cmd_single(args: argparse.Namespace) -> None:
    """Analyze one URL and emit its result(s)."""
    records = await analyze_single_url(args.url, args.api_key, _options_from_args(args))
    _emit_results(records, args)


async def cmd_multiple(args: argparse.Namespace) -> None:
    """Analyze URLs from arguments, a text file, or a JSON list of records."""
    raw_urls: list[Any] = list(getattr(args, "urls", []) or [])
    file_path = getattr(args, "file", None)
    items_path = getattr(args, "items", None)

    if not raw_urls and file_path:
        path = Path(file_path)
        if not path.is_file():
            print(f"Error: URL file not found: {file_path}", file=sys.stderr)
            sys.exit(1)
        raw_urls = [line.strip() for line in path.read_text().splitlines() if line.strip() and not line.strip().startswith("#")]
    elif not raw_urls and items_path:
        items = _read_json_file(items_path, "items")
        if not isinstance(items, list):
            print(f"Error: {items_path} must contain a JSON list", file=sys.stderr)
            sys.exit(1)
        raw_urls = items

    url_fields = tuple(getattr(args, "url_fields", None) or DEFAULT_URL_FIELDS)
    records = await analyze_multiple_urls(
        raw_urls,
        args.api_key,
        _options_from_args(args),
        url_fields=url_fields,
        on_progress=_print_progress,
    )
    _emit_results(records, args)


async def cmd_sitemap(args: argparse.Namespace) -> None:
    """Analyze the filtered pages of a sitemap."""
    filters = UrlFilters(
        include_pattern=getattr(args, "include_pattern", None),
        exclude_pattern=getattr(args, "exclude_pattern", None),
        max_urls=getattr(args, "max_urls", DEFAULT_MAX_URLS),
        url_type=getattr(args, "url_type", "all"),
    )
    records = await analyze_sitemap(
        args.sitemap_url,
        args.api_key,
        filters,
        _options_from_args(args),
        on_progress=_print_progress,
    )
    _emit_results(records, args)


async def cmd_compare(args: argparse.Namespace) -> None:
    """Pick the comparison mode from the given arguments."""
    urls = list(getattr(args, "urls", []) or [])
    options = _options_from_args(args)

    if getattr(args, "items", None):
        items = _read_json_file(args.items, "items")
        records = await compare_urls("batch", options=options, items=[i for i in items if not i.get("type")])
    elif getattr(args, "baseline", None):
        if len(urls) != 1:
            print("Error: --baseline needs exactly one URL", file=sys.stderr)
            sys.exit(1)
        baseline = _read_json_file(args.baseline, "baseline")
        if isinstance(baseline, list):
            baseline = next((b for b in baseline if not b.get("type")), {})
        records = await compare_urls("beforeAfter", args.api_key, url=urls[0], baseline=baseline, options=options)
    elif len(urls) == 2:
        records = await compare_urls("compareTwo", args.api_key, url1=urls[0], url2=urls[1], options=options)
    else:
        print("Error: compare needs two URLs, one URL with --baseline, or --items", file=sys.stderr)
        sys.exit(1)

    _emit_results(records, args)


async def cmd_check_key(args: argparse.Namespace) -> None:
    """Exit 0 when the API key is accepted, 1 otherwise."""
    if await validate_api_key(args.api_key):
        print("API key accepted", file=sys.stderr)
        return
    print("Error: API key is missing or was rejected", file=sys.stderr)
    sys.exit(1)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

COMMANDS = {
    "single": cmd_single,
    "multiple": cmd_multiple,
    "sitemap": cmd_sitemap,
    "compare": cmd_compare,
    "check-key": cmd_check_key,
}


def main() -> None:
    parser = build_argument_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(0)

    config_path = Path(args.config) if args.config else discover_config_path()
    config = load_config(config_path)

    profile_name = getattr(args, "profile", None)
    args = apply_profile(args, config, profile_name)
    configure_logging(getattr(args, "verbose", False))

    handler = COMMANDS.get(args.command)
    if handler is None:
        parser.print_help()
        sys.exit(1)

    try:
        asyncio.run(handler(args))
    except (PageSpeedError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
