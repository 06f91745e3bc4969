"""URL canonicalization, deduplication keys and crawl skip rules."""

import re
from urllib.parse import parse_qsl, unquote, urlencode, urljoin, urlsplit, urlunsplit

TRACKING_PARAMS = frozenset({"gclid", "fbclid", "igshid", "mc_cid", "mc_eid", "ref", "ref_src", "mkt_tok"})
TRACKING_PREFIXES = ("utm_",)

BLOCKED_EXTENSIONS = (
    ".pdf",
    ".doc",
    ".docx",
    ".xls",
    ".xlsx",
    ".ppt",
    ".pptx",
    ".jpg",
    ".jpeg",
    ".png",
    ".gif",
    ".webp",
    ".svg",
    ".bmp",
    ".tif",
    ".tiff",
)

_BLOCKED_PATTERN = re.compile(r"\.(pdf|docx?|xlsx?|pptx?|jpe?g|png|gif|webp|svg|bmp|tiff?)(?:$|[?#])", re.IGNORECASE)

_DEFAULT_PORTS = {"http": 80, "https": 443}


def _with_scheme(value: str) -> str:
    value = value.strip()
    if value.startswith(("http://", "https://")):
        return value
    return f"https://{value}"


def _format_host(hostname: str, port: int | None, scheme: str) -> str:
    host = f"[{hostname}]" if ":" in hostname else hostname
    if port is not None and port != _DEFAULT_PORTS.get(scheme):
        return f"{host}:{port}"
    return host


def normalize_domain_to_start_url(domain: str) -> str:
    """Turn a bare host or any URL on the site into its root URL.

    >>> normalize_domain_to_start_url("Example.com/about?x=1")
    'https://example.com/'
    """
    parts = urlsplit(_with_scheme(domain))
    if not parts.hostname:
        raise ValueError(f"cannot derive a start URL from {domain!r}")
    return urlunsplit((parts.scheme.lower(), _format_host(parts.hostname, parts.port, parts.scheme.lower()), "/", "", ""))


def extract_domain(host_or_url: str) -> str:
    """Return the lower-cased hostname, or the input unchanged if it has none."""
    try:
        hostname = urlsplit(_with_scheme(host_or_url)).hostname
    except ValueError:
        return host_or_url
    return hostname or host_or_url


def is_same_domain(url: str, domain: str) -> bool:
    return extract_domain(url) == domain.lower()


def resolve_url(base: str, href: str) -> str | None:
    """Resolve a possibly relative reference against base; None when unusable."""
    href = href.strip()
    if not href:
        return None
    try:
        resolved = urljoin(base, href)
        parts = urlsplit(resolved)
    except ValueError:
        return None
    if parts.scheme not in ("http", "https") or not parts.hostname:
        return None
    return resolved


def normalize_url_for_dedup(url: str) -> str | None:
    """Canonical form used as the crawl dedup key.

    Drops the fragment, tracking parameters, default ports and credentials,
    sorts the remaining query parameters and strips trailing slashes from
    non-root paths. Returns None when the URL cannot be parsed.
    """
    try:
        parts = urlsplit(url.strip())
        hostname = parts.hostname
        port = parts.port
    except ValueError:
        return None
    scheme = parts.scheme.lower()
    if not scheme or not hostname:
        return None

    params = [
        (key, value)
        for key, value in parse_qsl(parts.query, keep_blank_values=True)
        if not _is_tracking_param(key)
    ]
    params.sort()

    # rstrip keeps the result stable for paths like "/a//"
    path = parts.path.rstrip("/") or "/"

    return urlunsplit((scheme, _format_host(hostname, port, scheme), path, urlencode(params), ""))


def _is_tracking_param(key: str) -> bool:
    lowered = key.lower()
    return lowered in TRACKING_PARAMS or lowered.startswith(TRACKING_PREFIXES)


def should_skip_crawl_url(url: str) -> bool:
    """True for URLs that point at documents or images rather than pages."""
    try:
        parts = urlsplit(url)
        if not parts.scheme or not parts.hostname:
            return False
        path = unquote(parts.path).lower()
    except ValueError:
        return False
    if path.endswith(BLOCKED_EXTENSIONS):
        return True
    return _BLOCKED_PATTERN.search(url) is not None
