"""Resolve seed locations to canonical base domains and normalize URLs."""

from dataclasses import dataclass
from urllib.parse import urlsplit, urlunsplit

from sitecorpus.constants import MAX_DISPLAY_NAME_CHARS
from sitecorpus.exceptions import InvalidSeedError

_ALLOWED_SCHEMES = ("http", "https")


@dataclass(frozen=True)
class ResolvedSeed:
    """A validated seed location."""

    seed_url: str
    host: str
    base_domain: str


def strip_www(host: str) -> str:
    """Drop a single leading ``www.`` label."""
    host = host.lower().rstrip(".")
    return host[4:] if host.startswith("www.") else host


def resolve(seed: str) -> ResolvedSeed:
    """Validate a URL or bare domain and derive its base domain.

    Raises:
        InvalidSeedError: If the input has no usable hostname
    """
    raw = (seed or "").strip()
    if not raw:
        raise InvalidSeedError("URL or domain is required")
    if any(ch.isspace() for ch in raw):
        raise InvalidSeedError(f"Invalid URL or domain: {seed!r}")

    candidate = raw if "://" in raw else f"https://{raw}"
    try:
        parts = urlsplit(candidate)
        host = parts.hostname or ""
        # Accessing port validates it
        port = parts.port
    except ValueError as e:
        raise InvalidSeedError(f"Invalid URL or domain: {seed!r}") from e

    if parts.scheme.lower() not in _ALLOWED_SCHEMES:
        raise InvalidSeedError(f"Unsupported scheme: {parts.scheme}")
    if "." not in host or host.startswith(".") or ".." in host:
        raise InvalidSeedError(
            f"Input must be a valid URL or domain (e.g. https://example.com): {seed!r}"
        )

    netloc = host if port is None else f"{host}:{port}"
    seed_url = normalize_url(
        urlunsplit((parts.scheme.lower(), netloc, parts.path, parts.query, ""))
    )
    return ResolvedSeed(seed_url=seed_url, host=host.lower(), base_domain=strip_www(host))


def base_domain(url_or_domain: str) -> str:
    """Base domain of a URL or bare domain."""
    return resolve(url_or_domain).base_domain


def normalize_url(url: str) -> str:
    """Canonical form used as the page identity within a website.

    Scheme and host are lower-cased, the fragment is dropped, a trailing
    slash is removed except at the root, and the query string is kept.
    """
    parts = urlsplit(url.strip())
    path = parts.path
    if path.endswith("/") and path != "/":
        path = path.rstrip("/") or "/"
    if not path:
        path = "/"
    return urlunsplit(
        (parts.scheme.lower(), parts.netloc.lower(), path, parts.query, "")
    )


def is_same_domain(url: str, domain: str) -> bool:
    """True when the URL's host resolves to exactly the given base domain."""
    try:
        host = urlsplit(url).hostname
    except ValueError:
        return False
    if not host:
        return False
    return strip_www(host) == strip_www(domain)


def path_of(url: str) -> str:
    """URL path, defaulting to ``/``."""
    return urlsplit(url).path or "/"


def validate_display_name(display_name: str | None, default: str) -> str:
    """Trimmed display name, or ``default`` when none was given.

    Raises:
        InvalidSeedError: If the name is blank or too long
    """
    if display_name is None:
        return default
    name = display_name.strip()
    if not name:
        raise InvalidSeedError("Display name cannot be empty")
    if len(name) > MAX_DISPLAY_NAME_CHARS:
        raise InvalidSeedError(
            f"Display name must be {MAX_DISPLAY_NAME_CHARS} characters or less"
        )
    return name
