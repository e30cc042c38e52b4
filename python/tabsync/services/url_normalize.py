"""URL normalization for collection-item idempotency lookups.

Two item URLs are considered the same tab when their normalized forms match.

Normalization rules:
- Surrounding whitespace trimmed
- Lowercase scheme and host (IPv6 literals keep their brackets)
- User info kept verbatim ("alice@host" and "bob@host" stay distinct)
- Default port dropped (80 for http, 443 for https)
- Fragment (#...) stripped
- Trailing slash on the path stripped ("https://a.com/" == "https://a.com")
- Query string preserved as-is

Strings without a host (e.g. "about:blank", "chrome://newtab") are returned
trimmed but otherwise untouched.
"""

from urllib.parse import urlparse, urlunparse

DEFAULT_PORTS = {"http": 80, "https": 443}

# Key under which the normalized form is stored in CollectionItem.metadata
NORMALIZED_URL_KEY = "normalized_url"


def normalize_url(url: str) -> str:
    """Return the canonical form of ``url`` used for duplicate detection.

    Args:
        url: Raw URL as captured by the client.

    Returns:
        The normalized URL string.
    """
    url = (url or "").strip()
    parsed = urlparse(url)
    if not parsed.hostname:
        return url

    scheme = parsed.scheme.lower()
    hostname = parsed.hostname.lower()
    if ":" in hostname:
        hostname = f"[{hostname}]"
    userinfo, _, _ = parsed.netloc.rpartition("@")

    try:
        port = parsed.port
    except ValueError:
        port = None

    netloc = hostname
    if port and DEFAULT_PORTS.get(scheme) != port:
        netloc = f"{netloc}:{port}"
    if userinfo:
        netloc = f"{userinfo}@{netloc}"

    return urlunparse(
        (
            scheme,
            netloc,
            parsed.path.rstrip("/"),
            parsed.params,
            parsed.query,
            "",
        )
    )


def with_normalized_url(metadata: dict | None, url: str) -> dict:
    """Return a copy of ``metadata`` whose normalized-URL tag matches ``url``.

    An empty ``url`` drops any existing tag so the item no longer answers
    lookups for the URL it used to have.
    """
    tagged = dict(metadata or {})
    if url:
        tagged[NORMALIZED_URL_KEY] = normalize_url(url)
    else:
        tagged.pop(NORMALIZED_URL_KEY, None)
    return tagged
