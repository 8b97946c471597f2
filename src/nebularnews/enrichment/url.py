from __future__ import annotations

from urllib.parse import parse_qsl, urlencode, urljoin, urlparse, urlunparse


_TRACKING_PREFIXES = ("utm_",)
_TRACKING_KEYS = {"gclid", "fbclid", "mc_cid", "mc_eid", "igshid"}


def canonicalize_url(url: str | None, base: str | None = None) -> str | None:
    """Strip tracking params and the fragment, lowercase scheme and host.

    Returns None for anything that is not an absolute http(s) url.
    """
    if not url or not url.strip():
        return None
    candidate = url.strip()
    if base:
        candidate = urljoin(base, candidate)
    parsed = urlparse(candidate)
    scheme = (parsed.scheme or "").lower()
    if scheme not in ("http", "https") or not parsed.netloc:
        return None
    netloc = parsed.netloc.lower()
    if ":" in netloc and not netloc.endswith("]"):
        host, port = netloc.rsplit(":", 1)
        if (scheme == "http" and port == "80") or (scheme == "https" and port == "443"):
            netloc = host
    path = parsed.path or "/"
    query_pairs = [
        (k, v)
        for k, v in parse_qsl(parsed.query, keep_blank_values=True)
        if k and not k.lower().startswith(_TRACKING_PREFIXES) and k.lower() not in _TRACKING_KEYS
    ]
    query = urlencode(query_pairs)
    return urlunparse((scheme, netloc, path, parsed.params, query, ""))


def is_http_url(url: str | None) -> bool:
    if not url:
        return False
    return urlparse(url.strip()).scheme.lower() in ("http", "https")
