from __future__ import annotations

from bs4 import BeautifulSoup

from .url import canonicalize_url

MIN_IMAGE_DIMENSION = 120

_DECORATIVE_MARKERS = (
    "/logo",
    "/icon",
    "/avatar",
    "/sprite",
    "gravatar.com/avatar",
    "/pixel",
    "spacer.gif",
)

_META_IMAGE_KEYS = (
    ("property", "og:image"),
    ("property", "og:image:url"),
    ("name", "twitter:image"),
    ("name", "twitter:image:src"),
    ("itemprop", "image"),
)


def is_decorative_image(url: str) -> bool:
    lowered = url.lower()
    return any(marker in lowered for marker in _DECORATIVE_MARKERS)


def first_content_image(html: str | None, base_url: str | None = None) -> str | None:
    """First non-decorative <img> in a fragment of article html."""
    if not html:
        return None
    soup = BeautifulSoup(html, "html.parser")
    return _first_img(soup, base_url)


def extract_lead_image(html: str | None, base_url: str | None = None) -> str | None:
    """Lead image of a full page: social meta tags first, then the body."""
    if not html:
        return None
    soup = BeautifulSoup(html, "html.parser")
    for attr, key in _META_IMAGE_KEYS:
        tag = soup.find("meta", attrs={attr: key})
        if tag and tag.get("content"):
            url = canonicalize_url(str(tag["content"]), base_url)
            if url and not is_decorative_image(url):
                return url
    link = soup.find("link", attrs={"rel": "image_src"})
    if link and link.get("href"):
        url = canonicalize_url(str(link["href"]), base_url)
        if url and not is_decorative_image(url):
            return url
    for container in ("article", "main", "body"):
        node = soup.find(container)
        if node is None:
            continue
        found = _first_img(node, base_url)
        if found:
            return found
    return None


def _first_img(root, base_url: str | None) -> str | None:
    for img in root.find_all("img"):
        if _too_small(img.get("width")) or _too_small(img.get("height")):
            continue
        raw = img.get("src") or img.get("data-src") or _first_srcset(img.get("srcset"))
        if not raw or str(raw).startswith("data:"):
            continue
        url = canonicalize_url(str(raw), base_url)
        if not url or is_decorative_image(url):
            continue
        return url
    return None


def _first_srcset(value: str | None) -> str | None:
    if not value:
        return None
    first = str(value).split(",")[0].strip()
    return first.split(" ")[0] if first else None


def _too_small(value) -> bool:
    if value is None:
        return False
    digits = "".join(ch for ch in str(value) if ch.isdigit())
    if not digits:
        return False
    return int(digits) < MIN_IMAGE_DIMENSION
