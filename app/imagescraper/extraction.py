"""Default page extractor: product title, metadata and ranked image URLs.

The orchestration core only sees the :class:`PageExtractor` interface; this
module is the stock implementation used by the Playwright worker backend. It
parses the rendered page HTML with BeautifulSoup, collects candidate image
URLs with several independent strategies, upgrades them to the high
resolution variant and ranks them with :func:`score_image`.
"""

from __future__ import annotations

import json
import re
from typing import Any, Callable, Dict, Iterable, List, Protocol

from bs4 import BeautifulSoup

from .error_codes import ExtractionError
from .logging_utils import _scraper_event
from .utils import now_iso

HIGH_RES_TOKEN = "_SL1500_"

# Ranking weights. Higher scores sort first; ties keep discovery order.
REVIEW_IMAGE_PENALTY = -100  # customer review uploads ("_CR" crops)
HIGH_RES_BONUS = 10

_GALLERY_URL_PATTERN = re.compile(r"https://[^\"\s]+\.(?:jpg|jpeg|png|webp)", re.I)
_TINY_THUMB_MARKERS = ("_SS40_", "_US40_")
_HIGH_RES_TRANSFORMS = (
    (re.compile(r"_S[XY]\d+_"), "_SL1500_"),
    (re.compile(r"_SL\d+_"), "_SL1500_"),
    (re.compile(r"_AC_U[LSF]\d+_"), "_AC_SL1500_"),
    (re.compile(r"_SS\d+_"), "_SL1500_"),
    (re.compile(r"_US\d+_"), "_SL1500_"),
    (re.compile(r"\._[A-Z]{2}_\."), "."),
    (re.compile(r"_AC_[A-Z]{2}\d+_"), "_AC_SL1500_"),
)
_IMAGE_EXTENSION = re.compile(r"\.(jpg|jpeg|png|webp)", re.I)

DOM_IMAGE_SELECTORS = (
    "#imageBlock img",
    "#main-image-container img",
    ".image-wrapper img",
    ".imgTagWrapper img",
    "#altImages img",
    ".a-button-thumbnail img",
)
CONTENT_READY_SELECTOR = "#imageBlock, #main-image-container, .imgTagWrapper"


class PageExtractor(Protocol):
    """Pluggable collaborator that turns a loaded page into a product record."""

    def extract(self, html: str, *, item_id: str, url: str) -> Dict[str, Any]:
        ...


def transform_to_high_res(url: str) -> str:
    """Rewrite a product image URL to its 1500px variant."""

    if not url:
        return url
    if "_SL1500_" in url or "_SX1500_" in url:
        return url

    transformed = url
    for pattern, replacement in _HIGH_RES_TRANSFORMS:
        if pattern.search(transformed):
            transformed = pattern.sub(replacement, transformed, count=1)

    if transformed == url and _IMAGE_EXTENSION.search(url):
        transformed = re.sub(r"(\.[^.]+)$", r"_SL1500_\1", url, count=1)
    return transformed


def is_high_res(url: str) -> bool:
    return "_SL1500_" in url or "_SX1500_" in url


def score_image(url: str) -> int:
    """Return the relevance score of an image URL.

    Shared by :func:`rank_images` and :func:`select_best_images`.
    """

    score = 0
    if "_CR" in url:
        score += REVIEW_IMAGE_PENALTY
    if is_high_res(url):
        score += HIGH_RES_BONUS
    return score


def rank_images(urls: Iterable[str]) -> List[str]:
    """Sort by descending score; equal scores keep their original order."""

    indexed = list(enumerate(urls))
    indexed.sort(key=lambda pair: (-score_image(pair[1]), pair[0]))
    return [url for _, url in indexed]


def select_best_images(urls: Iterable[str], limit: int = 1) -> List[str]:
    return rank_images(urls)[: max(0, limit)]


def _from_gallery_scripts(soup: BeautifulSoup) -> List[str]:
    images: List[str] = []
    for script in soup.find_all("script"):
        content = script.string or script.get_text() or ""
        if "ImageBlockATF" not in content and "colorImages" not in content:
            continue
        for url in _GALLERY_URL_PATTERN.findall(content):
            if any(marker in url for marker in _TINY_THUMB_MARKERS):
                continue
            images.append(url)
    return images


def _from_dynamic_image_attrs(soup: BeautifulSoup) -> List[str]:
    images: List[str] = []
    for element in soup.select("[data-a-dynamic-image]"):
        try:
            data = json.loads(element.get("data-a-dynamic-image") or "")
        except (TypeError, ValueError):
            continue
        if isinstance(data, dict):
            images.extend(str(url) for url in data.keys())
    return images


def _from_dom_images(soup: BeautifulSoup) -> List[str]:
    images: List[str] = []
    for selector in DOM_IMAGE_SELECTORS:
        for img in soup.select(selector):
            for attr in ("src", "data-old-hires", "data-a-hires", "data-src"):
                src = img.get(attr)
                if src and src.startswith("http") and "blank.gif" not in src:
                    images.append(src)
    return images


def _from_thumbnails(soup: BeautifulSoup) -> List[str]:
    images: List[str] = []
    container = soup.select_one("#altImages, .a-button-list")
    if container is None:
        return images

    for thumb in container.select(".item, .a-button-thumbnail, li"):
        img = thumb.find("img")
        if img is None:
            continue
        candidates = [img.get("src"), thumb.get("data-old-hires"), thumb.get("data-a-hires")]
        hover = thumb.select_one(".a-button-text img")
        if hover is not None:
            candidates.append(hover.get("src"))
        images.extend(url for url in candidates if url and url.startswith("http"))
    return images


STRATEGIES: tuple[tuple[str, Callable[[BeautifulSoup], List[str]]], ...] = (
    ("gallery_scripts", _from_gallery_scripts),
    ("dynamic_image_attrs", _from_dynamic_image_attrs),
    ("dom_images", _from_dom_images),
    ("thumbnails", _from_thumbnails),
)


def collect_images(soup: BeautifulSoup) -> List[str]:
    """Run every strategy, merge, upgrade, de-duplicate and rank the URLs."""

    merged: Dict[str, None] = {}
    for name, strategy in STRATEGIES:
        try:
            found = strategy(soup)
        except Exception as exc:  # noqa: BLE001
            _scraper_event("error", phase="extract", strategy=name, error=str(exc))
            continue
        for url in found:
            merged.setdefault(url, None)

    upgraded: Dict[str, None] = {}
    for url in merged:
        upgraded.setdefault(transform_to_high_res(url), None)
    return rank_images(upgraded)


def _text(soup: BeautifulSoup, selector: str) -> str:
    element = soup.select_one(selector)
    return element.get_text(strip=True) if element is not None else ""


def extract_product_info(soup: BeautifulSoup) -> Dict[str, str]:
    brand = _text(soup, "#bylineInfo, .po-brand .po-break-word")
    brand = brand.replace("Brand:", "").replace("Visit the", "").strip()
    return {
        "title": _text(soup, "#productTitle, h1.a-size-large"),
        "price": _text(soup, ".a-price-whole, #priceblock_dealprice, #priceblock_ourprice"),
        "brand": brand,
        "category": _text(soup, "#wayfinding-breadcrumbs_feature_div .a-list-item:last-child"),
    }


def has_product_content(html: str) -> bool:
    """Return True once the image gallery (markup or script data) is present."""

    soup = BeautifulSoup(html or "", "html.parser")
    if soup.select_one(CONTENT_READY_SELECTOR) is not None:
        return True
    return any(
        "ImageBlockATF" in (script.string or "") or "colorImages" in (script.string or "")
        for script in soup.find_all("script")
    )


class HtmlImageExtractor:
    """Stock :class:`PageExtractor` working on the rendered page HTML."""

    def extract(self, html: str, *, item_id: str, url: str) -> Dict[str, Any]:
        soup = BeautifulSoup(html or "", "html.parser")
        info = extract_product_info(soup)
        images = collect_images(soup)
        if not images:
            raise ExtractionError("No images found")

        _scraper_event("extract", item_id=item_id, images=len(images))
        return {
            "itemId": item_id,
            "title": info["title"],
            "url": url,
            "images": images,
            "mainImage": images[0],
            "timestamp": now_iso(),
            "metadata": {
                "price": info["price"],
                "brand": info["brand"],
                "category": info["category"],
                "imageCount": len(images),
            },
        }


__all__ = [
    "PageExtractor",
    "HtmlImageExtractor",
    "REVIEW_IMAGE_PENALTY",
    "HIGH_RES_BONUS",
    "transform_to_high_res",
    "score_image",
    "rank_images",
    "select_best_images",
    "collect_images",
    "extract_product_info",
    "has_product_content",
]
