"""Configuration constants for the product image scraper."""
from __future__ import annotations

import os
from pathlib import Path

DATA_DIR: Path = Path(os.getenv("IMAGESCRAPER_DATA_DIR", "/app/data"))
LOG_DIR: Path = DATA_DIR / "logs"
LOG_FILE: Path = LOG_DIR / "latest.log"
EXPORTS_DIR: Path = DATA_DIR / "exports"
# Persisted slots; each one survives process restarts.
SETTINGS_FILE: Path = DATA_DIR / "settings.json"
FINGERPRINTS_FILE: Path = DATA_DIR / "fingerprints.json"
DEAD_LETTERS_FILE: Path = DATA_DIR / "dead_letters.json"

PRODUCT_BASE_URL: str = os.getenv("IMAGESCRAPER_PRODUCT_BASE_URL", "https://www.amazon.com/dp/")
CLIENT_ID: str = "Amazon-Image-Scraper"

DEFAULT_ZONE: str = os.getenv("IMAGESCRAPER_DEFAULT_ZONE", "10016")
DEFAULT_DELAY_MS: int = int(os.getenv("IMAGESCRAPER_DEFAULT_DELAY_MS", "3000"))
MIN_DELAY_MS: int = 1000
MAX_DELAY_MS: int = 10000
MAX_ITEMS_PER_SESSION: int = int(os.getenv("IMAGESCRAPER_MAX_ITEMS_PER_SESSION", "50"))


def _parse_seconds(env_var: str, default: float, *, minimum: float = 0.0) -> float:
    """Parse a duration in seconds from the environment with a lower bound."""

    try:
        value = float(os.getenv(env_var, str(default)))
    except ValueError:
        return default
    return max(minimum, value)


# Concurrency controls
# Chunk size used by the batch scheduler; also the number of live page workers.
MAX_CONCURRENT_TABS: int = int(os.getenv("IMAGESCRAPER_MAX_CONCURRENT_TABS", "5"))

# Page worker timings (seconds)
TAB_LOAD_TIMEOUT_SECONDS: float = _parse_seconds("IMAGESCRAPER_TAB_LOAD_TIMEOUT_SECONDS", 30.0)
READY_POLL_INTERVAL_SECONDS: float = _parse_seconds(
    "IMAGESCRAPER_READY_POLL_INTERVAL_SECONDS", 0.5
)
# Navigation timeout for page.goto calls.
PLAYWRIGHT_NAV_TIMEOUT_SECONDS: float = _parse_seconds(
    "IMAGESCRAPER_NAV_TIMEOUT_SECONDS", 25.0
)
# Budget for the product gallery to appear once the document has loaded.
CONTENT_WAIT_SECONDS: float = _parse_seconds("IMAGESCRAPER_CONTENT_WAIT_SECONDS", 5.0)
PLAYWRIGHT_HEADLESS: bool = os.getenv("IMAGESCRAPER_HEADLESS", "1").strip().lower() not in {
    "0",
    "false",
}

# Webhook delivery
WEBHOOK_MAX_RETRIES: int = int(os.getenv("IMAGESCRAPER_WEBHOOK_MAX_RETRIES", "3"))
WEBHOOK_BASE_DELAY_SECONDS: float = _parse_seconds("IMAGESCRAPER_WEBHOOK_BASE_DELAY_SECONDS", 1.0)
WEBHOOK_TIMEOUT_SECONDS: float = _parse_seconds("IMAGESCRAPER_WEBHOOK_TIMEOUT_SECONDS", 30.0)
WEBHOOK_QUEUE_DELAY_SECONDS: float = _parse_seconds(
    "IMAGESCRAPER_WEBHOOK_QUEUE_DELAY_SECONDS", 0.5
)
DEAD_LETTER_LIMIT: int = int(os.getenv("IMAGESCRAPER_DEAD_LETTER_LIMIT", "10"))

EXPORTS_KEEP_MAX: int = int(os.getenv("IMAGESCRAPER_EXPORTS_KEEP_MAX", "5"))
MIN_FREE_MB: int = int(os.getenv("IMAGESCRAPER_MIN_FREE_MB", "50"))

USER_AGENT: str = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/142.0.0.0 Safari/537.36"
)

COMMON_HEADERS: dict[str, str] = {
    "Content-Type": "application/json",
    "X-Extension": CLIENT_ID,
}


def product_url(item_id: str, zone: str | None = None) -> str:
    """Return the product page URL for ``item_id`` in the given delivery zone."""

    url = f"{PRODUCT_BASE_URL}{item_id}"
    if zone:
        url += f"?zip={zone}"
    return url
