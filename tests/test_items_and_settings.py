from pathlib import Path

from app.imagescraper import config
from app.imagescraper.items import coerce_item_ids, item_id_from_url, parse_item_ids
from app.imagescraper.settings import Settings, load_settings, save_settings


def test_parse_item_ids_splits_and_drops_invalid() -> None:
    text = "b00abc1234, B00ABC5678;\n  not-an-id \nB0SHORT\nB00ABC1234"

    assert parse_item_ids(text) == ["B00ABC1234", "B00ABC5678", "B00ABC1234"]


def test_coerce_item_ids_accepts_lists() -> None:
    assert coerce_item_ids([" b00abc1234 ", 42, None, "B00ABC5678"]) == ["B00ABC1234", "B00ABC5678"]


def test_item_id_from_url() -> None:
    assert item_id_from_url("https://www.amazon.com/Some-Thing/dp/B00ABC1234/ref=x") == "B00ABC1234"
    assert item_id_from_url("https://www.amazon.com/gp/product/B00ABC5678") == "B00ABC5678"
    assert item_id_from_url("https://example.com/nothing") is None


def test_settings_accept_ui_aliases_and_clamp_delay() -> None:
    settings = Settings.from_dict({"zipCode": "94105", "delayTime": 50, "webhookUrl": " https://hook.test/x "})

    assert settings.target_zone == "94105"
    assert settings.inter_item_delay_ms == config.MIN_DELAY_MS
    assert settings.webhook_url == "https://hook.test/x"

    slow = Settings.from_dict({"delay_ms": 999999}, base=settings)
    assert slow.inter_item_delay_ms == config.MAX_DELAY_MS
    assert slow.target_zone == "94105"


def test_settings_defaults_when_nothing_persisted(data_dir: Path) -> None:
    settings = load_settings()

    assert settings.target_zone == config.DEFAULT_ZONE
    assert settings.inter_item_delay_ms == config.DEFAULT_DELAY_MS
    assert settings.webhook_url == ""


def test_settings_persist_across_loads(data_dir: Path) -> None:
    save_settings(Settings(target_zone="60601", inter_item_delay_ms=2500, webhook_url="https://hook.test/a"))

    reloaded = load_settings()

    assert reloaded == Settings(target_zone="60601", inter_item_delay_ms=2500, webhook_url="https://hook.test/a")
    assert config.SETTINGS_FILE.exists()
