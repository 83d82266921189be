"""Pytest configuration and shared fixtures."""

import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from app.imagescraper import config, utils


def _configure_temp_paths(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    data_dir = tmp_path / "data"
    data_dir.mkdir(parents=True, exist_ok=True)

    monkeypatch.setattr(config, "DATA_DIR", data_dir)
    monkeypatch.setattr(config, "LOG_DIR", data_dir / "logs")
    monkeypatch.setattr(config, "LOG_FILE", data_dir / "logs" / "latest.log")
    monkeypatch.setattr(config, "EXPORTS_DIR", data_dir / "exports")
    monkeypatch.setattr(config, "SETTINGS_FILE", data_dir / "settings.json")
    monkeypatch.setattr(config, "FINGERPRINTS_FILE", data_dir / "fingerprints.json")
    monkeypatch.setattr(config, "DEAD_LETTERS_FILE", data_dir / "dead_letters.json")
    utils._configure_logger(config.LOG_FILE)
    return data_dir


@pytest.fixture(autouse=True)
def data_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point every persisted slot and the log file at a per-test directory."""

    return _configure_temp_paths(tmp_path, monkeypatch)
