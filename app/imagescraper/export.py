"""CSV/JSON export of a session's extraction results."""

from __future__ import annotations

import os
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional

import pandas as pd

from . import config
from .session import ExtractionResult

EXPORT_FORMATS = ("csv", "json")

CSV_COLUMNS = [
    "itemId",
    "title",
    "url",
    "mainImage",
    "imageCount",
    "images",
    "price",
    "brand",
    "category",
    "extractedAt",
]


def _flat_rows(results: Iterable[ExtractionResult]) -> List[dict]:
    rows = []
    for result in results:
        meta = result.metadata or {}
        rows.append(
            {
                "itemId": result.item_id,
                "title": result.title,
                "url": result.url,
                "mainImage": result.main_image or "",
                "imageCount": len(result.image_urls),
                "images": " | ".join(result.image_urls),
                "price": meta.get("price", ""),
                "brand": meta.get("brand", ""),
                "category": meta.get("category", ""),
                "extractedAt": result.extracted_at,
            }
        )
    return rows


def prune_old_exports(keep: Optional[int] = None, exports_dir: Optional[Path] = None) -> None:
    root = Path(exports_dir or config.EXPORTS_DIR)
    keep = config.EXPORTS_KEEP_MAX if keep is None else keep
    if not root.is_dir():
        return
    files = sorted(
        [root / name for name in os.listdir(root) if name.endswith(EXPORT_FORMATS)],
        key=lambda path: path.stat().st_mtime,
    )
    while len(files) > max(1, keep):
        old = files.pop(0)
        try:
            old.unlink()
        except OSError:
            continue


def export_results(
    results: Iterable[ExtractionResult],
    fmt: str,
    *,
    session_id: str = "results",
    exports_dir: Optional[Path] = None,
) -> Path:
    """Write ``results`` to the exports directory and return the file path.

    CSV gets one flat row per item (image URLs joined with `` | ``); JSON keeps
    the nested product records as sent to the webhook.
    """

    fmt = (fmt or "").strip().lower()
    if fmt not in EXPORT_FORMATS:
        raise ValueError(f"Unsupported export format: {fmt or 'none'}")

    results = list(results)
    root = Path(exports_dir or config.EXPORTS_DIR)
    root.mkdir(parents=True, exist_ok=True)
    stamp = datetime.utcnow().strftime("%Y%m%d_%H%M%S")
    dest_path = root / f"images_{session_id}_{stamp}.{fmt}"

    if fmt == "csv":
        df = pd.DataFrame(_flat_rows(results), columns=CSV_COLUMNS)
        df.to_csv(dest_path, index=False)
    else:
        df = pd.DataFrame([result.to_product() for result in results])
        df.to_json(dest_path, orient="records", indent=2, force_ascii=False)

    prune_old_exports(exports_dir=root)
    return dest_path


__all__ = ["CSV_COLUMNS", "EXPORT_FORMATS", "export_results", "prune_old_exports"]
