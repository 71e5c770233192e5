"""Best-effort page snapshots for offline diagnosis of portal failures."""
import logging
import re
import time
from pathlib import Path
from typing import Any, Optional

import aiofiles
import orjson

from tollwatch.config import DEBUG_DIR

logger = logging.getLogger(__name__)


def _safe_label(label: str) -> str:
    return re.sub(r"[^A-Za-z0-9_-]+", "-", label).strip("-") or "snapshot"


class DiagnosticsRecorder:
    """Writes screenshot, HTML and a JSON sidecar for a failing page. Never raises."""

    def __init__(self, debug_dir: Path = DEBUG_DIR, enabled: bool = True):
        self.debug_dir = debug_dir
        self.enabled = enabled

    async def capture(self, page: Any, label: str, details: Optional[dict] = None) -> Optional[Path]:
        """Snapshot the page. Returns the sidecar path, or None if nothing was written."""
        if not self.enabled or page is None:
            return None
        try:
            if page.is_closed():
                return None
            self.debug_dir.mkdir(parents=True, exist_ok=True)
            stamp = int(time.time() * 1000)
            base = self.debug_dir / f"{_safe_label(label)}-{stamp}"

            screenshot_path = base.with_suffix(".png")
            html_path = base.with_suffix(".html")
            meta_path = base.with_suffix(".json")

            await page.screenshot(path=str(screenshot_path), full_page=True)
            html = await page.content()
            async with aiofiles.open(html_path, "w", encoding="utf-8") as f:
                await f.write(html)

            meta = {
                "label": label,
                "ts": stamp,
                "url": page.url,
                "title": await page.title(),
                "screenshot": screenshot_path.name,
                "html": html_path.name,
                "details": details or {},
            }
            async with aiofiles.open(meta_path, "wb") as f:
                await f.write(orjson.dumps(meta, option=orjson.OPT_INDENT_2))

            logger.info(f"Debug snapshot saved: {meta_path}")
            return meta_path
        except Exception as e:
            logger.warning(f"Failed to save debug snapshot '{label}': {e}")
            return None
