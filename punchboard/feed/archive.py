import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from loguru import logger


def _timestamp_string(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%d--%H-%M-%S")


class FeedArchive:
    """Writes every fetched feed payload to disk for post-event inspection."""

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)

    def path_for(self, cursor: str, now: Optional[datetime] = None) -> Path:
        safe_cursor = re.sub(r"[^\w.-]+", "_", cursor)
        return self.directory / f"meos-{_timestamp_string(now)}-{safe_cursor}.xml"

    def store(self, payload: str, cursor: str) -> Optional[Path]:
        """Writes the payload; failures are logged and never raised."""
        path = self.path_for(cursor)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            path.write_text(payload, encoding="utf-8")
        except OSError as e:
            logger.error(f"Could not log feed payload to {path}: {e}")
            return None
        return path
