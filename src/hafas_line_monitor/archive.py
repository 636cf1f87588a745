"""Local archive of raw provider responses with Hive-style partitioning."""

import asyncio
import json
from datetime import datetime
from pathlib import Path
from typing import Any

from hafas_line_monitor.logging import get_logger

logger = get_logger(__name__)


def generate_archive_path(endpoint: str, timestamp: datetime) -> Path:
    """Generate the relative path of an archived response.

    Path format:
    {endpoint}/date={YYYY-MM-DD}/hour={HH}/{HH-MM-SS.fff}.json

    Args:
        endpoint: Provider endpoint name (e.g. 'departureBoard').
        timestamp: Time the response was received.

    Returns:
        Path relative to the archive root.
    """
    time_str = timestamp.strftime("%H-%M-%S.%f")[:-3]
    return (
        Path(endpoint)
        / f"date={timestamp:%Y-%m-%d}"
        / f"hour={timestamp:%H}"
        / f"{time_str}.json"
    )


class ResponseArchive:
    """Writes raw JSON responses below a root directory."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def _write(self, path: Path, payload: dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")

    async def store(
        self, endpoint: str, payload: dict[str, Any], timestamp: datetime
    ) -> Path | None:
        """Archive one response.

        Failures are logged and swallowed; the archive must never break ingestion.

        Returns:
            The written file path, or None if the write failed.
        """
        path = self.root / generate_archive_path(endpoint, timestamp)
        try:
            await asyncio.to_thread(self._write, path, payload)
        except OSError as e:
            logger.warning(
                "archive_write_failed",
                endpoint=endpoint,
                path=str(path),
                error_message=str(e),
            )
            return None
        return path
