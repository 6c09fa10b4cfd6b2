"""Append-only, day-partitioned archive of every recorded exchange."""

from __future__ import annotations

import re
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import structlog

from snoot.models.context import MessagePair

_ARCHIVE_NAME = re.compile(r"^archive-(\d{4}-\d{2}-\d{2})\.jsonl$")

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(UTC)


class DailyArchive:
    """
    One JSONL file per UTC calendar day: ``archive/archive-YYYY-MM-DD.jsonl``.

    Compaction never touches the archive and ``ContextStore.reset()`` leaves it
    in place; the only deletion is the age-based :meth:`sweep`.
    """

    def __init__(self, archive_dir: Path, retention_days: int, clock: Clock | None = None) -> None:
        self._dir = archive_dir
        self._retention = timedelta(days=retention_days)
        self._clock = clock or _utc_now
        self._logger = structlog.get_logger("snoot.context.archive")

    @property
    def directory(self) -> Path:
        return self._dir

    def path_for(self, day: datetime) -> Path:
        return self._dir / f"archive-{day.strftime('%Y-%m-%d')}.jsonl"

    def today_path(self) -> Path:
        return self.path_for(self._clock())

    def append(self, pair: MessagePair) -> None:
        """Append *pair* to today's file, creating the directory if needed."""
        self._dir.mkdir(parents=True, exist_ok=True)
        with self.today_path().open("a", encoding="utf-8") as fh:
            fh.write(pair.model_dump_json() + "\n")

    def migrate_legacy(self, legacy_path: Path) -> bool:
        """
        Fold a single-file ``archive.jsonl`` into today's partition and delete it.

        Returns:
            True if a legacy file was found and migrated.
        """
        if not legacy_path.exists():
            return False
        content = legacy_path.read_text(encoding="utf-8").strip()
        if content:
            self._dir.mkdir(parents=True, exist_ok=True)
            with self.today_path().open("a", encoding="utf-8") as fh:
                fh.write(content + "\n")
        legacy_path.unlink()
        self._logger.info("legacy_archive_migrated", path=str(legacy_path))
        return True

    def sweep(self) -> list[str]:
        """
        Delete partitions whose filename date is older than the retention period.

        Files that do not match the partition naming scheme are left alone.

        Returns:
            Names of the deleted files.
        """
        if not self._dir.exists():
            return []
        cutoff = self._clock() - self._retention
        deleted: list[str] = []
        for path in sorted(self._dir.iterdir()):
            match = _ARCHIVE_NAME.match(path.name)
            if match is None:
                continue
            file_day = datetime.strptime(match.group(1), "%Y-%m-%d").replace(tzinfo=UTC)
            if file_day < cutoff:
                path.unlink()
                deleted.append(path.name)
                self._logger.info("archive_deleted", file=path.name)
        return deleted
