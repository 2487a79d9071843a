"""
Run log rotation.

Keeps the log directory under a size and a file-count limit. When either
limit is exceeded, the oldest logs (by modification time) are deleted
until the directory is at or below 90% of both limits, so rotation does
not run again on the very next write.
"""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

import structlog

from repo_conductor.config.settings import RotationConfig

log = structlog.get_logger(__name__)

ROTATION_TARGET_RATIO = 0.9
BYTES_PER_MB = 1024 * 1024


@dataclass(frozen=True)
class LogFileInfo:
    path: Path
    size: int
    mtime: datetime

    @property
    def filename(self) -> str:
        return self.path.name


@dataclass(frozen=True)
class LogStats:
    total_size_bytes: int
    file_count: int
    oldest_file: str | None
    newest_file: str | None
    exceeds_size: bool
    exceeds_count: bool

    @property
    def total_size_mb(self) -> float:
        return self.total_size_bytes / BYTES_PER_MB


@dataclass
class RotationResult:
    deleted_files: list[str] = field(default_factory=list)
    bytes_reclaimed: int = 0
    rotated: bool = False
    error: str | None = None

    @property
    def deleted_count(self) -> int:
        return len(self.deleted_files)


def get_log_files(log_dir: Path) -> list[LogFileInfo]:
    """``run-*.json`` files in ``log_dir``, oldest first."""
    if not log_dir.is_dir():
        return []
    files = []
    for path in log_dir.glob("run-*.json"):
        stat = path.stat()
        files.append(LogFileInfo(path=path, size=stat.st_size, mtime=datetime.fromtimestamp(stat.st_mtime)))
    return sorted(files, key=lambda f: (f.mtime, f.filename))


def get_log_stats(log_dir: Path, settings: RotationConfig | None = None) -> LogStats:
    settings = settings or RotationConfig()
    files = get_log_files(log_dir)
    total = sum(f.size for f in files)
    return LogStats(
        total_size_bytes=total,
        file_count=len(files),
        oldest_file=files[0].filename if files else None,
        newest_file=files[-1].filename if files else None,
        exceeds_size=total / BYTES_PER_MB > settings.max_size_mb,
        exceeds_count=len(files) > settings.max_files,
    )


def get_files_to_delete(log_dir: Path, settings: RotationConfig) -> list[LogFileInfo]:
    files = get_log_files(log_dir)
    stats = get_log_stats(log_dir, settings)
    if not stats.exceeds_size and not stats.exceeds_count:
        return []

    target_bytes = settings.max_size_mb * BYTES_PER_MB * ROTATION_TARGET_RATIO
    target_count = int(settings.max_files * ROTATION_TARGET_RATIO)

    to_delete = []
    size, count = stats.total_size_bytes, stats.file_count
    for f in files:
        if size <= target_bytes and count <= target_count:
            break
        to_delete.append(f)
        size -= f.size
        count -= 1
    return to_delete


def rotate_logs(log_dir: Path, settings: RotationConfig | None = None, dry_run: bool = False) -> RotationResult:
    """Delete the oldest run logs if the directory exceeds its limits.

    Args:
        log_dir: Directory holding ``run-*.json`` files
        settings: Rotation limits; disabled rotation does nothing
        dry_run: Report what would be deleted without deleting

    Returns:
        RotationResult. A deletion failure stops rotation and is reported
        in ``error`` rather than raised.
    """
    settings = settings or RotationConfig()
    if not settings.enabled:
        return RotationResult()

    to_delete = get_files_to_delete(log_dir, settings)
    if not to_delete:
        return RotationResult()

    if dry_run:
        return RotationResult(
            deleted_files=[f.filename for f in to_delete],
            bytes_reclaimed=sum(f.size for f in to_delete),
        )

    result = RotationResult()
    for f in to_delete:
        try:
            f.path.unlink()
        except OSError as e:
            result.error = f"Failed to delete {f.filename}: {e}"
            log.warning("log_rotation_failed", file=f.filename, error=str(e))
            break
        result.deleted_files.append(f.filename)
        result.bytes_reclaimed += f.size

    result.rotated = bool(result.deleted_files)
    if result.rotated:
        log.info("logs_rotated", deleted=result.deleted_count, bytes_reclaimed=result.bytes_reclaimed)
    return result
