"""Shrink a Playwright report archive before it is stored or re-uploaded.

Traces, videos and network logs usually dominate a report's size and are
never read by the extractors. ``optimize_report`` rebuilds the archive
without them using maximum DEFLATE compression. Images are copied as-is.
"""

import io
import re
import zipfile
from dataclasses import dataclass

import structlog

logger = structlog.get_logger()

TRACE_PATTERNS = (re.compile(r"data/.*\.zip$"), re.compile(r"data/trace/"), re.compile(r"\.trace$"))
VIDEO_PATTERNS = (re.compile(r"video\.webm$"),)
NETWORK_PATTERNS = (re.compile(r"\.har$"), re.compile(r"\.network$"))


@dataclass
class OptimizationStats:
    original_size: int
    optimized_size: int = 0
    files_removed: int = 0
    bytes_removed: int = 0

    @property
    def compression_ratio(self) -> float:
        """Percentage of the original size saved."""
        if self.original_size == 0:
            return 0.0
        return (self.original_size - self.optimized_size) / self.original_size * 100


def optimize_report(
    data: bytes,
    remove_traces: bool = True,
    remove_videos: bool = True,
    remove_har_files: bool = True,
) -> tuple[bytes, OptimizationStats]:
    """Return an optimized copy of a report archive and what was removed.

    Raises:
        zipfile.BadZipFile: If ``data`` is not a ZIP archive
    """
    patterns: list[re.Pattern] = []
    if remove_traces:
        patterns.extend(TRACE_PATTERNS)
    if remove_videos:
        patterns.extend(VIDEO_PATTERNS)
    if remove_har_files:
        patterns.extend(NETWORK_PATTERNS)

    stats = OptimizationStats(original_size=len(data))
    output = io.BytesIO()

    with zipfile.ZipFile(io.BytesIO(data)) as source, zipfile.ZipFile(
        output, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=9
    ) as target:
        for info in source.infolist():
            if info.is_dir():
                target.writestr(info.filename, b"")
                continue
            if any(p.search(info.filename) for p in patterns):
                stats.files_removed += 1
                stats.bytes_removed += info.file_size
                logger.debug("Removing report entry", path=info.filename, size=info.file_size)
                continue
            target.writestr(info.filename, source.read(info.filename))

    optimized = output.getvalue()
    stats.optimized_size = len(optimized)
    logger.info(
        "Optimized report archive",
        original_size=stats.original_size,
        optimized_size=stats.optimized_size,
        files_removed=stats.files_removed,
    )
    return optimized, stats
