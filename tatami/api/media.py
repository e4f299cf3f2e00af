"""
Video file serving with single-range support.

Files are looked up under each of settings.video_dirs in order; the first
match wins. Only `bytes=start-end`, `bytes=start-` and `bytes=-suffix` are
understood; multi-range requests are answered 416.
"""

from pathlib import Path

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse

from tatami.config import get_settings
from tatami.core.errors import APIError

import structlog

logger = structlog.get_logger()
router = APIRouter(prefix="/api/media", tags=["media"])

MIME_TYPES = {
    ".mp4": "video/mp4",
    ".webm": "video/webm",
    ".ogg": "video/ogg",
    ".mov": "video/quicktime",
}

CHUNK_SIZE = 64 * 1024
CACHE_CONTROL = "public, max-age=31536000, immutable"


class RangeNotSatisfiable(ValueError):
    pass


def parse_range(header: str, size: int) -> tuple[int, int]:
    """Parse a single byte range into inclusive (start, end) offsets."""
    unit, _, ranges = header.partition("=")
    if unit.strip().lower() != "bytes" or "," in ranges:
        raise RangeNotSatisfiable(header)

    start_s, sep, end_s = ranges.strip().partition("-")
    if not sep:
        raise RangeNotSatisfiable(header)

    try:
        if start_s == "":
            # Suffix range: last N bytes
            length = int(end_s)
            if length <= 0:
                raise RangeNotSatisfiable(header)
            return max(0, size - length), size - 1
        start = int(start_s)
        end = int(end_s) if end_s else size - 1
    except ValueError as exc:
        raise RangeNotSatisfiable(header) from exc

    if start < 0 or start >= size or end < start:
        raise RangeNotSatisfiable(header)
    return start, min(end, size - 1)


def find_video(relative: str) -> Path | None:
    for directory in get_settings().video_dirs:
        base = Path(directory).resolve()
        candidate = (base / relative).resolve()
        # Absolute paths and symlinks can still point outside the base
        if not candidate.is_relative_to(base):
            logger.warning("video_path_escaped", path=relative, base=str(base))
            continue
        if candidate.is_file():
            return candidate
    return None


def _iter_file(path: Path, start: int, length: int):
    with path.open("rb") as fh:
        fh.seek(start)
        remaining = length
        while remaining > 0:
            chunk = fh.read(min(CHUNK_SIZE, remaining))
            if not chunk:
                break
            remaining -= len(chunk)
            yield chunk


@router.get("/videos/{video_path:path}")
async def serve_video(video_path: str, request: Request):
    if ".." in video_path or "~" in video_path or video_path.startswith(("/", "\\")):
        logger.warning("video_path_rejected", path=video_path)
        raise APIError(403, "Forbidden")

    path = find_video(video_path)
    if path is None:
        raise APIError(404, "Video not found")

    size = path.stat().st_size
    media_type = MIME_TYPES.get(path.suffix.lower(), "video/mp4")
    headers = {"Accept-Ranges": "bytes", "Cache-Control": CACHE_CONTROL}

    range_header = request.headers.get("range")
    if not range_header:
        headers["Content-Length"] = str(size)
        return StreamingResponse(_iter_file(path, 0, size), media_type=media_type, headers=headers)

    try:
        start, end = parse_range(range_header, size)
    except RangeNotSatisfiable:
        raise APIError(416, "Requested range not satisfiable", headers={"Content-Range": f"bytes */{size}"})

    length = end - start + 1
    headers["Content-Range"] = f"bytes {start}-{end}/{size}"
    headers["Content-Length"] = str(length)
    return StreamingResponse(
        _iter_file(path, start, length),
        status_code=206,
        media_type=media_type,
        headers=headers,
    )
