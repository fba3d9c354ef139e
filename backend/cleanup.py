"""
Background cleanup task.

Runs every CLEANUP_INTERVAL seconds and deletes uploaded source files in
UPLOAD_DIR that are older than UPLOAD_MAX_AGE seconds, skipping files that a
running job still reads. Rendered clips are never touched: they are what
finished and failed jobs point their download URLs at.
"""

import asyncio
import logging
import os
import time
from pathlib import Path
from typing import Callable, Iterable, Optional

logger = logging.getLogger(__name__)

UPLOAD_DIR: str = os.getenv("UPLOAD_DIR", "./uploads")
CLEANUP_INTERVAL: int = int(os.getenv("CLEANUP_INTERVAL", str(30 * 60)))   # run every 30 minutes
UPLOAD_MAX_AGE: int = int(os.getenv("UPLOAD_MAX_AGE", str(24 * 60 * 60)))  # delete uploads older than a day


async def cleanup_old_files(
    in_use: Callable[[], Iterable[str]] = set,
    directory: str = UPLOAD_DIR,
) -> None:
    """Infinite loop: sleep, then delete stale uploads not listed by *in_use*."""
    while True:
        try:
            await asyncio.sleep(CLEANUP_INTERVAL)
            _delete_stale_files(Path(directory), UPLOAD_MAX_AGE, in_use())
        except asyncio.CancelledError:
            # Shutdown: stop the loop
            break
        except Exception as exc:
            # Log but never crash the background task
            logger.exception("[Cleanup] Unexpected error: %r", exc)


def _delete_stale_files(
    directory: Path,
    max_age: float,
    keep: Iterable[str] = (),
    now: Optional[float] = None,
) -> int:
    if not directory.exists():
        return 0

    now = time.time() if now is None else now
    protected = {Path(p).resolve() for p in keep}
    deleted = 0

    for file in directory.iterdir():
        if not file.is_file() or file.resolve() in protected:
            continue
        age = now - file.stat().st_mtime
        if age > max_age:
            try:
                file.unlink()
                deleted += 1
            except OSError as exc:
                logger.warning("[Cleanup] Could not delete %s: %r", file.name, exc)

    if deleted:
        logger.info("[Cleanup] Deleted %d stale file(s) from %s", deleted, directory)
    return deleted
