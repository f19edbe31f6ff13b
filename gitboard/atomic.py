"""
Atomic document persistence.

Writes go to a temporary file in the destination's directory which is then
renamed over the destination. The rename is the only step that has to be
atomic, so readers see either the old content or the new content in full.
"""

import asyncio
import logging
import os
import tempfile
from pathlib import Path

from gitboard.exceptions import AtomicWriteError

logger = logging.getLogger(__name__)


class AtomicDocumentStore:
    """Write-temp, rename, cleanup-on-failure. Holds no state."""

    async def write_atomic(self, path: Path | str, content: str) -> None:
        """Replace the file at path with content.

        Raises:
            AtomicWriteError: If any step fails. The destination is untouched
                and the temporary file has been removed.
        """
        await asyncio.to_thread(self.write_atomic_sync, Path(path), content)

    def write_atomic_sync(self, path: Path, content: str) -> None:
        """Blocking variant of write_atomic()."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        try:
            fd, temp_path = tempfile.mkstemp(
                dir=path.parent,
                prefix=f".{path.name}.",
                suffix=".tmp",
                text=True,
            )
        except OSError as e:
            raise AtomicWriteError(f"Failed to write {path}: {e}") from e

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())

            os.replace(temp_path, path)
        except Exception as e:
            try:
                os.unlink(temp_path)
            except FileNotFoundError:
                pass
            except OSError as cleanup_error:
                logger.warning(
                    f"Could not remove temporary file {temp_path}: {cleanup_error}"
                )
            raise AtomicWriteError(f"Failed to write {path}: {e}") from e

        logger.debug(f"Wrote {len(content)} characters to {path}")
