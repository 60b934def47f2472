"""
Atomic file replacement for the discovery output.

Prometheus re-reads the file whenever it changes, so it must never see a
half-written document: data goes to a temporary file in the same directory,
is fsynced, and is then renamed over the target in one step.
"""
import os
import stat
import tempfile
from pathlib import Path
from typing import Union

from prometheus_sd.logging.logger import get_logger

logger = get_logger(__name__)

DEFAULT_MODE = 0o644


class AtomicFileWriter:
    """Replaces a file's content atomically"""

    def write(self, path: Union[str, Path], data: bytes) -> None:
        """
        Write `data` to `path` via temp file + rename.

        The target keeps its permission bits; a new file gets 0644 so the
        consumer can read it regardless of the temp file's private mode.

        Raises:
            OSError: any step failed; the target is left untouched
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        mode = self._target_mode(path)

        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_path, mode)
            os.replace(tmp_path, path)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise

        self._sync_directory(path.parent)
        logger.debug("Wrote file atomically", path=str(path), size=len(data))

    @staticmethod
    def _target_mode(path: Path) -> int:
        try:
            return stat.S_IMODE(path.stat().st_mode)
        except FileNotFoundError:
            return DEFAULT_MODE

    @staticmethod
    def _sync_directory(directory: Path) -> None:
        """Persist the rename itself (POSIX only)"""
        if os.name != "posix":
            return
        dir_fd = os.open(directory, os.O_RDONLY)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)
