"""
Scoped working directory for raw key and certificate files.

A run writes the CA, node and client material here as it goes. A temporary
directory is removed when the run ends, however it ends.
"""

import os
import shutil
import tempfile
from pathlib import Path
from typing import Optional

from ..error_handling import WorkAreaError

# Private keys and certificates alike are written owner-only
FILE_MODE = 0o600
DIR_MODE = 0o700


class WorkArea:
    """Context manager owning the working directory of a single run."""

    def __init__(
        self,
        path: Optional[Path] = None,
        overwrite_files: bool = False,
        prefix: str = "crdb-certs-",
    ):
        """Initialize the working area.

        Args:
            path: Use this directory instead of a fresh temporary one;
                it is kept after the run
            overwrite_files: Replace files that already exist
            prefix: Prefix for the temporary directory name
        """
        self._requested_path = Path(path) if path else None
        self.overwrite_files = overwrite_files
        self.prefix = prefix
        self.path: Optional[Path] = None
        self._owned = False

    def __enter__(self) -> "WorkArea":
        try:
            if self._requested_path is None:
                self.path = Path(tempfile.mkdtemp(prefix=self.prefix))
                self._owned = True
            else:
                self._requested_path.mkdir(parents=True, exist_ok=True)
                self.path = self._requested_path
            if os.name != "nt":
                os.chmod(self.path, DIR_MODE)
        except OSError as e:
            raise WorkAreaError(f"failed to create working directory: {e}") from e
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cleanup()

    def cleanup(self) -> None:
        """Remove the directory if this work area created it."""
        if self._owned and self.path is not None:
            shutil.rmtree(self.path, ignore_errors=True)
            self._owned = False

    def _target(self, filename: str) -> Path:
        if self.path is None:
            raise WorkAreaError("working area used outside of its context")
        if not filename or filename == ".." or Path(filename).name != filename:
            raise WorkAreaError(f"invalid working file name: {filename!r}")
        return self.path / filename

    def write(self, filename: str, content: bytes) -> Path:
        """Write a file with owner-only permissions.

        Args:
            filename: Bare file name inside the working directory
            content: File content

        Returns:
            Path to the written file

        Raises:
            WorkAreaError: If the file exists and overwriting is disabled,
                or the write fails
        """
        target = self._target(filename)
        flags = os.O_WRONLY | os.O_CREAT
        flags |= os.O_TRUNC if self.overwrite_files else os.O_EXCL

        try:
            fd = os.open(target, flags, FILE_MODE)
            with os.fdopen(fd, "wb") as f:
                f.write(content)
            if os.name != "nt":
                os.chmod(target, FILE_MODE)
        except FileExistsError as e:
            raise WorkAreaError(
                f"{target} already exists. "
                "Hint: enable overwrite_files to replace existing files."
            ) from e
        except OSError as e:
            raise WorkAreaError(f"failed to write {target}: {e}") from e

        return target

    def read(self, filename: str) -> bytes:
        """Read a file previously written to the working directory.

        Raises:
            WorkAreaError: If the file cannot be read
        """
        target = self._target(filename)
        try:
            return target.read_bytes()
        except OSError as e:
            raise WorkAreaError(f"failed to read {target}: {e}") from e

    def exists(self, filename: str) -> bool:
        return self._target(filename).exists()
