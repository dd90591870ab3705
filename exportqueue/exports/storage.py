### exportqueue/exports/storage.py

"""
File storage for export output.

Each job writes a single file at ``<root>/.exports/<signature>/<signature>.csv``.
The file grows one page per runner tick and is removed, together with its
directory, when it is downloaded or the job is rejected.
"""

import os
import re
import secrets
from pathlib import Path

from exportqueue.utils.logger import get_logger

logger = get_logger(__name__)

_SIGNATURE_PATTERN = re.compile(r"^[A-Za-z0-9_-]{8,64}$")


class LocalFileStore:
    """
    Export files on the local (or a shared, mounted) filesystem.

    All operations are keyed by job signature.
    """

    def __init__(self, root_dir: str):
        self.root_dir = Path(root_dir)
        self.exports_dir = self.root_dir / ".exports"

    def path_for(self, signature: str) -> Path:
        if not _SIGNATURE_PATTERN.match(signature or ""):
            raise ValueError(f"Invalid export signature: {signature!r}")
        return self.exports_dir / signature / f"{signature}.csv"

    def open(self, signature: str) -> Path:
        """Create the export file, truncating whatever a previous attempt left."""
        path = self.path_for(signature)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "wb"):
            pass
        logger.info("Opened export file", signature=signature, path=str(path))
        return path

    def append(self, signature: str, data: bytes) -> int:
        path = self.path_for(signature)
        with open(path, "ab") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        return len(data)

    def size(self, signature: str) -> int:
        return self.path_for(signature).stat().st_size

    def truncate(self, signature: str, size: int) -> None:
        """Cut the file back to ``size`` bytes, dropping an uncommitted append."""
        on_disk = self.size(signature)
        if on_disk > size:
            logger.warning(
                "Discarding uncommitted export bytes",
                signature=signature,
                committed=size,
                on_disk=on_disk,
            )
            os.truncate(self.path_for(signature), size)

    def read_all(self, signature: str) -> bytes:
        return self.path_for(signature).read_bytes()

    def exists(self, signature: str) -> bool:
        return self.path_for(signature).is_file()

    def delete(self, signature: str) -> None:
        """Remove the file and its directory. Missing files are ignored."""
        path = self.path_for(signature)
        path.unlink(missing_ok=True)
        self._remove_dir(path.parent)

    def claim(self, signature: str) -> bytes:
        """
        Take the file exclusively, read it and delete it.

        The rename is atomic, so among concurrent callers exactly one gets the
        content; the others get FileNotFoundError.
        """
        path = self.path_for(signature)
        claimed = path.with_name(f"{path.name}.{secrets.token_hex(8)}.claimed")
        os.rename(path, claimed)
        try:
            content = claimed.read_bytes()
        except OSError:
            os.rename(claimed, path)
            raise
        claimed.unlink()
        self._remove_dir(path.parent)
        logger.info("Claimed export file", signature=signature, size=len(content))
        return content

    def _remove_dir(self, directory: Path) -> None:
        try:
            directory.rmdir()
        except FileNotFoundError:
            pass
        except OSError as e:
            # Still holds a claim being read by another caller
            logger.debug("Export directory not removed", directory=str(directory), error=str(e))
