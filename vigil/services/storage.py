"""Local filesystem storage for uploaded dependency files."""

import logging
import os
import re
import secrets

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


def safe_file_name(original: str) -> str:
    """Random prefix plus the original name with anything outside [A-Za-z0-9_.-] replaced."""
    base = os.path.basename(original or "") or "file"
    return f"{secrets.token_hex(6)}-{_UNSAFE_CHARS.sub('_', base)}"


class LocalFileStorage:
    """Stores files under a root directory; callers deal in paths relative to it."""

    def __init__(self, root: str) -> None:
        self._root = os.path.abspath(root)

    @property
    def root(self) -> str:
        return self._root

    def absolute_path(self, relative_path: str) -> str:
        path = os.path.abspath(os.path.join(self._root, relative_path))
        if os.path.commonpath([path, self._root]) != self._root:
            raise ValueError(f"Path escapes storage root: {relative_path}")
        return path

    def write(self, relative_path: str, content: bytes) -> str:
        """Write content and return the absolute path."""
        path = self.absolute_path(relative_path)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "wb") as fh:
            fh.write(content)
        logger.debug("Stored upload", extra={"path": relative_path, "size": len(content)})
        return path

    def exists(self, relative_path: str) -> bool:
        return os.path.isfile(self.absolute_path(relative_path))
