"""Validation of object-storage keys before they touch the local filesystem.

Storage keys are built from report content (screenshot file names, test ids
from the uploaded report), so they are untrusted input. The local blob
backend maps keys onto files under a base directory; this module makes sure
a key can never escape that directory.

Security Features:
    - Pattern-based dangerous string detection (traversal, URL schemes,
      null bytes, shell metacharacters)
    - Rejection of absolute keys
    - Symbolic link detection before resolution
    - Directory boundary enforcement using relative_to()
    - Optional extension whitelist
    - Security event logging through structlog

Called by:
    - reporthub.storage.blob_store.LocalBlobStore: every object write
"""

import stat
from pathlib import Path, PurePosixPath
from typing import Optional

import structlog

logger = structlog.get_logger()

DANGEROUS_PATTERNS = (
    "..",
    "~",
    "file://",
    "http://",
    "https://",
    "\x00",
    "\\",
    "|",
    ";",
    "&",
    "`",
    "$(",
    "${",
)


class PathValidationError(Exception):
    """Raised when a storage key fails validation.

    Covers traversal attempts, symbolic links, dangerous patterns and keys
    that resolve outside the storage root.
    """

    pass


class SecurePathValidator:
    """Resolve storage keys to paths confined to a base directory.

    Security Model:
        1. Pattern-based dangerous string detection
        2. Symbolic link check before resolution
        3. Path resolution with boundary enforcement
        4. Extension validation

    Performance:
        - Validation: O(n*p) where n=key length, p=pattern count
    """

    def __init__(self, base_dir: str, allowed_extensions: Optional[list[str]] = None):
        """Create the validator, creating ``base_dir`` if it does not exist yet.

        Raises:
            ValueError: If ``base_dir`` exists but is not a directory
        """
        self.base_dir = Path(base_dir).resolve()
        self.allowed_extensions = [e.lower() for e in allowed_extensions or []]

        self.base_dir.mkdir(parents=True, exist_ok=True)
        if not self.base_dir.is_dir():
            raise ValueError(f"Base path is not a directory: {self.base_dir}")

    def validate_key(self, key: str) -> Path:
        """Validate a storage key and return the filesystem path it maps to.

        Args:
            key: Slash-separated key such as ``test-steps/<run>/<test>-0.json``

        Returns:
            Resolved path inside the base directory

        Raises:
            PathValidationError: If any check fails
        """
        if not key or not key.strip():
            raise PathValidationError("Storage key cannot be empty")
        key = key.strip()

        for pattern in DANGEROUS_PATTERNS:
            if pattern in key:
                logger.warning(
                    "Dangerous pattern detected in storage key",
                    key=key,
                    pattern=pattern,
                    extra={"security_event": True},
                )
                raise PathValidationError(f"Storage key contains dangerous pattern: {pattern!r}")

        if PurePosixPath(key).is_absolute():
            raise PathValidationError("Storage key must be relative")

        candidate = self.base_dir.joinpath(*PurePosixPath(key).parts)

        # lstat so a link is detected before anything follows it
        if candidate.exists() or candidate.is_symlink():
            try:
                if stat.S_ISLNK(candidate.lstat().st_mode):
                    logger.warning(
                        "Symbolic link detected",
                        path=str(candidate),
                        extra={"security_event": True},
                    )
                    raise PathValidationError("Symbolic links are not allowed")
            except OSError as e:
                raise PathValidationError("Unable to validate file status") from e

        resolved = candidate.resolve()
        try:
            resolved.relative_to(self.base_dir)
        except ValueError:
            logger.warning(
                "Storage key outside base directory",
                key=key,
                base_dir=str(self.base_dir),
                extra={"security_event": True},
            )
            raise PathValidationError("Storage key is outside the storage root") from None

        if self.allowed_extensions and resolved.suffix.lower() not in self.allowed_extensions:
            raise PathValidationError(f"File extension '{resolved.suffix}' not allowed")

        return resolved
