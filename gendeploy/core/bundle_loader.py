"""Load and validate configuration bundles from a directory."""
import fnmatch
import hashlib
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

from gendeploy.core.logger import get_logger
from gendeploy.models.bundle import ConfigBundle
from gendeploy.models.errors import ValidationError

logger = get_logger(__name__)

DEFAULT_IGNORE = (
    ".git",
    "result*",
    "*.tmp",
    ".DS_Store",
    "*.swp",
    "__pycache__",
)
DEFAULT_MANIFEST = "flake.nix"
DEFAULT_MAX_FILE_SIZE = 10 * 1024 * 1024


def compute_fingerprint(files: Dict[str, bytes]) -> str:
    """Hash (path, content) pairs in lexicographic path order.

    Each entry is framed as ``path NUL length NUL content`` so that moving
    bytes between a path and its content always changes the digest.
    """
    digest = hashlib.sha256()
    for path in sorted(files):
        content = files[path]
        digest.update(path.encode("utf-8"))
        digest.update(b"\0")
        digest.update(str(len(content)).encode("ascii"))
        digest.update(b"\0")
        digest.update(content)
    return digest.hexdigest()


class BundleLoader:
    """Reads a bundle root into an immutable ConfigBundle.

    Loading is a pure read: nothing on disk or on any target is modified.
    """

    def __init__(
        self,
        ignore: Optional[Iterable[str]] = None,
        manifest: Optional[str] = DEFAULT_MANIFEST,
        required_files: Optional[Sequence[str]] = None,
        max_file_size: int = DEFAULT_MAX_FILE_SIZE,
    ):
        self.ignore = tuple(ignore) if ignore is not None else DEFAULT_IGNORE
        self.manifest = manifest
        self.required_files = list(required_files or [])
        self.max_file_size = max_file_size

    def is_ignored(self, relative_path: str) -> bool:
        """True if any path component, or the whole relative path, matches the ignore set."""
        parts = relative_path.split("/")
        for pattern in self.ignore:
            if fnmatch.fnmatch(relative_path, pattern):
                return True
            if any(fnmatch.fnmatch(part, pattern) for part in parts):
                return True
        return False

    def load(self, directory) -> ConfigBundle:
        """Load and validate a bundle.

        Args:
            directory: Bundle root

        Returns:
            ConfigBundle with a deterministic fingerprint

        Raises:
            ValidationError: Root missing, manifest or required file absent,
                oversized file, or empty bundle
        """
        root = Path(directory).expanduser()
        if not root.exists():
            raise ValidationError(f"Bundle root does not exist: {root}")
        if not root.is_dir():
            raise ValidationError(f"Bundle root is not a directory: {root}")

        files = self._read_files(root)
        if not files:
            raise ValidationError(f"Bundle at {root} contains no files")

        missing = self._missing_required(files)
        if missing:
            raise ValidationError(
                f"Bundle at {root} is missing required file(s): {', '.join(missing)}"
            )

        fingerprint = compute_fingerprint(files)
        logger.debug(f"Loaded bundle {fingerprint[:12]} from {root} ({len(files)} files)")

        return ConfigBundle(
            fingerprint=fingerprint,
            files=files,
            created_at=datetime.now(),
            root=root.resolve(),
        )

    def _read_files(self, root: Path) -> Dict[str, bytes]:
        files: Dict[str, bytes] = {}
        for path in sorted(root.rglob("*")):
            relative = path.relative_to(root).as_posix()
            if self.is_ignored(relative):
                continue
            if path.is_symlink() and path.is_dir():
                logger.warning(f"Skipping symlinked directory in bundle: {relative}")
                continue
            if not path.is_file():
                continue

            size = path.stat().st_size
            if size > self.max_file_size:
                raise ValidationError(
                    f"File {relative} is {size} bytes, above the {self.max_file_size} byte limit. "
                    f"Large binaries do not belong in a configuration bundle."
                )

            try:
                files[relative] = path.read_bytes()
            except OSError as e:
                raise ValidationError(f"Cannot read {relative}: {e}") from e

        return dict(sorted(files.items()))

    def _missing_required(self, files: Dict[str, bytes]) -> List[str]:
        required = list(self.required_files)
        if self.manifest:
            required.insert(0, self.manifest)
        return [name for name in required if name not in files]
