"""
Manifest persistence — atomic read/write for DeploymentManifest.

The manifest is stored as JSON in .state/manifest.json. Writes are
atomic (write to temp file, then rename) so a crash mid-deploy never
leaves a half-written manifest behind.
"""

from __future__ import annotations

import json
import logging
import tempfile
from pathlib import Path
from typing import Any

from infracompose.core.models.manifest import DeploymentManifest

logger = logging.getLogger(__name__)

# Default manifest path (relative to project root)
DEFAULT_STATE_DIR = ".state"
DEFAULT_MANIFEST_FILE = "manifest.json"


def default_manifest_path(project_root: Path) -> Path:
    """Get the default manifest path for a project."""
    return project_root / DEFAULT_STATE_DIR / DEFAULT_MANIFEST_FILE


def load_manifest(path: Path) -> DeploymentManifest:
    """Load the deployment manifest.

    Returns:
        DeploymentManifest. If the file doesn't exist, a fresh one.

    Raises:
        ValueError: The file exists but is corrupt. Deploying on top of
            an unreadable manifest would re-create live resources, so
            this is never silently replaced.
    """
    if not path.is_file():
        logger.info("No manifest at %s — starting fresh", path)
        return DeploymentManifest()

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        manifest = DeploymentManifest.model_validate(data)
    except (json.JSONDecodeError, ValueError) as e:
        raise ValueError(f"Corrupt manifest {path}: {e}") from e

    logger.debug("Loaded manifest from %s (updated_at=%s)", path, manifest.updated_at)
    return manifest


def save_manifest(manifest: DeploymentManifest, path: Path) -> None:
    """Save the manifest (atomic write)."""
    manifest.touch()
    write_json_atomic(path, manifest.model_dump(mode="json"), prefix=".manifest_")
    logger.debug("Manifest saved to %s", path)


def write_json_atomic(path: Path, data: Any, prefix: str = ".state_") -> None:
    """Write JSON via temp-file-then-rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    content = json.dumps(data, indent=2, ensure_ascii=False) + "\n"

    _fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=prefix, suffix=".tmp")
    tmp = Path(tmp_path)
    try:
        with open(_fd, "w", encoding="utf-8") as f:
            f.write(content)
        tmp.replace(path)
    except Exception as e:
        tmp.unlink(missing_ok=True)
        logger.error("Failed to write %s: %s", path, e)
        raise
