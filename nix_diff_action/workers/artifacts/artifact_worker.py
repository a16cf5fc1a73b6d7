"""
Artifact Worker

Diff results travel between jobs as JSON artifacts: ``diff-only`` jobs of
a matrix each write one, and a final ``comment-only`` job reads all of
them back to post a single comment. The workflow moves the directory
with the upload/download-artifact actions; this worker owns the layout:

    <artifact_directory>/<artifact name>/diff-results.json
"""

import hashlib
import json
import logging
import re
from pathlib import Path
from typing import List, Sequence

from pydantic import ValidationError

from nix_diff_action.shared.errors import ArtifactError
from nix_diff_action.shared.models import DiffResult

logger = logging.getLogger(__name__)

ARTIFACT_PREFIX = "diff-result-"
RESULTS_FILE = "diff-results.json"


def create_artifact_name(display_name: str) -> str:
    """Artifact-safe, collision-resistant name for one target's results."""
    safe = re.sub(r"[^a-zA-Z0-9_-]", "-", display_name)
    digest = hashlib.sha256(display_name.encode("utf-8")).hexdigest()[:6]
    return f"{ARTIFACT_PREFIX}{safe}-{digest}"


class ArtifactWorker:

    def __init__(self, directory: str):
        self.directory = Path(directory)

    def upload_diff_results(self, results: Sequence[DiffResult], display_name: str) -> Path:
        name = create_artifact_name(display_name)
        target = self.directory / name / RESULTS_FILE
        payload = [r.model_dump(by_alias=True) for r in results]
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(target, 'w', encoding='utf-8') as f:
                json.dump(payload, f, indent=2, ensure_ascii=False)
        except OSError as e:
            raise ArtifactError(name, f"could not write {target}: {e}") from e

        logger.info(f"Saved {len(results)} diff result(s) to artifact {name}")
        return target

    def download_diff_results(self) -> List[DiffResult]:
        """All results found under the artifact directory, ordered by artifact name."""
        if not self.directory.is_dir():
            raise ArtifactError(f"{ARTIFACT_PREFIX}*", f"artifact directory {self.directory} does not exist")

        artifact_dirs = sorted(
            p for p in self.directory.iterdir() if p.is_dir() and p.name.startswith(ARTIFACT_PREFIX)
        )
        if not artifact_dirs:
            raise ArtifactError(f"{ARTIFACT_PREFIX}*", f"no diff result artifacts found in {self.directory}")

        results: List[DiffResult] = []
        for artifact_dir in artifact_dirs:
            results.extend(self._read_artifact(artifact_dir))

        logger.info(f"Loaded {len(results)} diff result(s) from {len(artifact_dirs)} artifact(s)")
        return results

    def _read_artifact(self, artifact_dir: Path) -> List[DiffResult]:
        path = artifact_dir / RESULTS_FILE
        try:
            with open(path, 'r', encoding='utf-8') as f:
                payload = json.load(f)
            if not isinstance(payload, list):
                raise ArtifactError(artifact_dir.name, f"{path} does not contain a JSON array")
            return [DiffResult.model_validate(item) for item in payload]
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            raise ArtifactError(artifact_dir.name, f"could not read {path}: {e}") from e
