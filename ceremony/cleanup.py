"""
Cleanup Policy: delete a stage's intermediate files once its terminal
artifact exists and has passed verification.
"""

import logging
from pathlib import Path
from typing import List, Sequence

from .artifacts import Artifact, ArtifactStore
from .errors import PreconditionError

logger = logging.getLogger(__name__)


class CleanupPolicy:
    """Removes intermediates only behind a verified terminal artifact"""

    def __init__(self, store: ArtifactStore, keep_intermediates: bool = False):
        self.store = store
        self.keep_intermediates = keep_intermediates

    def apply(self, terminal: Artifact, intermediates: Sequence[Artifact],
              verified: bool) -> List[Path]:
        """Delete intermediates and return the paths actually removed.

        Running before verification would let a failed ceremony look
        successful just because its intermediates are gone.
        """
        if not verified:
            raise PreconditionError(
                "Refusing to clean up before the terminal artifact is verified",
                stage=terminal.stage.value, artifact=terminal.path)
        if not self.store.exists(terminal):
            raise PreconditionError(
                "Refusing to clean up: terminal artifact is missing",
                stage=terminal.stage.value, artifact=terminal.path)

        if self.keep_intermediates:
            logger.info(f" Keeping {len(intermediates)} intermediate files for {terminal.stage.value}")
            return []

        logger.info(f" Cleaning intermediate {terminal.stage.value} files...")
        removed = []
        for artifact in intermediates:
            if artifact.final or artifact.path == terminal.path:
                continue
            try:
                if self.store.remove(artifact.path):
                    removed.append(artifact.path)
            except OSError as e:
                # Downstream stages only depend on the terminal artifact
                logger.warning(f"Could not delete intermediate {artifact.path}: {e}")
        return removed
