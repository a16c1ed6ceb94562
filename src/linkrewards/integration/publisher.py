"""
linkrewards/integration/publisher.py

Writes a completed run's artifacts to a directory, one subdirectory per
epoch:

    <output_dir>/<epoch>/allocation_input.json
    <output_dir>/<epoch>/verification_packet.json
    <output_dir>/<epoch>/merkle_commitment.json
    <output_dir>/<epoch>/rewards.json

Files are written to a temporary name and renamed, so a reader never sees
a half-written artifact. If any of the four already exists the epoch is
refused before anything is written, unless overwrite is set. Only
successful runs reach the publisher.
"""

import json
import logging
import os
import tempfile
from typing import Any, Dict

from ..blockchain.canonical import canonicalize

logger = logging.getLogger("linkrewards.integration.publisher")


class ArtifactPublisher:
    """Publishes run artifacts as JSON files."""

    def __init__(self, output_dir: str, overwrite: bool = False):
        self.output_dir = output_dir
        self.overwrite = overwrite

    def epoch_dir(self, epoch: int) -> str:
        return os.path.join(self.output_dir, str(epoch))

    def _write(self, path: str, content: Any) -> str:
        directory, name = os.path.split(path)
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=f".{name}.")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(canonicalize(content), f, indent=2, sort_keys=True)
                f.write("\n")
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
        return path

    def publish(self, result) -> Dict[str, str]:
        """
        Publish a RunResult.

        Returns:
            Artifact name -> written path
        """
        directory = self.epoch_dir(result.epoch)
        artifacts = {
            "allocation_input": result.allocation_input,
            "verification_packet": result.packet,
            "merkle_commitment": result.commitment,
            "rewards": result.rewards,
        }
        paths = {name: os.path.join(directory, f"{name}.json") for name in artifacts}

        # All or nothing: an existing artifact blocks the whole epoch
        existing = sorted(path for path in paths.values() if os.path.exists(path))
        if existing and not self.overwrite:
            raise FileExistsError(f"Refusing to overwrite {', '.join(existing)}")

        os.makedirs(directory, exist_ok=True)
        written = {name: self._write(paths[name], content) for name, content in artifacts.items()}
        logger.info(f"Published epoch {result.epoch} artifacts to {directory}")
        return written
