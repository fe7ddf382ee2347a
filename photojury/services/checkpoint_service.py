"""
Checkpoint service for resumable batch evaluation.

Saves progress after every N items to enable resume from interruptions.
Uses atomic file writes to prevent corruption, and invalidates any
checkpoint whose configuration fingerprint no longer matches.
"""

import contextlib
import json
import os
from datetime import timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Union

import structlog
from pydantic import ValidationError

from photojury.models.checkpoint import (
    CHECKPOINT_SCHEMA_VERSION,
    BatchCheckpoint,
    BatchSnapshot,
    CheckpointMetadata,
    CheckpointProgress,
    CheckpointStatus,
    CheckpointValidation,
    utc_now,
)
from photojury.models.config import CheckpointConfig
from photojury.observability.metrics import CHECKPOINT_OPERATIONS
from photojury.utils.hash import ConfigLike, canonical_json, fingerprint_config

logger = structlog.get_logger()

PathLike = Union[str, Path]


class CheckpointService:
    """
    Manage batch checkpoints for resume capability.

    One checkpoint per project directory. Provides atomic saves,
    tolerant loads and configuration-drift detection.
    """

    def __init__(self, config: Optional[CheckpointConfig] = None):
        """
        Initialize checkpoint service.

        Args:
            config: Checkpoint configuration
        """
        self.config = config or CheckpointConfig()

        if not self.config.enabled:
            logger.info("checkpoint_service_disabled")
            return

        logger.info(
            "checkpoint_service_initialized",
            filename=self.config.filename,
            max_age_days=self.config.max_age_days,
        )

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    @staticmethod
    def fingerprint(config: ConfigLike) -> str:
        """
        Deterministic fingerprint of a configuration.

        Args:
            config: Pydantic model or JSON-like mapping

        Returns:
            SHA-256 hex digest, independent of key order
        """
        return fingerprint_config(config)

    def checkpoint_path(self, location: PathLike) -> Path:
        """Get checkpoint file path for a project directory"""
        return Path(location) / self.config.filename

    def load(self, location: PathLike) -> Optional[BatchCheckpoint]:
        """
        Load checkpoint for a project.

        Missing, unreadable, corrupt or schema-invalid files are all
        reported as "no checkpoint".

        Args:
            location: Project directory

        Returns:
            Checkpoint if a readable one exists, None otherwise
        """
        if not self.config.enabled:
            return None

        checkpoint_file = self.checkpoint_path(location)

        if not checkpoint_file.exists():
            logger.debug("no_checkpoint_found", path=str(checkpoint_file))
            return None

        try:
            with open(checkpoint_file, "r", encoding="utf-8") as f:
                data = json.load(f)

            checkpoint = BatchCheckpoint.model_validate(data)

        except (OSError, ValueError, ValidationError) as e:
            # json.JSONDecodeError is a ValueError
            logger.warning(
                "checkpoint_load_error",
                path=str(checkpoint_file),
                error=str(e),
            )
            CHECKPOINT_OPERATIONS.labels(operation="load", status="failed").inc()
            return None

        logger.info(
            "checkpoint_loaded",
            path=str(checkpoint_file),
            completed=checkpoint.completed_count,
            failed=len(checkpoint.progress.failed),
            status=checkpoint.progress.status.value,
        )
        CHECKPOINT_OPERATIONS.labels(operation="load", status="success").inc()

        return checkpoint

    def validate(
        self,
        checkpoint: Optional[BatchCheckpoint],
        current_config: ConfigLike,
    ) -> CheckpointValidation:
        """
        Validate a checkpoint against the current configuration.

        Checks, in order: presence and schema version, required fields,
        the completed-subset-of-known invariant, fingerprint equality and
        age. Never raises.

        Args:
            checkpoint: Loaded checkpoint (may be None)
            current_config: Configuration the batch is about to run with

        Returns:
            CheckpointValidation with a human-readable reason
        """
        if checkpoint is None:
            return CheckpointValidation(valid=False, reason="No checkpoint found")

        if checkpoint.schema_version != CHECKPOINT_SCHEMA_VERSION:
            return CheckpointValidation(
                valid=False,
                reason=f"Unsupported checkpoint version: {checkpoint.schema_version}",
            )

        if not checkpoint.config_fingerprint:
            return CheckpointValidation(
                valid=False, reason="Missing config_fingerprint field"
            )

        if not checkpoint.project_id:
            return CheckpointValidation(valid=False, reason="Missing project_id field")

        unknown = checkpoint.progress.completed_set - set(checkpoint.item_ids)
        if unknown:
            return CheckpointValidation(
                valid=False,
                reason=(
                    f"Checkpoint lists {len(unknown)} completed item(s) "
                    "outside its known item set"
                ),
            )

        try:
            current_fingerprint = self.fingerprint(current_config)
        except (TypeError, ValueError) as e:
            return CheckpointValidation(
                valid=False, reason=f"Could not fingerprint current config: {e}"
            )

        if checkpoint.config_fingerprint != current_fingerprint:
            return CheckpointValidation(
                valid=False,
                reason="Config changed since checkpoint (fingerprint mismatch)",
            )

        created_at = checkpoint.metadata.created_at
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)

        age = utc_now() - created_at
        if age > timedelta(days=self.config.max_age_days):
            return CheckpointValidation(
                valid=False,
                reason=f"Checkpoint too old ({age.days} days)",
            )

        return CheckpointValidation(valid=True, reason="Checkpoint valid")

    def save(self, checkpoint: BatchCheckpoint, location: PathLike) -> bool:
        """
        Save checkpoint atomically.

        Args:
            checkpoint: Checkpoint to persist
            location: Project directory

        Returns:
            True if saved successfully
        """
        if not self.config.enabled:
            return True

        checkpoint_file = self.checkpoint_path(location)

        # Atomic write: write to temp file, then rename
        temp_file = checkpoint_file.with_name(checkpoint_file.name + ".tmp")

        try:
            checkpoint_file.parent.mkdir(parents=True, exist_ok=True)
            checkpoint.metadata.last_updated_at = utc_now()

            with open(temp_file, "w", encoding="utf-8") as f:
                f.write(checkpoint.model_dump_json(indent=2))
                f.flush()
                os.fsync(f.fileno())

            # Atomic rename, replacing any previous checkpoint
            os.replace(temp_file, checkpoint_file)

        except OSError as e:
            logger.error(
                "checkpoint_save_error",
                path=str(checkpoint_file),
                error=str(e),
            )
            CHECKPOINT_OPERATIONS.labels(operation="save", status="failed").inc()
            with contextlib.suppress(OSError):
                temp_file.unlink(missing_ok=True)
            return False

        logger.debug(
            "checkpoint_saved",
            path=str(checkpoint_file),
            completed=checkpoint.completed_count,
            failed=len(checkpoint.progress.failed),
        )
        CHECKPOINT_OPERATIONS.labels(operation="save", status="success").inc()

        return True

    def initialize(
        self,
        project_id: str,
        config: ConfigLike,
        item_ids: Iterable[str],
        checkpoint_interval: int = 10,
        max_slots: int = 1,
        item_directory: Optional[str] = None,
    ) -> BatchCheckpoint:
        """
        Build a fresh checkpoint with empty progress.

        Args:
            project_id: Project identity
            config: Configuration the batch runs with
            item_ids: Full known item set
            checkpoint_interval: Save every N items
            max_slots: Concurrency ceiling for the batch
            item_directory: Directory the items were discovered in

        Returns:
            New in-progress checkpoint
        """
        now = utc_now()

        return BatchCheckpoint(
            project_id=project_id,
            config_fingerprint=self.fingerprint(config),
            parameters=json.loads(canonical_json(config)),
            item_ids=list(dict.fromkeys(item_ids)),
            progress=CheckpointProgress(),
            results={},
            batch=BatchSnapshot(
                checkpoint_interval=checkpoint_interval,
                max_slots=max_slots,
                item_directory=item_directory,
            ),
            metadata=CheckpointMetadata(created_at=now, last_updated_at=now),
        )

    def update(
        self,
        checkpoint: BatchCheckpoint,
        newly_completed: Iterable[str],
        new_results: Mapping[str, Dict[str, Any]],
        newly_failed: Optional[Mapping[str, str]] = None,
    ) -> BatchCheckpoint:
        """
        Merge new completions, results and failures into a checkpoint.

        Merge semantics make the result independent of arrival order:
        completions are a set union, results a dict merge, and an item
        that completes is removed from the failed map.

        Args:
            checkpoint: Current checkpoint
            newly_completed: Item IDs finished since the last update
            new_results: Results for those items
            newly_failed: Item ID -> failure reason

        Returns:
            Updated copy of the checkpoint
        """
        completed = checkpoint.progress.completed_set | set(newly_completed)

        failed = dict(checkpoint.progress.failed)
        for item_id, reason in (newly_failed or {}).items():
            if item_id not in completed:
                failed[item_id] = reason
        for item_id in completed:
            failed.pop(item_id, None)

        results = dict(checkpoint.results)
        results.update(new_results)

        # Keep the subset invariant: anything recorded joins the known set
        known = list(checkpoint.item_ids)
        known_set = set(known)
        for item_id in sorted((completed | set(failed)) - known_set):
            known.append(item_id)

        progress = checkpoint.progress.model_copy(
            update={"completed_ids": sorted(completed), "failed": failed}
        )
        return checkpoint.model_copy(
            update={
                "item_ids": known,
                "progress": progress,
                "results": results,
                "metadata": checkpoint.metadata.model_copy(
                    update={"last_updated_at": utc_now()}
                ),
            }
        )

    def mark_resumed(self, checkpoint: BatchCheckpoint) -> BatchCheckpoint:
        """Record that a batch resumed from this checkpoint"""
        metadata = checkpoint.metadata.model_copy(
            update={
                "last_resumed_at": utc_now(),
                "resume_count": checkpoint.metadata.resume_count + 1,
            }
        )
        return checkpoint.model_copy(update={"metadata": metadata})

    def mark_complete(self, checkpoint: BatchCheckpoint) -> BatchCheckpoint:
        """Set status to complete"""
        progress = checkpoint.progress.model_copy(
            update={"status": CheckpointStatus.COMPLETE}
        )
        return checkpoint.model_copy(update={"progress": progress})

    def delete(self, location: PathLike) -> bool:
        """
        Delete checkpoint for a project.

        Args:
            location: Project directory

        Returns:
            True if deleted (or nothing to delete)
        """
        if not self.config.enabled:
            return True

        checkpoint_file = self.checkpoint_path(location)

        if not checkpoint_file.exists():
            return True

        try:
            checkpoint_file.unlink()
        except OSError as e:
            logger.error(
                "checkpoint_delete_error",
                path=str(checkpoint_file),
                error=str(e),
            )
            return False

        logger.info("checkpoint_deleted", path=str(checkpoint_file))
        CHECKPOINT_OPERATIONS.labels(operation="delete", status="success").inc()
        return True
