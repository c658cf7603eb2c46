"""
Retention policy enforcement for local backup artifacts.

Deletes dump artifacts older than RETENTION_DAYS from the local backup tree.
Runs after every scheduled job, whether or not the job succeeded.
"""

import logging
import os
import time
from typing import Any, Dict, Optional

from flask import current_app

logger = logging.getLogger(__name__)

ARTIFACT_SUFFIXES = ('.sql', '.gz', '.zip')


class RetentionManager:
    """
    Removes old artifacts under a base directory.

    Only files ending in .sql, .gz or .zip are considered; anything else in
    the tree is left alone.
    """

    def __init__(self, base_dir: str, retention_days: int):
        self.base_dir = base_dir
        self.retention_days = retention_days
        self.logs = []

    def cleanup(self, now: Optional[float] = None) -> Dict[str, Any]:
        """
        Delete artifacts whose mtime is older than the retention window.

        Returns:
            Dict with summary of the pass:
            {
                'files_scanned': int,
                'deleted': int,
                'errors': List[str]
            }
        """
        summary = {
            'files_scanned': 0,
            'deleted': 0,
            'errors': []
        }

        if self.retention_days is None or self.retention_days <= 0:
            self._log("Retention disabled, skipping cleanup")
            return summary

        if not os.path.isdir(self.base_dir):
            return summary

        cutoff = (now or time.time()) - self.retention_days * 86400
        self._log(f"Removing artifacts older than {self.retention_days} days from {self.base_dir}")

        for dirpath, _, filenames in os.walk(self.base_dir):
            for filename in filenames:
                if not filename.endswith(ARTIFACT_SUFFIXES):
                    continue

                path = os.path.join(dirpath, filename)
                summary['files_scanned'] += 1
                try:
                    if os.path.getmtime(path) < cutoff:
                        os.remove(path)
                        summary['deleted'] += 1
                        self._log(f"Removed old backup: {path}")
                except FileNotFoundError:
                    # Removed concurrently, e.g. by an upload that just completed
                    continue
                except OSError as e:
                    error_msg = f"Failed to remove {path}: {e}"
                    self._log(error_msg)
                    summary['errors'].append(error_msg)

        self._log(
            f"Retention cleanup complete. "
            f"Scanned: {summary['files_scanned']}, "
            f"Deleted: {summary['deleted']}, "
            f"Errors: {len(summary['errors'])}"
        )
        return summary

    def _log(self, message: str):
        self.logs.append(message)
        logger.info(message)


def enforce_retention_policy() -> Dict[str, Any]:
    """Run a retention pass with the current app's LOCAL_BACKUP_DIR and RETENTION_DAYS."""
    config = current_app.config
    manager = RetentionManager(config['LOCAL_BACKUP_DIR'], config['RETENTION_DAYS'])
    return manager.cleanup()
