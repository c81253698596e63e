import errno
import logging
import os
from typing import Optional

from filetools.cluster_dir import JobDirectory
from filetools.errors import PromotionError
from filetools.failure import FailureReason, JobOutcome

logger = logging.getLogger(__name__)

_OCCUPIED_ERRNOS = (errno.EEXIST, errno.ENOTEMPTY)


def good_destination(dst_root: str, job: JobDirectory) -> str:
    return os.path.join(dst_root, "good", job.cluster, job.shard, job.normalized_name)


def failed_destination(dst_root: str, job: JobDirectory, reason: FailureReason) -> str:
    return os.path.join(dst_root, "failed", reason.value, job.cluster, job.shard, job.name)


class ClusterPromoter:
    """
    Move checked job directories to their final place.

    Directories are only ever renamed, never copied, so a job can not end up
    in two places. Several promoters may work on the same destination tree
    at the same time; "already exists" conditions are expected and handled.

    Args:
        dst_root (str): Root of the ``good/`` and ``failed/`` trees.
        max_attempts (int): How many ``.failNN`` names to try for an occupied
            failed destination before giving up.
        dry_run (bool): Log what would be done without touching anything.
    """

    def __init__(
        self,
        dst_root: str,
        max_attempts: int = 100,
        dry_run: bool = False
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.dst_root = dst_root
        self.max_attempts = max_attempts
        self.dry_run = dry_run

    def promote(self, outcome: JobOutcome) -> Optional[str]:
        """
        Move the job directory of an outcome to its destination.

        A good job whose destination turns out to be taken (another validator
        got there first) is reclassified as a grid duplicate.

        Args:
            outcome (JobOutcome): The classified job; its destination is set.

        Returns:
            str: The final path of the job directory.
            None: If the job directory vanished before it could be moved.

        Raises:
            PromotionError: If the directory can not be moved.
        """
        if outcome.reason.is_good:
            dest = good_destination(self.dst_root, outcome.job)
            moved = self._rename(outcome.job, dest)
            if moved is not False:
                outcome.destination = moved
                return moved
            logger.warning(f"{dest} appeared while checking {outcome.job}, treating as a duplicate")
            outcome.reason = FailureReason.GRID_DUPLICATE
            outcome.message = f"destination {dest} already exists"

        base = failed_destination(self.dst_root, outcome.job, outcome.reason)
        for attempt in range(self.max_attempts):
            dest = base if attempt == 0 else f"{base}.fail{attempt - 1:02d}"
            moved = self._rename(outcome.job, dest)
            if moved is not False:
                outcome.destination = moved
                return moved
            logger.debug(f"{dest} is occupied")

        logger.error(f"Could not find a free destination for {outcome.job} after {self.max_attempts} attempts")
        raise PromotionError(f"No free destination for {outcome.job} under {base} after {self.max_attempts} attempts")

    def _rename(self, job: JobDirectory, dest: str):
        """
        Try one rename.

        Returns the destination on success, None if the source is gone, and
        False if the destination is occupied.
        """
        if os.path.lexists(dest):
            return False

        if self.dry_run:
            logger.info(f"Would move {job} to {dest}")
            return dest

        try:
            os.makedirs(os.path.dirname(dest), exist_ok=True)
        except OSError as e:
            logger.error(f"Error creating {os.path.dirname(dest)}: {e}")
            raise PromotionError(f"Error creating {os.path.dirname(dest)}: {e}") from e

        try:
            os.rename(job.path, dest)
        except OSError as e:
            if e.errno in _OCCUPIED_ERRNOS:
                return False
            if not os.path.lexists(job.path):
                logger.warning(f"{job} disappeared before it could be moved")
                return None
            logger.error(f"Error moving {job} to {dest}: {e}")
            raise PromotionError(f"Error moving {job} to {dest}: {e}") from e

        logger.debug(f"Moved {job} to {dest}")
        return dest
