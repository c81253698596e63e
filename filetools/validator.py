"""
Classification of one grid job directory.

The checks run in a fixed order and the first failing one decides the
outcome. Cheap, local checks come first; the duplicate checks, which may
write to the catalog, come last so that a record is only registered for a
job that is otherwise good.
"""

from dataclasses import dataclass
import logging
import os
import time
from typing import List, Optional, Sequence

from filetools.checksum import hexdigest
from filetools.cluster_dir import JobDirectory
from filetools.duplicates import DuplicateCheck
from filetools.failure import FailureReason, JobOutcome
from filetools.filenames import strip_suffix
from filetools.logparser import LogFileInfo, parse_log

logger = logging.getLogger(__name__)


def is_recent(job: JobDirectory, min_age_seconds: float, now: Optional[float] = None) -> bool:
    """True if the job directory was modified less than min_age_seconds ago."""
    now = time.time() if now is None else now
    return job.mtime() > now - min_age_seconds


@dataclass
class ValidationPolicy:
    verify_data: bool = False
    require_meta_pairing: bool = True
    metadata_suffix: str = ".json"
    require_job_stats: bool = False


class CheckFailed(Exception):
    """Internal short-circuit of the check pipeline."""

    def __init__(self, reason: FailureReason, message: str = "") -> None:
        super().__init__(message)
        self.reason = reason
        self.message = message


class JobValidator:
    """
    Run the ordered checks on a job directory.

    Args:
        policy (ValidationPolicy): Which optional checks to apply.
        duplicate_checks (Sequence[DuplicateCheck]): Duplicate checks, in order.
    """

    def __init__(
        self,
        policy: ValidationPolicy,
        duplicate_checks: Sequence[DuplicateCheck] = ()
    ) -> None:
        self.policy = policy
        self.duplicate_checks = list(duplicate_checks)

    def validate(self, job: JobDirectory) -> JobOutcome:
        try:
            log_file = self._check_log_present(job)
            info = self._check_log(job, log_file)
            self._check_metadata_pairing(job, log_file, info)
            self._check_data(job, info)
            self._check_duplicates(job, log_file, info)
        except CheckFailed as e:
            return JobOutcome(job=job, reason=e.reason, message=e.message)
        return JobOutcome(job=job, reason=FailureReason.GOOD)

    def _check_log_present(self, job: JobDirectory) -> str:
        logs = job.log_files()
        if len(logs) != 1:
            raise CheckFailed(FailureReason.NO_LOG, f"found {len(logs)} log files")
        return logs[0]

    def _check_log(self, job: JobDirectory, log_file: str) -> LogFileInfo:
        info = parse_log(log_file)
        if info is None:
            raise CheckFailed(FailureReason.LOG_CHECK, "could not read the log")
        if not info.is_valid:
            raise CheckFailed(FailureReason.LOG_CHECK, "malformed manifest")
        if info.payload_started and not info.payload_ok:
            raise CheckFailed(FailureReason.EXIT_STATUS, "payload did not succeed")
        if not info.self_check_ok:
            raise CheckFailed(
                FailureReason.LOG_CHECK,
                f"self check {info.manifest_self_hash} != {info.computed_log_hash}",
            )

        missing = info.job_stats.missing_fields()
        if missing:
            if self.policy.require_job_stats:
                raise CheckFailed(FailureReason.LOG_CHECK, f"missing job stats: {', '.join(missing)}")
            logger.debug(f"{job}: missing job stats: {', '.join(missing)}")
        return info

    def _check_metadata_pairing(self, job: JobDirectory, log_file: str, info: LogFileInfo) -> None:
        if not self.policy.require_meta_pairing:
            return

        suffix = self.policy.metadata_suffix
        names = list(info.worker_file_digest)
        data_files = {n for n in names if not n.endswith(suffix)}
        data_files.add(os.path.basename(log_file))
        meta_files = [n for n in names if n.endswith(suffix)]

        problems: List[str] = []
        for meta in meta_files:
            if strip_suffix(meta, suffix) not in data_files:
                problems.append(f"{meta} has no data file")
        for data in sorted(data_files):
            count = meta_files.count(data + suffix)
            if data == os.path.basename(log_file) and count == 0:
                continue
            if count != 1:
                problems.append(f"{data} has {count} metadata files")

        if problems:
            raise CheckFailed(FailureReason.META_PAIRED, "; ".join(problems))

    def _check_data(self, job: JobDirectory, info: LogFileInfo) -> None:
        for name in sorted(info.worker_file_digest):
            path = os.path.join(job.path, name)
            try:
                size = os.stat(path).st_size
            except FileNotFoundError:
                raise CheckFailed(FailureReason.DATA_SIZE, f"{name} is missing")
            expected = info.worker_file_size.get(name)
            if size != expected:
                raise CheckFailed(FailureReason.DATA_SIZE, f"{name}: size {size} != {expected}")

        suffix = self.policy.metadata_suffix
        for name, expected in sorted(info.worker_file_digest.items()):
            if not (self.policy.verify_data or name.endswith(suffix)):
                continue
            actual = hexdigest(os.path.join(job.path, name))
            if actual != expected:
                raise CheckFailed(FailureReason.DATA_CHECK, f"{name}: digest {actual} != {expected}")

    def _check_duplicates(self, job: JobDirectory, log_file: str, info: LogFileInfo) -> None:
        for check in self.duplicate_checks:
            reason = check.check(job, os.path.basename(log_file), info)
            if reason is not None:
                raise CheckFailed(reason, f"rejected by {check.__class__.__name__}")
