from collections import Counter
from dataclasses import dataclass, field
import logging
import time
from typing import List, Optional

from prefect import flow

from filetools.cluster_dir import iterate_cluster, normalize_job_name
from filetools.config import FileToolsConfig
from filetools.duplicates import DuplicateMethod, get_duplicate_checks
from filetools.failure import FailureReason, JobOutcome
from filetools.promoter import ClusterPromoter
from filetools.samweb import SamWebClient
from filetools.validator import JobValidator, ValidationPolicy, is_recent

logger = logging.getLogger(__name__)


@dataclass
class RunSummary:
    """Tally of one check-and-move invocation."""
    counts: Counter = field(default_factory=Counter)
    skipped_recent: int = 0
    vanished: int = 0
    catalog_seconds: float = 0.0
    elapsed_seconds: float = 0.0

    def record(self, outcome: JobOutcome) -> None:
        self.counts[outcome.reason] += 1

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    @property
    def num_good(self) -> int:
        return self.counts[FailureReason.GOOD]

    def format_report(self) -> str:
        lines = [f"Checked {self.total} job directories in {self.elapsed_seconds:.1f} s:"]
        for reason in FailureReason:
            if self.counts[reason]:
                lines.append(f"    {reason.value:<24s} {self.counts[reason]}")
        if self.skipped_recent:
            lines.append(f"    skipped as too recent    {self.skipped_recent}")
        if self.vanished:
            lines.append(f"    moved by another process {self.vanished}")
        lines.append(f"Time spent talking to the catalog: {self.catalog_seconds:.1f} s")
        return "\n".join(lines)


def check_cluster(
    cluster_dir: str,
    validator: JobValidator,
    promoter: ClusterPromoter,
    min_age_seconds: float,
    summary: RunSummary,
    now: Optional[float] = None
) -> RunSummary:
    """
    Validate and move every job directory of one cluster.

    Fatal errors propagate and stop the run; the directories processed so far
    are already in their final place, so a re-run picks up where this one
    stopped.
    """
    logger.info(f"Checking cluster {cluster_dir}")
    now = time.time() if now is None else now

    for job in iterate_cluster(cluster_dir):
        # Raises JobNameError for names that do not follow the layout.
        normalize_job_name(job.name)

        try:
            if is_recent(job, min_age_seconds, now):
                logger.debug(f"Skipping recent {job}")
                summary.skipped_recent += 1
                continue
        except FileNotFoundError:
            logger.info(f"{job} was moved by another process")
            summary.vanished += 1
            continue

        outcome = validator.validate(job)
        if promoter.promote(outcome) is None:
            summary.vanished += 1
            continue

        summary.record(outcome)
        logger.info(outcome.summary_line())

    return summary


@flow(name="cluster_check_and_move")
def cluster_check_flow(
    cluster_dirs: List[str],
    config: Optional[FileToolsConfig] = None,
    dry_run: bool = False,
    client: Optional[SamWebClient] = None
) -> RunSummary:
    """
    Prefect flow that checks grid job output and moves it to good/ or failed/.

    Args:
        cluster_dirs (List[str]): Cluster directories to process.
        config (FileToolsConfig): Tool configuration. Read from disk if not given.
        dry_run (bool): Classify only; nothing is moved or declared.
        client (SamWebClient): Catalog client for two-tier duplicate detection.
            Created from the configuration when needed and not given.

    Returns:
        RunSummary: Per-reason tally of the run.
    """
    if config is None:
        config = FileToolsConfig()
    settings = config.cluster_check
    start = time.monotonic()

    method = DuplicateMethod(settings.duplicate_detection)
    own_client = client is None and method == DuplicateMethod.TWO_TIER
    if own_client:
        client = SamWebClient.from_settings(config.catalog)

    summary = RunSummary()
    try:
        validator = JobValidator(
            policy=ValidationPolicy(
                verify_data=settings.verify_data,
                require_meta_pairing=settings.require_meta_pairing,
                metadata_suffix=settings.metadata_suffix,
                require_job_stats=settings.require_job_stats,
            ),
            duplicate_checks=get_duplicate_checks(method, settings.dst_root, client=client, dry_run=dry_run),
        )
        promoter = ClusterPromoter(
            dst_root=settings.dst_root,
            max_attempts=settings.max_rename_attempts,
            dry_run=dry_run,
        )
        for cluster_dir in cluster_dirs:
            check_cluster(cluster_dir, validator, promoter, settings.min_age_seconds, summary)
    finally:
        if client is not None:
            summary.catalog_seconds = client.elapsed
        if own_client:
            client.close()
        summary.elapsed_seconds = time.monotonic() - start

    logger.info(summary.format_report())
    return summary
