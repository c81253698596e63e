from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
import hashlib
import logging
import os
from typing import Any, Dict, List, Optional, Set

from filetools.cluster_dir import JobDirectory
from filetools.errors import CatalogConflictError
from filetools.failure import FailureReason
from filetools.filenames import Mu2eFilename
from filetools.logparser import LogFileInfo
from filetools.promoter import good_destination
from filetools.samweb import SamWebClient

logger = logging.getLogger(__name__)

JOBTRACK_TIER = "jobtrack"
SELFHASH_FIELD = "job.selfhash"
KEY_FIELD = "job.key"
FCL_TIER = "cnf"
FCL_EXTENSION = "fcl"


class DuplicateCheck(ABC):
    """
    Abstract base class for duplicate detection.

    A check returns the FailureReason to classify the job with, or None if
    the job is not a duplicate.
    """

    @abstractmethod
    def check(
        self,
        job: JobDirectory,
        log_file: str,
        info: LogFileInfo
    ) -> Optional[FailureReason]:
        pass


class SameClusterDuplicateCheck(DuplicateCheck):
    """
    A job of this cluster with the same number was already promoted to good/.

    This happens when the batch system runs a job section twice.
    """

    def __init__(self, dst_root: str) -> None:
        self.dst_root = dst_root

    def check(
        self,
        job: JobDirectory,
        log_file: str,
        info: LogFileInfo
    ) -> Optional[FailureReason]:
        dest = good_destination(self.dst_root, job)
        if os.path.lexists(dest):
            logger.info(f"{job}: {dest} already exists")
            return FailureReason.GRID_DUPLICATE
        return None


@dataclass(frozen=True)
class JobIdentity:
    """
    What makes two job executions "the same job".

    Resubmissions of one fcl file share the identity. The record takes the
    sequencer of the fcl file when the fcl is named after the dataset of the
    log; any other parent is named by a hash of its file name, so different
    parents never share a record. Jobs without a parent fcl fall back to the
    log file name.
    """
    owner: str
    description: str
    configuration: str
    sequencer: str
    key: str

    @classmethod
    def from_job(cls, log_file: str, parent: Optional[str]) -> "JobIdentity":
        """
        Raises:
            ValueError: If log_file is not a Mu2e file name.
        """
        log_name = Mu2eFilename.parse(log_file)

        if parent:
            key = os.path.basename(parent)
            sequencer = _parent_sequencer(log_name, key)
        else:
            sequencer = log_name.sequencer
            key = log_name.basename

        return cls(
            owner=log_name.owner,
            description=log_name.description,
            configuration=log_name.configuration,
            sequencer=sequencer,
            key=key,
        )

    @property
    def record_name(self) -> Mu2eFilename:
        return Mu2eFilename(
            tier=JOBTRACK_TIER,
            owner=self.owner,
            description=self.description,
            configuration=self.configuration,
            sequencer=self.sequencer,
            extension="txt",
        )

    def metadata(self, self_hash: str, cluster: str) -> Dict[str, Any]:
        name = self.record_name
        return {
            "file_name": name.basename,
            "file_type": "other",
            "file_format": "txt",
            "file_size": 0,
            "data_tier": JOBTRACK_TIER,
            "dh.dataset": name.dataset,
            "dh.owner": self.owner,
            "dh.description": self.description,
            "dh.configuration": self.configuration,
            "dh.sequencer": self.sequencer,
            KEY_FIELD: self.key,
            "job.cluster": cluster,
            SELFHASH_FIELD: self_hash,
        }


def _parent_sequencer(log_name: Mu2eFilename, parent: str) -> str:
    try:
        parent_name = Mu2eFilename.parse(parent)
    except ValueError:
        parent_name = None
    if parent_name is not None:
        expected = log_name.with_fields(tier=FCL_TIER, sequencer=parent_name.sequencer, extension=FCL_EXTENSION)
        if parent_name == expected:
            return parent_name.sequencer
    return hashlib.sha256(parent.encode()).hexdigest()[:16]


class CatalogDuplicateCheck(DuplicateCheck):
    """
    Detect a job that already succeeded in a different submission.

    The check registers a job-tracking record in the catalog. If the record
    exists already, the self hash stored in it tells whether it was written
    by this very job (a previous run that crashed before moving the
    directory) or by a different execution of the same job.

    Args:
        client (SamWebClient): Catalog client.
        dry_run (bool): Only look for existing records, never declare.
    """

    def __init__(self, client: SamWebClient, dry_run: bool = False) -> None:
        self.client = client
        self.dry_run = dry_run
        self._definitions: Set[str] = set()

    def check(
        self,
        job: JobDirectory,
        log_file: str,
        info: LogFileInfo
    ) -> Optional[FailureReason]:
        try:
            identity = JobIdentity.from_job(log_file, info.parent_identifier)
        except ValueError as e:
            logger.warning(f"{job}: can not track the job: {e}")
            return FailureReason.LOG_CHECK
        metadata = identity.metadata(info.manifest_self_hash, job.cluster)
        name = metadata["file_name"]

        if self.dry_run:
            if not self.client.list_files(f"file_name {name}"):
                return None
            return self._compare(job, identity, name, info.manifest_self_hash)

        self._ensure_definition(metadata["dh.dataset"])
        try:
            self.client.declare_file(metadata)
        except CatalogConflictError:
            return self._compare(job, identity, name, info.manifest_self_hash)
        return None

    def _compare(
        self,
        job: JobDirectory,
        identity: JobIdentity,
        name: str,
        self_hash: str
    ) -> Optional[FailureReason]:
        existing = self.client.get_metadata(name)
        if existing.get(KEY_FIELD) != identity.key:
            logger.warning(f"{job}: {name} is registered for {existing.get(KEY_FIELD)}, not {identity.key}")
            return None
        if existing.get(SELFHASH_FIELD) == self_hash:
            logger.info(f"{job}: {name} was registered by this job in an earlier run")
            return None
        logger.info(f"{job}: {name} belongs to a different execution of the same job")
        return FailureReason.RESUBMISSION_DUPLICATE

    def _ensure_definition(self, dataset: str) -> None:
        if dataset in self._definitions:
            return
        self.client.ensure_definition(dataset)
        self._definitions.add(dataset)


class DuplicateMethod(Enum):
    """
    Duplicate detection policies.

    Attributes:
        SINGLE: Same-cluster check only.
        TWO_TIER: Same-cluster check, then the catalog-backed check.
    """
    SINGLE = "single"
    TWO_TIER = "two-tier"


def get_duplicate_checks(
    method: DuplicateMethod,
    dst_root: str,
    client: Optional[SamWebClient] = None,
    dry_run: bool = False
) -> List[DuplicateCheck]:
    """
    Factory function returning the duplicate checks for a policy, in order.

    Raises:
        ValueError: If the policy needs a catalog client and none is given.
    """
    checks: List[DuplicateCheck] = [SameClusterDuplicateCheck(dst_root)]
    if method == DuplicateMethod.SINGLE:
        return checks
    elif method == DuplicateMethod.TWO_TIER:
        if client is None:
            raise ValueError("Two-tier duplicate detection needs a catalog client")
        checks.append(CatalogDuplicateCheck(client, dry_run=dry_run))
        return checks
    else:
        error_msg = f"Invalid duplicate detection method: {method}"
        logger.error(error_msg)
        raise ValueError(error_msg)
