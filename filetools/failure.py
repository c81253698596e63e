from dataclasses import dataclass
from enum import Enum
from typing import Optional

from filetools.cluster_dir import JobDirectory


class FailureReason(Enum):
    """
    Classification of a checked job directory.

    Exactly one reason applies to a job. The values double as the directory
    labels under ``failed/``.
    """
    NO_LOG = "nolog"
    LOG_CHECK = "logcheck"
    EXIT_STATUS = "exitstatus"
    DATA_SIZE = "datasize"
    META_PAIRED = "metapaired"
    DATA_CHECK = "datacheck"
    GRID_DUPLICATE = "gridduplicate"
    RESUBMISSION_DUPLICATE = "resubmissionduplicate"
    GOOD = "good"

    @property
    def is_good(self) -> bool:
        return self is FailureReason.GOOD


@dataclass
class JobOutcome:
    job: JobDirectory
    reason: FailureReason
    message: str = ""
    destination: Optional[str] = None

    def summary_line(self) -> str:
        status = "PASS" if self.reason.is_good else f"FAIL {self.reason.value}"
        line = f"{status} {self.job.relative_path}"
        if self.message:
            line += f": {self.message}"
        return line
