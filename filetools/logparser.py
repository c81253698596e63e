"""
Parser for the log file written by a mu2eprodsys grid job.

Besides the payload output, the log carries a manifest written by the job
wrapper at the end of the job:

    # mu2egrid manifest
    # -rw-r--r-- 1 mu2epro mu2e 123456 Jan 12 03:04 sim.mu2e.x.y.001000_00000000.art
    <sha256>  sim.mu2e.x.y.001000_00000000.art
    ...
    # mu2egrid manifest selfcheck: <sha256 of all the other log lines>

The manifest runs to the end of file. The self-check digest lets us detect a
log that was truncated or corrupted on its way back from the worker node.
"""

from dataclasses import dataclass, field
import hashlib
import logging
import re
from typing import Dict, List, Optional

from filetools.checksum import HASH_ALGORITHM

logger = logging.getLogger(__name__)

PAYLOAD_STARTED_PREFIX = "mu2egrid: payload started"
MANIFEST_START_RE = re.compile(r"^# mu2egrid manifest\s*$")
SELFCHECK_RE = re.compile(r"^# mu2egrid manifest selfcheck: ([0-9a-fA-F]+)")
MANIFEST_DIGEST_RE = re.compile(r"^([0-9a-fA-F]+)\s+(\S+)$")

GRID_STATUS_RE = re.compile(r"^mu2egrid exit status (\d+)")
ART_STATUS_RE = re.compile(r"^Art has completed and will exit with status (\d+)")
PARENT_RE = re.compile(r"^mu2egrid origFCL = (\S+)")
HOST_RE = re.compile(r"^mu2egrid host = (\S+)")
SITE_RE = re.compile(r"^mu2egrid site = (\S+)")
CPU_RE = re.compile(r"^TimeReport CPU = ([\d.]+)")
MEMORY_RE = re.compile(r"^MemReport\s+VmHWM = ([\d.]+)")
DISK_RE = re.compile(r"^mu2egrid disk usage kB = (\d+)")

# Columns of an "ls -l" line after the leading "#" is dropped.
LS_SIZE_COLUMN = 4
LS_MIN_COLUMNS = 9


@dataclass
class JobStats:
    cpu_seconds: Optional[float] = None
    max_resident_mb: Optional[float] = None
    disk_usage_kb: Optional[int] = None
    host: Optional[str] = None
    site: Optional[str] = None

    def missing_fields(self) -> List[str]:
        values = [
            ("cpu_seconds", self.cpu_seconds),
            ("max_resident_mb", self.max_resident_mb),
            ("disk_usage_kb", self.disk_usage_kb),
            ("host", self.host),
            ("site", self.site),
        ]
        return [name for name, value in values if value is None]

    def is_complete(self) -> bool:
        return not self.missing_fields()


@dataclass
class LogFileInfo:
    """
    Facts extracted from one job log.

    payload_ok is None when the manifest could not be parsed, in which case
    the whole record must be treated as invalid.
    """
    manifest_self_hash: Optional[str] = None
    computed_log_hash: Optional[str] = None
    worker_file_size: Dict[str, int] = field(default_factory=dict)
    worker_file_digest: Dict[str, str] = field(default_factory=dict)
    payload_started: bool = False
    payload_ok: Optional[bool] = None
    parent_identifier: Optional[str] = None
    job_stats: JobStats = field(default_factory=JobStats)

    @property
    def is_valid(self) -> bool:
        return self.payload_ok is not None

    @property
    def self_check_ok(self) -> bool:
        return (
            self.manifest_self_hash is not None
            and self.manifest_self_hash.lower() == (self.computed_log_hash or "").lower()
        )


class ManifestFormatError(ValueError):
    pass


class _LogScanner:
    """Line-by-line state for parse_log()."""

    def __init__(self) -> None:
        self.info = LogFileInfo()
        self.digest = hashlib.new(HASH_ALGORITHM)
        self.in_manifest = False
        self.grid_status: Optional[int] = None
        self.art_statuses: List[int] = []

    def feed(self, raw: bytes) -> None:
        line = raw.decode("utf-8", errors="replace").rstrip("\r\n")

        m = SELFCHECK_RE.match(line)
        if m:
            if self.info.manifest_self_hash is not None:
                raise ManifestFormatError("duplicate manifest selfcheck line")
            self.info.manifest_self_hash = m.group(1)
            return

        self.digest.update(raw)

        if self.in_manifest:
            self._manifest_line(line)
        elif MANIFEST_START_RE.match(line):
            self.in_manifest = True
        else:
            self._payload_line(line)

    def _manifest_line(self, line: str) -> None:
        if line.startswith("#"):
            columns = line[1:].split()
            if len(columns) >= LS_MIN_COLUMNS:
                try:
                    self.info.worker_file_size[columns[-1]] = int(columns[LS_SIZE_COLUMN])
                except ValueError:
                    logger.debug(f"Ignoring manifest comment: {line}")
            return

        m = MANIFEST_DIGEST_RE.match(line)
        if not m:
            raise ManifestFormatError(f"bad manifest line: {line!r}")
        self.info.worker_file_digest[m.group(2)] = m.group(1).lower()

    def _payload_line(self, line: str) -> None:
        if line.startswith(PAYLOAD_STARTED_PREFIX):
            self.info.payload_started = True
            return

        for pattern, handler in self._handlers():
            m = pattern.match(line)
            if m:
                try:
                    handler(m.group(1))
                except ValueError:
                    logger.debug(f"Unparsable value in log line: {line}")
                return

    def _handlers(self):
        stats = self.info.job_stats
        return [
            (GRID_STATUS_RE, lambda v: setattr(self, "grid_status", int(v))),
            (ART_STATUS_RE, lambda v: self.art_statuses.append(int(v))),
            (PARENT_RE, lambda v: setattr(self.info, "parent_identifier", v)),
            (HOST_RE, lambda v: setattr(stats, "host", v)),
            (SITE_RE, lambda v: setattr(stats, "site", v)),
            (CPU_RE, lambda v: setattr(stats, "cpu_seconds", float(v))),
            (MEMORY_RE, lambda v: setattr(stats, "max_resident_mb", float(v))),
            (DISK_RE, lambda v: setattr(stats, "disk_usage_kb", int(v))),
        ]

    def result(self) -> LogFileInfo:
        self.info.computed_log_hash = self.digest.hexdigest()
        self.info.payload_ok = (
            self.grid_status == 0
            and bool(self.art_statuses)
            and all(status == 0 for status in self.art_statuses)
        )
        return self.info


def parse_log(logfilename: str) -> Optional[LogFileInfo]:
    """
    Parse one job log.

    Args:
        logfilename (str): Path to the log file.

    Returns:
        LogFileInfo: Parsed facts. If the manifest is malformed the returned
            record is invalid (payload_ok is None) and carries no file entries.
        None: If the log could not be opened or read.
    """
    scanner = _LogScanner()
    try:
        with open(logfilename, "rb") as log:
            for raw in log:
                scanner.feed(raw)
    except ManifestFormatError as e:
        logger.warning(f"Invalid manifest in {logfilename}: {e}")
        return LogFileInfo(
            manifest_self_hash=scanner.info.manifest_self_hash,
            payload_started=scanner.info.payload_started,
            payload_ok=None,
        )
    except OSError as e:
        logger.warning(f"Could not read {logfilename}: {e}")
        return None

    return scanner.result()
