"""
Iteration over the job-level subdirectories of a mu2eprodsys cluster.

A cluster directory has a fixed layout, ``<cluster>/<shard>/<job>``, for
example ``85432172/00/00826``. Other processes (including other instances of
the tools in this package) may move or delete job directories while we walk
the tree, so the second level is only listed when it is reached.
"""

from dataclasses import dataclass
import glob
import logging
import os
import re
from typing import Iterator, List, Optional

from filetools.errors import ClusterDirError, JobNameError

logger = logging.getLogger(__name__)

LOG_GLOB = "*.log"

# Five digits, optionally followed by the hex suffix left behind by an
# incomplete rename in the upstream output staging.
JOB_NAME_RE = re.compile(r"^(\d{5})(?:\.[0-9a-fA-F]+)?$")


def normalize_job_name(name: str) -> str:
    """
    Strip the tmp suffix from a job directory name.

    >>> normalize_job_name("00826.0144a733")
    '00826'

    Raises:
        JobNameError: If the name is not five digits with an optional suffix.
    """
    m = JOB_NAME_RE.match(name)
    if not m:
        raise JobNameError(f"Unexpected job directory name '{name}'")
    return m.group(1)


@dataclass(frozen=True)
class JobDirectory:
    """One job attempt: ``<cluster>/<shard>/<name>`` under some root."""
    path: str
    cluster: str
    shard: str
    name: str

    @classmethod
    def from_path(cls, path: str) -> "JobDirectory":
        path = os.path.normpath(path)
        shard_dir, name = os.path.split(path)
        cluster_dir, shard = os.path.split(shard_dir)
        return cls(path=path, cluster=os.path.basename(cluster_dir), shard=shard, name=name)

    @property
    def relative_path(self) -> str:
        return os.path.join(self.cluster, self.shard, self.name)

    @property
    def normalized_name(self) -> str:
        return normalize_job_name(self.name)

    def exists(self) -> bool:
        return os.path.isdir(self.path)

    def mtime(self) -> float:
        return os.stat(self.path).st_mtime

    def log_files(self) -> List[str]:
        return sorted(glob.glob(os.path.join(glob.escape(self.path), LOG_GLOB)))

    def __str__(self) -> str:
        return self.path


def get_dir_entries(dirname: str, missing_ok: bool = False) -> Optional[List[str]]:
    """
    Return the sorted entries of a directory.

    A cluster directory holds at most a thousand subdirectories, so reading
    them all in memory is fine. Any error while opening or reading the
    directory is fatal: an incomplete listing on a distributed file system
    would silently skip jobs.

    Args:
        dirname (str): Directory to list.
        missing_ok (bool): Return None instead of failing if the directory
            does not exist (any longer).

    Raises:
        ClusterDirError: If the directory can not be listed.
    """
    try:
        with os.scandir(dirname) as it:
            entries = [entry.name for entry in it]
    except FileNotFoundError as e:
        if missing_ok:
            return None
        logger.error(f"Error listing {dirname}: {e}")
        raise ClusterDirError(f"Error listing {dirname}: {e}") from e
    except OSError as e:
        logger.error(f"Error listing {dirname}: {e}")
        raise ClusterDirError(f"Error listing {dirname}: {e}") from e
    return sorted(entries)


def iterate_cluster(cluster_dir: str) -> Iterator[JobDirectory]:
    """
    Lazily yield every job directory of a cluster in sorted order.

    Entries starting with a dot are ignored at both levels. A shard directory
    that disappears between the two listings has been moved by another
    process and is skipped.
    """
    cluster_dir = cluster_dir.rstrip("/") or "/"

    for shard in get_dir_entries(cluster_dir):
        if shard.startswith("."):
            continue
        shard_dir = os.path.join(cluster_dir, shard)
        if os.path.lexists(shard_dir) and not os.path.isdir(shard_dir):
            logger.debug(f"Skipping non-directory {shard_dir}")
            continue

        names = get_dir_entries(shard_dir, missing_ok=True)
        if names is None:
            logger.warning(f"{shard_dir} disappeared during the walk, skipping")
            continue

        for name in names:
            if name.startswith("."):
                continue
            jobdir = os.path.join(shard_dir, name)
            if not os.path.isdir(jobdir):
                logger.debug(f"Skipping non-directory {jobdir}")
                continue
            yield JobDirectory(path=jobdir, cluster=os.path.basename(cluster_dir), shard=shard, name=name)
