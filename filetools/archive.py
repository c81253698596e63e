"""
Archival of the files left over in a good cluster.

After the data files of a cluster have been uploaded and cataloged one by
one, the job directories still hold the per-job logs (and possibly some
other small files). Those are bundled into a single tar archive per cluster,
written to tape-backed storage and declared in the catalog with the job
inputs as parents.
"""

from dataclasses import dataclass, field
import gzip
import logging
import os
import shutil
import tarfile
import time
from typing import Callable, Dict, List, Optional, Set, Tuple

from filetools.checksum import HashingWriter
from filetools.cluster_dir import iterate_cluster
from filetools.config import ArchiveSettings
from filetools.enstore import EnstoreClient, make_location, tape_backed
from filetools.errors import ArchiveError, CatalogConflictError
from filetools.filenames import Mu2eFilename, strip_suffix
from filetools.logparser import parse_log
from filetools.samweb import SamWebClient

logger = logging.getLogger(__name__)

ARCHIVE_TIER = "bck"
ARCHIVE_EXTENSION = "tgz"
LOG_TIER = "log"
CHECKSUM_FIELD = "dh.sha256"
PARTIAL_SUFFIX = ".part"


def partial_path(dest: str) -> str:
    return dest + PARTIAL_SUFFIX


@dataclass
class ClusterSummary:
    """What the logs of a cluster say about the archive to be made."""
    template: Optional[Mu2eFilename] = None
    min_sequencer: Optional[str] = None
    parents: Set[str] = field(default_factory=set)

    @property
    def dataset(self) -> Optional[str]:
        return self.template.dataset if self.template else None

    def add_log(self, log_name: Mu2eFilename, parent: Optional[str]) -> None:
        if self.template is None:
            self.template = log_name
        elif log_name.dataset != self.template.dataset:
            raise ArchiveError(f"Logs from more than one dataset: {self.template.dataset}, {log_name.dataset}")

        if self.min_sequencer is None or log_name.sequencer < self.min_sequencer:
            self.min_sequencer = log_name.sequencer
        if parent:
            self.parents.add(parent)

    def archive_name(self) -> Mu2eFilename:
        if self.template is None:
            raise ArchiveError("No log files found, can not name the archive")
        return self.template.with_fields(
            tier=ARCHIVE_TIER,
            sequencer=self.min_sequencer,
            extension=ARCHIVE_EXTENSION,
        )


@dataclass
class ArchiveResult:
    cluster: str
    file_name: str
    path: str
    size: int
    digest: str
    parents: List[str]
    attempts: int
    location: Optional[str] = None
    registered: bool = False


class ClusterArchiver:
    """
    Stage a good cluster, tar up what is left in it and register the archive.

    Args:
        settings (ArchiveSettings): Staging/archive roots, allow list, retries.
        client (SamWebClient): Catalog client used for the registration.
        tape_lookup (EnstoreClient): Tape label lookup for the location string.
        metadata_suffix (str): Suffix of metadata side files.
        dry_run (bool): Scan and report only.
        sleep (Callable): Used between archive attempts.
    """

    def __init__(
        self,
        settings: ArchiveSettings,
        client: Optional[SamWebClient] = None,
        tape_lookup: Optional[EnstoreClient] = None,
        metadata_suffix: str = ".json",
        dry_run: bool = False,
        sleep: Callable[[float], None] = time.sleep
    ) -> None:
        if settings.max_tries < 1:
            raise ValueError("max_tries must be >= 1")
        if client is None and not dry_run:
            raise ValueError("A catalog client is needed to register archives")
        self.settings = settings
        self.client = client
        self.tape_lookup = tape_lookup
        self.metadata_suffix = metadata_suffix
        self.dry_run = dry_run
        self.sleep = sleep

    def archive(self, cluster_dir: str) -> ArchiveResult:
        """
        Archive one cluster.

        Raises:
            ArchiveError: If a file is outside the allowed datasets, all archive attempts
                failed, or the cluster could not be staged. Nothing is registered then.
        """
        cluster = os.path.basename(cluster_dir.rstrip("/"))
        workdir = cluster_dir if self.dry_run else self.stage(cluster_dir)

        files, summary = self.scan(workdir)
        name = summary.archive_name()
        dest = os.path.join(self.settings.archive_root, name.relative_path())
        parents = sorted(summary.parents)
        logger.info(f"Cluster {cluster}: {len(files)} files -> {name}, {len(parents)} parents")

        if self.dry_run:
            logger.info(f"Would write {dest}")
            return ArchiveResult(cluster, name.basename, dest, 0, "", parents, attempts=0)

        written = self.registered_copy(name, dest)
        if written:
            size, digest = written
            attempts = 0
        else:
            size, digest, attempts = self.write_with_retry(workdir, files, dest)
        result = ArchiveResult(cluster, name.basename, dest, size, digest, parents, attempts)
        self.register(result, name)

        if not self.settings.keep_staged:
            shutil.rmtree(workdir)
            logger.info(f"Removed {workdir}")
        return result

    def stage(self, cluster_dir: str) -> str:
        """
        Move the cluster to a private staging area.

        Job-completion processes may still be adding job directories to the
        cluster tree; after the rename they add to a fresh tree instead.
        """
        cluster_dir = cluster_dir.rstrip("/")
        staged = os.path.join(self.settings.staging_root, os.path.basename(cluster_dir))

        if os.path.lexists(staged):
            if os.path.lexists(cluster_dir):
                raise ArchiveError(f"Both {cluster_dir} and the staged {staged} exist")
            logger.info(f"Resuming with already staged {staged}")
            return staged

        try:
            os.makedirs(self.settings.staging_root, exist_ok=True)
            os.rename(cluster_dir, staged)
        except OSError as e:
            logger.error(f"Error staging {cluster_dir}: {e}")
            raise ArchiveError(f"Error staging {cluster_dir} to {staged}: {e}") from e
        logger.info(f"Staged {cluster_dir} to {staged}")
        return staged

    def dataset_of(self, filename: str) -> Optional[str]:
        try:
            return Mu2eFilename.parse(strip_suffix(filename, self.metadata_suffix)).dataset
        except ValueError:
            return None

    def scan(self, workdir: str):
        """
        List the files to archive and summarize the logs.

        Returns:
            (list of paths relative to workdir, ClusterSummary)

        Raises:
            ArchiveError: If any file is outside the allowed datasets.
        """
        summary = ClusterSummary()
        files: List[str] = []
        datasets: Dict[str, List[str]] = {}

        for job in iterate_cluster(workdir):
            for root, dirs, names in os.walk(job.path):
                dirs.sort()
                for filename in sorted(names):
                    path = os.path.join(root, filename)
                    files.append(os.path.relpath(path, workdir))
                    datasets.setdefault(self.dataset_of(filename), []).append(path)

                    if filename.endswith(".log"):
                        try:
                            log_name = Mu2eFilename.parse(filename)
                        except ValueError:
                            continue
                        if log_name.tier != LOG_TIER:
                            continue
                        info = parse_log(path)
                        if info is None:
                            raise ArchiveError(f"Can not read {path}")
                        summary.add_log(log_name, info.parent_identifier)

        allowed = set(self.settings.allowed_datasets)
        if summary.dataset:
            allowed.add(summary.dataset)
        for dataset, paths in datasets.items():
            if dataset not in allowed:
                logger.error(f"Files not in an allowed dataset ({dataset}): {paths[:5]}")
                raise ArchiveError(f"{len(paths)} files of dataset {dataset} are not allowed, e.g. {paths[0]}")

        return files, summary

    def registered_copy(self, name: Mu2eFilename, dest: str) -> Optional[Tuple[int, str]]:
        """
        Size and digest of an archive written and declared by an earlier run.

        Returns None if dest still has to be written.
        """
        if not os.path.exists(dest):
            return None
        if not self.client.list_files(f"file_name {name.basename}"):
            return None
        existing = self.client.get_metadata(name.basename)
        if existing.get("file_size") != os.path.getsize(dest) or not existing.get(CHECKSUM_FIELD):
            logger.warning(f"{dest} does not match its catalog record, writing it again")
            return None
        logger.info(f"{dest} was written and declared by an earlier run")
        return existing["file_size"], existing[CHECKSUM_FIELD]

    def write_archive(self, workdir: str, files: List[str], dest: str):
        """
        Write a gzipped tar of files, digesting the stream as it is written.

        The gzip header carries no timestamp, so the same inputs always give
        the same archive and the same digest. The archive is written under a
        temporary name and renamed to dest once complete.

        Returns:
            (size in bytes, sha256 hex digest)
        """
        os.makedirs(os.path.dirname(dest), exist_ok=True)
        tmp = partial_path(dest)
        with open(tmp, "wb") as out:
            writer = HashingWriter(out)
            with gzip.GzipFile(filename="", mode="wb", fileobj=writer, mtime=0) as gz:
                with tarfile.open(fileobj=gz, mode="w", format=tarfile.PAX_FORMAT) as tar:
                    for relpath in files:
                        tar.add(os.path.join(workdir, relpath), arcname=relpath, recursive=False)
            out.flush()
            os.fsync(out.fileno())
        os.replace(tmp, dest)
        return writer.bytes_written, writer.hexdigest()

    def write_with_retry(self, workdir: str, files: List[str], dest: str):
        """
        Write the archive, starting from scratch on each failure.

        Returns:
            (size, digest, number of attempts)

        Raises:
            ArchiveError: After max_tries failed attempts.
        """
        last_error = None
        for attempt in range(1, self.settings.max_tries + 1):
            try:
                size, digest = self.write_archive(workdir, files, dest)
                logger.info(f"Wrote {dest}: {size} bytes, sha256 {digest}")
                return size, digest, attempt
            except (OSError, tarfile.TarError) as e:
                last_error = e
                logger.warning(f"Error writing {dest} (attempt {attempt}/{self.settings.max_tries}): {e}")
                self._remove_partial(partial_path(dest))
                if attempt < self.settings.max_tries:
                    self.sleep(self.settings.delay_seconds * 2 ** (attempt - 1))

        logger.error(f"Giving up on {dest} after {self.settings.max_tries} attempts")
        raise ArchiveError(f"Could not write {dest} after {self.settings.max_tries} attempts: {last_error}")

    @staticmethod
    def _remove_partial(path: str) -> None:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove partial {path}: {e}")

    def metadata(self, result: ArchiveResult, name: Mu2eFilename) -> dict:
        return {
            "file_name": name.basename,
            "file_type": "other",
            "file_format": name.extension,
            "file_size": result.size,
            "data_tier": name.tier,
            "dh.dataset": name.dataset,
            "dh.owner": name.owner,
            "dh.description": name.description,
            "dh.configuration": name.configuration,
            "dh.sequencer": name.sequencer,
            CHECKSUM_FIELD: result.digest,
            "parents": [{"file_name": p} for p in result.parents],
        }

    def register(self, result: ArchiveResult, name: Mu2eFilename) -> None:
        """
        Declare the archive and add its location.

        A record with the same name and checksum was declared by an earlier
        run of this tool that stopped before cleaning up.
        """
        self.client.ensure_definition(name.dataset)
        try:
            self.client.declare_file(self.metadata(result, name))
        except CatalogConflictError:
            existing = self.client.get_metadata(name.basename)
            if existing.get(CHECKSUM_FIELD) != result.digest:
                raise ArchiveError(f"{name} is already declared with a different checksum")
            logger.info(f"{name} was already declared by an earlier run")
        result.registered = True

        result.location = self._location_for(result.path)
        if result.location:
            try:
                self.client.add_location(name.basename, result.location)
            except CatalogConflictError:
                logger.info(f"{name} already has location {result.location}")

    def _location_for(self, path: str) -> Optional[str]:
        tape_info = None
        if tape_backed(path):
            if self.tape_lookup is None:
                logger.info(f"No tape lookup configured, not adding a location for {path}")
                return None
            tape_info = self.tape_lookup.get_info(path)
            if tape_info is None:
                logger.info(f"{path} is not on tape yet, its location will be added later")
                return None
        try:
            return make_location(path, tape_info)
        except ValueError as e:
            logger.warning(f"Not adding a location: {e}")
            return None
