import logging
import time
from typing import List, Optional

from prefect import flow

from filetools.archive import ArchiveResult, ClusterArchiver
from filetools.config import FileToolsConfig
from filetools.enstore import EnstoreClient
from filetools.samweb import SamWebClient

logger = logging.getLogger(__name__)


@flow(name="cluster_archive")
def cluster_archive_flow(
    cluster_dirs: List[str],
    config: Optional[FileToolsConfig] = None,
    dry_run: bool = False,
    client: Optional[SamWebClient] = None,
    tape_lookup: Optional[EnstoreClient] = None
) -> List[ArchiveResult]:
    """
    Prefect flow that archives the leftover files of good clusters.

    Clusters are processed one after the other; the first fatal error stops
    the flow. Clusters archived before that are complete.

    Args:
        cluster_dirs (List[str]): Good cluster directories to archive.
        config (FileToolsConfig): Tool configuration. Read from disk if not given.
        dry_run (bool): Scan and report only.
        client (SamWebClient): Catalog client. Created from the configuration if not given.
        tape_lookup (EnstoreClient): Tape lookup. The enstore command line tool if not given.

    Returns:
        List[ArchiveResult]: One result per archived cluster.
    """
    if config is None:
        config = FileToolsConfig()
    start = time.monotonic()

    own_client = client is None
    if own_client:
        client = SamWebClient.from_settings(config.catalog)
    if tape_lookup is None:
        tape_lookup = EnstoreClient()

    results: List[ArchiveResult] = []
    try:
        archiver = ClusterArchiver(
            settings=config.archive,
            client=client,
            tape_lookup=tape_lookup,
            metadata_suffix=config.cluster_check.metadata_suffix,
            dry_run=dry_run,
        )
        for cluster_dir in cluster_dirs:
            results.append(archiver.archive(cluster_dir))
    finally:
        catalog_seconds = client.elapsed
        if own_client:
            client.close()
        logger.info(
            f"Archived {len(results)} of {len(cluster_dirs)} clusters in {time.monotonic() - start:.1f} s, "
            f"{catalog_seconds:.1f} s talking to the catalog"
        )

    return results
