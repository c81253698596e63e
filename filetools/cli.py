import logging
from typing import List, Optional

from dotenv import load_dotenv
import typer

from filetools.config import FileToolsConfig
from filetools.duplicates import DuplicateMethod
from filetools.errors import FatalError
from filetools.flows.cluster_archive import cluster_archive_flow
from filetools.flows.cluster_check import cluster_check_flow
from filetools.samweb import SamWebClient

load_dotenv()

logger = logging.getLogger(__name__)

app = typer.Typer(help="Post-processing of mu2eprodsys grid job output.")


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_config(config_file: Optional[str]) -> FileToolsConfig:
    if config_file:
        return FileToolsConfig.from_file(config_file)
    return FileToolsConfig()


@app.command("check-and-move")
def check_and_move(
    cluster_dirs: List[str] = typer.Argument(..., help="Cluster directories to process."),
    dst: Optional[str] = typer.Option(None, "--dst", help="Root of the good/ and failed/ trees."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Classify only, do not move or declare anything."),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
    min_age: Optional[float] = typer.Option(None, "--min-age", help="Skip job directories younger than this (seconds)."),
    verify_data: Optional[bool] = typer.Option(None, "--verify-data/--no-verify-data", help="Checksum data files."),
    meta_pairing: Optional[bool] = typer.Option(None, "--meta-pairing/--no-meta-pairing"),
    duplicates: Optional[DuplicateMethod] = typer.Option(None, "--duplicates", case_sensitive=False, help="Duplicate detection policy."),
    config_file: Optional[str] = typer.Option(None, "--config", help="YAML configuration file."),
) -> None:
    """
    Check grid job directories and move them to good/ or failed/<reason>/.

    Example usage:
    mu2e-filetools check-and-move --dst /pnfs/mu2e/persistent/users/$USER/workflow 85432172
    """
    _setup_logging(verbose)
    try:
        config = _load_config(config_file)
        config.override(
            "cluster_check",
            dst_root=dst,
            min_age_seconds=min_age,
            verify_data=verify_data,
            require_meta_pairing=meta_pairing,
            duplicate_detection=duplicates.value if duplicates else None,
        )
        summary = cluster_check_flow(cluster_dirs, config=config, dry_run=dry_run)
    except FatalError as e:
        logger.error(f"Aborting: {e}")
        raise typer.Exit(code=1)

    typer.echo(summary.format_report())


@app.command("archive")
def archive(
    cluster_dirs: List[str] = typer.Argument(..., help="Good cluster directories to archive."),
    allow_dataset: Optional[List[str]] = typer.Option(None, "--allow-dataset", help="Extra dataset allowed in the archive."),
    max_tries: Optional[int] = typer.Option(None, "--max-tries"),
    delay: Optional[float] = typer.Option(None, "--delay", help="Initial delay between archive attempts (seconds)."),
    dry_run: bool = typer.Option(False, "--dry-run"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
    config_file: Optional[str] = typer.Option(None, "--config", help="YAML configuration file."),
) -> None:
    """
    Archive the log files of good clusters and register the archives.
    """
    _setup_logging(verbose)
    try:
        config = _load_config(config_file)
        config.override(
            "archive",
            allowed_datasets=(config.archive.allowed_datasets + list(allow_dataset)) if allow_dataset else None,
            max_tries=max_tries,
            delay_seconds=delay,
        )
        results = cluster_archive_flow(cluster_dirs, config=config, dry_run=dry_run)
    except FatalError as e:
        logger.error(f"Aborting: {e}")
        raise typer.Exit(code=1)

    for result in results:
        typer.echo(f"{result.cluster}: {result.path}")


@app.command("list-files")
def list_files(
    dims: str = typer.Argument(..., help="SAM dimensions query."),
    config_file: Optional[str] = typer.Option(None, "--config", help="YAML configuration file."),
) -> None:
    """
    Print the catalog files matching a dimensions query.
    """
    _setup_logging(False)
    try:
        config = _load_config(config_file)
        with SamWebClient.from_settings(config.catalog) as client:
            names = client.list_files(dims)
    except FatalError as e:
        logger.error(f"Aborting: {e}")
        raise typer.Exit(code=1)

    for name in names:
        typer.echo(name)


if __name__ == "__main__":
    app()
