import builtins
import collections
from dataclasses import dataclass, field, fields, replace
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
import yaml

logger = logging.getLogger(__name__)
load_dotenv()

DEFAULT_CONFIG_FILE = Path(__file__).parent / "config.yml"


def get_config() -> Dict[str, Any]:
    config_file = os.getenv("FILETOOLS_CONFIG") or DEFAULT_CONFIG_FILE
    return read_config(config_file=config_file)


def read_config(config_file="config.yml") -> Dict[str, Any]:
    with open(config_file, "r") as conf_file:
        tools_config = yaml.safe_load(conf_file) or {}
    return expand_environment_variables(tools_config)


def expand_environment_variables(config):
    """Expand environment variables in a nested config dictionary
    VENDORED FROM dask.config and tiled.
    This function will recursively search through any nested dictionaries
    and/or lists.
    Parameters
    ----------
    config : dict, iterable, or str
        Input object to search for environment variables
    Returns
    -------
    config : same type as input
    Examples
    --------
    >>> expand_environment_variables({'x': [1, 2, '$USER']})  # doctest: +SKIP
    {'x': [1, 2, 'my-username']}
    """
    if isinstance(config, collections.abc.Mapping):
        return {k: expand_environment_variables(v) for k, v in config.items()}
    elif isinstance(config, str):
        return os.path.expandvars(config)
    elif isinstance(config, (list, tuple, builtins.set)):
        return type(config)([expand_environment_variables(v) for v in config])
    else:
        return config


@dataclass
class CatalogSettings:
    experiment: str = "mu2e"
    read_server: str = "http://samweb.fnal.gov:8480"
    write_server: str = "https://samweb.fnal.gov:8483"
    timeout_seconds: float = 300
    max_tries: int = 3
    delay_seconds: float = 60


@dataclass
class ClusterCheckSettings:
    dst_root: str = "."
    min_age_seconds: float = 3600
    verify_data: bool = False
    require_meta_pairing: bool = True
    duplicate_detection: str = "single"
    metadata_suffix: str = ".json"
    max_rename_attempts: int = 100
    require_job_stats: bool = False


@dataclass
class ArchiveSettings:
    staging_root: str = "archiving"
    archive_root: str = "archive"
    allowed_datasets: List[str] = field(default_factory=list)
    max_tries: int = 5
    delay_seconds: float = 60
    keep_staged: bool = False


def _section(cls, values: Optional[Dict[str, Any]]):
    """Build a settings dataclass, ignoring (and reporting) unknown keys."""
    values = values or {}
    known = {f.name for f in fields(cls)}
    unknown = set(values) - known
    if unknown:
        logger.warning(f"Ignoring unknown {cls.__name__} keys: {sorted(unknown)}")
    return cls(**{k: v for k, v in values.items() if k in known})


class FileToolsConfig:
    """
    Typed view over the YAML configuration shared by all the tools.

    Attributes:
        config (dict): The raw configuration dictionary.
        catalog (CatalogSettings): Catalog server and retry settings.
        cluster_check (ClusterCheckSettings): Validation and promotion policy.
        archive (ArchiveSettings): Cluster archival settings.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None) -> None:
        self.config = config if config is not None else get_config()
        self.catalog = _section(CatalogSettings, self.config.get("catalog"))
        self.cluster_check = _section(ClusterCheckSettings, self.config.get("cluster_check"))
        self.archive = _section(ArchiveSettings, self.config.get("archive"))

    @classmethod
    def from_file(cls, config_file) -> "FileToolsConfig":
        return cls(read_config(config_file=config_file))

    def override(self, section: str, **values) -> None:
        """Replace settings in one section, skipping values left as None (CLI defaults)."""
        values = {k: v for k, v in values.items() if v is not None}
        if values:
            setattr(self, section, replace(getattr(self, section), **values))
