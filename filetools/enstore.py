"""
Tape information lookup and catalog location strings.

Files written to a tape-backed dCache area get a tape label and a location
cookie once enstore has migrated them. Small files are aggregated into
packages first; such a file is reported at the location of its package.
"""

from dataclasses import dataclass
import logging
import os
import re
import shutil
import subprocess
from typing import Optional, Tuple

from filetools.errors import TapeLookupError

logger = logging.getLogger(__name__)

LABEL_RE = re.compile(r"'external_label'\s*:\s*'(.+?)'")
COOKIE_RE = re.compile(r"'location_cookie'\s*:\s*'(.+?)'")
PACKAGE_NONE_RE = re.compile(r"'package_id'\s*:\s*None", re.IGNORECASE)
PACKAGE_RE = re.compile(r"'package_id'\s*:\s*'(.+?)'")

DISK_PREFIXES = ("/pnfs/mu2e/persistent", "/pnfs/mu2e/scratch")


@dataclass(frozen=True)
class TapeInfo:
    label: str
    location_cookie: str


def tape_backed(pathname: str) -> bool:
    return "tape" in pathname


def make_location(pathname: str, tape_info: Optional[TapeInfo] = None) -> str:
    """
    Build the catalog location string of a file.

    Raises:
        ValueError: If the file is not in a known storage area, or tape
            information is missing for a tape-backed file.
    """
    dirname = os.path.dirname(pathname)
    if tape_backed(pathname):
        if tape_info is None:
            raise ValueError(f"No tape information for tape-backed file {pathname}")
        return f"enstore:{dirname}({tape_info.location_cookie}@{tape_info.label})"
    if dirname.startswith(DISK_PREFIXES):
        return f"dcache:{dirname}"
    raise ValueError(f"make_location('{pathname}'): unknown file location")


def filter_location_cookie(info: TapeInfo) -> TapeInfo:
    cookie = info.location_cookie.replace("_", "")
    if not cookie.isdigit():
        raise TapeLookupError(f"Unexpected format of location_cookie='{info.location_cookie}' for a non-SFA file")
    return TapeInfo(label=info.label, location_cookie=str(int(cookie)))


class EnstoreClient:
    """Thin wrapper around the ``enstore`` command line tool."""

    def __init__(self, command: str = "enstore", timeout: float = 300) -> None:
        self.command = command
        self.timeout = timeout
        self._checked = False

    def _run(self, *args: str) -> subprocess.CompletedProcess:
        return subprocess.run(
            [self.command, *args],
            capture_output=True,
            text=True,
            timeout=self.timeout,
        )

    def check(self) -> None:
        if self._checked:
            return
        if shutil.which(self.command) is None:
            raise TapeLookupError(f"'{self.command}' not found in PATH")
        self._checked = True

    def query_bfid(self, bfid: str) -> Tuple[TapeInfo, str]:
        result = self._run("info", "--bfid", bfid)
        if result.returncode != 0:
            raise TapeLookupError(f"Error from enstore info for BFID {bfid}: {result.stderr.strip()}")
        file_info = result.stdout

        label = LABEL_RE.search(file_info)
        if not label:
            raise TapeLookupError(f"Can't extract external_label from:\n{file_info}")
        cookie = COOKIE_RE.search(file_info)
        if not cookie:
            raise TapeLookupError(f"Can't extract location_cookie from:\n{file_info}")

        return TapeInfo(label=label.group(1), location_cookie=cookie.group(1)), file_info

    def get_info(self, pathname: str) -> Optional[TapeInfo]:
        """
        Return the tape location of a file, or None if it is not on tape yet.
        """
        self.check()
        result = self._run("pnfs", "--bfid", pathname)
        if result.returncode != 0:
            logger.debug(f"{pathname} is not on tape yet")
            return None
        bfid = result.stdout.strip()

        info, file_info = self.query_bfid(bfid)

        # A package member has a ':' in its external label.
        if ":" in info.label:
            if PACKAGE_NONE_RE.search(file_info):
                logger.debug(f"{pathname} is not packaged yet")
                return None
            package = PACKAGE_RE.search(file_info)
            if not package:
                raise TapeLookupError(f"Can't extract package_id from:\n{file_info}")
            info, _ = self.query_bfid(package.group(1))

        return filter_location_cookie(info)
