import logging
import os
import random
import sys
import time
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from filetools.config import CatalogSettings
from filetools.errors import CatalogBadRequestError, CatalogConflictError, CatalogError

logger = logging.getLogger(__name__)


def _agent_id() -> str:
    # Production installs set FILETOOLS_DIR to a versioned directory.
    version = os.path.basename(os.getenv("FILETOOLS_DIR", "dev"))
    app = os.path.basename(sys.argv[0]) if sys.argv and sys.argv[0] else "filetools"
    return f"{app}/{version}"


class SamWebClient:
    """
    Minimal client for the SAM web catalog API.

    Reads go to the read server, declarations and location updates to the
    write server. Transport errors and server-side (5xx) errors are retried
    with an increasing, randomized delay; after max_tries attempts the request
    fails with CatalogError. A conflict (409) and a bad request (400) are
    reported immediately as distinct exceptions.

    Attributes:
        elapsed (float): Wall-clock seconds spent talking to the catalog.
    """

    def __init__(
        self,
        read_server: str,
        write_server: str,
        experiment: str = "mu2e",
        timeout: float = 300,
        max_tries: int = 3,
        delay: float = 60,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        if max_tries < 1:
            raise ValueError("max_tries must be >= 1")
        self.read_server = read_server.rstrip("/")
        self.write_server = write_server.rstrip("/")
        self.experiment = experiment
        self.max_tries = max_tries
        self.delay = delay
        self.elapsed = 0.0
        self._client = httpx.Client(
            timeout=timeout,
            headers={"User-Agent": _agent_id()},
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: CatalogSettings, **kwargs) -> "SamWebClient":
        return cls(
            read_server=settings.read_server,
            write_server=settings.write_server,
            experiment=settings.experiment,
            timeout=settings.timeout_seconds,
            max_tries=settings.max_tries,
            delay=settings.delay_seconds,
            **kwargs,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "SamWebClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _url(self, server: str, path: str) -> str:
        return f"{server}/sam/{self.experiment}/api/{path.lstrip('/')}"

    def _request(self, method: str, url: str, allow_not_found: bool = False, **kwargs) -> httpx.Response:
        delay = self.delay
        last_error = None
        start = time.monotonic()
        try:
            for attempt in range(1, self.max_tries + 1):
                try:
                    response = self._client.request(method, url, **kwargs)
                except httpx.TransportError as e:
                    last_error = f"{type(e).__name__}: {e}"
                else:
                    if response.is_success:
                        return response
                    if response.status_code == 404 and allow_not_found:
                        return response
                    if response.status_code == 409:
                        raise CatalogConflictError(f"{method} {url}: conflict: {response.text.strip()}")
                    if response.status_code == 400:
                        raise CatalogBadRequestError(f"{method} {url}: bad request: {response.text.strip()}")
                    if response.status_code < 500:
                        raise CatalogError(f"{method} {url}: HTTP {response.status_code}: {response.text.strip()}")
                    last_error = f"HTTP {response.status_code}: {response.text.strip()}"

                logger.warning(f"Catalog request {method} {url} failed (attempt {attempt}/{self.max_tries}): {last_error}")
                if attempt < self.max_tries:
                    time.sleep(delay)
                    delay *= 1.5 + random.random()
        finally:
            self.elapsed += time.monotonic() - start

        logger.error(f"Giving up on {method} {url} after {self.max_tries} attempts")
        raise CatalogError(f"{method} {url} failed after {self.max_tries} attempts: {last_error}")

    def list_files(self, dims: str) -> List[str]:
        """Return the sorted names of the files matching a dimensions query."""
        response = self._request(
            "GET",
            self._url(self.read_server, "files/list"),
            params={"dims": dims, "format": "plain"},
        )
        return sorted(line.strip() for line in response.text.splitlines() if line.strip())

    def declare_file(self, metadata: Dict[str, Any]) -> None:
        """
        Declare a new file record.

        Raises:
            CatalogConflictError: If a record with the same name exists.
            CatalogBadRequestError: If the metadata was rejected.
        """
        logger.info(f"Declaring {metadata.get('file_name')}")
        self._request("POST", self._url(self.write_server, "files"), json=metadata)

    def get_metadata(self, file_name: str) -> Dict[str, Any]:
        response = self._request(
            "GET",
            self._url(self.read_server, f"files/name/{quote(file_name)}/metadata"),
            params={"format": "json"},
        )
        return response.json()

    def add_location(self, file_name: str, location: str) -> None:
        logger.info(f"Adding location {location} to {file_name}")
        self._request(
            "POST",
            self._url(self.write_server, f"files/name/{quote(file_name)}/locations"),
            data={"add": location},
        )

    def describe_definition(self, defname: str) -> Optional[Dict[str, Any]]:
        """Return the definition description, or None if it does not exist."""
        response = self._request(
            "GET",
            self._url(self.read_server, f"definitions/name/{quote(defname)}/describe"),
            params={"format": "json"},
            allow_not_found=True,
        )
        if response.status_code == 404:
            return None
        return response.json()

    def create_definition(self, defname: str, dims: str) -> None:
        logger.info(f"Creating dataset definition {defname}")
        self._request(
            "POST",
            self._url(self.write_server, "definitions/create"),
            data={"defname": defname, "dims": dims},
        )

    def ensure_definition(self, defname: str, dims: Optional[str] = None) -> bool:
        """
        Create a dataset definition unless it already exists.

        Returns:
            bool: True if the definition was created by this call.
        """
        if self.describe_definition(defname) is not None:
            return False
        try:
            self.create_definition(defname, dims or f"dh.dataset={defname}")
        except CatalogConflictError:
            logger.info(f"Definition {defname} was created concurrently")
            return False
        return True
