import hashlib
import json
import os
import time
from typing import Dict, Optional
from urllib.parse import parse_qs, unquote

import httpx
import pytest

from filetools.cluster_dir import JobDirectory
from filetools.samweb import SamWebClient

CLUSTER = "85432172"
OWNER = "mu2e"
DESCRIPTION = "CeEndpoint"
CONFIGURATION = "MDC2020a"
OLD = time.time() - 7200


def sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def mu2e_name(tier: str, sequencer: str, extension: str) -> str:
    return f"{tier}.{OWNER}.{DESCRIPTION}.{CONFIGURATION}.{sequencer}.{extension}"


def make_log(
    files: Dict[str, bytes],
    parent: Optional[str] = "cnf.mu2e.CeEndpoint.MDC2020a.001000_00000017.fcl",
    grid_status: int = 0,
    art_status: int = 0,
    host: str = "fnpc1234.fnal.gov",
    with_stats: bool = True,
    bad_selfcheck: bool = False
) -> bytes:
    """Build the contents of a job log with a manifest covering files."""
    lines = ["mu2egrid: payload started"]
    if parent:
        lines.append(f"mu2egrid origFCL = {parent}")
    if with_stats:
        lines += [
            f"mu2egrid host = {host}",
            "mu2egrid site = FermiGrid",
            "TimeReport CPU = 1234.5",
            "MemReport  VmHWM = 2048.0",
            "mu2egrid disk usage kB = 4096",
        ]
    else:
        lines.append(f"mu2egrid host = {host}")
    lines += [
        f"Art has completed and will exit with status {art_status}",
        f"mu2egrid exit status {grid_status}",
        "# mu2egrid manifest",
    ]
    for name, content in sorted(files.items()):
        lines.append(f"# -rw-r--r-- 1 mu2epro mu2e {len(content)} Jan 12 03:04 {name}")
        lines.append(f"{sha256(content)}  {name}")

    body = "".join(line + "\n" for line in lines).encode()
    self_hash = "0" * 64 if bad_selfcheck else sha256(body)
    return body + f"# mu2egrid manifest selfcheck: {self_hash}\n".encode()


def write_job(
    cluster_dir,
    shard: str = "00",
    name: str = "00017",
    sequencer: str = "001000_00000017",
    files: Optional[Dict[str, bytes]] = None,
    **log_options
) -> JobDirectory:
    """
    Create a completed job directory with one data file, its metadata and a log.

    Returns the JobDirectory; the file contents can be changed afterwards to
    produce the failure scenarios.
    """
    if files is None:
        data = mu2e_name("dig", sequencer, "art")
        files = {
            data: b"art event data " * 100,
            data + ".json": json.dumps({"file_name": data}).encode(),
        }

    jobdir = os.path.join(str(cluster_dir), shard, name)
    os.makedirs(jobdir)
    for filename, content in files.items():
        with open(os.path.join(jobdir, filename), "wb") as f:
            f.write(content)
    with open(os.path.join(jobdir, mu2e_name("log", sequencer, "log")), "wb") as f:
        f.write(make_log(files, **log_options))

    os.utime(jobdir, (OLD, OLD))
    return JobDirectory.from_path(jobdir)


@pytest.fixture(autouse=True)
def fast_sleep(monkeypatch):
    """Patch time.sleep to return immediately to speed up tests."""
    monkeypatch.setattr(time, "sleep", lambda x: None)


@pytest.fixture
def cluster_dir(tmp_path):
    path = tmp_path / "clusters" / CLUSTER
    path.mkdir(parents=True)
    return path


class FakeCatalog:
    """
    In-memory stand-in for the SAM web API, served through httpx.MockTransport.

    Set ``failures`` to the number of upcoming requests that should get a 503.
    """

    def __init__(self) -> None:
        self.files: Dict[str, dict] = {}
        self.definitions: Dict[str, str] = {}
        self.locations: Dict[str, list] = {}
        self.requests = []
        self.failures = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.failures:
            self.failures -= 1
            return httpx.Response(503, text="Service Unavailable")

        path = request.url.path.split("/api/", 1)[1]
        parts = [unquote(p) for p in path.split("/")]
        form = {}
        if request.headers.get("content-type", "").startswith("application/x-www-form-urlencoded"):
            form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}

        if parts == ["files", "list"]:
            dims = request.url.params["dims"]
            name = dims.split()[-1]
            return httpx.Response(200, text=f"{name}\n" if name in self.files else "")

        if parts == ["files"] and request.method == "POST":
            metadata = json.loads(request.content)
            if metadata["file_name"] in self.files:
                return httpx.Response(409, text="File already exists")
            self.files[metadata["file_name"]] = metadata
            return httpx.Response(200, text="")

        if parts[:2] == ["files", "name"] and len(parts) == 4:
            name = parts[2]
            if name not in self.files:
                return httpx.Response(404, text="File not found")
            if parts[3] == "metadata":
                return httpx.Response(200, json=self.files[name])
            if parts[3] == "locations":
                self.locations.setdefault(name, []).append(form["add"])
                return httpx.Response(200, text="")

        if parts[:2] == ["definitions", "name"]:
            defname = parts[2]
            if defname not in self.definitions:
                return httpx.Response(404, text="Definition not found")
            return httpx.Response(200, json={"defname": defname, "dims": self.definitions[defname]})

        if parts == ["definitions", "create"]:
            if form["defname"] in self.definitions:
                return httpx.Response(409, text="Definition exists")
            self.definitions[form["defname"]] = form["dims"]
            return httpx.Response(200, text="")

        return httpx.Response(400, text=f"Unexpected request {request.method} {path}")


@pytest.fixture
def fake_catalog():
    return FakeCatalog()


@pytest.fixture
def samweb(fake_catalog):
    client = SamWebClient(
        read_server="http://samweb.test:8480",
        write_server="https://samweb.test:8483",
        max_tries=3,
        delay=0,
        transport=httpx.MockTransport(fake_catalog.handler),
    )
    yield client
    client.close()
