import hashlib

HASH_ALGORITHM = "sha256"
CHUNK_SIZE = 1024 * 1024


def hexdigest(pathname) -> str:
    """Compute the SHA-256 of a file's contents."""
    digest = hashlib.new(HASH_ALGORITHM)
    with open(pathname, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


class HashingWriter:
    """
    Write-through file wrapper that digests everything written to it.

    Used to checksum an archive while it is being produced, so the archive
    does not have to be read back.
    """

    def __init__(self, fileobj) -> None:
        self._fileobj = fileobj
        self._digest = hashlib.new(HASH_ALGORITHM)
        self.bytes_written = 0

    def write(self, data) -> int:
        self._digest.update(data)
        self.bytes_written += len(data)
        return self._fileobj.write(data)

    def flush(self) -> None:
        self._fileobj.flush()

    def hexdigest(self) -> str:
        return self._digest.hexdigest()
