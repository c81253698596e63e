"""
Mu2e file naming convention.

A file name has six dot-separated fields:

    tier.owner.description.configuration.sequencer.extension

The dataset a file belongs to is the same name with the sequencer removed.
"""

from dataclasses import dataclass
import hashlib
import os
import re

_FIELD_RE = re.compile(r"^[\w\-]+$")


@dataclass(frozen=True)
class Mu2eFilename:
    tier: str
    owner: str
    description: str
    configuration: str
    sequencer: str
    extension: str

    @classmethod
    def parse(cls, name: str) -> "Mu2eFilename":
        """
        Parse a bare file name (directories are stripped).

        Raises:
            ValueError: If the name does not follow the convention.
        """
        basename = os.path.basename(name)
        parts = basename.split(".")
        if len(parts) != 6 or not all(_FIELD_RE.match(p) for p in parts):
            raise ValueError(f"Not a Mu2e file name: {basename!r}")
        return cls(*parts)

    @classmethod
    def is_valid(cls, name: str) -> bool:
        try:
            cls.parse(name)
        except ValueError:
            return False
        return True

    @property
    def basename(self) -> str:
        return ".".join([
            self.tier, self.owner, self.description,
            self.configuration, self.sequencer, self.extension,
        ])

    @property
    def dataset(self) -> str:
        return ".".join([
            self.tier, self.owner, self.description,
            self.configuration, self.extension,
        ])

    def with_fields(self, **changes) -> "Mu2eFilename":
        values = self.__dict__.copy()
        values.update(changes)
        return Mu2eFilename(**values)

    def relative_path(self) -> str:
        """
        Standard location of the file relative to a storage root.

        Files of one dataset are spread over a two-level directory tree keyed
        by the SHA-256 of the file name.
        """
        digest = hashlib.sha256(self.basename.encode()).hexdigest()
        return os.path.join(
            self.tier, self.owner, self.description, self.configuration,
            self.extension, digest[0:2], digest[2:4], self.basename,
        )

    def __str__(self) -> str:
        return self.basename


def strip_suffix(name: str, suffix: str) -> str:
    if suffix and name.endswith(suffix):
        return name[: -len(suffix)]
    return name
