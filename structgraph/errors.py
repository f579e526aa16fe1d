"""Exception hierarchy shared by the extraction engine."""

from __future__ import annotations


class StructgraphError(Exception):
    """Base class for every error raised by structgraph."""


class ExtractionError(StructgraphError):
    """A single extraction strategy could not produce a result for a file."""

    def __init__(self, file: str, reason: str) -> None:
        super().__init__(f"{file}: {reason}")
        self.file = file
        self.reason = reason
