"""Source trees: the checked-out files of one service.

The source digest is computed over the sorted relative paths and file
contents, so it identifies the tree independently of filesystem metadata.
"""

from __future__ import annotations

import hashlib
from collections.abc import Iterator
from pathlib import Path
from typing import Protocol

IGNORED_DIRS = frozenset({".git", ".hg", ".svn", "__pycache__"})


class SourceTree(Protocol):
    """Read-only view of a checked-out service tree."""

    @property
    def ref(self) -> str:
        """Location scanners are pointed at."""
        ...

    def files(self) -> Iterator[tuple[str, bytes]]:
        """Yield (relative posix path, content) in sorted path order."""
        ...

    def digest(self) -> str:
        """Content digest of the tree (``sha256:<hex>``)."""
        ...


class LocalSourceTree:
    """Source tree on the local filesystem."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)

    @property
    def ref(self) -> str:
        return str(self.root)

    def paths(self) -> list[Path]:
        """Regular files under root, sorted, excluding VCS metadata."""
        if not self.root.is_dir():
            raise FileNotFoundError(f"Source tree not found: {self.root}")
        found = [
            path
            for path in self.root.rglob("*")
            if path.is_file()
            and not any(part in IGNORED_DIRS for part in path.relative_to(self.root).parts)
        ]
        return sorted(found, key=lambda p: p.relative_to(self.root).as_posix())

    def files(self) -> Iterator[tuple[str, bytes]]:
        for path in self.paths():
            yield path.relative_to(self.root).as_posix(), path.read_bytes()

    def digest(self) -> str:
        hasher = hashlib.sha256()
        for name, content in self.files():
            hasher.update(name.encode("utf-8"))
            hasher.update(b"\0")
            hasher.update(hashlib.sha256(content).digest())
        return f"sha256:{hasher.hexdigest()}"


__all__: list[str] = ["IGNORED_DIRS", "SourceTree", "LocalSourceTree"]
