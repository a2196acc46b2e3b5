"""A file-backed OCI runtime specification that can be loaded, modified and written back."""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path
from typing import Any


class SpecError(Exception):
    """Raised when an OCI specification cannot be read, modified or written."""


class FileSpec:
    """An OCI specification stored as JSON in a file.

    The spec is read with :meth:`load`, changed in place with :meth:`modify`
    and written back to the same file with :meth:`flush`.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.spec: dict[str, Any] | None = None

    def load(self) -> None:
        """Read the specification from the file."""
        try:
            handle = self.path.open("r", encoding="utf-8")
        except OSError as exc:
            raise SpecError(f"error opening OCI specification file: {exc}") from exc
        with handle:
            try:
                spec = json.load(handle)
            except (ValueError, UnicodeDecodeError) as exc:
                raise SpecError(
                    f"error reading OCI specification from file: {exc}"
                ) from exc
        if not isinstance(spec, dict):
            raise SpecError(
                "error reading OCI specification from file: "
                f"expected a JSON object, got {type(spec).__name__}"
            )
        self.spec = spec

    def modify(self, modifier: Callable[[dict[str, Any]], Any]) -> None:
        """Apply ``modifier`` to the loaded specification, which it changes in place."""
        if self.spec is None:
            raise SpecError("no spec loaded for modification")
        modifier(self.spec)

    def flush(self) -> None:
        """Write the specification to the file, replacing what it held."""
        try:
            payload = json.dumps(self.spec, separators=(",", ":")) + "\n"
        except (TypeError, ValueError) as exc:
            raise SpecError(f"error writing OCI specification to file: {exc}") from exc
        try:
            with self.path.open("w", encoding="utf-8") as handle:
                handle.write(payload)
        except OSError as exc:
            raise SpecError(f"error opening OCI specification file: {exc}") from exc