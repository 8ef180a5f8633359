"""Values carried between the steps of one multi-step check."""

from __future__ import annotations

import re
from typing import Any, Iterator, Mapping

from portalcheck.assertions.structural import is_missing, lookup

_PLACEHOLDER = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")


class MissingCaptureError(KeyError):
    """A step referenced a value no earlier step captured."""

    def __init__(self, key: str):
        super().__init__(key)
        self.key = key

    def __str__(self) -> str:
        return f"no value captured for '{self.key}'"


class FlowContext(Mapping[str, Any]):
    """Identifiers discovered by earlier steps and consumed by later ones.

    One context lives for exactly one check; nothing is shared between checks.
    """

    def __init__(self, initial: Mapping[str, Any] | None = None):
        self._values: dict[str, Any] = dict(initial or {})

    def __getitem__(self, key: str) -> Any:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"FlowContext({self._values!r})"

    def set(self, key: str, value: Any) -> None:
        self._values[key] = value

    def require(self, key: str) -> Any:
        if key not in self._values:
            raise MissingCaptureError(key)
        return self._values[key]

    def capture(self, body: Any, spec: Mapping[str, str]) -> list[str]:
        """Store ``{key: path}`` lookups from ``body``; return keys that did not resolve."""
        unresolved = []
        for key, path in spec.items():
            value = lookup(body, path)
            if is_missing(value):
                unresolved.append(key)
            else:
                self._values[key] = value
        return unresolved

    def render(self, template: str) -> str:
        """Substitute ``{key}`` placeholders, raising MissingCaptureError for unknown keys."""
        return _PLACEHOLDER.sub(lambda m: str(self.require(m.group(1))), template)
