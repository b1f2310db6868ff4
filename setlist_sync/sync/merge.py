"""Field precedence for combining partial provider data with stored rows."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any

EXISTING = "existing"


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict)):
        return len(value) == 0
    return False


class FieldMerger:
    """Pick each field from the first source in its precedence list that has it.

    ``precedence_for("artist.name")`` returns the ordered sources, e.g.
    ``("spotify", "ticketmaster", "existing")``. Fields without configured
    precedence fall back to the order the candidates were supplied in.
    """

    def __init__(
        self,
        entity_type: str,
        precedence_for: Callable[[str], tuple[str, ...]],
        existing: Mapping[str, Any] | None = None,
    ) -> None:
        self._entity_type = entity_type
        self._precedence_for = precedence_for
        self._existing = dict(existing or {})

    def pick(self, field_name: str, **candidates: Any) -> Any:
        sources = self._precedence_for(f"{self._entity_type}.{field_name}")
        if sources == (EXISTING,):
            sources = (*candidates.keys(), EXISTING)
        for source in sources:
            if source == EXISTING:
                value = self._existing.get(field_name)
            else:
                value = candidates.get(source)
            if not _is_empty(value):
                return value
        return self._existing.get(field_name)


__all__ = ["EXISTING", "FieldMerger"]
