"""
Normalization of free-text enrollment status labels.

The store holds casing variants and data-entry typos ("Expired", "expied",
"EXPIRED "). Known variants are listed in ``status_aliases.json`` (canonical
label -> variants) so new typos can be added without touching code; anything
outside the table is capitalized as-is rather than dropped.
"""

from __future__ import annotations

import json
import logging
import re
from importlib import resources
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional, Union

logger = logging.getLogger(__name__)

UNKNOWN_STATUS = "Unknown"
_WHITESPACE = re.compile(r"\s+")


def _clean(value: str) -> str:
    return _WHITESPACE.sub(" ", value.strip())


class StatusNormalizer:
    def __init__(self, aliases: Mapping[str, Iterable[str]]):
        self._lookup: Dict[str, str] = {}
        for canonical, variants in aliases.items():
            label = _clean(canonical)
            self._lookup[label.lower()] = label
            for variant in variants:
                self._lookup[_clean(variant).lower()] = label

    @classmethod
    def from_file(cls, path: Union[str, Path, None] = None) -> "StatusNormalizer":
        """
        Load the alias table from ``path`` or from the bundled ``status_aliases.json``.
        """

        if path is None:
            raw = resources.files(__package__).joinpath("status_aliases.json").read_text(encoding="utf-8")
        else:
            raw = Path(path).expanduser().read_text(encoding="utf-8")
        aliases = json.loads(raw)
        logger.debug("Loaded %d canonical status labels", len(aliases))
        return cls(aliases)

    def normalize(self, status: Optional[str]) -> str:
        if status is None:
            return UNKNOWN_STATUS
        cleaned = _clean(str(status))
        if not cleaned:
            return UNKNOWN_STATUS
        canonical = self._lookup.get(cleaned.lower())
        if canonical is not None:
            return canonical
        return cleaned[0].upper() + cleaned[1:].lower()


_default_normalizer: Optional[StatusNormalizer] = None


def default_normalizer() -> StatusNormalizer:
    global _default_normalizer
    if _default_normalizer is None:
        _default_normalizer = StatusNormalizer.from_file()
    return _default_normalizer


def normalize_status(status: Optional[str], normalizer: Optional[StatusNormalizer] = None) -> str:
    return (normalizer or default_normalizer()).normalize(status)
