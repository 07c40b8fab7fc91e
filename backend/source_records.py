"""
Canonical in-memory records produced by the source parsers.

A SourceRecord lives for one job run only. It is never persisted as-is; the
sync job diffs records against stored rows and writes the outcome.
"""
from dataclasses import dataclass, field
from typing import Mapping, Optional


@dataclass(frozen=True)
class SourceRecord:
    # Within-source stream key (positional for M3U, provider id, guide id)
    identity_hint: str
    display_name: str
    stream_ref: str = ""
    icon_ref: str = ""
    category_hint: Optional[str] = None
    category_name: Optional[str] = None
    attributes: Mapping[str, str] = field(default_factory=dict)

    @property
    def implies_archive(self) -> bool:
        """Whether the source advertises catch-up for this record."""
        attrs = self.attributes
        if attrs.get("catchup"):
            return True
        if attrs.get("tv-archive") == "1":
            return True
        for key in ("catchup-days", "timeshift"):
            value = attrs.get(key, "")
            if value and value != "0":
                return True
        return False


@dataclass(frozen=True)
class CategoryHint:
    category_id: str
    category_name: str


@dataclass
class ParsedSource:
    """Everything a parser extracted from one payload."""
    records: list[SourceRecord] = field(default_factory=list)
    categories: list[CategoryHint] = field(default_factory=list)
    programme_count: int = 0

    @property
    def total_channels(self) -> int:
        return len(self.records)

    @property
    def total_categories(self) -> int:
        return len(self.categories)
