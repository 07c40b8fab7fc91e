"""
Channel diffing between stored rows and a freshly parsed source.

Both sides are keyed with the identifier resolver, so matching is a single
pass over key-indexed dicts.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence, Tuple

from identifier_resolver import IdentifierStrategy, extract
from source_records import SourceRecord

logger = logging.getLogger(__name__)

# Added/removed names exposed in a job summary
SUMMARY_PREVIEW_LIMIT = 20


@dataclass
class ChannelDiff:
    """
    Outcome of reconciling stored channels with new source records.

    ``matched`` pairs keep the stored row (and with it its id, manual flags
    and mapping); ``duplicates`` are new records whose key was already taken
    by an earlier record in the same source.
    """
    added: List[SourceRecord] = field(default_factory=list)
    removed: List[Any] = field(default_factory=list)
    matched: List[Tuple[Any, SourceRecord]] = field(default_factory=list)
    duplicates: List[SourceRecord] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.removed)

    def to_summary(self, preview_limit: int = SUMMARY_PREVIEW_LIMIT) -> dict:
        """Job summary: names are capped to a preview, counts are the true totals."""
        return {
            "addedChannels": [r.display_name for r in self.added[:preview_limit]],
            "removedChannels": [c.display_name for c in self.removed[:preview_limit]],
            "addedCount": len(self.added),
            "removedCount": len(self.removed),
            "unchangedCount": len(self.matched),
            "duplicateCount": len(self.duplicates),
        }


def reconcile(
    old_set: Sequence[Any],
    new_set: Sequence[SourceRecord],
    strategy: IdentifierStrategy,
) -> ChannelDiff:
    """
    Partition old rows and new records into added, removed and matched.

    When several stored rows share a key (possible after the identifier
    strategy changes) the first one is matchable and the rest count as
    removed. When several new records share a key the first one wins and the
    rest are reported as duplicates, never added.
    """
    diff = ChannelDiff()

    old_by_key: Dict[str, Any] = {}
    for channel in old_set:
        key = extract(channel, strategy)
        if key in old_by_key:
            diff.removed.append(channel)
        else:
            old_by_key[key] = channel

    seen_new: set = set()
    for record in new_set:
        key = extract(record, strategy)
        if key in seen_new:
            diff.duplicates.append(record)
            continue
        seen_new.add(key)

        channel = old_by_key.pop(key, None)
        if channel is not None:
            diff.matched.append((channel, record))
        else:
            diff.added.append(record)

    diff.removed.extend(old_by_key.values())

    if diff.duplicates:
        logger.info(
            "[DIFF] Skipped %s records with duplicate identity keys", len(diff.duplicates)
        )
    logger.debug(
        "[DIFF] added=%s removed=%s matched=%s",
        len(diff.added), len(diff.removed), len(diff.matched),
    )
    return diff
