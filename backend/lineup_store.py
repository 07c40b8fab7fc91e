"""
Program-guide channel lineups.

An EPG file owns its lineup entries; an EPG group merges the lineups of its
files in order. Entries in the catch-all category (where guide channels land
on import until an operator files them) always sort after the others.
"""
import logging
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from models import ChannelLineup, EpgFile, EpgGroup
from sort_order import apply_updates, assign_for_category_order, assign_for_channel_order, block_base, block_stride, uncategorized_base

logger = logging.getLogger(__name__)

CATCH_ALL_CATEGORY = "Imported channels"


def entry_identity(entry) -> str:
    """Key used to de-duplicate merged lineups: the guide id, else the lowercased name."""
    if entry.tvg_id:
        return f"id:{entry.tvg_id}"
    return f"name:{(entry.name or '').strip().lower()}"


def resolve_lineup_source(session: Session, playlist) -> Tuple[Optional[int], Optional[int]]:
    """
    Pick the lineup a playlist maps against: its own file, its own group, the
    default file, then the default group. Returns (epg_file_id, epg_group_id).
    """
    if playlist.epg_file_id:
        return playlist.epg_file_id, None
    if playlist.epg_group_id:
        return None, playlist.epg_group_id
    default_file = session.query(EpgFile).filter(EpgFile.is_default.is_(True)).first()
    if default_file is not None:
        return default_file.id, None
    default_group = session.query(EpgGroup).filter(EpgGroup.is_default.is_(True)).first()
    if default_group is not None:
        return None, default_group.id
    return None, None


def category_order(entries: Sequence[ChannelLineup]) -> List[Optional[str]]:
    """Categories ordered by their smallest sortOrder, catch-all last."""
    first_seen: Dict[Optional[str], int] = {}
    for entry in entries:
        key = entry.ext_grp or None
        if key not in first_seen or entry.sort_order < first_seen[key]:
            first_seen[key] = entry.sort_order
    ordered = sorted(
        (key for key in first_seen if key is not None),
        key=lambda k: (k == CATCH_ALL_CATEGORY, first_seen[k]),
    )
    return ordered


def sort_entries(entries: Sequence[ChannelLineup]) -> List[ChannelLineup]:
    """Display order for one file: by category position, then by sortOrder."""
    positions = {name: index for index, name in enumerate(category_order(entries))}
    fallback = len(positions)
    return sorted(
        entries,
        key=lambda e: (positions.get(e.ext_grp or None, fallback), e.sort_order, e.id or 0),
    )


def get_file_entries(session: Session, epg_file_id: int) -> List[ChannelLineup]:
    entries = session.query(ChannelLineup).filter(ChannelLineup.epg_file_id == epg_file_id).all()
    return sort_entries(entries)


def get_lineup_entries(
    session: Session,
    epg_file_id: Optional[int] = None,
    epg_group_id: Optional[int] = None,
) -> List[ChannelLineup]:
    """
    Lineup for a single file, or the merged lineup of a group.

    Group files are merged in the group's order; the first file providing an
    entry identity wins. Catch-all entries from every file go last.
    """
    if epg_file_id is not None:
        return get_file_entries(session, epg_file_id)
    if epg_group_id is None:
        return []

    group = session.query(EpgGroup).filter(EpgGroup.id == epg_group_id).first()
    if group is None:
        return []

    merged: List[ChannelLineup] = []
    catch_all: List[ChannelLineup] = []
    seen = set()
    for file_id in group.get_file_ids():
        for entry in get_file_entries(session, file_id):
            identity = entry_identity(entry)
            if identity in seen:
                continue
            seen.add(identity)
            if entry.ext_grp == CATCH_ALL_CATEGORY:
                catch_all.append(entry)
            else:
                merged.append(entry)

    logger.debug(
        "[LINEUP] Group %s merged %s entries (%s catch-all)", epg_group_id, len(merged), len(catch_all)
    )
    return merged + catch_all


def lineup_by_name(entries: Sequence[ChannelLineup]) -> Dict[str, ChannelLineup]:
    """Case-insensitive name lookup; the first entry with a name wins."""
    lookup: Dict[str, ChannelLineup] = {}
    for entry in entries:
        if entry.name:
            lookup.setdefault(entry.name.strip().lower(), entry)
    return lookup


def renumber_file(session: Session, epg_file_id: int, categories: Optional[Sequence[str]] = None) -> int:
    """
    Rewrite every sortOrder of a file's lineup from its current display order.

    ``categories`` overrides the category order; the catch-all category is
    kept last regardless. Returns the number of entries whose value changed.
    """
    entries = get_file_entries(session, epg_file_id)
    grouped: Dict[Optional[str], List[ChannelLineup]] = {}
    for entry in entries:
        grouped.setdefault(entry.ext_grp or None, []).append(entry)

    order = list(categories) if categories is not None else category_order(entries)
    order = [c for c in order if c != CATCH_ALL_CATEGORY]
    if CATCH_ALL_CATEGORY in grouped:
        remaining = [k for k in grouped if k is not None and k not in order and k != CATCH_ALL_CATEGORY]
        order = order + remaining + [CATCH_ALL_CATEGORY]

    updates = assign_for_category_order(order, grouped)
    return apply_updates(entries, updates)


def reorder_entries(session: Session, requested: Sequence[Tuple[int, int]]) -> int:
    """
    Apply a client reorder given as (entry id, requested sortOrder) pairs.

    Requested values only express relative order. Each affected category
    block is renumbered from the requested order; entries the request does
    not mention keep their place relative to each other.
    """
    requested_order = dict(requested)
    touched = session.query(ChannelLineup).filter(ChannelLineup.id.in_(list(requested_order))).all()
    if len(touched) != len(requested_order):
        found = {e.id for e in touched}
        raise LookupError(f"Lineup entries not found: {sorted(set(requested_order) - found)}")

    changed = 0
    for epg_file_id in {e.epg_file_id for e in touched}:
        entries = get_file_entries(session, epg_file_id)
        grouped: Dict[Optional[str], List[ChannelLineup]] = {}
        for entry in entries:
            grouped.setdefault(entry.ext_grp or None, []).append(entry)
        categories = category_order(entries)
        stride = block_stride(grouped)

        for key in {e.ext_grp or None for e in touched if e.epg_file_id == epg_file_id}:
            members = grouped[key]
            ranked = sorted(
                enumerate(members),
                key=lambda pair: (requested_order.get(pair[1].id, pair[1].sort_order), pair[1].id not in requested_order, pair[0]),
            )
            if key is None:
                base = uncategorized_base(len(categories), stride)
            else:
                base = block_base(categories.index(key), stride)
            updates = assign_for_channel_order(members, [item.id for _, item in ranked], base=base)
            changed += apply_updates(members, updates)

    logger.info("[LINEUP] Reordered %s entries, %s sortOrder values changed", len(touched), changed)
    return changed


def rename_category(session: Session, epg_file_id: int, old_name: str, new_name: str) -> int:
    """Rename a lineup category. Renaming onto an existing category merges into it."""
    entries = session.query(ChannelLineup).filter(
        ChannelLineup.epg_file_id == epg_file_id,
        ChannelLineup.ext_grp == old_name,
    ).all()
    for entry in entries:
        entry.ext_grp = new_name
    session.flush()
    renumber_file(session, epg_file_id)
    logger.info("[LINEUP] Renamed category '%s' to '%s' (%s entries)", old_name, new_name, len(entries))
    return len(entries)
