"""
Sort order assignment for channels grouped into categories.

Every category owns a block of sortOrder values starting at
``category_index * stride``; the stride is 1000 unless a category holds more
channels than that, in which case it grows in steps of 1000 so blocks never
overlap. Uncategorized items go after every block, from UNCATEGORIZED_BASE.
"""
import math
from dataclasses import dataclass
from typing import Any, Dict, Hashable, List, Mapping, Optional, Sequence

CATEGORY_BLOCK_SIZE = 1000
UNCATEGORIZED_BASE = 1_000_000


@dataclass(frozen=True)
class SortUpdate:
    id: Any
    sort_order: int


def block_stride(channels_by_category: Mapping[Optional[Hashable], Sequence[Any]]) -> int:
    largest = max(
        (len(items) for key, items in channels_by_category.items() if key is not None),
        default=0,
    )
    return CATEGORY_BLOCK_SIZE * max(1, math.ceil(largest / CATEGORY_BLOCK_SIZE))


def block_base(category_index: int, stride: int = CATEGORY_BLOCK_SIZE) -> int:
    return category_index * stride


def uncategorized_base(category_count: int, stride: int = CATEGORY_BLOCK_SIZE) -> int:
    return max(UNCATEGORIZED_BASE, category_count * stride)


def assign_for_category_order(
    categories: Sequence[Hashable],
    channels_by_category: Mapping[Optional[Hashable], Sequence[Any]],
) -> List[SortUpdate]:
    """
    Recompute sortOrder for every item after the category order changed.

    ``categories`` is the new category order; ``channels_by_category`` maps a
    category key (None for uncategorized) to its items in display order.
    Categories holding items but missing from ``categories`` keep their
    relative order and follow the listed ones.
    """
    ordered = [key for key in dict.fromkeys(categories) if key is not None]
    listed = set(ordered)
    ordered.extend(
        key for key in channels_by_category if key is not None and key not in listed
    )

    stride = block_stride(channels_by_category)
    updates: List[SortUpdate] = []
    for index, key in enumerate(ordered):
        base = block_base(index, stride)
        for position, item in enumerate(channels_by_category.get(key, ())):
            updates.append(SortUpdate(item.id, base + position))

    base = uncategorized_base(len(ordered), stride)
    for position, item in enumerate(channels_by_category.get(None, ())):
        updates.append(SortUpdate(item.id, base + position))
    return updates


def assign_for_channel_order(
    channels_in_category: Sequence[Any],
    new_positions: Sequence[Any],
    base: Optional[int] = None,
) -> List[SortUpdate]:
    """
    Recompute sortOrder inside one category block.

    ``new_positions`` lists item ids in their new order; items it leaves out
    keep their current relative order after the listed ones. ``base`` is the
    first value of the block and defaults to the block holding the smallest
    current sortOrder.
    """
    by_id: Dict[Any, Any] = {item.id: item for item in channels_in_category}
    unknown = [i for i in new_positions if i not in by_id]
    if unknown:
        raise ValueError(f"Items not in this category: {unknown}")

    if base is None:
        current = min((item.sort_order or 0 for item in channels_in_category), default=0)
        base = (current // CATEGORY_BLOCK_SIZE) * CATEGORY_BLOCK_SIZE

    listed = list(dict.fromkeys(new_positions))
    listed_set = set(listed)
    rest = sorted(
        (item for item in channels_in_category if item.id not in listed_set),
        key=lambda item: item.sort_order or 0,
    )
    order = [by_id[i] for i in listed] + rest
    return [SortUpdate(item.id, base + position) for position, item in enumerate(order)]


def apply_updates(items: Sequence[Any], updates: Sequence[SortUpdate]) -> int:
    """Write updates onto objects with ``id``/``sort_order``. Returns how many changed."""
    by_id = {item.id: item for item in items}
    changed = 0
    for update in updates:
        item = by_id.get(update.id)
        if item is not None and item.sort_order != update.sort_order:
            item.sort_order = update.sort_order
            changed += 1
    return changed
