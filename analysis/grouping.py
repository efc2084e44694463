#!/usr/bin/env python3
from __future__ import annotations

from typing import Iterable, List, Optional

from analysis.models import SwapEvent, SwapGroup
from constants import DEFAULT_GROUPING_WINDOW


def group_swaps(events: Iterable[SwapEvent], window: int = DEFAULT_GROUPING_WINDOW) -> List[SwapGroup]:
    """Clusters oldest-first swap events into same-token groups.

    A new group starts whenever the token changes or the gap to the open
    group's last swap exceeds `window` seconds.
    """
    groups: List[SwapGroup] = []
    current: Optional[SwapGroup] = None
    for event in events:
        if (
            current is None
            or event.token_id != current.token_id
            or event.timestamp - current.last_time > window
        ):
            current = SwapGroup.start(event)
            groups.append(current)
        else:
            current.add(event)
    return groups
