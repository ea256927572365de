from __future__ import annotations

import logging
import re
from typing import List, Optional, Sequence, Tuple

from src.query.expressions import Constraint, Match, Operator, Or

logger = logging.getLogger(__name__)

SUPPORTED_STRATEGIES = ("regex", "autocomplete")
# Recognised but not implemented; they require datastore-specific indexes.
STUB_STRATEGIES = ("text", "phonetic")


# PUBLIC_INTERFACE
def apply_search(
    term: Optional[str],
    fields: Sequence[str],
    strategies: Sequence[str] = ("regex",),
) -> Tuple[Optional[Or], List[str]]:
    """
    Build an Or group matching the search term on any configured field.

    Strategies:
        regex         case-insensitive substring match
        autocomplete  case-insensitive prefix match
        text/phonetic accepted but skipped

    The term is escaped, so it is always matched literally.

    Returns:
        (Or group or None when there is nothing to search, names of the strategies applied)
    """
    term = (term or "").strip()
    if not term or not fields:
        return None, []

    escaped = re.escape(term)
    children: List[Match] = []
    applied: List[str] = []
    for strategy in strategies:
        if strategy == "regex":
            pattern = re.compile(escaped, re.IGNORECASE)
        elif strategy == "autocomplete":
            pattern = re.compile(f"^{escaped}", re.IGNORECASE)
        elif strategy in STUB_STRATEGIES:
            logger.debug("Search strategy %s is not available; skipped", strategy)
            continue
        else:
            logger.warning("Unknown search strategy %s ignored", strategy)
            continue
        applied.append(strategy)
        children.extend(Match({f: (Constraint(Operator.REGEX, pattern),)}) for f in fields)

    if not children:
        return None, applied
    return Or(tuple(children)), applied
