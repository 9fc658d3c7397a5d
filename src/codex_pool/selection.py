# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/codex_pool/selection.py

import random
from typing import Iterable, List, Mapping, Optional

from .types import Account, UsageSnapshot, now_ms
from .usage_cache import get_next_reset_at, is_usage_untouched


def pick_best_account(
    accounts: Iterable[Account],
    usage_by_email: Mapping[str, UsageSnapshot],
    exclude_emails: Iterable[str] = (),
    now: Optional[int] = None,
    rng: Optional[random.Random] = None,
) -> Optional[Account]:
    """
    Choose the account that should serve the next request.

    Order of preference:
    1. Untouched accounts (0% used in both windows), so unused windows are
       not wasted.
    2. Among the preferred set, the earliest known reset, so the account
       re-enters rotation soonest.
    3. Otherwise a uniformly random available account.

    Exhausted and excluded accounts are never returned.
    """
    current = now_ms() if now is None else now
    excluded = set(exclude_emails)

    available: List[Account] = [
        a for a in accounts if a.email not in excluded and a.is_available(current)
    ]
    if not available:
        return None

    with_usage = [a for a in available if usage_by_email.get(a.email) is not None]
    untouched = [a for a in with_usage if is_usage_untouched(usage_by_email[a.email])]
    candidates = untouched or with_usage

    best: Optional[Account] = None
    best_reset: Optional[int] = None
    for account in candidates:
        reset_at = get_next_reset_at(usage_by_email[account.email])
        if reset_at is None:
            continue
        if best_reset is None or reset_at < best_reset:
            best = account
            best_reset = reset_at

    if best is not None:
        return best

    return (rng or random).choice(available)
