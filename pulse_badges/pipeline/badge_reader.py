"""
Read path for the badges shown to users.

Which run's badges to show for a market:
  1. Today's runs that hold badges, best status first (ok > partial >
     running > failed), newest first within a status.
  2. Otherwise the most recent ok/partial run that holds badges.
  3. Otherwise nothing.

A run that is still in progress (or failed mid-way) can therefore serve its
partial badge set until something better exists.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional

from pulse_badges.models.daily_run import Badge, DailyRun
from pulse_badges.pipeline.collaborators import BadgeStore
from pulse_badges.utils.time_utils import run_date_for

logger = logging.getLogger(__name__)


@dataclass
class DailyBadges:
    """Badges selected for display.

    Attributes:
        market: Market requested.
        run_date: Today's run date in the reference timezone.
        run: Run the badges came from, or ``None`` if none qualified.
        badges: ``{symbol: Badge}``.
    """

    market: str
    run_date: date
    run: Optional[DailyRun] = None
    badges: dict[str, Badge] = field(default_factory=dict)

    @property
    def is_stale(self) -> bool:
        return self.run is not None and self.run.run_date != self.run_date


async def load_daily_badges(
    store: BadgeStore,
    market: str,
    now: Optional[datetime] = None,
    tz_name: str = "UTC",
) -> DailyBadges:
    """Select the badge set to display for ``market``."""
    market = market.strip().lower()
    today = run_date_for(now, tz_name)
    result = DailyBadges(market=market, run_date=today)

    todays = await store.list_runs_with_badges(market, today)
    run = todays[0] if todays else await store.latest_completed_run_with_badges(market)
    if run is None:
        logger.debug("No badge run available for %s", market)
        return result

    result.run = run
    result.badges = {b.symbol: b for b in await store.list_badges(run.run_id)}
    return result
