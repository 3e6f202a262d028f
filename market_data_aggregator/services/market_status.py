"""
Local US equity session heuristic, used when no provider reports market status.
"""

from datetime import datetime, time
from typing import Optional

import pytz

from shared_models.market_data import MarketStatus, utc_now

EASTERN = pytz.timezone('US/Eastern')

PRE_MARKET_OPEN = time(4, 0)
REGULAR_OPEN = time(9, 30)
REGULAR_CLOSE = time(16, 0)
AFTER_MARKET_CLOSE = time(20, 0)

EXCHANGES = ('nyse', 'nasdaq')


def session_for(now: Optional[datetime] = None) -> str:
    """
    Classify a moment by NYSE trading hours.

    Holidays are not known to this heuristic and are reported as trading days.
    """
    now = now or utc_now()
    if now.tzinfo is None:
        now = pytz.utc.localize(now)
    local = now.astimezone(EASTERN)

    # Saturday = 5, Sunday = 6
    if local.weekday() >= 5:
        return "closed"

    current = local.time()
    if REGULAR_OPEN <= current < REGULAR_CLOSE:
        return "open"
    if PRE_MARKET_OPEN <= current < REGULAR_OPEN:
        return "pre_market"
    if REGULAR_CLOSE <= current < AFTER_MARKET_CLOSE:
        return "after_market"
    return "closed"


def local_market_status(now: Optional[datetime] = None) -> MarketStatus:
    """Build a MarketStatus from the local clock; source is None."""
    now = now or utc_now()
    session = session_for(now)
    exchange_state = "open" if session == "open" else "closed"

    return MarketStatus(
        market=session,
        exchanges={name: exchange_state for name in EXCHANGES},
        server_time=now,
        source=None
    )
