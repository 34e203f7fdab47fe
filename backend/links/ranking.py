"""Link orderings: hot, top by period, new."""

import logging
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from django.db import models
from django.utils import timezone

from . import store
from .conf import get_setting
from .exceptions import ValidationError
from .models import Link

logger = logging.getLogger(__name__)

GRAVITY = 1.5
AGE_OFFSET_HOURS = 2


class RankMode(models.TextChoices):
    HOT = 'hot', 'Hot'
    TOP = 'top', 'Top'
    NEW = 'new', 'New'


class Period(models.TextChoices):
    DAY = 'day', 'Past day'
    WEEK = 'week', 'Past week'
    MONTH = 'month', 'Past month'


PERIOD_WINDOWS = {
    Period.DAY: timedelta(days=1),
    Period.WEEK: timedelta(weeks=1),
    Period.MONTH: timedelta(days=30),
}


def hotness(score: int, created_at: datetime, now: datetime) -> float:
    """
    (score - 1) / (age_in_hours + 2) ** 1.5

    Rewards score and decays it faster than linearly with age. A link at
    score 1 or below never ranks above zero. The +2 keeps brand new links
    from dividing by ~0.
    """
    age_in_hours = max((now - created_at).total_seconds() / 3600, 0.0)
    return (score - 1) / (age_in_hours + AGE_OFFSET_HOURS) ** GRAVITY


def _mode(mode) -> RankMode:
    try:
        return RankMode(mode)
    except ValueError:
        raise ValidationError(f"Unknown ranking mode: {mode!r}", 'rank') from None


def _period(period) -> Optional[Period]:
    if period is None:
        return None
    try:
        return Period(period)
    except ValueError:
        raise ValidationError(f"Unknown ranking period: {period!r}", 'rank') from None


def rank(links: Iterable[Link], mode, period=None, now: Optional[datetime] = None) -> List[Link]:
    """
    Order a snapshot of links. Pure: reads only score, created_at and id.

    - new: newest first, higher id first on equal timestamps
    - top: highest score first among links inside ``period`` (day, week,
      month, or all time when None), newer first on ties
    - hot: highest hotness first, newer first on ties

    ``period`` only narrows top. Every mode falls back to id descending,
    so the result is deterministic.
    """
    mode = _mode(mode)
    period = _period(period)
    now = now or timezone.now()
    links = list(links)

    if mode == RankMode.NEW:
        def sort_key(link):
            return (-link.created_at.timestamp(), -link.id)
    elif mode == RankMode.TOP:
        if period is not None:
            cutoff = now - PERIOD_WINDOWS[period]
            links = [link for link in links if link.created_at >= cutoff]

        def sort_key(link):
            return (-link.score, -link.created_at.timestamp(), -link.id)
    else:
        def sort_key(link):
            return (-hotness(link.score, link.created_at, now), -link.created_at.timestamp(), -link.id)

    return sorted(links, key=sort_key)


def listing(mode, period=None, limit: Optional[int] = None, now: Optional[datetime] = None) -> List[Link]:
    """
    Front-page listing straight from the store.

    new and top are ordered and cut by the database (indexes on created_at
    and (-score, -created_at)). hot depends on the current time, so the
    candidates are fetched and ranked in Python; HOT_WINDOW_DAYS > 0 limits
    the candidates to recent links.
    """
    mode = _mode(mode)
    period = _period(period)
    now = now or timezone.now()
    limit = limit if limit is not None else get_setting('LISTING_LIMIT')

    if mode == RankMode.NEW:
        return store.query(
            Link,
            order=('-created_at', '-id'),
            limit=limit,
            select_related=('author',),
            operation='listing'
        )

    if mode == RankMode.TOP:
        filters = {}
        if period is not None:
            filters['created_at__gte'] = now - PERIOD_WINDOWS[period]
        return store.query(
            Link,
            filters=filters,
            order=('-score', '-created_at', '-id'),
            limit=limit,
            select_related=('author',),
            operation='listing'
        )

    filters = {}
    window_days = get_setting('HOT_WINDOW_DAYS')
    if window_days:
        filters['created_at__gte'] = now - timedelta(days=window_days)
    candidates = store.query(Link, filters=filters, select_related=('author',), operation='listing')
    logger.debug(f"Ranking {len(candidates)} hot candidates")
    return rank(candidates, RankMode.HOT, now=now)[:limit]
