"""
Karma Aggregator
================

Karma is the lifetime sum of every applied_delta on content a user
authored. The vote ledger calls on_vote_applied() with the exact delta it
added to the target's score, inside the same transaction.

STEADY STATE:
-------------
1. UPDATE links_profile SET karma = karma + delta WHERE user_id = author
2. INSERT a KarmaEvent row with the same delta

Deltas commute, so the final karma does not depend on the order in which
votes land. No floor at zero: downvoted content pulls karma negative.

AUDIT:
------
reconcile_karma() recomputes the expected value from scratch as the summed
score of everything the user authored. That full resum is an offline check,
never part of the vote path.

LEADERBOARD:
------------
Time-windowed queries aggregate the KarmaEvent log, leveraging the index
(created_at, recipient):

    SELECT recipient_id, SUM(karma_delta) AS total_karma
    FROM links_karmaevent
    WHERE created_at >= NOW() - INTERVAL '24 hours'
    GROUP BY recipient_id
    ORDER BY total_karma DESC
    LIMIT 5;
"""

import logging
from datetime import timedelta
from typing import List, Optional, TypedDict

from django.contrib.auth.models import User
from django.db import transaction
from django.db.models import Sum
from django.db.models.functions import Coalesce
from django.utils import timezone

from . import store
from .conf import get_setting
from .exceptions import NotFoundError
from .models import Comment, KarmaEvent, Link, Profile

logger = logging.getLogger(__name__)


class LeaderboardEntry(TypedDict):
    user_id: int
    username: str
    total_karma: int
    rank: int


class KarmaDrift(TypedDict):
    user_id: int
    username: str
    karma: int
    expected: int
    drift: int


def _ensure_profile(user_id: int, operation: str) -> Profile:
    user = store.get(User, user_id, operation=operation)
    profile, created = Profile.objects.get_or_create(
        user=user,
        defaults={'display_name': user.get_full_name() or user.username}
    )
    if created:
        logger.info(f"Created missing profile for user {user_id}")
    return profile


def _increment_karma(user_id: int, delta: int, operation: str) -> int:
    try:
        return store.atomic_increment(Profile, user_id, 'karma', delta, operation=operation)
    except NotFoundError:
        # Users that predate the profile signal
        _ensure_profile(user_id, operation)
        return store.atomic_increment(Profile, user_id, 'karma', delta, operation=operation)


def on_vote_applied(
    target_author_id: int,
    delta: int,
    actor_id: Optional[int] = None,
    votable_type: str = '',
    votable_id: Optional[int] = None,
) -> Optional[int]:
    """
    Propagate an applied vote delta to the target author's karma.

    Returns the author's new karma, or None when delta is 0 (nothing to do).
    """
    if delta == 0:
        return None

    with transaction.atomic():
        new_karma = _increment_karma(target_author_id, delta, 'on_vote_applied')
        store.insert(
            KarmaEvent,
            operation='on_vote_applied',
            recipient_id=target_author_id,
            actor_id=actor_id,
            event_type=KarmaEvent.EventType.VOTE,
            karma_delta=delta,
            votable_type=votable_type or '',
            votable_id=votable_id,
        )

    logger.debug(f"Karma of user {target_author_id} {delta:+d} -> {new_karma}")
    return new_karma


def get_karma(user_id: int) -> int:
    """Lifetime karma of a user, 0 for a user without a profile yet."""
    try:
        return store.get(Profile, user_id, operation='get_karma').karma
    except NotFoundError:
        store.get(User, user_id, operation='get_karma')
        return 0


def expected_karma(user_id: int) -> int:
    """Summed score of every link and comment the user authored."""
    with store.translate_errors('expected_karma', ('user', user_id)):
        link_total = Link.objects.filter(author_id=user_id).aggregate(
            total=Coalesce(Sum('score'), 0)
        )['total']
        comment_total = Comment.objects.filter(author_id=user_id).aggregate(
            total=Coalesce(Sum('score'), 0)
        )['total']
    return link_total + comment_total


def reconcile_karma(user_id: Optional[int] = None, fix: bool = False) -> List[KarmaDrift]:
    """
    Compare stored karma with the summed score of authored content.

    Returns one KarmaDrift per user whose karma is off. With fix=True the
    difference is applied as a delta and logged as a RECONCILIATION event,
    so the event log keeps summing to the stored karma.
    """
    with store.translate_errors('reconcile_karma', ('user', user_id)):
        users = User.objects.select_related('profile').order_by('id')
        if user_id is not None:
            users = users.filter(id=user_id)
            if not users.exists():
                raise NotFoundError(f"User {user_id} does not exist", 'reconcile_karma', ('user', user_id))

        link_totals = dict(
            Link.objects.order_by().values_list('author_id').annotate(total=Sum('score'))
        )
        comment_totals = dict(
            Comment.objects.order_by().values_list('author_id').annotate(total=Sum('score'))
        )
        users = list(users)

    drifts: List[KarmaDrift] = []
    for user in users:
        profile = getattr(user, 'profile', None)
        karma = profile.karma if profile else 0
        expected = link_totals.get(user.id, 0) + comment_totals.get(user.id, 0)
        if karma == expected:
            continue

        drift = karma - expected
        logger.warning(f"Karma drift for user {user.id}: stored {karma}, expected {expected}")
        drifts.append({
            'user_id': user.id,
            'username': user.username,
            'karma': karma,
            'expected': expected,
            'drift': drift,
        })

        if fix:
            with transaction.atomic():
                _increment_karma(user.id, -drift, 'reconcile_karma')
                store.insert(
                    KarmaEvent,
                    operation='reconcile_karma',
                    recipient_id=user.id,
                    event_type=KarmaEvent.EventType.RECONCILIATION,
                    karma_delta=-drift,
                )

    return drifts


def get_leaderboard(hours: Optional[int] = None, limit: Optional[int] = None) -> List[LeaderboardEntry]:
    """
    Top users by karma earned in the last ``hours`` hours.

    Reads the KarmaEvent log, so it reflects downvotes and retractions
    inside the window too.
    """
    hours = hours if hours is not None else get_setting('LEADERBOARD_HOURS')
    limit = limit if limit is not None else get_setting('LEADERBOARD_LIMIT')
    cutoff = timezone.now() - timedelta(hours=hours)

    with store.translate_errors('get_leaderboard'):
        leaderboard_qs = (
            KarmaEvent.objects
            .filter(created_at__gte=cutoff)
            .values('recipient_id', 'recipient__username')
            .annotate(total_karma=Sum('karma_delta'))
            .order_by('-total_karma', 'recipient_id')[:limit]
        )
        rows = list(leaderboard_qs)

    result: List[LeaderboardEntry] = []
    for rank, entry in enumerate(rows, start=1):
        result.append({
            'user_id': entry['recipient_id'],
            'username': entry['recipient__username'],
            'total_karma': entry['total_karma'] or 0,
            'rank': rank
        })

    return result


def get_recent_karma(user_id: int, hours: Optional[int] = None) -> int:
    """
    Karma a user earned in the window, or over all time when hours is None.

    Over all time this equals get_karma(user_id).
    """
    with store.translate_errors('get_recent_karma', ('user', user_id)):
        events = KarmaEvent.objects.filter(recipient_id=user_id)
        if hours is not None:
            events = events.filter(created_at__gte=timezone.now() - timedelta(hours=hours))
        return events.aggregate(total=Coalesce(Sum('karma_delta'), 0))['total']


def get_user_rank(user_id: int, hours: Optional[int] = None) -> Optional[int]:
    """
    Rank of a user in the leaderboard window. None if they earned nothing.
    """
    hours = hours if hours is not None else get_setting('LEADERBOARD_HOURS')
    cutoff = timezone.now() - timedelta(hours=hours)

    user_karma = get_recent_karma(user_id, hours)
    if user_karma == 0:
        return None

    with store.translate_errors('get_user_rank', ('user', user_id)):
        users_ahead = (
            KarmaEvent.objects
            .filter(created_at__gte=cutoff)
            .values('recipient_id')
            .annotate(total=Sum('karma_delta'))
            .filter(total__gt=user_karma)
            .count()
        )

    return users_ahead + 1
