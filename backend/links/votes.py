"""
Vote Ledger
===========

Owns the one-vote-per-(voter, target) invariant and is the only writer of
Link.score and Comment.score.

    cast_vote(voter_id, votable_type, votable_id, value) -> VoteResult

    no row, value != 0    insert,            applied_delta = value
    row with old value    update to value,   applied_delta = value - old
    no row, value == 0    nothing,           applied_delta = 0

The target's score moves by applied_delta (never recounted) and the same
delta goes to the author's karma, all in one transaction.

CONCURRENCY STRATEGY:
---------------------
Problem: two requests from the same voter on the same target both read
"no vote yet" (or the same old value) and both write.

First vote on a pair:
    The unique constraint (voter, votable_type, votable_id) lets exactly one
    INSERT win. The loser gets IntegrityError, which we turn into
    ConflictError.

Changing an existing vote:
    Compare-and-swap on the value we read:
        UPDATE links_vote SET value = new WHERE id = %s AND value = old
    Zero rows updated means someone else changed it first -> ConflictError.
    On PostgreSQL the row is also locked with SELECT ... FOR UPDATE, so the
    CAS rarely fails there.

A ConflictError rolls back the whole attempt (no score or karma written)
and cast_vote re-runs it from the read, up to VOTE_MAX_RETRIES times. The
retry re-reads the winner's value, so the recomputed delta is exact.

Votes on different targets, or by different voters, touch different rows
and never wait on each other.
"""

import logging
from typing import Dict, Iterable, List, Optional, TypedDict

from django.contrib.auth.models import User
from django.db import IntegrityError, transaction
from django.db.models import Sum
from django.db.models.functions import Coalesce
from django.utils import timezone

from . import store
from .conf import get_setting
from .exceptions import ConflictError, ValidationError
from .karma import on_vote_applied
from .models import VOTE_VALUES, Vote, VotableType

logger = logging.getLogger(__name__)


class VoteResult:
    """Result of a cast_vote call."""
    def __init__(self, applied_delta: int, score: int, value: int):
        self.applied_delta = applied_delta
        self.score = score
        self.value = value

    def __repr__(self):
        return (
            f"VoteResult(applied_delta={self.applied_delta}, "
            f"score={self.score}, value={self.value})"
        )


class ScoreDrift(TypedDict):
    votable_type: str
    votable_id: int
    score: int
    expected: int


def _votable_type(votable_type, operation: str) -> VotableType:
    try:
        return VotableType(votable_type)
    except ValueError:
        raise ValidationError(
            f"Unknown votable type: {votable_type!r}",
            operation,
            (votable_type, None)
        ) from None


def _find_vote(voter_id: int, votable_type: VotableType, votable_id: int) -> Optional[Vote]:
    """Current vote row for the pair, row-locked where the backend allows."""
    with store.translate_errors('cast_vote', (votable_type.value, votable_id)):
        return (
            Vote.objects
            .select_for_update()
            .filter(voter_id=voter_id, votable_type=votable_type, votable_id=votable_id)
            .first()
        )


def _apply_vote(voter_id: int, votable_type: VotableType, votable_id: int, value: int) -> VoteResult:
    """One attempt of cast_vote. Raises ConflictError if it lost a race."""
    target_key = (votable_type.value, votable_id)
    model = votable_type.model

    with transaction.atomic():
        target = store.get(model, votable_id, operation='cast_vote')
        vote = _find_vote(voter_id, votable_type, votable_id)

        if vote is None:
            if value == 0:
                # Retracting a vote that was never cast
                return VoteResult(applied_delta=0, score=target.get_score(), value=0)
            try:
                with transaction.atomic():
                    store.insert(
                        Vote,
                        operation='cast_vote',
                        voter_id=voter_id,
                        votable_type=votable_type,
                        votable_id=votable_id,
                        value=value
                    )
            except IntegrityError:
                raise ConflictError(
                    "A concurrent vote was recorded first",
                    'cast_vote',
                    target_key
                ) from None
            applied_delta = value
        else:
            applied_delta = value - vote.value
            if applied_delta == 0:
                return VoteResult(applied_delta=0, score=target.get_score(), value=value)
            with store.translate_errors('cast_vote', target_key):
                swapped = (
                    Vote.objects
                    .filter(pk=vote.pk, value=vote.value)
                    .update(value=value, updated_at=timezone.now())
                )
            if not swapped:
                raise ConflictError(
                    "The vote changed while it was being updated",
                    'cast_vote',
                    target_key
                )

        score = model.apply_score_delta(votable_id, applied_delta, operation='cast_vote')
        on_vote_applied(
            target.author_id,
            applied_delta,
            actor_id=voter_id,
            votable_type=votable_type.value,
            votable_id=votable_id
        )

    logger.debug(
        f"Vote {voter_id} on {votable_type.value} {votable_id}: "
        f"value={value} delta={applied_delta:+d} score={score}"
    )
    return VoteResult(applied_delta=applied_delta, score=score, value=value)


def cast_vote(voter_id: int, votable_type, votable_id: int, value: int) -> VoteResult:
    """
    Record voter's vote on a Link or Comment.

    Validation happens before anything is written. Lost races are retried
    up to VOTE_MAX_RETRIES times; after that the ConflictError surfaces.

    RETURNS:
    - VoteResult with the applied delta and the target's new score
    """
    votable_type = _votable_type(votable_type, 'cast_vote')
    if type(value) is not int or value not in VOTE_VALUES:
        raise ValidationError(
            f"Vote value must be one of {VOTE_VALUES}, got {value!r}",
            'cast_vote',
            (votable_type.value, votable_id)
        )
    store.get(User, voter_id, operation='cast_vote')

    max_retries = get_setting('VOTE_MAX_RETRIES')
    attempt = 0
    while True:
        try:
            return _apply_vote(voter_id, votable_type, votable_id, value)
        except ConflictError as exc:
            if attempt >= max_retries:
                logger.warning(f"Giving up after {attempt + 1} attempts: {exc}")
                raise
            attempt += 1
            logger.info(f"Retrying cast_vote ({attempt}/{max_retries}): {exc}")


def get_vote(voter_id: int, votable_type, votable_id: int) -> int:
    """The voter's current value on the target, 0 when they never voted."""
    votable_type = _votable_type(votable_type, 'get_vote')
    with store.translate_errors('get_vote', (votable_type.value, votable_id)):
        value = (
            Vote.objects
            .filter(voter_id=voter_id, votable_type=votable_type, votable_id=votable_id)
            .values_list('value', flat=True)
            .first()
        )
    return value or 0


def votes_for(voter_id: int, votable_type, votable_ids: Iterable[int]) -> Dict[int, int]:
    """
    The voter's non-zero votes on many targets of one type, in one query.

    Used to mark "you voted" state on a listing or a comment thread.
    """
    votable_type = _votable_type(votable_type, 'votes_for')
    votable_ids = list(votable_ids)
    with store.translate_errors('votes_for', (votable_type.value, None)):
        rows = (
            Vote.objects
            .filter(voter_id=voter_id, votable_type=votable_type, votable_id__in=votable_ids)
            .exclude(value=0)
            .values_list('votable_id', 'value')
        )
        return dict(rows)


def audit_scores(fix: bool = False) -> List[ScoreDrift]:
    """
    Offline conservation check: every score must equal the sum of the
    values of the votes on record for its target.

    With fix=True, drifted scores are corrected by the difference. Karma is
    left alone; run karma.reconcile_karma() afterwards.
    """
    drifts: List[ScoreDrift] = []
    for votable_type in VotableType:
        model = votable_type.model
        with store.translate_errors('audit_scores', (votable_type.value, None)):
            totals = dict(
                Vote.objects
                .filter(votable_type=votable_type)
                .order_by()
                .values_list('votable_id')
                .annotate(total=Coalesce(Sum('value'), 0))
            )
            scores = list(model.objects.order_by('id').values_list('id', 'score'))

        for votable_id, score in scores:
            expected = totals.get(votable_id, 0)
            if score == expected:
                continue
            logger.warning(
                f"Score drift on {votable_type.value} {votable_id}: "
                f"stored {score}, votes sum to {expected}"
            )
            drifts.append({
                'votable_type': votable_type.value,
                'votable_id': votable_id,
                'score': score,
                'expected': expected,
            })
            if fix:
                model.apply_score_delta(votable_id, expected - score, operation='audit_scores')

    return drifts
