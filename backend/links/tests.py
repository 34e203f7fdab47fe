"""
Tests for the links engine

Focus areas:
1. Vote ledger: idempotence, conservation, single-vote invariant, races
2. Ranking: hotness formula, orderings, listings
3. Comment tree: ordering, validation, counters, depth, no N+1
4. Karma: delta propagation, reconciliation, leaderboard
"""

import threading
from datetime import timedelta
from decimal import Decimal
from io import StringIO
from unittest.mock import patch

from django.contrib import admin
from django.contrib.auth.models import User
from django.core.management import call_command
from django.core.management.base import CommandError
from django.db import IntegrityError, OperationalError, connection
from django.db.models import F, Sum
from django.test import RequestFactory, SimpleTestCase, TestCase, TransactionTestCase, override_settings
from django.utils import timezone

from . import store, votes
from .api import submit_link
from .comments import (
    audit_comment_counts,
    children,
    comment_tree,
    depth,
    post_comment,
    root_comments,
)
from .exceptions import ConflictError, NotFoundError, StoreError, ValidationError
from .karma import (
    expected_karma,
    get_karma,
    get_leaderboard,
    get_recent_karma,
    get_user_rank,
    on_vote_applied,
    reconcile_karma,
)
from .models import Comment, KarmaEvent, Link, Profile, Vote, VotableType
from .ranking import RankMode, hotness, listing, rank
from .votes import audit_scores, cast_vote, get_vote, votes_for


def vote_rows(voter, votable_type, votable_id):
    return Vote.objects.filter(voter=voter, votable_type=votable_type, votable_id=votable_id)


class VoteLedgerTestCase(TestCase):
    """
    Test cast_vote semantics.

    CRITICAL: These tests verify that:
    1. Repeating a vote is a no-op
    2. score always equals the sum of the votes on record
    3. There is never more than one row per (voter, target)
    """

    def setUp(self):
        self.author = User.objects.create_user('author', 'a@test.com', 'pass')
        self.voter = User.objects.create_user('voter', 'v@test.com', 'pass')
        self.link = Link.objects.create(author=self.author, title='Link', url='https://example.com/1')

    def test_vote_change_scenario(self):
        """+1, +1 again, then -1: final score -1 and a single row."""
        first = cast_vote(self.voter.id, VotableType.LINK, self.link.id, 1)
        self.assertEqual(first.applied_delta, 1)
        self.assertEqual(first.score, 1)

        second = cast_vote(self.voter.id, VotableType.LINK, self.link.id, 1)
        self.assertEqual(second.applied_delta, 0)
        self.assertEqual(second.score, 1)

        third = cast_vote(self.voter.id, VotableType.LINK, self.link.id, -1)
        self.assertEqual(third.applied_delta, -2)
        self.assertEqual(third.score, -1)

        self.link.refresh_from_db()
        self.assertEqual(self.link.score, -1)
        rows = vote_rows(self.voter, VotableType.LINK, self.link.id)
        self.assertEqual(rows.count(), 1)
        self.assertEqual(rows.get().value, -1)

    def test_retract_keeps_canonical_row(self):
        """Retracting sets value 0; the next vote updates the same row."""
        cast_vote(self.voter.id, VotableType.LINK, self.link.id, 1)
        result = cast_vote(self.voter.id, VotableType.LINK, self.link.id, 0)

        self.assertEqual(result.applied_delta, -1)
        self.assertEqual(result.score, 0)
        row = vote_rows(self.voter, VotableType.LINK, self.link.id).get()
        self.assertEqual(row.value, 0)

        cast_vote(self.voter.id, VotableType.LINK, self.link.id, -1)
        rows = vote_rows(self.voter, VotableType.LINK, self.link.id)
        self.assertEqual(rows.count(), 1)
        self.assertEqual(rows.get().pk, row.pk)

    def test_retract_without_vote_is_noop(self):
        result = cast_vote(self.voter.id, VotableType.LINK, self.link.id, 0)

        self.assertEqual(result.applied_delta, 0)
        self.assertEqual(result.score, 0)
        self.assertFalse(vote_rows(self.voter, VotableType.LINK, self.link.id).exists())
        self.assertEqual(KarmaEvent.objects.count(), 0)

    def test_invalid_value_rejected_before_any_write(self):
        for bad_value in (2, -2, True, 1.0, Decimal('1'), '1', None):
            with self.assertRaises(ValidationError):
                cast_vote(self.voter.id, VotableType.LINK, self.link.id, bad_value)

        self.link.refresh_from_db()
        self.assertEqual(self.link.score, 0)
        self.assertEqual(Vote.objects.count(), 0)

    def test_unknown_votable_type(self):
        with self.assertRaises(ValidationError) as ctx:
            cast_vote(self.voter.id, 'post', self.link.id, 1)
        self.assertEqual(ctx.exception.operation, 'cast_vote')

    def test_votable_type_accepts_plain_string(self):
        result = cast_vote(self.voter.id, 'link', self.link.id, 1)
        self.assertEqual(result.score, 1)

    def test_missing_target(self):
        with self.assertRaises(NotFoundError) as ctx:
            cast_vote(self.voter.id, VotableType.COMMENT, 999999, 1)

        self.assertEqual(ctx.exception.operation, 'cast_vote')
        self.assertEqual(ctx.exception.target, ('comment', 999999))
        self.assertEqual(Vote.objects.count(), 0)

    def test_missing_voter(self):
        with self.assertRaises(NotFoundError):
            cast_vote(999999, VotableType.LINK, self.link.id, 1)
        self.assertEqual(Vote.objects.count(), 0)

    def test_comment_votes_move_comment_score_only(self):
        comment = post_comment(self.author.id, self.link.id, None, 'First!')

        cast_vote(self.voter.id, VotableType.COMMENT, comment.id, -1)

        comment.refresh_from_db()
        self.link.refresh_from_db()
        self.assertEqual(comment.score, -1)
        self.assertEqual(self.link.score, 0)

    def test_score_conservation(self):
        """After any sequence of votes, score == sum of vote values."""
        voters = [
            User.objects.create_user(f'voter{i}', f'v{i}@test.com', 'pass')
            for i in range(4)
        ]
        comment = post_comment(self.author.id, self.link.id, None, 'A comment')
        sequence = [
            (0, VotableType.LINK, self.link.id, 1),
            (1, VotableType.LINK, self.link.id, -1),
            (0, VotableType.LINK, self.link.id, -1),
            (2, VotableType.COMMENT, comment.id, 1),
            (3, VotableType.COMMENT, comment.id, 1),
            (2, VotableType.COMMENT, comment.id, 0),
            (1, VotableType.LINK, self.link.id, 1),
            (3, VotableType.LINK, self.link.id, 1),
            (3, VotableType.LINK, self.link.id, 1),
        ]
        for index, votable_type, votable_id, value in sequence:
            cast_vote(voters[index].id, votable_type, votable_id, value)

        for target in (self.link, comment):
            target.refresh_from_db()
            total = Vote.objects.filter(
                votable_type=target.votable_type,
                votable_id=target.id
            ).aggregate(total=Sum('value'))['total']
            self.assertEqual(target.score, total)

        self.assertEqual(self.link.score, 1)
        self.assertEqual(comment.score, 1)
        self.assertEqual(audit_scores(), [])

        # Single-vote invariant
        self.assertEqual(Vote.objects.count(), 5)

    def test_get_vote_and_votes_for(self):
        other = Link.objects.create(author=self.author, title='Other', url='https://example.com/2')
        third = Link.objects.create(author=self.author, title='Third', url='https://example.com/3')
        cast_vote(self.voter.id, VotableType.LINK, self.link.id, 1)
        cast_vote(self.voter.id, VotableType.LINK, other.id, -1)
        cast_vote(self.voter.id, VotableType.LINK, third.id, 1)
        cast_vote(self.voter.id, VotableType.LINK, third.id, 0)

        self.assertEqual(get_vote(self.voter.id, VotableType.LINK, self.link.id), 1)
        self.assertEqual(get_vote(self.voter.id, VotableType.LINK, third.id), 0)
        self.assertEqual(get_vote(self.author.id, VotableType.LINK, self.link.id), 0)

        with self.assertNumQueries(1):
            mine = votes_for(self.voter.id, VotableType.LINK, [self.link.id, other.id, third.id])
        self.assertEqual(mine, {self.link.id: 1, other.id: -1})

    def test_audit_scores_detects_and_fixes_drift(self):
        cast_vote(self.voter.id, VotableType.LINK, self.link.id, 1)
        Link.objects.filter(id=self.link.id).update(score=F('score') + 3)

        drifts = audit_scores()
        self.assertEqual(drifts, [{
            'votable_type': 'link',
            'votable_id': self.link.id,
            'score': 4,
            'expected': 1,
        }])

        audit_scores(fix=True)
        self.link.refresh_from_db()
        self.assertEqual(self.link.score, 1)
        self.assertEqual(audit_scores(), [])


class VoteConcurrencyTestCase(TransactionTestCase):
    """
    Test lost races on the same (voter, target) pair.

    The interleavings are forced by handing _apply_vote a stale read of
    the vote row, the exact state a loser of a real race observes. The
    threaded tests run real concurrent writers on every backend.
    """

    def setUp(self):
        self.author = User.objects.create_user('author', 'a@test.com', 'pass')
        self.voter = User.objects.create_user('voter', 'v@test.com', 'pass')
        self.link = Link.objects.create(author=self.author, title='Race', url='https://example.com/race')

    def test_concurrent_first_votes_record_one_row(self):
        """
        Two first votes race: the other request inserts first, ours read
        "no vote" before that insert landed.
        """
        cast_vote(self.voter.id, VotableType.LINK, self.link.id, 1)

        original = votes._find_vote
        calls = []

        def stale_find(*args):
            calls.append(args)
            if len(calls) == 1:
                return None
            return original(*args)

        with patch('links.votes._find_vote', side_effect=stale_find):
            result = cast_vote(self.voter.id, VotableType.LINK, self.link.id, 1)

        self.assertEqual(len(calls), 2)
        self.assertEqual(result.applied_delta, 0)
        self.assertEqual(vote_rows(self.voter, VotableType.LINK, self.link.id).count(), 1)
        self.link.refresh_from_db()
        self.assertEqual(self.link.score, 1)
        self.assertEqual(get_karma(self.author.id), 1)
        self.assertEqual(KarmaEvent.objects.count(), 1)

    def test_stale_update_is_retried_with_fresh_value(self):
        """Our read saw -1 but the row is already +1: CAS fails, retry uses +1."""
        cast_vote(self.voter.id, VotableType.LINK, self.link.id, -1)
        stale = vote_rows(self.voter, VotableType.LINK, self.link.id).get()
        cast_vote(self.voter.id, VotableType.LINK, self.link.id, 1)

        original = votes._find_vote
        calls = []

        def stale_find(*args):
            calls.append(args)
            if len(calls) == 1:
                return stale
            return original(*args)

        with patch('links.votes._find_vote', side_effect=stale_find):
            result = cast_vote(self.voter.id, VotableType.LINK, self.link.id, 0)

        self.assertEqual(len(calls), 2)
        self.assertEqual(result.applied_delta, -1)
        self.link.refresh_from_db()
        self.assertEqual(self.link.score, 0)
        self.assertEqual(vote_rows(self.voter, VotableType.LINK, self.link.id).get().value, 0)
        self.assertEqual(get_karma(self.author.id), 0)

    @override_settings(LINKS={'VOTE_MAX_RETRIES': 2})
    def test_conflict_surfaces_when_retries_exhausted(self):
        cast_vote(self.voter.id, VotableType.LINK, self.link.id, 1)

        with patch('links.votes._find_vote', return_value=None) as find:
            with self.assertRaises(ConflictError) as ctx:
                cast_vote(self.voter.id, VotableType.LINK, self.link.id, -1)

        self.assertEqual(find.call_count, 3)
        self.assertEqual(ctx.exception.target, ('link', self.link.id))
        # Failed attempts left nothing behind
        self.link.refresh_from_db()
        self.assertEqual(self.link.score, 1)
        self.assertEqual(KarmaEvent.objects.count(), 1)

    def _run_concurrently(self, voter_ids):
        """Cast +1 from every voter id at once, one thread each."""
        barrier = threading.Barrier(len(voter_ids))
        errors = []

        def worker(voter_id):
            try:
                barrier.wait()
                cast_vote(voter_id, VotableType.LINK, self.link.id, 1)
            except Exception as exc:
                errors.append(exc)
            finally:
                connection.close()

        threads = [threading.Thread(target=worker, args=(voter_id,)) for voter_id in voter_ids]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        return errors

    def test_concurrent_votes_by_different_voters_all_count(self):
        voters = [
            User.objects.create_user(f'crowd{i}', f'crowd{i}@test.com', 'pass')
            for i in range(6)
        ]

        errors = self._run_concurrently([voter.id for voter in voters])

        self.assertEqual(errors, [])
        self.link.refresh_from_db()
        self.assertEqual(self.link.score, 6)
        self.assertEqual(Vote.objects.filter(votable_id=self.link.id).count(), 6)
        self.assertEqual(get_karma(self.author.id), 6)

    def test_concurrent_first_votes_threads(self):
        errors = self._run_concurrently([self.voter.id] * 4)

        self.assertEqual(errors, [])
        self.assertEqual(vote_rows(self.voter, VotableType.LINK, self.link.id).count(), 1)
        self.link.refresh_from_db()
        self.assertEqual(self.link.score, 1)


def make_link(pk, score, created_at):
    """Unsaved link, enough for the pure ranking functions."""
    return Link(id=pk, score=score, created_at=created_at, title=f'L{pk}', url='https://example.com')


class HotnessTestCase(SimpleTestCase):
    """Test the pure ranking functions. No database."""

    def setUp(self):
        self.now = timezone.now()

    def test_hotness_values(self):
        self.assertAlmostEqual(hotness(10, self.now, self.now), 9 / 2 ** 1.5)
        self.assertAlmostEqual(hotness(10, self.now, self.now), 3.18, places=2)
        day_old = self.now - timedelta(hours=24)
        self.assertAlmostEqual(hotness(10, day_old, self.now), 0.068, places=3)

    def test_fresh_link_ranks_above_day_old_link(self):
        fresh = make_link(1, 10, self.now)
        old = make_link(2, 10, self.now - timedelta(hours=24))

        ranked = rank([old, fresh], RankMode.HOT, now=self.now)
        self.assertEqual([link.id for link in ranked], [1, 2])

    def test_hotness_monotonicity(self):
        for hours in (0, 1, 5, 24, 100):
            younger = self.now - timedelta(hours=hours)
            older = younger - timedelta(hours=3)
            self.assertGreaterEqual(hotness(7, younger, self.now), hotness(7, older, self.now))
            self.assertGreater(hotness(8, younger, self.now), hotness(7, younger, self.now))

    def test_low_scores_never_positive(self):
        for score in (1, 0, -5):
            self.assertLessEqual(hotness(score, self.now, self.now), 0)

    def test_future_timestamp_counts_as_brand_new(self):
        future = self.now + timedelta(hours=3)
        self.assertEqual(hotness(4, future, self.now), hotness(4, self.now, self.now))

    def test_new_ordering(self):
        same_time = self.now - timedelta(hours=1)
        links = [
            make_link(1, 50, self.now - timedelta(hours=5)),
            make_link(2, 0, same_time),
            make_link(3, 0, same_time),
            make_link(4, -3, self.now),
        ]
        ranked = rank(links, 'new', now=self.now)
        self.assertEqual([link.id for link in ranked], [4, 3, 2, 1])

    def test_top_ordering_and_period(self):
        links = [
            make_link(1, 5, self.now - timedelta(hours=2)),
            make_link(2, 5, self.now - timedelta(hours=1)),
            make_link(3, 9, self.now - timedelta(days=3)),
            make_link(4, 1, self.now - timedelta(days=20)),
            make_link(5, 100, self.now - timedelta(days=40)),
        ]

        all_time = rank(links, RankMode.TOP, now=self.now)
        self.assertEqual([link.id for link in all_time], [5, 3, 2, 1, 4])

        day = rank(links, RankMode.TOP, 'day', now=self.now)
        self.assertEqual([link.id for link in day], [2, 1])

        week = rank(links, RankMode.TOP, 'week', now=self.now)
        self.assertEqual([link.id for link in week], [3, 2, 1])

        month = rank(links, RankMode.TOP, 'month', now=self.now)
        self.assertEqual([link.id for link in month], [3, 2, 1, 4])

    def test_hot_tie_break_newer_first(self):
        created = self.now - timedelta(hours=4)
        links = [make_link(1, 1, created - timedelta(minutes=1)), make_link(2, 1, created)]
        ranked = rank(links, RankMode.HOT, now=self.now)
        self.assertEqual([link.id for link in ranked], [2, 1])

    def test_rank_is_a_restartable_snapshot(self):
        links = [make_link(i, i, self.now - timedelta(hours=i)) for i in range(1, 6)]
        ranked = rank(iter(links), RankMode.HOT, now=self.now)
        self.assertEqual(list(ranked), list(ranked))
        self.assertEqual(len(ranked), 5)

    def test_unknown_mode_and_period(self):
        with self.assertRaises(ValidationError):
            rank([], 'best')
        with self.assertRaises(ValidationError):
            rank([], RankMode.TOP, 'year')


class ListingTestCase(TestCase):
    """Test listings read from the database."""

    def setUp(self):
        self.now = timezone.now()
        self.author = User.objects.create_user('author', 'a@test.com', 'pass')
        self.voters = [
            User.objects.create_user(f'voter{i}', f'v{i}@test.com', 'pass')
            for i in range(5)
        ]
        self.fresh = self._link('Fresh', hours_ago=0, upvotes=3)
        self.popular_old = self._link('Popular old', hours_ago=72, upvotes=5)
        self.middle = self._link('Middle', hours_ago=6, upvotes=2)

    def _link(self, title, hours_ago, upvotes):
        link = submit_link(self.author.id, title, f'https://example.com/{title.replace(" ", "-")}')
        Link.objects.filter(id=link.id).update(created_at=self.now - timedelta(hours=hours_ago))
        for voter in self.voters[:upvotes]:
            cast_vote(voter.id, VotableType.LINK, link.id, 1)
        link.refresh_from_db()
        return link

    def test_new_listing(self):
        ranked = listing(RankMode.NEW, now=self.now)
        self.assertEqual(ranked, [self.fresh, self.middle, self.popular_old])

    def test_top_listing(self):
        self.assertEqual(listing('top', now=self.now), [self.popular_old, self.fresh, self.middle])
        self.assertEqual(listing('top', 'day', now=self.now), [self.fresh, self.middle])

    def test_hot_listing(self):
        ranked = listing('hot', now=self.now)
        self.assertEqual(ranked, [self.fresh, self.middle, self.popular_old])

    def test_listing_limit(self):
        self.assertEqual(len(listing('hot', limit=2, now=self.now)), 2)
        self.assertEqual(len(listing('new', limit=1, now=self.now)), 1)

    @override_settings(LINKS={'HOT_WINDOW_DAYS': 1})
    def test_hot_window_limits_candidates(self):
        ranked = listing('hot', now=self.now)
        self.assertNotIn(self.popular_old, ranked)

    def test_listing_reflects_new_votes(self):
        for voter in self.voters:
            cast_vote(voter.id, VotableType.LINK, self.middle.id, -1)
        self.assertEqual(listing('hot', now=self.now)[-1], self.middle)


class CommentTreeTestCase(TestCase):
    """
    Test comment posting and retrieval.

    CRITICAL: Verify tree integrity and N+1 prevention.
    """

    def setUp(self):
        self.user = User.objects.create_user('user', 'u@test.com', 'pass')
        self.voters = [
            User.objects.create_user(f'voter{i}', f'v{i}@test.com', 'pass')
            for i in range(5)
        ]
        self.link = Link.objects.create(author=self.user, title='Test', url='https://example.com/t')
        self.other_link = Link.objects.create(author=self.user, title='Other', url='https://example.com/o')

    def _upvote(self, comment, count):
        for voter in self.voters[:count]:
            cast_vote(voter.id, VotableType.COMMENT, comment.id, 1)

    def test_children_scenario(self):
        c1 = post_comment(self.user.id, self.link.id, None, 'Root')
        c3 = post_comment(self.user.id, self.link.id, c1.id, 'Reply B')
        c2 = post_comment(self.user.id, self.link.id, c1.id, 'Reply A')
        self._upvote(c2, 5)
        self._upvote(c3, 3)

        self.assertEqual(children(c1.id), [c2, c3])

        post_comment(self.user.id, self.link.id, c2.id, 'Nested')
        self.link.refresh_from_db()
        self.assertEqual(self.link.comment_count, 4)

        with self.assertRaises(ValidationError) as ctx:
            post_comment(self.user.id, self.other_link.id, c2.id, 'Wrong link')
        self.assertEqual(ctx.exception.message, 'comment does not belong to this link')

        self.other_link.refresh_from_db()
        self.assertEqual(self.other_link.comment_count, 0)
        self.assertFalse(Comment.objects.filter(link=self.other_link).exists())

    def test_ties_oldest_first(self):
        first = post_comment(self.user.id, self.link.id, None, 'First')
        second = post_comment(self.user.id, self.link.id, None, 'Second')
        third = post_comment(self.user.id, self.link.id, None, 'Third')
        self._upvote(third, 1)

        self.assertEqual(root_comments(self.link.id), [third, first, second])

    def test_root_comments_exclude_replies(self):
        root = post_comment(self.user.id, self.link.id, None, 'Root')
        post_comment(self.user.id, self.link.id, root.id, 'Reply')
        post_comment(self.user.id, self.other_link.id, None, 'Elsewhere')

        self.assertEqual(root_comments(self.link.id), [root])

    def test_missing_parent_is_validation_error(self):
        with self.assertRaises(ValidationError):
            post_comment(self.user.id, self.link.id, 999999, 'Orphan')
        self.link.refresh_from_db()
        self.assertEqual(self.link.comment_count, 0)

    def test_missing_link_or_author(self):
        with self.assertRaises(NotFoundError):
            post_comment(self.user.id, 999999, None, 'Nowhere')
        with self.assertRaises(NotFoundError):
            post_comment(999999, self.link.id, None, 'Nobody')
        with self.assertRaises(NotFoundError):
            root_comments(999999)
        with self.assertRaises(NotFoundError):
            children(999999)

    def test_blank_content(self):
        with self.assertRaises(ValidationError):
            post_comment(self.user.id, self.link.id, None, '   ')
        self.assertEqual(Comment.objects.count(), 0)

    def test_depth_is_computed(self):
        c1 = post_comment(self.user.id, self.link.id, None, 'Depth 0')
        c2 = post_comment(self.user.id, self.link.id, c1.id, 'Depth 1')
        c3 = post_comment(self.user.id, self.link.id, c2.id, 'Depth 2')

        self.assertEqual(depth(c1), 0)
        self.assertEqual(depth(c2), 1)

        cache = {}
        with self.assertNumQueries(2):
            self.assertEqual(depth(c3, cache), 2)
        with self.assertNumQueries(0):
            self.assertEqual(depth(c2, cache), 1)
            self.assertEqual(depth(c1, cache), 0)

    def test_comment_tree_nested_and_sorted(self):
        c1 = post_comment(self.user.id, self.link.id, None, 'Root 1')
        c2 = post_comment(self.user.id, self.link.id, None, 'Root 2')
        r1 = post_comment(self.user.id, self.link.id, c1.id, 'Reply 1')
        r2 = post_comment(self.user.id, self.link.id, c1.id, 'Reply 2')
        nested = post_comment(self.user.id, self.link.id, r2.id, 'Nested')
        self._upvote(c2, 2)
        self._upvote(r2, 1)

        tree = comment_tree(self.link.id)

        self.assertEqual([node['comment'].id for node in tree], [c2.id, c1.id])
        replies = tree[1]['replies']
        self.assertEqual([node['comment'].id for node in replies], [r2.id, r1.id])
        self.assertEqual(replies[0]['depth'], 1)
        self.assertEqual(replies[0]['replies'][0]['comment'].id, nested.id)
        self.assertEqual(replies[0]['replies'][0]['depth'], 2)

    def test_no_n_plus_one_queries(self):
        """
        Loading 50 comments must NOT cause 50 queries.
        """
        parent = None
        for i in range(50):
            if i % 5 == 0:
                parent = post_comment(self.user.id, self.link.id, None, f'Comment {i}')
            else:
                post_comment(self.user.id, self.link.id, parent.id, f'Reply {i}')

        with self.assertNumQueries(2):
            tree = comment_tree(self.link.id)
            for node in tree:
                node['comment'].author.username

        self.assertEqual(len(tree), 10)
        self.assertEqual(sum(len(node['replies']) for node in tree), 40)

    def test_tree_integrity(self):
        """comment_count matches, every parent shares the child's link."""
        roots = [post_comment(self.user.id, self.link.id, None, f'Root {i}') for i in range(3)]
        for root in roots:
            post_comment(self.user.id, self.link.id, root.id, 'Reply')
        post_comment(self.user.id, self.other_link.id, None, 'Elsewhere')

        for link in (self.link, self.other_link):
            link.refresh_from_db()
            self.assertEqual(link.comment_count, Comment.objects.filter(link=link).count())

        for comment in Comment.objects.filter(parent__isnull=False).select_related('parent'):
            self.assertEqual(comment.parent.link_id, comment.link_id)

        self.assertEqual(audit_comment_counts(), [])

    def test_audit_comment_counts_fix(self):
        post_comment(self.user.id, self.link.id, None, 'Only one')
        Link.objects.filter(id=self.link.id).update(comment_count=7)

        self.assertEqual(
            audit_comment_counts(),
            [{'link_id': self.link.id, 'comment_count': 7, 'expected': 1}]
        )
        audit_comment_counts(fix=True)
        self.link.refresh_from_db()
        self.assertEqual(self.link.comment_count, 1)


class KarmaTestCase(TestCase):
    """Test karma propagation from votes."""

    def setUp(self):
        self.author = User.objects.create_user('author', 'a@test.com', 'pass')
        self.voter = User.objects.create_user('voter', 'v@test.com', 'pass')
        self.other_voter = User.objects.create_user('other', 'o@test.com', 'pass')
        self.link = Link.objects.create(author=self.author, title='Test', url='https://example.com/k')
        self.comment = post_comment(self.author.id, self.link.id, None, 'Mine')

    def test_profile_created_with_user(self):
        profile = Profile.objects.get(user=self.author)
        self.assertEqual(profile.karma, 0)
        self.assertEqual(profile.display_name, 'author')

    def test_link_and_comment_votes_reach_author(self):
        cast_vote(self.voter.id, VotableType.LINK, self.link.id, 1)
        cast_vote(self.voter.id, VotableType.COMMENT, self.comment.id, 1)
        self.assertEqual(get_karma(self.author.id), 2)
        self.assertEqual(get_karma(self.voter.id), 0)

    def test_karma_tracks_applied_delta(self):
        cast_vote(self.voter.id, VotableType.LINK, self.link.id, 1)
        cast_vote(self.voter.id, VotableType.LINK, self.link.id, -1)

        self.assertEqual(get_karma(self.author.id), -1)
        deltas = list(KarmaEvent.objects.order_by('id').values_list('karma_delta', flat=True))
        self.assertEqual(deltas, [1, -2])

    def test_karma_can_go_negative(self):
        cast_vote(self.voter.id, VotableType.COMMENT, self.comment.id, -1)
        cast_vote(self.other_voter.id, VotableType.COMMENT, self.comment.id, -1)
        self.assertEqual(get_karma(self.author.id), -2)

    def test_self_votes_count(self):
        cast_vote(self.author.id, VotableType.LINK, self.link.id, 1)
        self.assertEqual(get_karma(self.author.id), 1)

    def test_karma_conservation(self):
        cast_vote(self.voter.id, VotableType.LINK, self.link.id, 1)
        cast_vote(self.other_voter.id, VotableType.LINK, self.link.id, -1)
        cast_vote(self.voter.id, VotableType.COMMENT, self.comment.id, 1)
        cast_vote(self.voter.id, VotableType.LINK, self.link.id, 0)
        cast_vote(self.other_voter.id, VotableType.COMMENT, self.comment.id, 1)

        karma = get_karma(self.author.id)
        self.assertEqual(karma, get_recent_karma(self.author.id))
        self.assertEqual(karma, expected_karma(self.author.id))
        self.assertEqual(karma, 1)
        self.assertEqual(reconcile_karma(), [])

    def test_zero_delta_is_noop(self):
        self.assertIsNone(on_vote_applied(self.author.id, 0))
        self.assertEqual(KarmaEvent.objects.count(), 0)

    def test_delta_order_does_not_matter(self):
        second_author = User.objects.create_user('author2', 'a2@test.com', 'pass')
        deltas = [1, -2, 1, 1, -1, 2]
        for delta in deltas:
            on_vote_applied(self.author.id, delta)
        for delta in reversed(deltas):
            on_vote_applied(second_author.id, delta)
        self.assertEqual(get_karma(self.author.id), get_karma(second_author.id))

    def test_missing_profile_is_recreated(self):
        Profile.objects.filter(user=self.author).delete()
        cast_vote(self.voter.id, VotableType.LINK, self.link.id, 1)
        self.assertEqual(Profile.objects.get(user=self.author).karma, 1)

    def test_get_karma_without_profile_does_not_write(self):
        Profile.objects.filter(user=self.author).delete()

        self.assertEqual(get_karma(self.author.id), 0)
        self.assertFalse(Profile.objects.filter(user=self.author).exists())

    def test_unknown_user(self):
        with self.assertRaises(NotFoundError):
            get_karma(999999)
        with self.assertRaises(NotFoundError):
            reconcile_karma(user_id=999999)

    def test_reconcile_fixes_drift(self):
        cast_vote(self.voter.id, VotableType.LINK, self.link.id, 1)
        Profile.objects.filter(user=self.author).update(karma=10)

        drifts = reconcile_karma(user_id=self.author.id)
        self.assertEqual(len(drifts), 1)
        self.assertEqual(drifts[0]['drift'], 9)
        self.assertEqual(drifts[0]['expected'], 1)

        reconcile_karma(fix=True)
        self.assertEqual(get_karma(self.author.id), 1)
        self.assertEqual(reconcile_karma(), [])
        event = KarmaEvent.objects.latest('id')
        self.assertEqual(event.event_type, KarmaEvent.EventType.RECONCILIATION)
        self.assertEqual(event.karma_delta, -9)


class LeaderboardTestCase(TestCase):
    """
    Test the time-windowed leaderboard.

    CRITICAL: Only karma from inside the window counts.
    """

    def setUp(self):
        self.user1 = User.objects.create_user('user1', 'u1@test.com', 'pass')
        self.user2 = User.objects.create_user('user2', 'u2@test.com', 'pass')
        self.user3 = User.objects.create_user('user3', 'u3@test.com', 'pass')
        self.voters = [
            User.objects.create_user(f'voter{i}', f'v{i}@test.com', 'pass')
            for i in range(3)
        ]
        self.link1 = Link.objects.create(author=self.user1, title='Link 1', url='https://example.com/1')
        self.link2 = Link.objects.create(author=self.user2, title='Link 2', url='https://example.com/2')
        self.link3 = Link.objects.create(author=self.user3, title='Link 3', url='https://example.com/3')

    def test_leaderboard_empty_when_no_karma(self):
        self.assertEqual(get_leaderboard(), [])

    def test_leaderboard_ordering(self):
        for voter in self.voters:
            cast_vote(voter.id, VotableType.LINK, self.link1.id, 1)
        cast_vote(self.voters[0].id, VotableType.LINK, self.link2.id, 1)
        cast_vote(self.voters[0].id, VotableType.LINK, self.link3.id, -1)

        leaderboard = get_leaderboard()

        self.assertEqual([entry['username'] for entry in leaderboard], ['user1', 'user2', 'user3'])
        self.assertEqual([entry['total_karma'] for entry in leaderboard], [3, 1, -1])
        self.assertEqual([entry['rank'] for entry in leaderboard], [1, 2, 3])
        self.assertEqual(get_user_rank(self.user2.id), 2)
        self.assertIsNone(get_user_rank(self.voters[0].id))

    def test_old_karma_not_counted(self):
        KarmaEvent.objects.create(
            recipient=self.user1,
            actor=self.voters[0],
            karma_delta=1,
            votable_type=VotableType.LINK,
            votable_id=self.link1.id,
            created_at=timezone.now() - timedelta(hours=25)
        )

        self.assertEqual(get_recent_karma(self.user1.id, hours=24), 0)
        self.assertEqual(get_recent_karma(self.user1.id, hours=48), 1)
        self.assertEqual(get_leaderboard(hours=24), [])

    def test_leaderboard_limit(self):
        for i in range(8):
            user = User.objects.create_user(f'test{i}', f't{i}@test.com', 'pass')
            link = Link.objects.create(author=user, title=f'L{i}', url=f'https://example.com/t{i}')
            cast_vote(self.voters[0].id, VotableType.LINK, link.id, 1)

        self.assertEqual(len(get_leaderboard(limit=5)), 5)

    @override_settings(LINKS={'LEADERBOARD_LIMIT': 2})
    def test_leaderboard_limit_setting(self):
        for link in (self.link1, self.link2, self.link3):
            cast_vote(self.voters[0].id, VotableType.LINK, link.id, 1)
        self.assertEqual(len(get_leaderboard()), 2)


class StoreTestCase(TestCase):
    """Test the store contract and error translation."""

    def setUp(self):
        self.user = User.objects.create_user('user', 'u@test.com', 'pass')
        self.link = Link.objects.create(author=self.user, title='Store', url='https://example.com/s')

    def test_atomic_increment_returns_new_value(self):
        self.assertEqual(store.atomic_increment(Link, self.link.id, 'score', 3), 3)
        self.assertEqual(store.atomic_increment(Link, self.link.id, 'score', -5), -2)

    def test_atomic_increment_missing_row(self):
        with self.assertRaises(NotFoundError) as ctx:
            store.atomic_increment(Link, 999999, 'score', 1)
        self.assertEqual(ctx.exception.target, ('link', 999999))

    def test_database_errors_become_store_errors(self):
        with patch.object(Link.objects, 'filter', side_effect=OperationalError('disk I/O error')):
            with self.assertRaises(StoreError) as ctx:
                cast_vote(self.user.id, VotableType.LINK, self.link.id, 1)
        self.assertEqual(ctx.exception.operation, 'cast_vote')
        self.assertIn('disk I/O error', str(ctx.exception))
        self.assertEqual(Vote.objects.count(), 0)

    def test_integrity_errors_pass_through(self):
        with self.assertRaises(IntegrityError):
            with store.translate_errors('test'):
                raise IntegrityError('duplicate key')

    def test_error_context_in_message(self):
        error = NotFoundError('Link 5 does not exist', 'cast_vote', ('link', 5))
        self.assertEqual(str(error), 'Link 5 does not exist (operation=cast_vote, target=link:5)')
        self.assertEqual(str(ValidationError('bad')), 'bad')


class SubmitLinkTestCase(TestCase):

    def setUp(self):
        self.user = User.objects.create_user('user', 'u@test.com', 'pass')

    def test_submit_link(self):
        link = submit_link(self.user.id, '  A title  ', 'https://example.com/a', 'Why it matters')
        self.assertEqual(link.title, 'A title')
        self.assertEqual(link.score, 0)
        self.assertEqual(link.comment_count, 0)
        self.assertEqual(link.author_id, self.user.id)

    def test_submit_link_validation(self):
        with self.assertRaises(ValidationError):
            submit_link(self.user.id, '   ', 'https://example.com/a')
        with self.assertRaises(ValidationError):
            submit_link(self.user.id, 'Title', 'not a url')
        with self.assertRaises(ValidationError):
            submit_link(self.user.id, 'x' * 301, 'https://example.com/a')
        with self.assertRaises(NotFoundError):
            submit_link(999999, 'Title', 'https://example.com/a')
        self.assertEqual(Link.objects.count(), 0)


class ManagementCommandTestCase(TestCase):

    def test_seed_then_reconcile_is_clean(self):
        out = StringIO()
        call_command('seed_links', users=4, links=3, comments=6, seed=7, stdout=out)

        self.assertEqual(Link.objects.count(), 3)
        self.assertEqual(Comment.objects.count(), 6)
        self.assertIn('Successfully created', out.getvalue())

        out = StringIO()
        call_command('reconcile_links', stdout=out)
        self.assertIn('No drift found', out.getvalue())

    def test_clear_resets_surviving_karma(self):
        admin_user = User.objects.create_superuser('admin', 'admin@test.com', 'pass')
        voter = User.objects.create_user('voter', 'v@test.com', 'pass')
        link = submit_link(admin_user.id, 'Admin link', 'https://example.com/admin')
        cast_vote(voter.id, VotableType.LINK, link.id, 1)
        self.assertEqual(get_karma(admin_user.id), 1)

        call_command('seed_links', users=3, links=2, comments=2, seed=5, clear=True, stdout=StringIO())

        self.assertEqual(get_karma(admin_user.id), expected_karma(admin_user.id))
        out = StringIO()
        call_command('reconcile_links', stdout=out)
        self.assertIn('No drift found', out.getvalue())

    def test_reconcile_reports_and_fixes(self):
        call_command('seed_links', users=4, links=2, comments=2, seed=3, stdout=StringIO())
        link = Link.objects.first()
        Link.objects.filter(id=link.id).update(score=F('score') + 5)

        with self.assertRaises(CommandError):
            call_command('reconcile_links', stdout=StringIO())

        out = StringIO()
        call_command('reconcile_links', fix=True, stdout=out)
        self.assertIn('Fixed', out.getvalue())

        out = StringIO()
        call_command('reconcile_links', stdout=out)
        self.assertIn('No drift found', out.getvalue())


class AdminTestCase(TestCase):

    def test_derived_fields_read_only(self):
        self.assertIn('score', admin.site._registry[Link].readonly_fields)
        self.assertIn('comment_count', admin.site._registry[Link].readonly_fields)
        self.assertIn('score', admin.site._registry[Comment].readonly_fields)
        self.assertIn('karma', admin.site._registry[Profile].readonly_fields)

    def test_votes_and_events_immutable(self):
        request = RequestFactory().get('/admin/')
        request.user = User.objects.create_superuser('root', 'r@test.com', 'pass')
        for model in (Vote, KarmaEvent):
            model_admin = admin.site._registry[model]
            self.assertFalse(model_admin.has_add_permission(request))
            self.assertFalse(model_admin.has_change_permission(request))
            self.assertFalse(model_admin.has_delete_permission(request))
