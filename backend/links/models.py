"""
Data Models for the Links Engine
================================

Design Philosophy:
------------------
1. Derived fields have exactly one writer
   - Link.score / Comment.score: the Vote Ledger (links.votes)
   - Link.comment_count: the Comment Tree (links.comments)
   - Profile.karma: the Karma Aggregator (links.karma)
   - Every write is UPDATE ... SET f = f + delta (see links.store)

2. Votes are polymorphic through an explicit tag
   - Vote.votable_type is a VotableType value, Vote.votable_id the target pk
   - Link and Comment both implement the Votable capability
   - VotableType.model maps the tag to its model, no ContentType lookups

3. Comments use the Adjacency List pattern (parent FK)
   - depth is computed, never stored (see links.comments.depth)
   - A parent must exist before its child, so cycles cannot be built

4. KarmaEvent is an append-only log of every karma delta
   - Profile.karma is the running total, the log is the audit trail
   - Time-windowed leaderboards aggregate the log

Indexes Strategy:
-----------------
- vote (voter, votable_type, votable_id): unique, the single-vote invariant
- vote (votable_type, votable_id): score conservation audits
- link (-score, -created_at): top listings
- comment (link, parent, -score): sibling listings in display order
- karmaevent (created_at, recipient): leaderboard aggregation
"""

from django.db import models
from django.db.models import Q
from django.contrib.auth.models import User
from django.core.validators import MinLengthValidator
from django.utils import timezone

from . import store


VOTE_VALUES = (-1, 0, 1)


class VotableType(models.TextChoices):
    """Tag for everything that can receive a Vote."""
    LINK = 'link', 'Link'
    COMMENT = 'comment', 'Comment'

    @property
    def model(self):
        return {
            VotableType.LINK: Link,
            VotableType.COMMENT: Comment,
        }[self]


class Profile(models.Model):
    """
    Per-user engine state. Created by a post_save signal on User.

    karma may go negative; there is no floor.
    """
    user = models.OneToOneField(
        User,
        on_delete=models.CASCADE,
        primary_key=True,
        related_name='profile'
    )
    display_name = models.CharField(max_length=150, blank=True)
    karma = models.IntegerField(default=0)

    def __str__(self):
        return f"{self.display_name or self.user.username} ({self.karma})"


class Votable(models.Model):
    """
    Capability shared by Link and Comment.

    score is the sum of the values of all votes on record for the target.
    """
    votable_type = None

    score = models.IntegerField(default=0)
    created_at = models.DateTimeField(
        default=timezone.now,
        db_index=True
    )

    class Meta:
        abstract = True

    def get_score(self) -> int:
        return self.score

    @classmethod
    def apply_score_delta(cls, pk: int, delta: int, operation: str = 'apply_score_delta') -> int:
        """Atomically add delta to the stored score, return the new score."""
        return store.atomic_increment(cls, pk, 'score', delta, operation=operation)


class Link(Votable):
    votable_type = VotableType.LINK

    author = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name='links'
    )
    title = models.CharField(
        max_length=300,
        validators=[MinLengthValidator(1)]
    )
    url = models.URLField(max_length=2048)
    description = models.TextField(blank=True, default='')
    comment_count = models.PositiveIntegerField(default=0)

    class Meta:
        ordering = ['-created_at', '-id']
        indexes = [
            models.Index(fields=['-score', '-created_at'], name='link_top_idx'),
        ]

    def __str__(self):
        return f"{self.title[:50]} ({self.url})"


class Comment(Votable):
    votable_type = VotableType.COMMENT

    link = models.ForeignKey(
        Link,
        on_delete=models.CASCADE,
        related_name='comments'
    )
    author = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name='comments'
    )
    parent = models.ForeignKey(
        'self',
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name='replies'
    )
    content = models.TextField(validators=[MinLengthValidator(1)])

    class Meta:
        # Best first, ties broken by who said it first
        ordering = ['-score', 'created_at', 'id']
        indexes = [
            models.Index(fields=['link', 'parent', '-score'], name='comment_sibling_idx'),
        ]

    def __str__(self):
        return f"Comment {self.pk} on link {self.link_id}"


class Vote(models.Model):
    """
    One row per (voter, target). value 0 is a retracted vote and stays
    as the row later votes update.
    """
    voter = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name='votes'
    )
    votable_type = models.CharField(max_length=16, choices=VotableType.choices)
    votable_id = models.PositiveBigIntegerField()
    value = models.SmallIntegerField()
    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            # Concurrent first votes on the same pair: only one insert wins
            models.UniqueConstraint(
                fields=['voter', 'votable_type', 'votable_id'],
                name='unique_vote_per_voter_per_target'
            ),
            models.CheckConstraint(
                condition=Q(value__in=VOTE_VALUES),
                name='vote_value_in_range'
            ),
        ]
        indexes = [
            models.Index(fields=['votable_type', 'votable_id'], name='vote_target_idx'),
        ]

    def __str__(self):
        return f"{self.voter_id} {self.value:+d} on {self.votable_type} {self.votable_id}"


class KarmaEvent(models.Model):
    """
    Append-only log of karma deltas. NEVER update or delete rows.

    The sum of karma_delta over a recipient's events equals Profile.karma.
    """

    class EventType(models.TextChoices):
        VOTE = 'VOTE', 'Vote'
        RECONCILIATION = 'RECONCILIATION', 'Reconciliation'

    recipient = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name='karma_received'
    )
    # Null for reconciliation adjustments
    actor = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='karma_given'
    )
    event_type = models.CharField(
        max_length=20,
        choices=EventType.choices,
        default=EventType.VOTE
    )
    karma_delta = models.IntegerField()
    votable_type = models.CharField(
        max_length=16,
        choices=VotableType.choices,
        blank=True,
        default=''
    )
    votable_id = models.PositiveBigIntegerField(null=True, blank=True)
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        indexes = [
            models.Index(fields=['created_at', 'recipient'], name='karma_window_idx'),
            models.Index(fields=['recipient', '-created_at'], name='karma_history_idx'),
        ]

    def __str__(self):
        return f"{self.recipient_id} {self.karma_delta:+d} ({self.event_type})"
