"""
Management command to seed the database with sample links.

Usage: python manage.py seed_links [--users N] [--links N] [--comments N] [--seed N]

Everything goes through the engine (submit_link, post_comment, cast_vote),
so scores, comment counts and karma come out consistent.
"""

import random
from datetime import timedelta

from django.contrib.auth.models import User
from django.core.management.base import BaseCommand

from links.api import cast_vote, post_comment, submit_link
from links.models import Comment, KarmaEvent, Link, Profile, Vote, VotableType


class Command(BaseCommand):
    help = 'Seed the database with sample links, comments and votes'

    def add_arguments(self, parser):
        parser.add_argument(
            '--users',
            type=int,
            default=10,
            help='Number of users to create'
        )
        parser.add_argument(
            '--links',
            type=int,
            default=20,
            help='Number of links to submit'
        )
        parser.add_argument(
            '--comments',
            type=int,
            default=100,
            help='Number of comments to post'
        )
        parser.add_argument(
            '--seed',
            type=int,
            default=None,
            help='Random seed, for reproducible data'
        )
        parser.add_argument(
            '--clear',
            action='store_true',
            help='Clear existing data before seeding'
        )

    def handle(self, *args, **options):
        rng = random.Random(options['seed'])

        if options['clear']:
            self.stdout.write('Clearing existing data...')
            KarmaEvent.objects.all().delete()
            Vote.objects.all().delete()
            Comment.objects.all().delete()
            Link.objects.all().delete()
            User.objects.filter(is_superuser=False).delete()
            # The karma log is gone, so surviving profiles start from zero
            Profile.objects.update(karma=0)

        self.stdout.write('Creating users...')
        users = self._create_users(options['users'])

        self.stdout.write('Submitting links...')
        links = self._submit_links(rng, users, options['links'])

        self.stdout.write('Posting comments...')
        comments = self._post_comments(rng, users, links, options['comments'])

        self.stdout.write('Casting votes...')
        vote_count = self._cast_votes(rng, users, links, comments)

        self.stdout.write(self.style.SUCCESS(
            f'Successfully created:\n'
            f'  - {len(users)} users\n'
            f'  - {len(links)} links\n'
            f'  - {len(comments)} comments\n'
            f'  - {vote_count} votes'
        ))

    def _create_users(self, count):
        users = []
        for i in range(count):
            username = f'user{i+1}'
            user, _ = User.objects.get_or_create(
                username=username,
                defaults={'email': f'{username}@example.com'}
            )
            users.append(user)
        return users

    def _submit_links(self, rng, users, count):
        links = []
        titles = [
            "Show: a tiny static site generator",
            "Why your cache keys are wrong",
            "Ask: how do you review large diffs?",
            "The hidden cost of ORMs",
            "A field guide to flaky tests",
            "Postgres row locks, explained",
            "What I learned shipping a side project",
            "Weekly reading list",
        ]

        for i in range(count):
            link = submit_link(
                rng.choice(users).id,
                f"{rng.choice(titles)} #{i+1}",
                f"https://example.com/articles/{i+1}",
            )
            # Spread submissions over two days so hot and top differ.
            # created_at is not a derived field, backdating it is safe.
            Link.objects.filter(id=link.id).update(
                created_at=link.created_at - timedelta(hours=rng.randint(0, 48))
            )
            links.append(link)
        return links

    def _post_comments(self, rng, users, links, count):
        comments = []
        comment_texts = [
            "Great point, I agree.",
            "Not sure about this one...",
            "Thanks for sharing!",
            "Can you elaborate?",
            "This deserves more attention.",
            "I have a different take on this.",
        ]

        for _ in range(count):
            link = rng.choice(links)

            # 30% chance of replying to an existing comment on the same link
            parent_id = None
            siblings = [c for c in comments if c.link_id == link.id]
            if siblings and rng.random() < 0.3:
                parent_id = rng.choice(siblings).id

            comments.append(post_comment(
                rng.choice(users).id,
                link.id,
                parent_id,
                rng.choice(comment_texts)
            ))
        return comments

    def _cast_votes(self, rng, users, links, comments):
        count = 0
        for link in links:
            for voter in rng.sample(users, k=len(users) // 2):
                cast_vote(voter.id, VotableType.LINK, link.id, rng.choice([1, 1, 1, -1]))
                count += 1

        for comment in comments:
            if rng.random() < 0.3:
                for voter in rng.sample(users, k=min(3, len(users))):
                    cast_vote(voter.id, VotableType.COMMENT, comment.id, rng.choice([1, 1, -1]))
                    count += 1
        return count
