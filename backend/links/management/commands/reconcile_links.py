"""
Management command to audit derived fields against their sources.

Usage: python manage.py reconcile_links [--fix]

Checks, in this order:
1. score         == sum of vote values on the target
2. comment_count == number of comments on the link
3. karma         == summed score of the user's links and comments

With --fix each drift is corrected by the module that owns the field.
Exits with status 1 when drift was found and not fixed.
"""

from django.core.management.base import BaseCommand, CommandError

from links.comments import audit_comment_counts
from links.karma import reconcile_karma
from links.votes import audit_scores


class Command(BaseCommand):
    help = 'Audit score, comment_count and karma against the ledger'

    def add_arguments(self, parser):
        parser.add_argument(
            '--fix',
            action='store_true',
            help='Correct drifted values instead of only reporting them'
        )

    def handle(self, *args, **options):
        fix = options['fix']

        # Scores first: karma is checked against them
        score_drifts = audit_scores(fix=fix)
        for drift in score_drifts:
            self.stdout.write(
                f"score {drift['votable_type']} {drift['votable_id']}: "
                f"{drift['score']} != {drift['expected']}"
            )

        count_drifts = audit_comment_counts(fix=fix)
        for drift in count_drifts:
            self.stdout.write(
                f"comment_count link {drift['link_id']}: "
                f"{drift['comment_count']} != {drift['expected']}"
            )

        karma_drifts = reconcile_karma(fix=fix)
        for drift in karma_drifts:
            self.stdout.write(
                f"karma user {drift['username']}: {drift['karma']} != {drift['expected']}"
            )

        total = len(score_drifts) + len(count_drifts) + len(karma_drifts)
        if total == 0:
            self.stdout.write(self.style.SUCCESS('No drift found'))
            return

        if fix:
            self.stdout.write(self.style.SUCCESS(f'Fixed {total} drifted values'))
        else:
            raise CommandError(f'Found {total} drifted values, rerun with --fix to correct them')
