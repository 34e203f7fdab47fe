"""
Django signals for engine bookkeeping.

Only one receiver lives here: every new User gets a Profile, so the karma
aggregator always has a row to increment.

Derived counters (score, comment_count, karma) are NOT maintained by
signals. Signals do not fire on QuerySet.update(), and the engine writes
those counters with QuerySet.update(field=F(field) + delta) from the one
module that owns each of them.
"""

from django.contrib.auth.models import User
from django.db.models.signals import post_save
from django.dispatch import receiver

from .models import Profile


@receiver(post_save, sender=User)
def create_profile(sender, instance, created, raw=False, **kwargs):
    """
    Create the Profile for a newly registered user.

    Skipped for fixture loading (raw=True), where profiles are part of the
    fixture.
    """
    if created and not raw:
        Profile.objects.get_or_create(
            user=instance,
            defaults={'display_name': instance.get_full_name() or instance.username}
        )
