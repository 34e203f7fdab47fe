"""
Engine settings with defaults.

Values come from the ``LINKS`` dict in Django settings; any key left out
falls back to DEFAULTS.
"""
from django.conf import settings

DEFAULTS = {
    # Attempts of cast_vote after the first one lost a race
    'VOTE_MAX_RETRIES': 3,
    'LISTING_LIMIT': 25,
    # 0 means every link is a hot candidate
    'HOT_WINDOW_DAYS': 0,
    'LEADERBOARD_HOURS': 24,
    'LEADERBOARD_LIMIT': 5,
}


def get_setting(name: str):
    if name not in DEFAULTS:
        raise KeyError(f"Unknown links setting: {name}")
    return getattr(settings, 'LINKS', {}).get(name, DEFAULTS[name])
