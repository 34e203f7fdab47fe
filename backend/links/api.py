"""
Engine surface.

The HTTP layer calls these and nothing else. Callers pass an already
verified voter_id / author_id; nothing here reads the request or session.
"""

import logging

from django.contrib.auth.models import User
from django.core.exceptions import ValidationError as DjangoValidationError
from django.core.validators import URLValidator

from . import store
from .comments import children, comment_tree, depth, post_comment, root_comments
from .exceptions import ValidationError
from .karma import get_karma, get_leaderboard
from .models import Link
from .ranking import listing, rank
from .votes import cast_vote, get_vote, votes_for

logger = logging.getLogger(__name__)

validate_url = URLValidator(schemes=['http', 'https'])

__all__ = [
    'submit_link',
    'cast_vote',
    'get_vote',
    'votes_for',
    'post_comment',
    'root_comments',
    'children',
    'depth',
    'comment_tree',
    'rank',
    'listing',
    'get_karma',
    'get_leaderboard',
]


def submit_link(author_id: int, title: str, url: str, description: str = '') -> Link:
    """Create a link with score 0 and no comments."""
    store.get(User, author_id, operation='submit_link')

    title = (title or '').strip()
    if not title:
        raise ValidationError("Link title cannot be blank", 'submit_link')
    if len(title) > Link._meta.get_field('title').max_length:
        raise ValidationError("Link title is too long", 'submit_link')
    try:
        validate_url(url)
    except DjangoValidationError:
        raise ValidationError(f"Invalid link url: {url!r}", 'submit_link') from None

    link = store.insert(
        Link,
        operation='submit_link',
        author_id=author_id,
        title=title,
        url=url,
        description=description or ''
    )
    logger.debug(f"Link {link.id} submitted by user {author_id}")
    return link
