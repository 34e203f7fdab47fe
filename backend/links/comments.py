"""
Comment Tree
============

Comments on a link form a forest: parent_id None means a top-level reply
to the link itself, anything else points at a comment on the SAME link.
The parent has to exist before the child is posted, so a cycle can never
be built and nothing here checks for one.

Sibling order everywhere is best first:

    ORDER BY score DESC, created_at ASC, id ASC

This module is the only writer of Link.comment_count. post_comment()
validates first, then inserts and increments in one transaction, so a
rejected comment never touches the counter.

TREE ASSEMBLY:
--------------
comment_tree() fetches ALL comments for a link in ONE query and builds the
nested structure in Python with a single pass over a {id -> node} map.
That is 1 query regardless of nesting depth, instead of one query per
comment for its replies.
"""

import logging
from typing import Dict, List, Optional

from django.contrib.auth.models import User
from django.db import transaction
from django.db.models import Count

from . import store
from .exceptions import NotFoundError, ValidationError
from .models import Comment, Link

logger = logging.getLogger(__name__)

SIBLING_ORDER = ('-score', 'created_at', 'id')


def post_comment(author_id: int, link_id: int, parent_id: Optional[int], content: str) -> Comment:
    """
    Add a comment to a link, optionally as a reply to another comment.

    RAISES:
    - NotFoundError if the author or the link does not exist
    - ValidationError for blank content, a missing parent, or a parent
      that belongs to a different link
    """
    store.get(User, author_id, operation='post_comment')
    link = store.get(Link, link_id, operation='post_comment')

    if not content or not content.strip():
        raise ValidationError("Comment content cannot be blank", 'post_comment', ('link', link_id))

    if parent_id is not None:
        try:
            parent = store.get(Comment, parent_id, operation='post_comment')
        except NotFoundError:
            logger.info(f"Rejected reply to missing comment {parent_id} on link {link_id}")
            raise ValidationError(
                f"Parent comment {parent_id} does not exist",
                'post_comment',
                ('comment', parent_id)
            ) from None
        if parent.link_id != link.id:
            logger.info(f"Rejected reply to comment {parent_id} from link {link_id}")
            raise ValidationError(
                "comment does not belong to this link",
                'post_comment',
                ('comment', parent_id)
            )

    with transaction.atomic():
        comment = store.insert(
            Comment,
            operation='post_comment',
            link_id=link.id,
            author_id=author_id,
            parent_id=parent_id,
            content=content
        )
        store.atomic_increment(Link, link.id, 'comment_count', 1, operation='post_comment')

    logger.debug(f"Comment {comment.id} posted on link {link_id} (parent={parent_id})")
    return comment


def root_comments(link_id: int) -> List[Comment]:
    """Top-level comments of a link, best first."""
    store.get(Link, link_id, operation='root_comments')
    return store.query(
        Comment,
        filters={'link_id': link_id, 'parent__isnull': True},
        order=SIBLING_ORDER,
        select_related=('author',),
        operation='root_comments'
    )


def children(comment_id: int) -> List[Comment]:
    """Direct replies to a comment, best first."""
    store.get(Comment, comment_id, operation='children')
    return store.query(
        Comment,
        filters={'parent_id': comment_id},
        order=SIBLING_ORDER,
        select_related=('author',),
        operation='children'
    )


def depth(comment: Comment, cache: Optional[Dict[int, int]] = None) -> int:
    """
    0 for a top-level comment, parent's depth + 1 otherwise.

    Walks up the parent chain. Pass the same cache dict for every comment
    rendered in one request to avoid re-walking shared ancestors. Depth is
    never stored.
    """
    if cache is None:
        cache = {}

    chain = []
    current = comment
    while current.id not in cache:
        if current.parent_id is None:
            cache[current.id] = 0
            break
        chain.append(current)
        current = store.get(Comment, current.parent_id, operation='depth')

    base = cache[current.id]
    for offset, node in enumerate(reversed(chain), start=1):
        cache[node.id] = base + offset
    return cache[comment.id]


def get_all_comments_for_link(link_id: int) -> List[Comment]:
    """
    Every comment of a link in one query, with authors joined, siblings
    already in display order.
    """
    return store.query(
        Comment,
        filters={'link_id': link_id},
        order=SIBLING_ORDER,
        select_related=('author',),
        operation='comment_tree'
    )


def build_comment_tree(flat_comments: List[Comment]) -> List[dict]:
    """
    Build the nested tree from a flat list.

    Algorithm: O(n) with a lookup dict
    1. Create a node {comment, depth, replies} per comment
    2. Attach each node to its parent's replies, in input order

    Input order is kept among siblings, so a flat list sorted by
    SIBLING_ORDER gives a tree sorted the same way at every level.

    Example Output:
        [
            {
                'comment': Comment(id=1),
                'depth': 0,
                'replies': [
                    {'comment': Comment(id=2), 'depth': 1, 'replies': []},
                ]
            }
        ]
    """
    nodes = {}
    for comment in flat_comments:
        nodes[comment.id] = {
            'comment': comment,
            'depth': 0,
            'replies': []
        }

    root_nodes = []
    for comment in flat_comments:
        node = nodes[comment.id]
        if comment.parent_id is None:
            root_nodes.append(node)
        else:
            nodes[comment.parent_id]['replies'].append(node)

    # Depths top-down, now that every node hangs off its parent
    stack = [(node, 0) for node in root_nodes]
    while stack:
        node, level = stack.pop()
        node['depth'] = level
        stack.extend((reply, level + 1) for reply in node['replies'])

    return root_nodes


def comment_tree(link_id: int) -> List[dict]:
    """
    Full nested comment tree of a link.

    TOTAL QUERIES: 2
    - 1 to check the link exists
    - 1 for all comments + authors
    """
    store.get(Link, link_id, operation='comment_tree')
    return build_comment_tree(get_all_comments_for_link(link_id))


def audit_comment_counts(fix: bool = False) -> List[dict]:
    """
    Offline check that Link.comment_count matches the comments on record.

    Returns {'link_id', 'comment_count', 'expected'} for each drifted link.
    With fix=True the counter is corrected by the difference.
    """
    with store.translate_errors('audit_comment_counts'):
        rows = list(
            Link.objects
            .order_by('id')
            .annotate(expected=Count('comments'))
            .values_list('id', 'comment_count', 'expected')
        )

    drifts = []
    for link_id, comment_count, expected in rows:
        if comment_count == expected:
            continue
        logger.warning(f"comment_count drift on link {link_id}: stored {comment_count}, actual {expected}")
        drifts.append({'link_id': link_id, 'comment_count': comment_count, 'expected': expected})
        if fix:
            store.atomic_increment(
                Link, link_id, 'comment_count', expected - comment_count,
                operation='audit_comment_counts'
            )

    return drifts
