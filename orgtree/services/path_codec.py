"""
Materialized path codec for the department tree.

A path lists the ids from the root down to the node itself, each preceded by
the delimiter: the node 9 under 4 under root 1 has path '/1/4/9'.

Provides functions for:
- Encoding and decoding paths
- Prefix (ancestry) checks with segment boundaries
- Rebasing descendant paths when a subtree moves
"""

from typing import List, Optional, Sequence

from orgtree.core.exceptions import InvalidPathError

DELIMITER = "/"


def encode(ids: Sequence[int]) -> str:
    """
    Encode an ordered list of ancestor ids (inclusive of the node itself).

    Args:
        ids: Ids from root to node

    Returns:
        Materialized path string

    Raises:
        InvalidPathError: If the list is empty or holds a non-identifier

    Examples:
        >>> encode([1, 4, 9])
        '/1/4/9'
    """
    if not ids:
        raise InvalidPathError(ids, "a path needs at least one id")
    for node_id in ids:
        if isinstance(node_id, bool) or not isinstance(node_id, int) or node_id <= 0:
            raise InvalidPathError(ids, f"{node_id!r} is not a department id")
    return DELIMITER + DELIMITER.join(str(node_id) for node_id in ids)


def decode(path: str) -> List[int]:
    """
    Decode a materialized path into its ids.

    Args:
        path: Materialized path string

    Returns:
        List of ids from root to node

    Raises:
        InvalidPathError: On a missing leading delimiter, empty segments or
            non-numeric tokens

    Examples:
        >>> decode('/1/4/9')
        [1, 4, 9]
    """
    if not isinstance(path, str) or not path:
        raise InvalidPathError(path, "path is empty")
    if not path.startswith(DELIMITER):
        raise InvalidPathError(path, f"path must start with '{DELIMITER}'")

    ids = []
    for token in path[1:].split(DELIMITER):
        if not token:
            raise InvalidPathError(path, "empty segment")
        if not token.isdigit() or int(token) <= 0:
            raise InvalidPathError(path, f"{token!r} is not a department id")
        ids.append(int(token))
    return ids


def is_prefix_of(candidate_ancestor_path: str, path: str) -> bool:
    """
    Check whether one path is a strict ancestor prefix of another.

    The prefix must end on a segment boundary, so '/1/2' is not a prefix of
    '/1/20', and a path is never a prefix of itself.

    Examples:
        >>> is_prefix_of('/1/2', '/1/2/3')
        True
        >>> is_prefix_of('/1/2', '/1/20')
        False
        >>> is_prefix_of('/1/2', '/1/2')
        False
    """
    if not candidate_ancestor_path or not path:
        return False
    return path.startswith(candidate_ancestor_path + DELIMITER)


def child_path(parent_path: Optional[str], node_id: int) -> str:
    """
    Build the path of a node from its parent's path (None for roots).

    Examples:
        >>> child_path(None, 1)
        '/1'
        >>> child_path('/1/4', 9)
        '/1/4/9'
    """
    if parent_path is None:
        return encode([node_id])
    return encode(decode(parent_path) + [node_id])


def depth(path: str) -> int:
    """Level of the node owning `path`: 0 for roots."""
    return len(decode(path)) - 1


def parent_path(path: str) -> Optional[str]:
    """Path of the parent, or None for a root path."""
    ids = decode(path)
    if len(ids) == 1:
        return None
    return encode(ids[:-1])


def rebase(path: str, old_prefix: str, new_prefix: str) -> str:
    """
    Replace `old_prefix` at the start of `path` with `new_prefix`, keeping
    the suffix below it.

    Examples:
        >>> rebase('/1/2/3', '/1/2', '/4/2')
        '/4/2/3'
    """
    if path == old_prefix:
        return new_prefix
    if not is_prefix_of(old_prefix, path):
        raise InvalidPathError(path, f"not inside subtree {old_prefix!r}")
    return new_prefix + path[len(old_prefix):]


def has_cycle(path: str) -> bool:
    """True when an id repeats within the path."""
    ids = decode(path)
    return len(set(ids)) != len(ids)
