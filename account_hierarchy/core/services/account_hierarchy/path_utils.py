"""
Path utilities for the account hierarchy.

Materialized paths are dot-separated sibling indices, one segment per
ancestor including the account itself: '1', '1.2', '1.2.3'.

Provides functions for:
- Computing the next sibling index and child paths
- Rewriting path prefixes when a branch is re-parented
- Parsing and validating path structures
"""

import re
from typing import Iterable, List, Optional

PATH_SEPARATOR = "."
PATH_PATTERN = re.compile(r'^[1-9][0-9]*(\.[1-9][0-9]*)*$')


def next_sibling_index(existing_sibling_paths: Iterable[str]) -> int:
    """
    Next free sibling index: one past the highest trailing segment.

    Non-numeric trailing segments count as 0 rather than failing.

    Examples:
        >>> next_sibling_index([])
        1
        >>> next_sibling_index(['1.1', '1.2', '1.5'])
        6
        >>> next_sibling_index(['1.x'])
        1
    """
    indices = []
    for path in existing_sibling_paths:
        last_segment = (path or "").split(PATH_SEPARATOR)[-1]
        try:
            indices.append(int(last_segment))
        except ValueError:
            indices.append(0)
    if not indices:
        return 1
    return max(indices) + 1


def child_path(parent_path: Optional[str], index: int) -> str:
    """
    Build the path of a child at `index` under `parent_path`.

    Examples:
        >>> child_path('1.2', 3)
        '1.2.3'
        >>> child_path('', 4)
        '4'
    """
    if parent_path:
        return f"{parent_path}{PATH_SEPARATOR}{index}"
    return str(index)


def rewrite_prefix(path: str, old_prefix: str, new_prefix: str) -> str:
    """
    Replace the leading `old_prefix` of `path` with `new_prefix`.

    Examples:
        >>> rewrite_prefix('1.1.3', '1.1', '2')
        '2.3'

    Raises:
        ValueError: if `path` does not start with `old_prefix`
    """
    if not path.startswith(old_prefix):
        raise ValueError(f"Path '{path}' does not start with '{old_prefix}'")
    return new_prefix + path[len(old_prefix):]


def parse_path(path: str) -> List[str]:
    """Split a path into its segments; empty path has none."""
    if not path:
        return []
    return path.split(PATH_SEPARATOR)


def count_segments(path: str) -> int:
    """Number of segments, which equals the account's level."""
    return len(parse_path(path))


def get_parent_path(path: str) -> Optional[str]:
    """
    Parent's path, or None for a top-level path.

    Examples:
        >>> get_parent_path('1.2.3')
        '1.2'
        >>> get_parent_path('1') is None
        True
    """
    parts = parse_path(path)
    if len(parts) <= 1:
        return None
    return PATH_SEPARATOR.join(parts[:-1])


def get_descendants_prefix(path: str) -> str:
    """Dot-qualified prefix matching only true descendants ('1.' never matches '10.2')."""
    return f"{path}{PATH_SEPARATOR}"


def is_ancestor(potential_ancestor_path: str, descendant_path: str) -> bool:
    """
    Check if one path is a strict ancestor of another, at a segment boundary.

    Examples:
        >>> is_ancestor('1', '1.2')
        True
        >>> is_ancestor('1', '10.2')
        False
        >>> is_ancestor('1', '1')
        False
    """
    if not potential_ancestor_path or not descendant_path:
        return False
    return descendant_path.startswith(get_descendants_prefix(potential_ancestor_path))


def validate_path(path: str) -> bool:
    """True for well-formed paths of positive integer segments."""
    if not path:
        return False
    return PATH_PATTERN.match(path) is not None
