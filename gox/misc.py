"""
Small list helpers.
"""

from typing import Callable, Iterable, List, Sequence, TypeVar

T = TypeVar("T")
R = TypeVar("R")


def filter_by(items: Iterable[T], fn: Callable[[T], bool]) -> List[T]:
    """Items for which `fn` is true, in order."""
    return [item for item in items if fn(item)]


def extract(items: Iterable[T], fn: Callable[[T], R]) -> List[R]:
    return [fn(item) for item in items]


def contains(items: Sequence[T], target: T) -> bool:
    return index_of(items, target) != -1


def index_of(items: Sequence[T], target: T) -> int:
    """Position of the first item equal to `target`, or -1."""
    for i, item in enumerate(items):
        if item == target:
            return i
    return -1
