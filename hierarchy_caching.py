"""
hierarchy_caching.py

Memoization of least upper / greatest lower bound queries.

CachingMixin wraps least_upper_bounds() and greatest_lower_bounds() of any
hierarchy class with a bounded LRU table. The table is scoped to one
hierarchy and emptied wholesale whenever the hierarchy's structural
generation or the settings in effect change, so it never changes a result,
only how fast it arrives.
"""

from collections import OrderedDict
from collections.abc import Hashable
from dataclasses import dataclass

from hierarchy_compiled import CompiledHierarchy
from hierarchy_core import Hierarchy, OperandKind, operand_kind


@dataclass
class CacheStats:
    """
    Statistics for cache performance.

    Attributes:
        hits: Number of cache hits
        misses: Number of cache misses
        evictions: Number of entries evicted for capacity
        invalidations: Number of times the whole table was dropped
    """

    hits: int = 0
    misses: int = 0
    evictions: int = 0
    invalidations: int = 0

    @property
    def hit_rate(self):
        """Cache hit rate as a fraction (0.0 to 1.0)."""
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0


def memo_key(operation, t1, t2):
    """
    Build the memo key for a binary query.

    Plain type names commute, so their key ignores operand order. Operands
    carrying their own ordering logic might not, so their key keeps it.

    Returns:
        A hashable key, or None if an operand cannot be hashed
    """
    if not (isinstance(t1, Hashable) and isinstance(t2, Hashable)):
        return None
    if operand_kind(t1) is OperandKind.NAME and operand_kind(t2) is OperandKind.NAME:
        return (operation, frozenset((t1, t2)))
    return (operation, t1, t2)


class CachingMixin:
    """
    Memoize least_upper_bounds() and greatest_lower_bounds() of a hierarchy class.

    Must precede the hierarchy class in the bases.
    """

    DEFAULT_CAPACITY = 1024

    def __init__(self, *args, capacity=DEFAULT_CAPACITY, **kwargs):
        """
        Args:
            capacity: Maximum number of memoized results (None for unbounded)
            *args, **kwargs: Passed on to the hierarchy class
        """
        self._capacity = capacity
        self._memo = OrderedDict()
        self._memo_generation = None
        self._memo_settings = None
        self._stats = CacheStats()
        super().__init__(*args, **kwargs)

    def _options(self):
        options = super()._options()
        options["capacity"] = self._capacity
        return options

    @property
    def capacity(self):
        return self._capacity

    def _validate_memo(self):
        settings = self.settings
        if self._memo_generation != self._generation or self._memo_settings is not settings:
            if self._memo:
                self._stats.invalidations += 1
            self._memo.clear()
            self._memo_generation = self._generation
            self._memo_settings = settings

    def _memoized(self, operation, compute, t1, t2):
        key = memo_key(operation, t1, t2)
        if key is None:
            return compute(t1, t2)

        self._validate_memo()
        if key in self._memo:
            self._memo.move_to_end(key)
            self._stats.hits += 1
            return list(self._memo[key])

        self._stats.misses += 1
        result = compute(t1, t2)
        self._memo[key] = tuple(result)
        if self._capacity is not None and len(self._memo) > self._capacity:
            self._memo.popitem(last=False)
            self._stats.evictions += 1
        return result

    def least_upper_bounds(self, t1, t2):
        return self._memoized("least_upper_bounds", super().least_upper_bounds, t1, t2)

    def greatest_lower_bounds(self, t1, t2):
        return self._memoized("greatest_lower_bounds", super().greatest_lower_bounds, t1, t2)

    def cache_stats(self):
        """Return a snapshot of hit/miss/eviction counts and the current table size."""
        return {
            "hits": self._stats.hits,
            "misses": self._stats.misses,
            "evictions": self._stats.evictions,
            "invalidations": self._stats.invalidations,
            "hit_rate": self._stats.hit_rate,
            "size": len(self._memo),
            "capacity": self._capacity,
        }

    def clear_cache(self):
        self._memo.clear()
        self._stats = CacheStats()
        return self


class CachingHierarchy(CachingMixin, Hierarchy):
    """A plain Hierarchy with memoized joins and meets."""


class CachingCompiledHierarchy(CachingMixin, CompiledHierarchy):
    """A CompiledHierarchy with memoized joins and meets."""
