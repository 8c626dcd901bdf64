"""
hierarchy_core.py

Core data structures and operations for rooted finite partial orders over
named types (datatype / subsumption hierarchies).

This module implements:
- A graph store of types with direct parent/child edges and attribute maps
- Closure (ancestors, descendants) and hull reduction (minimize, maximize)
- A generic traversal engine (flat, predecessor-tracking or stratified)
- The subsumption algebra: subsumes, least upper bounds, greatest lower
  bounds, deterministic n-ary joins and meets, sorting and stratification

Orientation: the root is the most general type. t1 subsumes t2 iff t2 is t1
or one of its descendants. Joins move down towards more specific types (a
failed join yields TOP), meets move up towards the root.
"""

import sys
import traceback
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Hashable
from dataclasses import dataclass, replace
from enum import Enum
from itertools import combinations

import networkx as nx
from tqdm import tqdm


# ============================================================================
# SECTION 0: SETTINGS AND SENTINELS
# ============================================================================

class _Top:
    """Singleton marking the result of a failed deterministic join."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "TOP"

    def __reduce__(self):
        return (_Top, ())


TOP = _Top()

VERBOSITY_SILENT = 0
VERBOSITY_WARN = 1
VERBOSITY_CONTEXT = 2


def _same(a, b):
    """Identity-or-equality test that never mixes values of different classes."""
    return a is b or (type(a) is type(b) and a == b)


@dataclass(frozen=True)
class HierarchySettings:
    """
    Behaviour shared by every hierarchy in the process.

    Attributes:
        user_hooks: Let operands override the algebra (hooks, OrderedOperand)
        verbosity: Non-determinism diagnostics (VERBOSITY_SILENT, _WARN, _CONTEXT)
        top: Sentinel produced by failed joins; subsumed by everything
        undef: Sentinel for "no information"; subsumes everything
        progress: Show tqdm progress bars during long scans
    """

    user_hooks: bool = True
    verbosity: int = VERBOSITY_WARN
    top: object = TOP
    undef: object = None
    progress: bool = False

    def is_top(self, t):
        return _same(t, self.top)

    def is_undef(self, t):
        return _same(t, self.undef)


# Global settings (module-level)
_current_settings = HierarchySettings()


def get_settings():
    """Get the process-wide settings."""
    return _current_settings


def configure(**changes):
    """
    Install new process-wide settings, replacing the given fields.

    Hierarchies constructed with their own settings are not affected.

    Example:
        configure(verbosity=VERBOSITY_SILENT, user_hooks=False)

    Returns:
        The newly installed HierarchySettings
    """
    global _current_settings
    _current_settings = replace(_current_settings, **changes)
    return _current_settings


def reset_settings():
    """Restore the default process-wide settings."""
    global _current_settings
    _current_settings = HierarchySettings()
    return _current_settings


def _resolve_settings(settings):
    return settings if settings is not None else _current_settings


class MergeConflictError(ValueError):
    """Raised when hierarchies cannot be merged without losing information."""


# ============================================================================
# SECTION 1: OPERANDS AND TRIVIAL RULES
# ============================================================================

class OperandKind(Enum):
    """The closed set of operand variants understood by the algebra."""

    NAME = "name"
    HOOK = "hook"
    ALGEBRA = "algebra"


class OrderedOperand(ABC):
    """
    Base class for operands that carry their own ordering logic.

    The algebra consults these methods before looking at any hierarchy.
    Returning None from a method defers to the hierarchy.
    """

    @abstractmethod
    def subsumes(self, other, hierarchy=None):
        """Return True if this operand subsumes other."""

    @abstractmethod
    def extends(self, other, hierarchy=None):
        """Return True if other subsumes this operand."""

    def properly_subsumes(self, other, hierarchy=None):
        if _same(self, other):
            return False
        return self.subsumes(other, hierarchy)

    def properly_extends(self, other, hierarchy=None):
        if _same(self, other):
            return False
        return self.extends(other, hierarchy)

    def least_upper_bounds(self, other, hierarchy=None):
        return None

    def greatest_lower_bounds(self, other, hierarchy=None):
        return None


def operand_kind(t):
    """
    Classify an operand.

    Args:
        t: any operand passed to the algebra

    Returns:
        OperandKind.ALGEBRA for OrderedOperand instances, OperandKind.HOOK for
        callables (classes excluded), OperandKind.NAME otherwise
    """
    if isinstance(t, OrderedOperand):
        return OperandKind.ALGEBRA
    if callable(t) and not isinstance(t, type):
        return OperandKind.HOOK
    return OperandKind.NAME


def _trivial_subsumes(t1, t2, settings):
    if settings.is_undef(t1):
        return True
    if settings.is_undef(t2):
        return False
    if settings.is_top(t2):
        return True
    if settings.is_top(t1):
        return False
    if _same(t1, t2):
        return True
    return None


def _trivial_properly_subsumes(t1, t2, settings):
    if _same(t1, t2):
        return False
    if settings.is_undef(t1):
        return True
    if settings.is_undef(t2):
        return False
    if settings.is_top(t2):
        return True
    if settings.is_top(t1):
        return False
    return None


def _trivial_least_upper_bounds(t1, t2, settings):
    if settings.is_undef(t1):
        return [t2]
    if settings.is_undef(t2):
        return [t1]
    if settings.is_top(t1) or settings.is_top(t2):
        return [settings.top]
    if _same(t1, t2):
        return [t1]
    return None


def _trivial_greatest_lower_bounds(t1, t2, settings):
    if settings.is_undef(t1) or settings.is_undef(t2):
        return [settings.undef]
    if settings.is_top(t1):
        return [t2]
    if settings.is_top(t2):
        return [t1]
    if _same(t1, t2):
        return [t1]
    return None


_TRIVIAL_RULES = {
    "subsumes": _trivial_subsumes,
    "properly_subsumes": _trivial_properly_subsumes,
    "least_upper_bounds": _trivial_least_upper_bounds,
    "greatest_lower_bounds": _trivial_greatest_lower_bounds,
}

# Method asked of an OrderedOperand found on the right-hand side
_MIRRORED = {
    "subsumes": "extends",
    "properly_subsumes": "properly_extends",
    "least_upper_bounds": "least_upper_bounds",
    "greatest_lower_bounds": "greatest_lower_bounds",
}


def _dispatch_override(operation, t1, t2, hierarchy, settings):
    """
    Let a HOOK or ALGEBRA operand answer the operation.

    The left operand is asked first. Hooks are called as
    hook(operation, other, hierarchy, swapped), where swapped is True when
    the hook sits on the right-hand side ("other <operation> me").

    Returns:
        The operand's answer, or None if no operand answered
    """
    if not settings.user_hooks:
        return None

    for operand, other, swapped in ((t1, t2, False), (t2, t1, True)):
        kind = operand_kind(operand)
        if kind is OperandKind.HOOK:
            result = operand(operation, other, hierarchy, swapped)
        elif kind is OperandKind.ALGEBRA:
            method = _MIRRORED[operation] if swapped else operation
            result = getattr(operand, method)(other, hierarchy)
        else:
            continue
        if result is not None:
            return result
    return None


def _resolve(operation, t1, t2, hierarchy, settings):
    """Apply the trivial rules, then user overrides. None means undecided."""
    result = _TRIVIAL_RULES[operation](t1, t2, settings)
    if result is not None:
        return result
    return _dispatch_override(operation, t1, t2, hierarchy, settings)


def _as_type_list(result):
    if isinstance(result, (list, tuple, set, frozenset)):
        return sorted_types(result)
    return [result]


def _check_settings(hierarchy, settings):
    if settings is not None and settings is not hierarchy.settings:
        raise ValueError(
            f"Settings {settings!r} conflict with the settings of {hierarchy!r}; "
            "configure the hierarchy instead"
        )


def subsumes(t1, t2, hierarchy=None, settings=None):
    """
    Return True if t1 subsumes t2.

    Without a hierarchy only the trivial rules and user overrides apply;
    anything they leave undecided is False. With a hierarchy its own
    settings apply.

    Raises:
        ValueError: If both a hierarchy and different settings are given
    """
    if hierarchy is not None:
        _check_settings(hierarchy, settings)
        return hierarchy.subsumes(t1, t2)
    verdict = _resolve("subsumes", t1, t2, None, _resolve_settings(settings))
    return bool(verdict)


def properly_subsumes(t1, t2, hierarchy=None, settings=None):
    """Return True if t1 subsumes t2 and the two differ."""
    if hierarchy is not None:
        _check_settings(hierarchy, settings)
        return hierarchy.properly_subsumes(t1, t2)
    verdict = _resolve("properly_subsumes", t1, t2, None, _resolve_settings(settings))
    return bool(verdict)


def least_upper_bounds(t1, t2, hierarchy=None, settings=None):
    """Return the least upper bounds of t1 and t2 as a list (possibly empty)."""
    if hierarchy is not None:
        _check_settings(hierarchy, settings)
        return hierarchy.least_upper_bounds(t1, t2)
    result = _resolve("least_upper_bounds", t1, t2, None, _resolve_settings(settings))
    return [] if result is None else _as_type_list(result)


def greatest_lower_bounds(t1, t2, hierarchy=None, settings=None):
    """Return the greatest lower bounds of t1 and t2 as a list (possibly empty)."""
    if hierarchy is not None:
        _check_settings(hierarchy, settings)
        return hierarchy.greatest_lower_bounds(t1, t2)
    result = _resolve("greatest_lower_bounds", t1, t2, None, _resolve_settings(settings))
    return [] if result is None else _as_type_list(result)


# ============================================================================
# SECTION 2: HULL REDUCTION
# ============================================================================

def type_sort_key(t):
    """
    Canonical ordering key for types of mixed kinds.

    Types sort by class name first, then by value (or by repr when the class
    has no natural order).
    """
    if isinstance(t, (str, int, float)) and not isinstance(t, bool):
        return (type(t).__name__, 0, t)
    return (type(t).__name__, 1, repr(t))


def sorted_types(types):
    """Return the given types as a list in canonical order."""
    return sorted(types, key=type_sort_key)


def minimize(types, properly_subsumes):
    """
    Destructively reduce a set of types to its most general elements.

    An element is dropped when another element still in the set properly
    subsumes it. Elements are visited in canonical order, so the result is
    well defined even when the order contains cycles.

    Args:
        types: set of types (modified in place)
        properly_subsumes: f(t1, t2) -> bool

    Returns:
        The same set
    """
    for t in sorted_types(types):
        if any(properly_subsumes(other, t) for other in types):
            types.discard(t)
    return types


def maximize(types, properly_subsumes):
    """
    Destructively reduce a set of types to its most specific elements.

    Mirror image of minimize(): an element is dropped when it properly
    subsumes another element still in the set.
    """
    for t in sorted_types(types):
        if any(properly_subsumes(t, other) for other in types):
            types.discard(t)
    return types


# ============================================================================
# SECTION 3: TRAVERSAL ENGINE
# ============================================================================

class TraversalState:
    """
    Bookkeeping shared with traversal callbacks.

    Attributes:
        visited: set of types reached so far
        predecessors: dict mapping each reached type to the set of types that
            led to it (None unless predecessor tracking was requested)
        stratum: index of the stratum being emitted (stratify mode only)
    """

    def __init__(self, visited, track_predecessors):
        self.visited = visited
        self.predecessors = {} if track_predecessors else None
        self.stratum = None

    def note_predecessor(self, t, predecessor):
        if self.predecessors is not None:
            self.predecessors.setdefault(t, set()).add(predecessor)


def _halts(result):
    """A callback halts the walk by returning anything but None or an empty collection."""
    if result is None:
        return False
    if isinstance(result, (list, tuple, set, frozenset, dict)):
        return len(result) > 0
    return True


# ============================================================================
# SECTION 4: HIERARCHY
# ============================================================================

class Hierarchy:
    """
    A rooted finite partial order over named types.

    Every type is reachable from the root by following child edges. The
    hierarchy owns its parent/child maps and attribute stores; every
    structural mutation bumps a generation counter that derived caches
    (compiled bit-vectors, memo tables) compare against.
    """

    def __init__(self, root="BOTTOM", settings=None):
        """
        Create a hierarchy holding only its root.

        Args:
            root: Name of the root type (the most general type)
            settings: HierarchySettings for this hierarchy; None follows the
                process-wide settings (see configure())
        """
        self._root = root
        self._settings = settings
        self._parents = {root: set()}      # type -> set of direct parents
        self._children = {root: set()}     # type -> set of direct children
        self._attributes = {}              # type -> {key: value}
        self._hattributes = {}             # hierarchy-wide {key: value}
        self._generation = 0

    def _options(self):
        """Constructor arguments reproducing this hierarchy's configuration."""
        return {"root": self._root, "settings": self._settings}

    def _spawn(self):
        """Create an empty hierarchy of the same class and configuration."""
        return type(self)(**self._options())

    def _touch(self):
        self._generation += 1

    @property
    def settings(self):
        """The settings in effect: this hierarchy's own, else the process-wide ones."""
        return _resolve_settings(self._settings)

    @property
    def generation(self):
        """Structural generation; changes after every mutation."""
        return self._generation

    @property
    def root(self):
        return self._root

    def __repr__(self):
        return f"{type(self).__name__}(root={self._root!r}, size={len(self._parents)})"

    def __len__(self):
        return len(self._parents)

    def __iter__(self):
        return iter(list(self._parents))

    def __contains__(self, t):
        return self.has_type(t)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def add(self, t, *parents):
        """
        Add a type below the given parents (default: the root).

        Missing parents are created as children of the root. Adding an
        existing type with parents rebinds it like move(); adding an
        existing type without parents changes nothing.

        Returns:
            self
        """
        if self.has_type(t):
            if parents:
                return self.move(t, *parents)
            self._touch()
            return self
        if t in parents:
            raise ValueError(f"Type {t!r} cannot be its own parent")

        parents = parents or (self._root,)
        self._ensure(parents)
        self._parents[t] = set(parents)
        self._children[t] = set()
        for p in parents:
            self._children[p].add(t)
        self._touch()
        return self

    def add_parents(self, t, *parents):
        """Add direct parent edges to a type, creating anything missing below the root."""
        if self.has_type(t) and t == self._root and parents:
            raise ValueError(f"The root type {t!r} cannot have parents")
        if t in parents:
            raise ValueError(f"Type {t!r} cannot be its own parent")
        self._ensure((t,) + parents)
        for p in parents:
            self._parents[t].add(p)
            self._children[p].add(t)
        self._touch()
        return self

    def move(self, t, *parents):
        """
        Replace the parents of a type (default: the root).

        Raises:
            ValueError: If t is the root, or if every new parent lies at or
                below t (t would be cut off from the root)
        """
        if not self.has_type(t):
            return self.add(t, *parents)
        if t == self._root:
            raise ValueError(f"Cannot move the root type {t!r}")

        parents = parents or (self._root,)
        below = self.descendants(t) | {t}
        if all(self.has_type(p) and p in below for p in parents):
            raise ValueError(
                f"Moving {t!r} below {list(parents)!r} would detach it from the root {self._root!r}"
            )

        self._ensure(parents)
        for p in self._parents[t]:
            self._children[p].discard(t)
        self._parents[t] = set(parents)
        for p in parents:
            self._children[p].add(t)
        self._touch()
        return self

    def remove(self, *types):
        """
        Remove types, reattaching their children to their parents.

        Ancestor/descendant relations among the remaining types are
        unchanged. Unknown types are ignored.

        Raises:
            ValueError: If asked to remove the root
        """
        for t in types:
            if not self.has_type(t):
                continue
            if t == self._root:
                raise ValueError(f"Cannot remove the root type {t!r}")

            parents = self._parents.pop(t)
            children = self._children.pop(t)
            self._attributes.pop(t, None)
            parents.discard(t)
            children.discard(t)

            for p in parents:
                self._children[p].discard(t)
            heirs = parents or {self._root}
            for c in children:
                self._parents[c].discard(t)
                self._parents[c].update(heirs)
                for p in heirs:
                    self._children[p].add(c)
        self._touch()
        return self

    def replace(self, old, new):
        """
        Rename a type, keeping its edges and attributes.

        Raises:
            ValueError: If new is already a type of this hierarchy
        """
        if not self.has_type(old):
            return self
        if self.has_type(new):
            raise ValueError(f"Cannot rename {old!r}: type {new!r} already exists")

        def rename(types):
            return {new if x == old else x for x in types}

        parents = rename(self._parents.pop(old))
        children = rename(self._children.pop(old))
        self._parents[new] = parents
        self._children[new] = children
        for p in parents - {new}:
            self._children[p].discard(old)
            self._children[p].add(new)
        for c in children - {new}:
            self._parents[c].discard(old)
            self._parents[c].add(new)

        if old in self._attributes:
            self._attributes[new] = self._attributes.pop(old)
        if old == self._root:
            self._root = new
        self._touch()
        return self

    def ensure_types(self, *types):
        """Create any of the given types not yet present, as children of the root."""
        self._ensure(types)
        self._touch()
        return self

    def _ensure(self, types):
        for t in types:
            if not self.has_type(t):
                self._parents[t] = {self._root}
                self._children[t] = set()
                self._children[self._root].add(t)

    def clear(self):
        """Reset to a hierarchy holding only the root; drops all attributes."""
        self._parents = {self._root: set()}
        self._children = {self._root: set()}
        self._attributes = {}
        self._hattributes = {}
        self._touch()
        return self

    def clone(self):
        """Return an informationally equivalent copy of the same class and configuration."""
        return self._spawn().assign(self)

    def assign(self, other):
        """Make this hierarchy a copy of other (root, structure and attributes)."""
        types = other.types()
        self._root = other.root
        self._parents = {t: set(other.parents(t)) for t in types}
        self._children = {t: set(other.children(t)) for t in types}
        self._attributes = {t: other.attributes(t) for t in types if other.attributes(t)}
        self._hattributes = other.hierarchy_attributes()
        self._touch()
        return self

    def merge(self, *others):
        """
        Merge the types, edges and attributes of other hierarchies into this one.

        The merge is atomic: it is carried out on a copy and only committed
        once every source merged cleanly. A source root that differs from
        this hierarchy's root is attached below it.

        Raises:
            MergeConflictError: On conflicting attribute values, or if a source
                would give this hierarchy's root a parent. self is unchanged.
        """
        staged = self.clone()
        for other in others:
            staged._merge_one(other)
        return self.assign(staged)

    def _merge_one(self, other):
        if other.has_type(self._root) and other.parents(self._root):
            raise MergeConflictError(
                f"Merge would give the root {self._root!r} the parents "
                f"{sorted_types(other.parents(self._root))!r}"
            )

        conflicts = []
        for t in other.types():
            mine = self._attributes.get(t, {})
            for key, value in other.attributes(t).items():
                if key in mine and mine[key] != value:
                    conflicts.append(f"attribute {key!r} of {t!r}: {mine[key]!r} != {value!r}")
        for key, value in other.hierarchy_attributes().items():
            if key in self._hattributes and self._hattributes[key] != value:
                conflicts.append(f"hierarchy attribute {key!r}: {self._hattributes[key]!r} != {value!r}")
        if conflicts:
            raise MergeConflictError("Cannot merge hierarchies:\n\t" + "\n\t".join(conflicts))

        new_types = [t for t in other.types() if not self.has_type(t)]
        for t in new_types:
            self._parents[t] = set()
            self._children[t] = set()
        for t in other.types():
            for p in other.parents(t):
                self._parents[t].add(p)
                self._children[p].add(t)
        for t in new_types:
            if not self._parents[t]:
                self._parents[t].add(self._root)
                self._children[self._root].add(t)

        for t in other.types():
            if other.attributes(t):
                self._attributes.setdefault(t, {}).update(other.attributes(t))
        self._hattributes.update(other.hierarchy_attributes())
        self._touch()

    # ------------------------------------------------------------------
    # Structure queries
    # ------------------------------------------------------------------

    def size(self):
        """Number of types, root included."""
        return len(self._parents)

    def types(self):
        """All types, in insertion order."""
        return list(self._parents)

    def has_type(self, t):
        return isinstance(t, Hashable) and t in self._parents

    def has_types(self, *types):
        return all(self.has_type(t) for t in types)

    def parents(self, t):
        """Direct parents of t (empty set for unknown types)."""
        return set(self._parents[t]) if self.has_type(t) else set()

    def children(self, t):
        """Direct children of t (empty set for unknown types)."""
        return set(self._children[t]) if self.has_type(t) else set()

    def has_parent(self, t, parent):
        return self.has_type(t) and parent in self._parents[t]

    def has_child(self, t, child):
        return self.has_type(t) and child in self._children[t]

    def has_ancestor(self, t, ancestor):
        return ancestor in self.ancestors(t)

    def has_descendant(self, t, descendant):
        return descendant in self.descendants(t)

    def ancestors(self, t):
        """
        All types above t, each once.

        t itself is included only if it lies on a cycle.
        """
        if not self.has_type(t):
            return set()
        found = set()
        self.iterate(lambda a, state: found.add(a), successors="parents", start=self._parents[t])
        return found

    def descendants(self, t):
        """All types below t, each once (t itself only if it lies on a cycle)."""
        if not self.has_type(t):
            return set()
        found = set()
        self.iterate(lambda d, state: found.add(d), successors="children", start=self._children[t])
        return found

    def common_ancestors(self, t1, t2):
        """Types subsuming both t1 and t2 (each type counts as its own ancestor)."""
        if not (self.has_type(t1) and self.has_type(t2)):
            return set()
        return (self.ancestors(t1) | {t1}) & (self.ancestors(t2) | {t2})

    def common_descendants(self, t1, t2):
        """Types subsumed by both t1 and t2 (each type counts as its own descendant)."""
        if not (self.has_type(t1) and self.has_type(t2)):
            return set()
        return (self.descendants(t1) | {t1}) & (self.descendants(t2) | {t2})

    def leaves(self, t=None):
        """Types without children at or below t (default: the whole hierarchy)."""
        found = []

        def collect(s, state):
            if not self._children[s]:
                found.append(s)

        self.iterate(collect, successors="children", start=self._root if t is None else t)
        return sorted_types(found)

    def is_circular(self):
        """Return True if some type is its own ancestor."""
        return not nx.is_directed_acyclic_graph(self.to_digraph())

    def is_tree(self):
        """Return True if no type has more than one parent."""
        return all(len(parents) <= 1 for parents in self._parents.values())

    def to_digraph(self):
        """
        Export the hierarchy as a NetworkX DiGraph.

        Edges point from parent to child. Type attributes become node data and
        hierarchy attributes become graph data.
        """
        G = nx.DiGraph()
        G.graph.update(self._hattributes)
        for t in self._parents:
            G.add_node(t)
            G.nodes[t].update(self._attributes.get(t, {}))
        for t, parents in self._parents.items():
            for p in parents:
                G.add_edge(p, t)
        return G

    # ------------------------------------------------------------------
    # Attributes
    # ------------------------------------------------------------------

    def get_attribute(self, t, key, default=None):
        return self._attributes.get(t, {}).get(key, default) if self.has_type(t) else default

    def set_attribute(self, t, key, value):
        if not self.has_type(t):
            raise ValueError(f"Unknown type: {t!r}")
        self._attributes.setdefault(t, {})[key] = value
        return self

    def del_attribute(self, t, key):
        if self.has_type(t):
            self._attributes.get(t, {}).pop(key, None)
        return self

    def attributes(self, t):
        """A copy of the attribute map of t."""
        return dict(self._attributes.get(t, {})) if self.has_type(t) else {}

    def get_hierarchy_attribute(self, key, default=None):
        return self._hattributes.get(key, default)

    def set_hierarchy_attribute(self, key, value):
        self._hattributes[key] = value
        return self

    def hierarchy_attributes(self):
        return dict(self._hattributes)

    # ------------------------------------------------------------------
    # Traversal
    # ------------------------------------------------------------------

    def _successor_function(self, successors):
        if successors == "children":
            return lambda t: self._children.get(t, ())
        if successors == "parents":
            return lambda t: self._parents.get(t, ())
        if callable(successors):
            return successors
        raise ValueError(f"Unknown successor function: {successors!r}")

    def iterate(self, callback, successors="children", start=None, visited=None,
                ignore=None, track_predecessors=False, stratify=False, default=None):
        """
        Walk the hierarchy breadth-first, calling callback(type, state) on each type.

        Args:
            callback: f(type, TraversalState); a result other than None or an
                empty collection stops the walk and is returned
            successors: "children", "parents", or a callable f(type) -> iterable
            start: seed type or collection of types; defaults to the root when
                walking children and to the leaves when walking parents
            visited: set of types to treat as already reached (updated in place)
            ignore: types to skip entirely
            track_predecessors: record in state.predecessors which types led
                to each type
            stratify: emit types in strata, each type one stratum after the
                last of its predecessors; types on a common cycle share one
                stratum, and whatever lies below the cycle follows it
            default: value returned when the walk runs to completion

        Returns:
            The halting callback result, else default
        """
        succ = self._successor_function(successors)
        if start is None:
            start = self.leaves() if successors == "parents" else [self._root]
        elif not isinstance(start, (list, tuple, set, frozenset)):
            start = [start]
        ignore = set(ignore) if ignore else set()
        state = TraversalState(visited if visited is not None else set(), track_predecessors)
        seeds = [t for t in sorted_types(start) if self.has_type(t) and t not in ignore]

        if stratify:
            return self._iterate_strata(callback, succ, seeds, state, ignore, default)

        queue = deque()
        for t in seeds:
            if state.predecessors is not None:
                state.predecessors.setdefault(t, set())
            if t not in state.visited:
                state.visited.add(t)
                queue.append(t)

        while queue:
            t = queue.popleft()
            result = callback(t, state)
            if _halts(result):
                return result
            for s in sorted_types(succ(t)):
                if s in ignore:
                    continue
                state.note_predecessor(s, t)
                if s not in state.visited:
                    state.visited.add(s)
                    queue.append(s)
        return default

    def _iterate_strata(self, callback, succ, seeds, state, ignore, default):
        region = {t for t in seeds if t not in state.visited}
        frontier = deque(region)
        while frontier:
            t = frontier.popleft()
            for s in succ(t):
                if s not in ignore and s not in region and s not in state.visited:
                    region.add(s)
                    frontier.append(s)
        if not region:
            return default

        G = nx.DiGraph()
        G.add_nodes_from(region)
        for t in region:
            G.add_edges_from((t, s) for s in succ(t) if s in region)

        # Types on a common cycle collapse into one component and share a stratum
        C = nx.condensation(G)
        pending = {n: C.in_degree(n) for n in C}
        layer = [n for n, count in pending.items() if count == 0]
        stratum = 0
        while layer:
            state.stratum = stratum
            for t in sorted_types(t for n in layer for t in C.nodes[n]["members"]):
                state.visited.add(t)
                if state.predecessors is not None:
                    state.predecessors.setdefault(t, set())
                result = callback(t, state)
                if _halts(result):
                    return result
                for s in succ(t):
                    if s in region:
                        state.note_predecessor(s, t)

            next_layer = []
            for n in layer:
                for m in C.successors(n):
                    pending[m] -= 1
                    if pending[m] == 0:
                        next_layer.append(m)
            layer = next_layer
            stratum += 1
        return default

    def iterate_strata(self, successors="children", start=None, ignore=None):
        """Return the strata of a stratified walk as a list of lists of types."""
        strata = []

        def collect(t, state):
            if state.stratum == len(strata):
                strata.append([])
            strata[state.stratum].append(t)

        self.iterate(collect, successors=successors, start=start, ignore=ignore, stratify=True)
        return strata

    # ------------------------------------------------------------------
    # Hull reduction over the graph
    # ------------------------------------------------------------------

    def minimize(self, types):
        """Destructively reduce a set of member types to its most general elements."""
        above = {}

        def properly(t1, t2):
            if t2 not in above:
                above[t2] = self.ancestors(t2)
            return t1 != t2 and t1 in above[t2]

        return minimize(types, properly)

    def maximize(self, types):
        """Destructively reduce a set of member types to its most specific elements."""
        below = {}

        def properly(t1, t2):
            if t1 not in below:
                below[t1] = self.descendants(t1)
            return t1 != t2 and t2 in below[t1]

        return maximize(types, properly)

    # ------------------------------------------------------------------
    # Algebra: graph lookup (operands known to be members)
    # ------------------------------------------------------------------

    def _subsumes_graph(self, t1, t2):
        return t1 == t2 or t2 in self.descendants(t1)

    def _properly_subsumes_graph(self, t1, t2):
        return t1 != t2 and t2 in self.descendants(t1)

    def _lub_graph(self, t1, t2):
        return sorted_types(self.minimize(self.common_descendants(t1, t2)))

    def _glb_graph(self, t1, t2):
        return sorted_types(self.maximize(self.common_ancestors(t1, t2)))

    # ------------------------------------------------------------------
    # Algebra: full resolution
    # ------------------------------------------------------------------

    def subsumes(self, t1, t2):
        """Return True if t1 subsumes t2 (t2 is t1 or lies below it)."""
        verdict = _resolve("subsumes", t1, t2, self, self.settings)
        if verdict is not None:
            return bool(verdict)
        if not (self.has_type(t1) and self.has_type(t2)):
            return False
        return self._subsumes_graph(t1, t2)

    def properly_subsumes(self, t1, t2):
        """Return True if t1 subsumes t2 and t1 != t2."""
        verdict = _resolve("properly_subsumes", t1, t2, self, self.settings)
        if verdict is not None:
            return bool(verdict)
        if not (self.has_type(t1) and self.has_type(t2)):
            return False
        return self._properly_subsumes_graph(t1, t2)

    def extends(self, t1, t2):
        """Return True if t2 subsumes t1."""
        return self.subsumes(t2, t1)

    def properly_extends(self, t1, t2):
        return self.properly_subsumes(t2, t1)

    def least_upper_bounds(self, t1, t2):
        """
        Least upper bounds (joins) of t1 and t2.

        Returns:
            List of the most general types subsumed by both operands, in
            canonical order; empty if there are none
        """
        result = _resolve("least_upper_bounds", t1, t2, self, self.settings)
        if result is not None:
            return _as_type_list(result)
        if not (self.has_type(t1) and self.has_type(t2)):
            return []
        return self._lub_graph(t1, t2)

    def greatest_lower_bounds(self, t1, t2):
        """
        Greatest lower bounds (meets) of t1 and t2.

        Returns:
            List of the most specific types subsuming both operands, in
            canonical order; empty if there are none
        """
        result = _resolve("greatest_lower_bounds", t1, t2, self, self.settings)
        if result is not None:
            return _as_type_list(result)
        if not (self.has_type(t1) and self.has_type(t2)):
            return []
        return self._glb_graph(t1, t2)

    def le(self, t1, t2):
        return self.subsumes(t1, t2)

    def lt(self, t1, t2):
        return self.properly_subsumes(t1, t2)

    def ge(self, t1, t2):
        return self.extends(t1, t2)

    def gt(self, t1, t2):
        return self.properly_extends(t1, t2)

    def lub(self, t1, t2):
        return self.least_upper_bounds(t1, t2)

    def glb(self, t1, t2):
        return self.greatest_lower_bounds(t1, t2)

    # ------------------------------------------------------------------
    # Determinism and n-ary folds
    # ------------------------------------------------------------------

    def get_nondet_pair(self):
        """
        Find a pair of types with more than one least upper bound.

        Returns:
            (t1, t2) tuple, or None if the hierarchy is deterministic
        """
        types = self.types()
        total = len(types) * (len(types) - 1) // 2
        pairs = combinations(types, 2)
        for t1, t2 in tqdm(pairs, total=total, desc="Checking determinism",
                           disable=not self.settings.progress, file=sys.stderr):
            if len(self._lub_graph(t1, t2)) > 1:
                return (t1, t2)
        return None

    def is_deterministic(self):
        """Return True if every pair of types has at most one least upper bound."""
        if self.is_tree():
            return True
        return self.get_nondet_pair() is None

    def _report_nondeterminism(self, operation, t1, t2, candidates, operands):
        verbosity = self.settings.verbosity
        if verbosity <= VERBOSITY_SILENT:
            return
        print(f"Warning: non-deterministic {operation}: {t1!r}, {t2!r} -> {candidates!r}",
              file=sys.stderr)
        if verbosity >= VERBOSITY_CONTEXT:
            print(f"  operands: {list(operands)!r}", file=sys.stderr)
            print("".join(traceback.format_stack()[:-2]), end="", file=sys.stderr)

    def _fold(self, operation, bounds, types, on_empty, identity):
        if not types:
            return identity
        result = types[0]
        for t in types[1:]:
            candidates = bounds(result, t)
            if not candidates:
                return on_empty
            if len(candidates) > 1:
                self._report_nondeterminism(operation, result, t, candidates, types)
                return on_empty
            result = candidates[0]
        return result

    def njoin(self, *types):
        """
        Deterministic n-ary join, folding least_upper_bounds left to right.

        Returns:
            The single join, or settings.top if some step has no or several
            upper bounds (several are reported as non-determinism); the
            undefined sentinel for no operands
        """
        settings = self.settings
        return self._fold("njoin", self.least_upper_bounds, types, settings.top, settings.undef)

    def nmeet(self, *types):
        """Deterministic n-ary meet; failures give the undefined sentinel, no operands give top."""
        settings = self.settings
        return self._fold("nmeet", self.greatest_lower_bounds, types, settings.undef, settings.top)

    def type_join(self, *types):
        """njoin() over hierarchy members only, skipping trivial rules and overrides."""
        settings = self.settings
        return self._fold("type_join", self._lub_graph, types, settings.top, settings.undef)

    def type_meet(self, *types):
        """nmeet() over hierarchy members only, skipping trivial rules and overrides."""
        settings = self.settings
        return self._fold("type_meet", self._glb_graph, types, settings.undef, settings.top)

    # ------------------------------------------------------------------
    # Sorting
    # ------------------------------------------------------------------

    def compare(self, t1, t2):
        """
        Compare two types by subsumption.

        Returns:
            -1 if t1 properly subsumes t2, 1 if t2 properly subsumes t1,
            0 if they are equal or subsume each other, None if they are
            incomparable
        """
        if _same(t1, t2):
            return 0
        above = self.properly_subsumes(t1, t2)
        below = self.properly_subsumes(t2, t1)
        if above and below:
            # Both on a common cycle
            return 0
        if above:
            return -1
        if below:
            return 1
        return None

    def min(self, types):
        """The most general of the given types (nothing else in the set subsumes them)."""
        return sorted_types(minimize(set(types), self.properly_subsumes))

    def max(self, types):
        """The most specific of the given types."""
        return sorted_types(maximize(set(types), self.properly_subsumes))

    def subsort(self, types):
        """
        Sort types so that every type comes after all types subsuming it.

        Each type appears once; types on a common cycle stay adjacent.
        """
        unique = list(dict.fromkeys(types))
        G = nx.DiGraph()
        G.add_nodes_from(unique)
        for t1 in unique:
            for t2 in unique:
                if t1 != t2 and self.properly_subsumes(t1, t2):
                    G.add_edge(t1, t2)

        C = nx.condensation(G)
        first_member = lambda n: min(type_sort_key(t) for t in C.nodes[n]["members"])
        order = nx.lexicographical_topological_sort(C, key=first_member)
        return [t for n in order for t in sorted_types(C.nodes[n]["members"])]

    def stratasort(self, types):
        """
        Group types into strata of mutually incomparable types.

        Strata follow the stratified walk from the root; types that are not
        in the hierarchy are collected in a final stratum.

        Returns:
            List of non-empty lists of types
        """
        wanted = set(types)
        strata = []
        for stratum in self.iterate_strata():
            chosen = [t for t in stratum if t in wanted]
            if chosen:
                strata.append(chosen)
        unknown = sorted_types(t for t in wanted if not self.has_type(t))
        if unknown:
            strata.append(unknown)
        return strata

    # ------------------------------------------------------------------
    # Compilation control (no compiled form here)
    # ------------------------------------------------------------------

    def compiled(self, flag=None):
        """Plain hierarchies have no compiled form."""
        return False

    def compile(self):
        return self
