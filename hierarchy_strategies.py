"""Define strategies for generating type hierarchies for property-based testing."""

from typing import Callable

import hypothesis.strategies as st

from hierarchy_core import VERBOSITY_SILENT, HierarchySettings

ROOT = "BOTTOM"

QUIET = HierarchySettings(verbosity=VERBOSITY_SILENT)
"""Settings that keep non-determinism reports out of test output."""


@st.composite
def blueprints(draw: Callable, max_types: int = 8, max_parents: int = 3) -> list:
    """Generate (type, parents) pairs describing a random rooted DAG.

    Each type only takes parents among the root and earlier types, so the
    result is acyclic and every type is reachable from the root.
    """
    count = draw(st.integers(min_value=0, max_value=max_types))
    names = [f"t{i}" for i in range(count)]
    plan = []
    for i, name in enumerate(names):
        candidates = [ROOT] + names[:i]
        parents = draw(
            st.lists(st.sampled_from(candidates), min_size=1, max_size=max_parents, unique=True),
        )
        plan.append((name, tuple(parents)))
    return plan


@st.composite
def tree_blueprints(draw: Callable, max_types: int = 8) -> list:
    """Generate (type, parents) pairs describing a random rooted tree."""
    return draw(blueprints(max_types=max_types, max_parents=1))


def build(cls, plan, **options):
    """Build a hierarchy of the given class from a blueprint."""
    hierarchy = cls(root=ROOT, settings=QUIET, **options)
    for name, parents in plan:
        hierarchy.add(name, *parents)
    return hierarchy
