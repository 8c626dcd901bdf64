"""Unit tests for the Hierarchy class and the pure algebra functions."""

import pytest

from hierarchy_core import (
    TOP,
    VERBOSITY_CONTEXT,
    VERBOSITY_SILENT,
    Hierarchy,
    HierarchySettings,
    MergeConflictError,
    OperandKind,
    OrderedOperand,
    configure,
    get_settings,
    greatest_lower_bounds,
    least_upper_bounds,
    maximize,
    minimize,
    operand_kind,
    properly_subsumes,
    reset_settings,
    subsumes,
)


@pytest.fixture
def animals() -> Hierarchy:
    """Specify the bird/mammal/bat example hierarchy."""
    h = Hierarchy(root="BOTTOM")
    h.add("animal", "BOTTOM")
    h.add("bird", "animal")
    h.add("mammal", "animal")
    h.add("bat", "bird", "mammal")
    return h


@pytest.fixture
def restore_settings():
    """Restore the process-wide settings after a test that changes them."""
    yield
    reset_settings()


class Prefix(OrderedOperand):
    """An operand subsuming every string that starts with its prefix."""

    def __init__(self, prefix):
        self.prefix = prefix

    def subsumes(self, other, hierarchy=None):
        return isinstance(other, str) and other.startswith(self.prefix)

    def extends(self, other, hierarchy=None):
        return None


# ----------------------------------------------------------------------------
# End-to-end scenarios
# ----------------------------------------------------------------------------

def test_bat_scenario(animals: Hierarchy) -> None:
    """Verify joins, meets and determinism of the bird/mammal/bat hierarchy."""
    assert animals.least_upper_bounds("bird", "mammal") == ["bat"]
    assert animals.greatest_lower_bounds("bird", "mammal") == ["animal"]
    assert not animals.is_tree()
    assert animals.is_deterministic()
    assert animals.get_nondet_pair() is None


def test_two_minimal_joins_are_nondeterministic(animals: Hierarchy, capsys) -> None:
    """Verify that a second common descendant makes njoin() report and fail."""
    animals.add("flying_fox", "bird", "mammal")

    assert animals.least_upper_bounds("bird", "mammal") == ["bat", "flying_fox"]
    assert animals.get_nondet_pair() == ("bird", "mammal")
    assert not animals.is_deterministic()

    assert animals.njoin("bird", "mammal") is TOP
    err = capsys.readouterr().err
    assert "non-deterministic njoin" in err
    assert "flying_fox" in err


def test_nondeterminism_verbosity(animals: Hierarchy, capsys, restore_settings) -> None:
    """Verify that the verbosity setting controls the non-determinism report."""
    animals.add("flying_fox", "bird", "mammal")

    configure(verbosity=VERBOSITY_SILENT)
    assert animals.njoin("bird", "mammal") is TOP
    assert capsys.readouterr().err == ""

    configure(verbosity=VERBOSITY_CONTEXT)
    assert animals.njoin("bird", "mammal") is TOP
    err = capsys.readouterr().err
    assert "non-deterministic njoin" in err
    assert "operands:" in err
    assert "test_nondeterminism_verbosity" in err


# ----------------------------------------------------------------------------
# Trivial rules and pure functions
# ----------------------------------------------------------------------------

def test_trivial_rules_without_hierarchy() -> None:
    """Verify the undefined and TOP sentinels without any hierarchy."""
    assert subsumes(None, "anything")
    assert subsumes(None, None)
    assert not subsumes("anything", None)
    assert subsumes("anything", TOP)
    assert subsumes(TOP, TOP)
    assert not subsumes(TOP, "anything")
    assert subsumes("x", "x")
    assert not properly_subsumes("x", "x")
    assert properly_subsumes(None, "x")

    assert least_upper_bounds(None, "x") == ["x"]
    assert least_upper_bounds("x", TOP) == [TOP]
    assert greatest_lower_bounds("x", None) == [None]
    assert greatest_lower_bounds(TOP, "x") == ["x"]

    # Undecided without a hierarchy
    assert not subsumes("a", "b")
    assert least_upper_bounds("a", "b") == []


def test_pure_functions_with_hierarchy(animals: Hierarchy) -> None:
    """Verify that a hierarchy passed to the pure functions brings its own settings."""
    assert least_upper_bounds("bird", "mammal", hierarchy=animals) == ["bat"]
    assert subsumes("animal", "bat", animals, settings=animals.settings)

    quiet = HierarchySettings(verbosity=VERBOSITY_SILENT)
    with pytest.raises(ValueError):
        subsumes("animal", "bat", animals, settings=quiet)
    with pytest.raises(ValueError):
        greatest_lower_bounds("bird", "mammal", animals, settings=quiet)


def test_membership_guard(animals: Hierarchy) -> None:
    """Verify that queries on unknown types fail softly."""
    assert not animals.subsumes("animal", "unicorn")
    assert not animals.properly_subsumes("unicorn", "bat")
    assert animals.least_upper_bounds("animal", "unicorn") == []
    assert animals.greatest_lower_bounds("unicorn", "bat") == []
    assert animals.parents("unicorn") == set()
    assert animals.ancestors("unicorn") == set()
    assert animals.compare("unicorn", "bat") is None


def test_custom_sentinels() -> None:
    """Verify that a hierarchy's own settings replace the sentinels."""
    h = Hierarchy(settings=HierarchySettings(top="T", undef="U"))
    h.add("a")
    h.add("b")
    assert h.subsumes("U", "a")
    assert h.subsumes("b", "T")
    assert h.njoin("a", "b") == "T"
    assert h.nmeet() == "T"
    assert h.njoin() == "U"


def test_algebra_aliases(animals: Hierarchy) -> None:
    """Verify the order-theoretic aliases of the algebra."""
    assert animals.le("animal", "bat")
    assert animals.lt("animal", "bat")
    assert animals.ge("bat", "animal")
    assert animals.gt("bat", "animal")
    assert animals.extends("bird", "animal")
    assert not animals.properly_extends("bird", "bird")
    assert animals.lub("bird", "mammal") == ["bat"]
    assert animals.glb("bird", "mammal") == ["animal"]
    assert subsumes("animal", "bat", hierarchy=animals)


# ----------------------------------------------------------------------------
# User overrides
# ----------------------------------------------------------------------------

def test_operand_kinds() -> None:
    """Verify the classification of operands."""
    assert operand_kind("bird") is OperandKind.NAME
    assert operand_kind(str) is OperandKind.NAME
    assert operand_kind(lambda *args: None) is OperandKind.HOOK
    assert operand_kind(Prefix("b")) is OperandKind.ALGEBRA


def test_hook_operands(animals: Hierarchy, restore_settings) -> None:
    """Verify that callable operands answer before the hierarchy is consulted."""
    calls = []

    def universal(operation, other, hierarchy, swapped):
        calls.append((operation, other, swapped))
        if operation == "subsumes":
            return not swapped
        if operation == "least_upper_bounds":
            return [other]
        return None

    assert animals.subsumes(universal, "bat")
    assert not animals.subsumes("bat", universal)
    assert animals.least_upper_bounds(universal, "bird") == ["bird"]
    assert ("subsumes", "bat", True) in calls

    # Deferring hooks fall through to the membership guard
    assert animals.greatest_lower_bounds(universal, "bird") == []

    configure(user_hooks=False)
    assert not animals.subsumes(universal, "bat")
    assert get_settings().user_hooks is False


def test_ordered_operands(animals: Hierarchy) -> None:
    """Verify that OrderedOperand instances supply their own ordering."""
    b = Prefix("b")
    assert animals.subsumes(b, "bird")
    assert animals.subsumes(b, "bat")
    assert not animals.subsumes(b, "mammal")
    assert animals.properly_subsumes(b, "bat")

    # The right-hand operand defers through extends(), so the guard applies
    assert not animals.subsumes("animal", b)
    assert animals.least_upper_bounds(b, "bird") == []


# ----------------------------------------------------------------------------
# Graph store
# ----------------------------------------------------------------------------

def test_add_creates_missing_parents() -> None:
    """Verify that add() creates unknown parents as children of the root."""
    h = Hierarchy(root="top")
    h.add("x", "y", "z")
    assert h.parents("x") == {"y", "z"}
    assert h.parents("y") == {"top"}
    assert h.children("top") == {"y", "z"}
    assert h.size() == 4
    assert "x" in h
    assert len(h) == 4


def test_add_existing_type(animals: Hierarchy) -> None:
    """Verify that re-adding a type rebinds it only when parents are given."""
    animals.add("bat")
    assert animals.parents("bat") == {"bird", "mammal"}

    animals.add("bat", "mammal")
    assert animals.parents("bat") == {"mammal"}
    assert animals.children("bird") == set()
    assert animals.is_tree()

    with pytest.raises(ValueError):
        animals.add("fish", "fish")


def test_add_parents(animals: Hierarchy) -> None:
    """Verify that add_parents() adds edges without dropping existing ones."""
    animals.add("fish", "animal")
    animals.add_parents("fish", "swimmer")
    assert animals.parents("fish") == {"animal", "swimmer"}
    assert animals.has_parent("fish", "swimmer")
    assert animals.has_child("swimmer", "fish")

    with pytest.raises(ValueError):
        animals.add_parents("BOTTOM", "animal")
    with pytest.raises(ValueError):
        animals.add_parents("fish", "fish")
    assert animals.parents("fish") == {"animal", "swimmer"}


def test_move(animals: Hierarchy) -> None:
    """Verify that move() replaces parent edges and refuses to orphan types."""
    animals.move("bat", "mammal")
    assert animals.parents("bat") == {"mammal"}
    assert not animals.has_child("bird", "bat")

    animals.move("bat")
    assert animals.parents("bat") == {"BOTTOM"}

    with pytest.raises(ValueError):
        animals.move("BOTTOM", "animal")
    with pytest.raises(ValueError):
        animals.move("animal", "bird")

    # A cycle that keeps the type reachable is allowed, and detectable
    assert not animals.is_circular()
    animals.move("animal", "BOTTOM", "bird")
    assert animals.is_circular()
    assert "animal" in animals.ancestors("animal")


def test_remove_reattaches_children(animals: Hierarchy) -> None:
    """Verify that remove() keeps the order among the remaining types."""
    animals.set_attribute("bird", "wings", 2)
    animals.remove("bird")

    assert not animals.has_type("bird")
    assert animals.parents("bat") == {"animal", "mammal"}
    assert animals.subsumes("animal", "bat")
    assert animals.get_attribute("bird", "wings") is None

    animals.remove("animal", "unicorn")
    assert animals.parents("mammal") == {"BOTTOM"}
    assert animals.parents("bat") == {"BOTTOM", "mammal"}

    with pytest.raises(ValueError):
        animals.remove("BOTTOM")


def test_replace(animals: Hierarchy) -> None:
    """Verify that replace() renames a type with its edges and attributes."""
    animals.set_attribute("bat", "nocturnal", True)
    animals.replace("bat", "chiroptera")
    assert animals.parents("chiroptera") == {"bird", "mammal"}
    assert animals.children("bird") == {"chiroptera"}
    assert animals.get_attribute("chiroptera", "nocturnal") is True

    animals.replace("BOTTOM", "ROOT")
    assert animals.root == "ROOT"
    assert animals.parents("animal") == {"ROOT"}

    with pytest.raises(ValueError):
        animals.replace("bird", "mammal")


def test_ensure_types_and_clear(animals: Hierarchy) -> None:
    """Verify ensure_types() and clear()."""
    animals.ensure_types("bird", "fish")
    assert animals.parents("bird") == {"animal"}
    assert animals.parents("fish") == {"BOTTOM"}

    animals.set_hierarchy_attribute("name", "zoo")
    animals.clear()
    assert animals.types() == ["BOTTOM"]
    assert animals.hierarchy_attributes() == {}


def test_generation_counts_mutations(animals: Hierarchy) -> None:
    """Verify that every structural mutation bumps the generation."""
    before = animals.generation
    animals.add("fish", "animal")
    animals.remove("fish")
    assert animals.generation == before + 2

    animals.set_attribute("bat", "legs", 2)
    assert animals.generation == before + 2


def test_clone_and_assign(animals: Hierarchy) -> None:
    """Verify that clone() and assign() produce independent equivalent copies."""
    animals.set_attribute("bat", "legs", 2)
    animals.set_hierarchy_attribute("name", "zoo")

    copy = animals.clone()
    assert type(copy) is Hierarchy
    assert copy.types() == animals.types()
    assert copy.get_attribute("bat", "legs") == 2
    assert copy.get_hierarchy_attribute("name") == "zoo"

    copy.remove("bat")
    assert animals.has_type("bat")

    other = Hierarchy(root="R").assign(animals)
    assert other.root == "BOTTOM"
    assert other.least_upper_bounds("bird", "mammal") == ["bat"]


def test_merge(animals: Hierarchy) -> None:
    """Verify that merge() unions structure and attributes."""
    plants = Hierarchy(root="plant")
    plants.add("tree", "plant")
    plants.set_attribute("tree", "woody", True)

    more = Hierarchy(root="BOTTOM")
    more.add("fish", "animal")

    animals.merge(plants, more)
    assert animals.parents("plant") == {"BOTTOM"}
    assert animals.parents("tree") == {"plant"}
    assert animals.parents("fish") == {"animal"}
    assert animals.get_attribute("tree", "woody") is True


def test_merge_is_atomic(animals: Hierarchy) -> None:
    """Verify that a conflicting merge leaves the target untouched."""
    animals.set_attribute("bat", "legs", 2)
    before = (animals.types(), animals.generation)

    good = Hierarchy(root="BOTTOM")
    good.add("fish", "animal")
    bad = Hierarchy(root="BOTTOM")
    bad.add("bat")
    bad.set_attribute("bat", "legs", 4)

    with pytest.raises(MergeConflictError):
        animals.merge(good, bad)
    assert (animals.types(), animals.generation) == before

    rooted = Hierarchy(root="X")
    rooted.add("BOTTOM", "X")
    with pytest.raises(MergeConflictError):
        animals.merge(rooted)


def test_attributes(animals: Hierarchy) -> None:
    """Verify per-type and hierarchy-wide attributes."""
    animals.set_attribute("bat", "legs", 2)
    assert animals.get_attribute("bat", "legs") == 2
    assert animals.get_attribute("bat", "wings", 0) == 0
    assert animals.attributes("bat") == {"legs": 2}

    animals.del_attribute("bat", "legs")
    assert animals.attributes("bat") == {}

    with pytest.raises(ValueError):
        animals.set_attribute("unicorn", "horns", 1)

    animals.set_hierarchy_attribute("name", "zoo")
    assert animals.get_hierarchy_attribute("name") == "zoo"


def test_to_digraph(animals: Hierarchy) -> None:
    """Verify the NetworkX export."""
    animals.set_attribute("bat", "legs", 2)
    animals.set_hierarchy_attribute("name", "zoo")
    G = animals.to_digraph()
    assert G.number_of_nodes() == 5
    assert G.number_of_edges() == 5
    assert G.has_edge("bird", "bat")
    assert G.nodes["bat"]["legs"] == 2
    assert G.graph["name"] == "zoo"


# ----------------------------------------------------------------------------
# Closure, reduction and traversal
# ----------------------------------------------------------------------------

def test_closure(animals: Hierarchy) -> None:
    """Verify ancestors, descendants and their common sets."""
    assert animals.ancestors("bat") == {"BOTTOM", "animal", "bird", "mammal"}
    assert animals.descendants("animal") == {"bird", "mammal", "bat"}
    assert animals.ancestors("BOTTOM") == set()
    assert animals.has_ancestor("bat", "animal")
    assert animals.has_descendant("BOTTOM", "bat")
    assert animals.common_ancestors("bird", "mammal") == {"BOTTOM", "animal"}
    assert animals.common_descendants("animal", "bird") == {"bird", "bat"}


def test_hull_reduction(animals: Hierarchy) -> None:
    """Verify the destructive minimize() and maximize() reductions."""
    types = {"animal", "bird", "bat"}
    assert animals.minimize(types) is types
    assert types == {"animal"}
    assert animals.maximize({"animal", "bird", "mammal"}) == {"bird", "mammal"}

    # Module-level reductions take any proper-subsumption predicate
    divides = lambda a, b: a != b and b % a == 0
    assert minimize({2, 3, 4, 6}, divides) == {2, 3}
    assert maximize({2, 3, 4, 6}, divides) == {4, 6}


def test_leaves(animals: Hierarchy) -> None:
    """Verify leaves() over the whole hierarchy and below a type."""
    animals.add("fish", "animal")
    animals.add("plant")
    assert animals.leaves() == ["bat", "fish", "plant"]
    assert animals.leaves("bird") == ["bat"]


def test_iterate_halts_on_result(animals: Hierarchy) -> None:
    """Verify that a callback result stops the walk and is returned."""
    first_b = animals.iterate(lambda t, state: t if t.startswith("b") else None)
    assert first_b == "bird"

    assert animals.iterate(lambda t, state: [], default="done") == "done"


def test_iterate_options(animals: Hierarchy) -> None:
    """Verify start, visited, ignore and predecessor tracking."""
    seen = []
    states = []

    def record(t, state):
        seen.append(t)
        states.append(state)

    animals.iterate(record, visited={"bird"}, track_predecessors=True)
    assert seen == ["BOTTOM", "animal", "mammal", "bat"]
    assert states[-1].predecessors["bat"] == {"mammal"}

    seen.clear()
    animals.iterate(record, successors="parents")
    assert seen == ["bat", "bird", "mammal", "animal", "BOTTOM"]

    seen.clear()
    animals.iterate(record, start="animal", ignore={"bird"}, track_predecessors=True)
    assert seen == ["animal", "mammal", "bat"]

    with pytest.raises(ValueError):
        animals.iterate(record, successors="siblings")


def test_iterate_strata(animals: Hierarchy) -> None:
    """Verify that stratified walks place every type after all its parents."""
    animals.add("fish", "animal")
    animals.add("flying_fish", "fish", "bird")
    assert animals.iterate_strata() == [
        ["BOTTOM"],
        ["animal"],
        ["bird", "fish", "mammal"],
        ["bat", "flying_fish"],
    ]
    assert animals.iterate_strata(successors="parents", start="bat") == [
        ["bat"],
        ["bird", "mammal"],
        ["animal"],
        ["BOTTOM"],
    ]


def test_traversal_terminates_on_cycles(animals: Hierarchy) -> None:
    """Verify that cycles neither loop forever nor lose types."""
    animals.add_parents("animal", "bat")
    assert animals.descendants("bird") == {"bat", "animal", "bird", "mammal"}
    assert animals.iterate_strata() == [["BOTTOM"], ["animal", "bat", "bird", "mammal"]]


def test_strata_continue_below_cycles() -> None:
    """Verify that types below a cycle get their own strata after it."""
    h = Hierarchy()
    h.add("a")
    h.add("b", "a")
    h.add_parents("a", "b")
    h.add("c", "b")
    h.add("d", "c")
    h.add("e")

    assert h.iterate_strata() == [["BOTTOM"], ["a", "b", "e"], ["c"], ["d"]]
    assert h.stratasort(["a", "c", "d"]) == [["a"], ["c"], ["d"]]

    strata = {}

    def record(t, state):
        strata[t] = state.stratum

    h.iterate(record, stratify=True, track_predecessors=True)
    assert strata["c"] == strata["a"] + 1
    assert h.leaves() == ["d", "e"]


def test_compare_on_cycles(animals: Hierarchy) -> None:
    """Verify that types on a common cycle compare as equivalent."""
    animals.add_parents("animal", "bat")
    assert animals.properly_subsumes("bird", "bat")
    assert animals.properly_subsumes("bat", "bird")
    assert animals.compare("bird", "bat") == 0
    assert animals.compare("bat", "bird") == 0
    assert animals.compare("BOTTOM", "bat") == -1


# ----------------------------------------------------------------------------
# Folds and sorting
# ----------------------------------------------------------------------------

def test_njoin_and_nmeet(animals: Hierarchy) -> None:
    """Verify the deterministic n-ary folds."""
    animals.add("plant")
    assert animals.njoin("bird", "mammal") == "bat"
    assert animals.njoin("animal", "bird", "mammal") == "bat"
    assert animals.njoin("bird") == "bird"
    assert animals.njoin() is None
    assert animals.njoin("plant", "animal") is TOP
    assert animals.njoin("bird", TOP) is TOP

    assert animals.nmeet("bird", "mammal") == "animal"
    assert animals.nmeet("bat", "plant") == "BOTTOM"
    assert animals.nmeet() is TOP
    assert animals.nmeet("bat", "unicorn") is None
    assert animals.nmeet("bat", None) is None


def test_type_join_and_meet(animals: Hierarchy) -> None:
    """Verify the member-only folds."""
    assert animals.type_join("bird", "mammal") == "bat"
    assert animals.type_join("animal", "bat") == "bat"
    assert animals.type_meet("bat", "mammal") == "mammal"
    assert animals.type_meet("bird", "mammal", "bat") == "animal"


def test_compare_min_max(animals: Hierarchy) -> None:
    """Verify compare(), min() and max()."""
    assert animals.compare("animal", "bat") == -1
    assert animals.compare("bat", "animal") == 1
    assert animals.compare("bird", "bird") == 0
    assert animals.compare("bird", "mammal") is None

    assert animals.min(["bird", "bat", "mammal"]) == ["bird", "mammal"]
    assert animals.max(["bird", "bat", "mammal"]) == ["bat"]
    assert animals.min(["bird", TOP]) == ["bird"]
    assert animals.max(["bird", TOP]) == [TOP]


def test_subsort(animals: Hierarchy) -> None:
    """Verify that subsort() orders types by subsumption, each once."""
    result = animals.subsort(["bat", "bird", "BOTTOM", "mammal", "animal", "bat"])
    assert result == ["BOTTOM", "animal", "bird", "mammal", "bat"]

    animals.add_parents("animal", "bat")
    cyclic = animals.subsort(["bat", "BOTTOM", "bird"])
    assert cyclic[0] == "BOTTOM"
    assert sorted(cyclic[1:]) == ["bat", "bird"]


def test_stratasort(animals: Hierarchy) -> None:
    """Verify that stratasort() groups types into ordered antichains."""
    result = animals.stratasort(["bat", "animal", "unicorn", "bird", "mammal"])
    assert result == [["animal"], ["bird", "mammal"], ["bat"], ["unicorn"]]
    assert animals.stratasort([]) == []
