"""
hierarchy_compiled.py

Compiled bit-vector representations of type hierarchies.

Every type gets a dense index, and each type's ancestors and descendants are
precomputed as bit-vectors (Python ints used as bitsets). Subsumption then
becomes a single bit test, and least upper / greatest lower bounds become
vector intersections followed by the usual hull reduction.

The compiled state is derived from the structural generation of the
hierarchy: any mutation makes it stale, and the next query recompiles it.
Results are always identical to those of the uncompiled Hierarchy.
"""

import sys

from tqdm import tqdm

from hierarchy_core import Hierarchy, sorted_types


WORD_BITS = 64


def bit_indices(bits):
    """Yield the indices of the set bits of an int, lowest first."""
    while bits:
        low = bits & -bits
        yield low.bit_length() - 1
        bits ^= low


class CompiledHierarchy(Hierarchy):
    """
    A hierarchy answering closure and algebra queries from bit-vectors.

    Compilation happens lazily: the vectors are rebuilt at the first query
    after any structural mutation. compiled(False) switches the hierarchy
    back to plain graph lookups until compiled(True) or compile() is called.
    """

    def __init__(self, root="BOTTOM", settings=None, compiled=True):
        """
        Args:
            root: Name of the root type
            settings: HierarchySettings, or None for the process-wide ones
            compiled: Whether queries should use the compiled vectors
        """
        super().__init__(root=root, settings=settings)
        self._want_compiled = compiled
        self._compiled_generation = None
        self._index = {}               # type -> bit index
        self._types_by_index = []      # bit index -> type
        self._ancestor_bits = []       # bit index -> bitset of ancestors
        self._descendant_bits = []     # bit index -> bitset of descendants

    def _options(self):
        options = super()._options()
        options["compiled"] = self._want_compiled
        return options

    @property
    def width(self):
        """Vector width in bits: the number of indexed types rounded up to whole words."""
        words = -(-len(self._types_by_index) // WORD_BITS)
        return words * WORD_BITS

    # ------------------------------------------------------------------
    # Compilation control
    # ------------------------------------------------------------------

    def compiled(self, flag=None):
        """
        Query or request the compiled state.

        Args:
            flag: None to query; True to compile now; False to drop the
                vectors and answer from the graph

        Returns:
            True if the vectors are current and in use
        """
        if flag is not None:
            self._want_compiled = bool(flag)
            if flag:
                self.compile()
            else:
                self._drop_vectors()
        return self._want_compiled and self._compiled_generation == self._generation

    def compile(self):
        """Rebuild the bit-vectors from the current graph."""
        self._compile_types(self.types())
        self._want_compiled = True
        return self

    def _drop_vectors(self):
        self._compiled_generation = None
        self._index = {}
        self._types_by_index = []
        self._ancestor_bits = []
        self._descendant_bits = []

    def _compile_types(self, types):
        """
        Index the given types and precompute their vectors.

        The types must be closed under descendants: every descendant of an
        indexed type is indexed too.
        """
        index = {t: i for i, t in enumerate(types)}
        descendant_bits = [0] * len(types)
        for i, t in enumerate(tqdm(types, desc="Compiling hierarchy",
                                   disable=not self.settings.progress, file=sys.stderr)):
            bits = 0
            for d in Hierarchy.descendants(self, t):
                bits |= 1 << index[d]
            descendant_bits[i] = bits

        ancestor_bits = [0] * len(types)
        for i, bits in enumerate(descendant_bits):
            for j in bit_indices(bits):
                ancestor_bits[j] |= 1 << i

        self._index = index
        self._types_by_index = list(types)
        self._descendant_bits = descendant_bits
        self._ancestor_bits = ancestor_bits
        self._compiled_generation = self._generation

    def _ready(self):
        """Return True if queries may use the vectors, recompiling them if stale."""
        if not self._want_compiled:
            return False
        if self._compiled_generation != self._generation:
            self.compile()
        return True

    def _decode(self, bits):
        return {self._types_by_index[i] for i in bit_indices(bits)}

    def _ancestor_index(self, t):
        """Index of t if its ancestor vector is complete, else None."""
        return self._index.get(t)

    def _descendant_index(self, t):
        """Index of t if its descendant vector is complete, else None."""
        return self._index.get(t)

    # ------------------------------------------------------------------
    # Closure
    # ------------------------------------------------------------------

    def ancestors(self, t):
        i = self._ancestor_index(t) if self._ready() and self.has_type(t) else None
        if i is None:
            return super().ancestors(t)
        return self._decode(self._ancestor_bits[i])

    def descendants(self, t):
        i = self._descendant_index(t) if self._ready() and self.has_type(t) else None
        if i is None:
            return super().descendants(t)
        return self._decode(self._descendant_bits[i])

    def _minimize_bits(self, bits):
        remaining = bits
        for t in sorted_types(self._decode(bits)):
            i = self._index[t]
            if remaining & self._ancestor_bits[i] & ~(1 << i):
                remaining &= ~(1 << i)
        return remaining

    def _maximize_bits(self, bits):
        remaining = bits
        for t in sorted_types(self._decode(bits)):
            i = self._index[t]
            if remaining & self._descendant_bits[i] & ~(1 << i):
                remaining &= ~(1 << i)
        return remaining

    # ------------------------------------------------------------------
    # Algebra: graph lookup through the vectors
    # ------------------------------------------------------------------

    def _subsumes_graph(self, t1, t2):
        i1 = self._descendant_index(t1) if self._ready() else None
        if i1 is None:
            return super()._subsumes_graph(t1, t2)
        if t1 == t2:
            return True
        i2 = self._index.get(t2)
        return i2 is not None and bool(self._descendant_bits[i1] >> i2 & 1)

    def _properly_subsumes_graph(self, t1, t2):
        return t1 != t2 and self._subsumes_graph(t1, t2)

    def _lub_graph(self, t1, t2):
        i1 = self._descendant_index(t1) if self._ready() else None
        i2 = self._descendant_index(t2) if i1 is not None else None
        if i2 is None:
            return super()._lub_graph(t1, t2)
        common = (self._descendant_bits[i1] | 1 << i1) & (self._descendant_bits[i2] | 1 << i2)
        return sorted_types(self._decode(self._minimize_bits(common)))

    def _glb_graph(self, t1, t2):
        i1 = self._ancestor_index(t1) if self._ready() else None
        i2 = self._ancestor_index(t2) if i1 is not None else None
        if i2 is None:
            return super()._glb_graph(t1, t2)
        common = (self._ancestor_bits[i1] | 1 << i1) & (self._ancestor_bits[i2] | 1 << i2)
        return sorted_types(self._decode(self._maximize_bits(common)))


class MaskedHierarchy(CompiledHierarchy):
    """
    A compiled hierarchy whose vectors cover only part of the types.

    The mask is a set of seed types; the seeds and all their descendants
    are indexed, so vectors are only as wide as that sub-hierarchy.
    Subsumption and joins between masked types use the vectors. Ancestor
    vectors are used only for masked types whose ancestors are all masked;
    all other queries are answered from the graph.
    """

    def __init__(self, root="BOTTOM", settings=None, compiled=True, mask=None):
        """
        Args:
            root: Name of the root type
            settings: HierarchySettings, or None for the process-wide ones
            compiled: Whether queries should use the compiled vectors
            mask: Seed types of the indexed sub-hierarchy (default: the root)
        """
        super().__init__(root=root, settings=settings, compiled=compiled)
        self._mask = list(mask) if mask is not None else None
        self._closed_above = 0         # bitset of masked types with only masked ancestors

    def _options(self):
        options = super()._options()
        options["mask"] = None if self._mask is None else list(self._mask)
        return options

    @property
    def mask(self):
        """Seed types of the mask that are present in the hierarchy."""
        seeds = [t for t in (self._mask or []) if self.has_type(t)]
        return seeds or [self._root]

    def set_mask(self, *seeds):
        """Change the mask seeds; the vectors are rebuilt at the next query."""
        self._mask = list(seeds) or None
        self._compiled_generation = None
        return self

    def masked_types(self):
        """The mask seeds together with all their descendants, in type order."""
        region = set()
        for seed in self.mask:
            region.add(seed)
            region |= Hierarchy.descendants(self, seed)
        return [t for t in self.types() if t in region]

    def compile(self):
        region = self.masked_types()
        self._compile_types(region)

        members = set(region)
        closed = 0
        for i, t in enumerate(region):
            if Hierarchy.ancestors(self, t) <= members:
                closed |= 1 << i
        self._closed_above = closed
        self._want_compiled = True
        return self

    def _drop_vectors(self):
        super()._drop_vectors()
        self._closed_above = 0

    def _ancestor_index(self, t):
        i = self._index.get(t)
        if i is None or not self._closed_above >> i & 1:
            return None
        return i
