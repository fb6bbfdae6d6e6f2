# tests/test_multiplicity.py
"""
Tests for the multiplicity algebra: fold along a control path and join
across call sites.
"""

import itertools
import random

import pytest

from taskgraph_static.multiplicity import (
    ControlContextPath,
    ControlFrame,
    FrameKind,
    Multiplicity,
    SiteJoin,
    apply_frame,
    classify,
    fold,
    join,
    join_sites,
)

SEQ = FrameKind.SEQUENTIAL
COND = FrameKind.CONDITIONAL_ARM
LOOP = FrameKind.LOOP_BODY
CLOS = FrameKind.CLOSURE_BOUNDARY

ONE = Multiplicity.EXACTLY_ONE
Z1 = Multiplicity.ZERO_OR_ONE
ZM = Multiplicity.ZERO_OR_MANY


# ── Lattice ──────────────────────────────────────────────────────

class TestMultiplicity:

    def test_order(self):
        assert Multiplicity.ZERO < ONE < Z1 < ZM
        assert ZM >= Z1 >= ONE

    def test_notation(self):
        assert [m.value for m in (ONE, Z1, ZM)] == ["1", "0..1", "0..*"]

    def test_parse_notation_and_name(self):
        assert Multiplicity.parse("0..1") is Z1
        assert Multiplicity.parse("zero_or_many") is ZM
        with pytest.raises(ValueError):
            Multiplicity.parse("2")

    def test_flags(self):
        assert ZM.may_repeat and not Z1.may_repeat
        assert Z1.may_skip and not ONE.may_skip


# ── Fold ─────────────────────────────────────────────────────────

class TestFold:

    def test_empty_path_is_exactly_one(self):
        assert fold(ControlContextPath()) is ONE

    @pytest.mark.parametrize("depth", [1, 3, 6])
    def test_sequential_frames_are_transparent(self, depth):
        assert fold([SEQ] * depth) is ONE

    @pytest.mark.parametrize("depth", [1, 2, 5])
    def test_nested_conditionals_collapse(self, depth):
        assert fold([COND] * depth) is Z1

    @pytest.mark.parametrize("depth", [1, 2, 5])
    def test_mixed_conditional_and_closure_collapse(self, depth):
        kinds = [COND if i % 2 else CLOS for i in range(depth)]
        assert fold(kinds) is Z1

    def test_loop_alone(self):
        assert fold([LOOP]) is ZM

    @pytest.mark.parametrize("path", [
        (LOOP, COND),
        (COND, LOOP),
        (COND, COND, LOOP, SEQ),
        (SEQ, LOOP, CLOS),
        (CLOS, COND, SEQ, LOOP),
    ])
    def test_loop_dominates_anywhere(self, path):
        assert fold(path) is ZM

    def test_every_short_path_with_a_loop_is_zero_or_many(self):
        for n in range(1, 5):
            for path in itertools.product(list(FrameKind), repeat=n):
                if LOOP in path:
                    assert fold(path) is ZM, path

    def test_every_short_path_without_loop_or_condition_is_one(self):
        for n in range(1, 5):
            for path in itertools.product([SEQ], repeat=n):
                assert fold(path) is ONE

    def test_accepts_frames_and_paths(self):
        frames = ControlContextPath.of(ControlFrame(COND, "if", 3), SEQ)
        assert fold(frames) is Z1
        assert classify(frames) is Z1

    def test_apply_frame_keeps_weaker_classes(self):
        assert apply_frame(Z1, COND) is Z1
        assert apply_frame(ZM, COND) is ZM
        assert apply_frame(ZM, SEQ) is ZM


class TestControlContextPath:

    def test_significant_drops_sequential(self):
        path = ControlContextPath.of(SEQ, COND, SEQ)
        assert [f.kind for f in path.significant()] == [COND]
        assert path.kinds() == (SEQ, COND, SEQ)

    def test_str(self):
        assert str(ControlContextPath()) == "<top-level>"
        path = ControlContextPath.of(ControlFrame(LOOP, "for", 4), ControlFrame(COND, "if", 3))
        assert str(path) == "loop-body(for@4) < conditional-arm(if@3)"

    def test_truthiness_and_length(self):
        assert not ControlContextPath()
        assert len(ControlContextPath.of(COND, LOOP)) == 2


# ── Join ─────────────────────────────────────────────────────────

class TestJoin:

    def test_no_sites_is_zero(self):
        assert join_sites([]) is Multiplicity.ZERO

    @pytest.mark.parametrize("m", [ONE, Z1, ZM])
    def test_single_site_keeps_class(self, m):
        assert join_sites([m]) is m

    def test_two_unconditional_sites_may_repeat(self):
        assert join_sites([ONE, ONE]) is ZM

    def test_unconditional_and_conditional(self):
        assert join_sites([ONE, Z1]) is Z1

    def test_two_conditionals(self):
        assert join_sites([Z1, Z1]) is Z1

    def test_anything_with_a_loop_site(self):
        assert join_sites([ONE, ZM]) is ZM
        assert join_sites([Z1, ZM, Z1]) is ZM

    def test_lub(self):
        assert join(ONE, Z1) is Z1
        assert join(ZM, ONE) is ZM
        assert join(Multiplicity.ZERO, ONE) is ONE

    def test_commutative(self):
        for a, b in itertools.product([ONE, Z1, ZM], repeat=2):
            assert join_sites([a, b]) is join_sites([b, a])

    def test_associative(self):
        for a, b, c in itertools.product([ONE, Z1, ZM], repeat=3):
            left = SiteJoin.unit(a).combine(SiteJoin.unit(b)).combine(SiteJoin.unit(c))
            right = SiteJoin.unit(a).combine(SiteJoin.unit(b).combine(SiteJoin.unit(c)))
            assert left == right

    def test_order_independent_for_multisets(self):
        rng = random.Random(7)
        for _ in range(50):
            sites = [rng.choice([ONE, Z1, ZM]) for _ in range(rng.randint(1, 6))]
            expected = join_sites(sites)
            for _ in range(5):
                rng.shuffle(sites)
                assert join_sites(sites) is expected
