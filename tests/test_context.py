# tests/test_context.py
"""
Tests for control-context extraction: which frames a call site crosses on
the way out to its enclosing function.
"""

import pytest

from taskgraph_static.context import ControlContextExtractor
from taskgraph_static.errors import ErrorCode, UnresolvedContext
from taskgraph_static.multiplicity import FrameKind, Multiplicity, fold
from taskgraph_static.symbols import RawReference, SourceLocation
from tests.conftest import def_location, locate, ref, write_tree

SEQ = FrameKind.SEQUENTIAL
COND = FrameKind.CONDITIONAL_ARM
LOOP = FrameKind.LOOP_BODY
CLOS = FrameKind.CLOSURE_BOUNDARY


def _extract(tmp_path, source, call="send(", enclosing="caller", occurrence=1):
    paths = write_tree(tmp_path, {"mod.py": source})
    reference = ref(paths["mod.py"], call, enclosing, occurrence)
    return ControlContextExtractor().extract(reference)


# ── Straight-line code ───────────────────────────────────────────

class TestStraightLine:

    def test_top_level_statement(self, tmp_path):
        path = _extract(tmp_path, '''
            def caller(x):
                send(x)
        ''')
        assert path.frames == ()
        assert fold(path) is Multiplicity.EXACTLY_ONE

    def test_call_argument_has_no_effect(self, tmp_path):
        path = _extract(tmp_path, '''
            def caller(x):
                log(wrap(send(x)))
        ''')
        assert path.kinds() == ()

    def test_with_body_is_sequential(self, tmp_path):
        path = _extract(tmp_path, '''
            def caller(x):
                with lock:
                    send(x)
        ''')
        assert path.kinds() == (SEQ,)
        assert path.frames[0].construct == "with"
        assert fold(path) is Multiplicity.EXACTLY_ONE

    def test_async_with_and_await(self, tmp_path):
        path = _extract(tmp_path, '''
            async def caller(x):
                async with lock:
                    await send(x)
        ''')
        assert path.kinds() == (SEQ,)
        assert path.frames[0].construct == "async with"


# ── Conditionals ─────────────────────────────────────────────────

class TestConditionals:

    def test_if_body(self, tmp_path):
        path = _extract(tmp_path, '''
            def caller(x):
                if x:
                    send(x)
        ''')
        assert path.kinds() == (COND,)
        frame = path.frames[0]
        assert frame.construct == "if"
        assert frame.line == 2

    def test_if_condition_is_unconditional(self, tmp_path):
        path = _extract(tmp_path, '''
            def caller(x):
                if send(x):
                    pass
        ''')
        assert path.kinds() == ()

    def test_else(self, tmp_path):
        path = _extract(tmp_path, '''
            def caller(x):
                if x:
                    pass
                else:
                    send(x)
        ''')
        assert [f.construct for f in path.frames] == ["else"]

    def test_elif_crosses_two_arms(self, tmp_path):
        path = _extract(tmp_path, '''
            def caller(a, b):
                if a:
                    pass
                elif b:
                    send(b)
        ''')
        assert path.kinds() == (COND, COND)
        assert [f.construct for f in path.frames] == ["if", "elif"]
        assert fold(path) is Multiplicity.ZERO_OR_ONE

    def test_conditional_expression(self, tmp_path):
        path = _extract(tmp_path, '''
            def caller(x):
                return send(x) if x else None
        ''')
        assert path.kinds() == (COND,)
        assert path.frames[0].construct == "ifexp"

    def test_short_circuit_right_operand(self, tmp_path):
        path = _extract(tmp_path, '''
            def caller(x):
                return x and send(x)
        ''')
        assert path.kinds() == (COND,)
        assert path.frames[0].construct == "and"

    def test_short_circuit_first_operand_always_runs(self, tmp_path):
        path = _extract(tmp_path, '''
            def caller(x):
                return send(x) or x
        ''')
        assert path.kinds() == ()

    def test_match_case(self, tmp_path):
        path = _extract(tmp_path, '''
            def caller(cmd):
                match cmd:
                    case "go":
                        send(cmd)
                    case _:
                        pass
        ''')
        assert path.kinds() == (COND,)
        assert path.frames[0].construct == "case"

    def test_assert_message(self, tmp_path):
        path = _extract(tmp_path, '''
            def caller(ok):
                assert ok, send(ok)
        ''')
        assert path.kinds() == (COND,)


class TestTry:

    SOURCE = '''
        def caller():
            try:
                send(1)
            except ValueError:
                send(2)
            else:
                send(3)
            finally:
                send(4)
    '''

    @pytest.mark.parametrize("call, kind, construct", [
        ("send(1)", SEQ, "try"),
        ("send(2)", COND, "except"),
        ("send(3)", COND, "try-else"),
        ("send(4)", SEQ, "finally"),
    ])
    def test_arms(self, tmp_path, call, kind, construct):
        path = _extract(tmp_path, self.SOURCE, call=call)
        assert path.kinds() == (kind,)
        assert path.frames[0].construct == construct


# ── Loops ────────────────────────────────────────────────────────

class TestLoops:

    def test_for_body(self, tmp_path):
        path = _extract(tmp_path, '''
            def caller(items):
                for item in items:
                    send(item)
        ''')
        assert path.kinds() == (LOOP,)
        assert fold(path) is Multiplicity.ZERO_OR_MANY

    def test_for_iterable_runs_once(self, tmp_path):
        path = _extract(tmp_path, '''
            def caller():
                for item in send():
                    pass
        ''')
        assert path.kinds() == ()

    def test_for_else(self, tmp_path):
        path = _extract(tmp_path, '''
            def caller(items):
                for item in items:
                    pass
                else:
                    send(items)
        ''')
        assert path.kinds() == (COND,)
        assert path.frames[0].construct == "for-else"

    def test_while_test_repeats(self, tmp_path):
        path = _extract(tmp_path, '''
            def caller():
                while send():
                    pass
        ''')
        assert path.kinds() == (LOOP,)

    def test_loop_inside_conditional(self, tmp_path):
        path = _extract(tmp_path, '''
            def caller(items, ready):
                if ready:
                    for item in items:
                        send(item)
        ''')
        assert path.kinds() == (LOOP, COND)
        assert fold(path) is Multiplicity.ZERO_OR_MANY

    def test_comprehension_element(self, tmp_path):
        path = _extract(tmp_path, '''
            def caller(items):
                return [send(i) for i in items]
        ''')
        assert path.kinds() == (LOOP,)

    def test_comprehension_first_iterable_runs_once(self, tmp_path):
        path = _extract(tmp_path, '''
            def caller(items):
                return [i for i in send(items)]
        ''')
        assert path.kinds() == ()

    def test_comprehension_later_iterable_repeats(self, tmp_path):
        path = _extract(tmp_path, '''
            def caller(groups):
                return [j for g in groups for j in send(g)]
        ''')
        assert path.kinds() == (LOOP,)

    def test_comprehension_filter(self, tmp_path):
        path = _extract(tmp_path, '''
            def caller(items):
                return {i for i in items if send(i)}
        ''')
        assert path.kinds() == (LOOP,)


# ── Closures ─────────────────────────────────────────────────────

class TestClosures:

    def test_lambda(self, tmp_path):
        path = _extract(tmp_path, '''
            def caller(x):
                callback = lambda: send(x)
                return callback
        ''')
        assert path.kinds() == (CLOS,)
        assert fold(path) is Multiplicity.ZERO_OR_ONE

    def test_nested_def(self, tmp_path):
        path = _extract(tmp_path, '''
            def caller(x):
                def inner():
                    send(x)
                return inner
        ''')
        assert path.kinds() == (CLOS,)
        assert path.frames[0].construct == "def"

    def test_loop_inside_closure(self, tmp_path):
        path = _extract(tmp_path, '''
            def caller(items):
                def inner():
                    for i in items:
                        send(i)
                return inner
        ''')
        assert path.kinds() == (LOOP, CLOS)


# ── Module-level code ────────────────────────────────────────────

class TestModuleLevel:

    def test_main_guard(self, tmp_path):
        path = _extract(tmp_path, '''
            import sys

            if __name__ == "__main__":
                send(sys.argv)
        ''', enclosing=None)
        assert path.kinds() == (COND,)

    def test_class_body(self, tmp_path):
        path = _extract(tmp_path, '''
            class Config:
                value = send()
        ''', enclosing=None)
        assert path.kinds() == (SEQ,)
        assert fold(path) is Multiplicity.EXACTLY_ONE


# ── Unresolvable sites ───────────────────────────────────────────

class TestUnresolved:

    def test_call_in_decorator_of_enclosing_function(self, tmp_path):
        with pytest.raises(UnresolvedContext) as info:
            _extract(tmp_path, '''
                @register(send())
                def caller():
                    pass
            ''')
        assert info.value.code is ErrorCode.CONTEXT_UNRESOLVED

    def test_call_outside_named_function(self, tmp_path):
        with pytest.raises(UnresolvedContext):
            _extract(tmp_path, '''
                def other():
                    pass

                def caller():
                    send()
            ''', enclosing="other")

    def test_enclosing_location_without_definition(self, tmp_path):
        paths = write_tree(tmp_path, {"mod.py": '''
            def caller():
                send()
        '''})
        call = locate(paths["mod.py"], "send(")
        with pytest.raises(UnresolvedContext):
            ControlContextExtractor().extract(RawReference(call, call, "caller"))

    def test_enclosing_in_another_file(self, tmp_path):
        paths = write_tree(tmp_path, {
            "a.py": "def caller():\n    send()\n",
            "b.py": "def caller():\n    pass\n",
        })
        reference = RawReference(
            locate(paths["a.py"], "send("), def_location(paths["b.py"], "caller"),
        )
        with pytest.raises(UnresolvedContext):
            ControlContextExtractor().extract(reference)

    def test_unparsable_unit(self, tmp_path):
        paths = write_tree(tmp_path, {"broken.py": "def caller(:\n    send()\n"})
        reference = RawReference(SourceLocation(paths["broken.py"], 2, 4))
        with pytest.raises(UnresolvedContext) as info:
            ControlContextExtractor().extract(reference)
        assert "cannot parse" in info.value.message
