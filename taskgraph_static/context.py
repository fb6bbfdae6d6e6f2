"""
taskgraph_static.context
========================

Control-context extraction: the nesting levels between a call site and the
top level of the function that contains it.

Walk
----
::

    def bar():                       # enclosing function (stop here)
        if ready:                    #   CONDITIONAL_ARM  ("if", line 2)
            for item in items:       #   LOOP_BODY        ("for", line 3)
                foo.delay(item)      # call site (start here)

    extract(ref) == ControlContextPath((LOOP_BODY@3, CONDITIONAL_ARM@2))

The extractor locates the innermost syntax node covering the call location,
then follows the parent map outward.  Each step from a child into its
parent is looked up by the parent's node type and the field the child sits
in; steps with no control effect (call arguments, operators, the condition
of an ``if``, the iterable of a ``for``) emit no frame at all.

Crossing table
--------------
``CONDITIONAL_ARM``
    ``if``/``elif``/``else`` arms, ``x if c else y`` arms, ``match`` cases
    and guards, ``except`` handlers, ``try…else``, ``for…else``,
    ``while…else``, the message of ``assert``, every operand of
    ``and``/``or`` but the first.
``LOOP_BODY``
    ``for``/``async for`` bodies, ``while`` bodies and tests,
    comprehension elements, filters and all iterables but the first.
``CLOSURE_BOUNDARY``
    ``lambda`` bodies and the bodies of nested ``def``/``async def``.
``SEQUENTIAL``
    ``with`` bodies, ``try`` bodies, ``finally`` blocks, nested ``class``
    bodies.
"""

from __future__ import annotations

import ast
import logging
from typing import List, Optional

from .errors import DiscoveryError, UnresolvedContext
from .multiplicity import ControlContextPath, ControlFrame, FrameKind
from .symbols import RawReference
from .syntax import ParsedModule, SyntaxCache

logger = logging.getLogger(__name__)

__all__ = ["ControlContextExtractor", "frame_for_step"]

_FUNCTION_NODES = (ast.FunctionDef, ast.AsyncFunctionDef)
_COMPREHENSIONS = (ast.ListComp, ast.SetComp, ast.GeneratorExp, ast.DictComp)
_TRY_NODES = tuple(
    t for t in (ast.Try, getattr(ast, "TryStar", None)) if t is not None
)
_MATCH_CASE = getattr(ast, "match_case", None)


def _frame(kind: FrameKind, construct: str, node: ast.AST) -> ControlFrame:
    return ControlFrame(kind, construct, getattr(node, "lineno", 0))


def frame_for_step(
    module: ParsedModule,
    parent: ast.AST,
    field: str,
    index: Optional[int],
) -> Optional[ControlFrame]:
    """Frame emitted when a child in ``parent.<field>[index]`` is left.

    Returns ``None`` for steps without a control effect.
    """
    if isinstance(parent, ast.If):
        if field == "body":
            return _frame(FrameKind.CONDITIONAL_ARM, "if", parent)
        if field == "orelse":
            elif_ = len(parent.orelse) == 1 and isinstance(parent.orelse[0], ast.If)
            return _frame(FrameKind.CONDITIONAL_ARM, "elif" if elif_ else "else", parent)
        return None

    if isinstance(parent, ast.IfExp):
        if field in ("body", "orelse"):
            return _frame(FrameKind.CONDITIONAL_ARM, "ifexp", parent)
        return None

    if _MATCH_CASE is not None and isinstance(parent, _MATCH_CASE):
        if field in ("body", "guard"):
            line = getattr(parent.pattern, "lineno", 0)
            return ControlFrame(FrameKind.CONDITIONAL_ARM, "case", line)
        return None

    if isinstance(parent, ast.ExceptHandler):
        return _frame(FrameKind.CONDITIONAL_ARM, "except", parent)

    if isinstance(parent, _TRY_NODES):
        if field == "body":
            return _frame(FrameKind.SEQUENTIAL, "try", parent)
        if field == "orelse":
            return _frame(FrameKind.CONDITIONAL_ARM, "try-else", parent)
        if field == "finalbody":
            return _frame(FrameKind.SEQUENTIAL, "finally", parent)
        return None

    if isinstance(parent, (ast.For, ast.AsyncFor)):
        construct = "async for" if isinstance(parent, ast.AsyncFor) else "for"
        if field == "body":
            return _frame(FrameKind.LOOP_BODY, construct, parent)
        if field == "orelse":
            return _frame(FrameKind.CONDITIONAL_ARM, f"{construct}-else", parent)
        return None

    if isinstance(parent, ast.While):
        if field in ("body", "test"):
            return _frame(FrameKind.LOOP_BODY, "while", parent)
        if field == "orelse":
            return _frame(FrameKind.CONDITIONAL_ARM, "while-else", parent)
        return None

    if isinstance(parent, ast.Assert):
        if field == "msg":
            return _frame(FrameKind.CONDITIONAL_ARM, "assert", parent)
        return None

    if isinstance(parent, ast.BoolOp):
        if field == "values" and index:
            op = "and" if isinstance(parent.op, ast.And) else "or"
            return _frame(FrameKind.CONDITIONAL_ARM, op, parent)
        return None

    if isinstance(parent, ast.comprehension):
        if field == "ifs":
            return _frame(FrameKind.LOOP_BODY, "comprehension", parent.iter)
        if field == "iter":
            link = module.parent_of(parent)
            if link is not None and link[2]:
                return _frame(FrameKind.LOOP_BODY, "comprehension", parent.iter)
        return None

    if isinstance(parent, _COMPREHENSIONS):
        if field in ("elt", "key", "value"):
            return _frame(FrameKind.LOOP_BODY, "comprehension", parent)
        return None

    if isinstance(parent, ast.Lambda):
        if field == "body":
            return _frame(FrameKind.CLOSURE_BOUNDARY, "lambda", parent)
        return None

    if isinstance(parent, _FUNCTION_NODES):
        if field == "body":
            construct = "async def" if isinstance(parent, ast.AsyncFunctionDef) else "def"
            return _frame(FrameKind.CLOSURE_BOUNDARY, construct, parent)
        return None

    if isinstance(parent, ast.ClassDef):
        if field == "body":
            return _frame(FrameKind.SEQUENTIAL, "class", parent)
        return None

    if isinstance(parent, (ast.With, ast.AsyncWith)):
        if field == "body":
            construct = "async with" if isinstance(parent, ast.AsyncWith) else "with"
            return _frame(FrameKind.SEQUENTIAL, construct, parent)
        return None

    return None


class ControlContextExtractor:
    """Derives the :class:`ControlContextPath` of a raw reference.

    Stateless apart from the shared, read-only :class:`SyntaxCache`; safe to
    call from several worker threads at once.
    """

    def __init__(self, syntax: Optional[SyntaxCache] = None) -> None:
        self.syntax = syntax if syntax is not None else SyntaxCache()

    def extract(self, reference: RawReference) -> ControlContextPath:
        """Return the innermost-first control path of *reference*.

        Raises
        ------
        UnresolvedContext
            The unit cannot be parsed, no node covers the call location, or
            the walk never reaches the enclosing function.
        """
        call = reference.call_location
        module = self._module(reference)
        target = self._target(module, reference)

        node = module.node_at(call.line, call.column)
        if node is None:
            raise UnresolvedContext(
                "no syntax node covers the call location", location=call,
            )

        frames: List[ControlFrame] = []
        for _, (parent, field, index) in module.ancestors(node):
            if parent is target:
                if field != "body":
                    raise UnresolvedContext(
                        f"call sits in the {field} of {target.name}, outside its body",
                        location=call,
                    )
                logger.debug("%s: %d frame(s)", call, len(frames))
                return ControlContextPath(tuple(frames))
            frame = frame_for_step(module, parent, field, index)
            if frame is not None:
                frames.append(frame)

        if isinstance(target, ast.Module):
            return ControlContextPath(tuple(frames))
        raise UnresolvedContext(
            f"call is not inside {reference.enclosing_name or 'the enclosing function'}",
            location=call,
        )

    def _module(self, reference: RawReference) -> ParsedModule:
        call = reference.call_location
        try:
            return self.syntax.get(call.path)
        except DiscoveryError as exc:
            raise UnresolvedContext(
                f"cannot parse the unit containing the call: {exc.message}",
                location=call, cause=exc,
            ) from exc

    @staticmethod
    def _target(module: ParsedModule, reference: RawReference) -> ast.AST:
        enclosing = reference.enclosing_location
        if enclosing is None:
            return module.tree
        if enclosing.canonical()[0] != reference.call_location.canonical()[0]:
            raise UnresolvedContext(
                "call and enclosing function are in different units",
                location=reference.call_location,
            )
        definition = module.definition_at(enclosing.line, enclosing.column)
        if definition is None:
            raise UnresolvedContext(
                f"no function is declared at {enclosing}",
                location=reference.call_location,
            )
        return definition.node

