"""
taskgraph_static.lsp_oracle
===========================

An oracle that asks a language server for incoming calls over JSON-RPC 2.0
on the server's stdio.

Wire format
-----------
Every message is a ``Content-Length`` framed JSON body::

    Content-Length: 83\\r\\n
    \\r\\n
    {"jsonrpc":"2.0","id":7,"method":"callHierarchy/incomingCalls","params":{...}}

Per symbol
----------
1. ``textDocument/prepareCallHierarchy`` at the task's name token.  Servers
   that are still indexing answer with an empty list, so the request is
   repeated up to ``prepare_attempts`` times.  A symbol that never yields
   an item is *isolated*: it has no references, and an ``ISOLATED_TASK``
   warning is logged and kept for :meth:`LspOracle.drain_diagnostics`.
2. ``callHierarchy/incomingCalls`` on the first item.  Every entry of every
   ``fromRanges`` list becomes one :class:`RawReference` whose enclosing
   function is the caller item's ``selectionRange``.  File, module and
   class callers carry no function; such a site is attributed to the
   innermost ``def`` around it, or to module level when there is none.

LSP lines are 0-based and columns are UTF-16 code units; both are converted
to the package's 1-based lines and character columns.

Threading
---------
A daemon reader thread owns the server's stdout.  Each outgoing request
registers a :class:`~concurrent.futures.Future` under its id; the reader
resolves it when the matching response arrives.  A request that is not
answered within ``request_timeout`` raises ``OracleTimeout``; end of stream
or a broken pipe fails every pending request with ``OracleUnavailable``.
"""

from __future__ import annotations

import ast
import itertools
import json
import logging
import os
import shlex
import subprocess
import threading
import time
from concurrent.futures import Future, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, BinaryIO, Callable, Dict, List, Optional, Sequence, Set, Tuple, Union
from urllib.parse import unquote, urlparse
from urllib.request import url2pathname

from .errors import (
    Diagnostic,
    ErrorCode,
    OracleQueryError,
    OracleTimeout,
    OracleUnavailable,
    Severity,
)
from .oracle import AnalysisOracle
from .symbols import RawReference, SourceLocation, TaskSymbol
from .syntax import SyntaxCache, char_to_utf16, utf16_to_char

logger = logging.getLogger(__name__)

__all__ = [
    "Request",
    "Response",
    "encode_message",
    "read_message",
    "path_to_uri",
    "uri_to_path",
    "parse_incoming_calls",
    "LspOracle",
]

# SymbolKind values for callers that are not functions; their sites are
# re-scoped to the innermost enclosing def, if any
_SCOPE_KINDS = frozenset({1, 2, 5})    # File, Module, Class


# ---------------------------------------------------------------------------
# JSON-RPC messages
# ---------------------------------------------------------------------------

@dataclass
class Request:
    """JSON-RPC request (or notification when ``id`` is ``None``)."""

    method: str
    params: Any = field(default_factory=dict)
    id: Optional[int] = None
    jsonrpc: str = "2.0"

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"jsonrpc": self.jsonrpc, "method": self.method}
        if self.params is not None:
            result["params"] = self.params
        if self.id is not None:
            result["id"] = self.id
        return result


@dataclass
class Response:
    """JSON-RPC response."""

    id: Optional[Any] = None
    result: Any = None
    error: Optional[Dict[str, Any]] = None
    jsonrpc: str = "2.0"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Response":
        return cls(
            id=data.get("id"),
            result=data.get("result"),
            error=data.get("error"),
            jsonrpc=data.get("jsonrpc", "2.0"),
        )

    @property
    def ok(self) -> bool:
        return self.error is None


def encode_message(payload: Dict[str, Any]) -> bytes:
    body = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    return f"Content-Length: {len(body)}\r\n\r\n".encode("ascii") + body


def read_message(stream: BinaryIO) -> Optional[Dict[str, Any]]:
    """Read one framed message; ``None`` at end of stream.

    Raises ``ValueError`` on a malformed header or body.
    """
    length: Optional[int] = None
    while True:
        line = stream.readline()
        if not line:
            return None
        if line in (b"\r\n", b"\n"):
            break
        key, sep, value = line.decode("ascii").partition(":")
        if not sep:
            raise ValueError(f"malformed header line {line!r}")
        if key.strip().lower() == "content-length":
            length = int(value.strip())
    if length is None:
        raise ValueError("missing Content-Length header")
    body = stream.read(length)
    if len(body) < length:
        return None
    return json.loads(body.decode("utf-8"))


def path_to_uri(path: Union[str, os.PathLike]) -> str:
    return Path(path).resolve().as_uri()


def uri_to_path(uri: str) -> str:
    parsed = urlparse(uri)
    if parsed.scheme != "file":
        raise ValueError(f"not a file URI: {uri}")
    return str(Path(url2pathname(unquote(parsed.path))).resolve())


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------

LineLookup = Callable[[str, int], str]


def _position(path: str, pos: Dict[str, Any], line_text: LineLookup) -> SourceLocation:
    line = int(pos["line"]) + 1
    column = utf16_to_char(line_text(path, line), int(pos["character"]))
    return SourceLocation(path, line, column)


def parse_incoming_calls(
    calls: Optional[Sequence[Dict[str, Any]]],
    line_text: LineLookup,
) -> List[RawReference]:
    """Turn a ``callHierarchy/incomingCalls`` result into raw references.

    Raises ``OracleQueryError`` on anything that does not have the shape of
    ``CallHierarchyIncomingCall[]``.
    """
    refs: List[RawReference] = []
    try:
        for call in calls or ():
            item = call["from"]
            path = uri_to_path(item["uri"])
            if item.get("kind") in _SCOPE_KINDS:
                enclosing = None
                name = None
            else:
                enclosing = _position(path, item["selectionRange"]["start"], line_text)
                name = item.get("name")
            for rng in call["fromRanges"]:
                refs.append(RawReference(
                    _position(path, rng["start"], line_text), enclosing, name,
                ))
    except (KeyError, TypeError, ValueError) as exc:
        raise OracleQueryError(f"malformed incomingCalls result: {exc!r}") from exc
    return refs


# ---------------------------------------------------------------------------
# LspOracle
# ---------------------------------------------------------------------------

class LspOracle(AnalysisOracle):
    """Reference oracle backed by a language server process.

    Parameters
    ----------
    command : str or list[str]
        Server command line, e.g. ``"pylsp"`` or ``["pyright-langserver", "--stdio"]``.
    root : path
        Workspace root sent with ``initialize``.
    request_timeout : float
        Seconds to wait for any single response.
    prepare_attempts : int
        Tries of ``prepareCallHierarchy`` before a symbol counts as isolated.
    prepare_delay : float
        Seconds between those tries.
    concurrency : int
        Advertised ``max_concurrency``.
    streams : (reader, writer), optional
        Pre-connected binary streams; no process is spawned when given.
    """

    name = "lsp"

    def __init__(
        self,
        command: Union[str, Sequence[str]],
        root: Union[str, os.PathLike],
        request_timeout: float = 30.0,
        prepare_attempts: int = 5,
        prepare_delay: float = 1.0,
        concurrency: int = 4,
        syntax: Optional[SyntaxCache] = None,
        streams: Optional[Tuple[BinaryIO, BinaryIO]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.command = shlex.split(command) if isinstance(command, str) else list(command)
        self.root = Path(root).resolve()
        self.request_timeout = request_timeout
        self.prepare_attempts = max(prepare_attempts, 1)
        self.prepare_delay = prepare_delay
        self.concurrency = max(concurrency, 1)
        self.syntax = syntax if syntax is not None else SyntaxCache()
        self._streams = streams
        self._sleep = sleep

        self._proc: Optional[subprocess.Popen] = None
        self._reader: Optional[BinaryIO] = None
        self._writer: Optional[BinaryIO] = None
        self._thread: Optional[threading.Thread] = None
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._pending: Dict[int, Future] = {}
        self._opened: Set[str] = set()
        self._started = False
        self._dead: Optional[str] = None
        self._diagnostics: List[Diagnostic] = []

    @property
    def max_concurrency(self) -> int:
        return self.concurrency

    # ----- lifecycle --------------------------------------------------------

    def open(self) -> None:
        with self._lock:
            if self._started:
                return
            self._started = True
        if self._streams is not None:
            self._reader, self._writer = self._streams
        else:
            try:
                self._proc = subprocess.Popen(
                    self.command,
                    stdin=subprocess.PIPE,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.DEVNULL,
                    cwd=str(self.root),
                    bufsize=0,
                )
            except OSError as exc:
                self._dead = str(exc)
                raise OracleUnavailable(
                    f"cannot start language server {self.command!r}: {exc}", cause=exc,
                ) from exc
            self._reader, self._writer = self._proc.stdout, self._proc.stdin
        self._thread = threading.Thread(
            target=self._read_loop, name="lsp-reader", daemon=True,
        )
        self._thread.start()
        self._handshake()

    def _handshake(self) -> None:
        try:
            self.request("initialize", {
                "processId": os.getpid(),
                "rootUri": path_to_uri(self.root),
                "workspaceFolders": [{"uri": path_to_uri(self.root), "name": self.root.name}],
                "capabilities": {
                    "general": {"positionEncodings": ["utf-16"]},
                    "textDocument": {"callHierarchy": {"dynamicRegistration": False}},
                },
            })
        except OracleTimeout as exc:
            raise OracleUnavailable(
                "language server did not answer initialize", cause=exc,
            ) from exc
        except OracleQueryError as exc:
            raise OracleUnavailable(
                f"language server rejected initialize: {exc.message}", cause=exc,
            ) from exc
        self.notify("initialized", {})
        logger.info("language server %s initialised for %s", self.command, self.root)

    def close(self) -> None:
        with self._lock:
            if not self._started:
                return
            self._started = False
        if self._dead is None:
            try:
                self.request("shutdown", None, timeout=min(self.request_timeout, 5.0))
                self.notify("exit", None)
            except (OracleTimeout, OracleUnavailable, OracleQueryError) as exc:
                logger.debug("language server shutdown: %s", exc)
        if self._proc is not None:
            self._proc.terminate()
            try:
                self._proc.wait(timeout=2)
            except subprocess.TimeoutExpired:
                self._proc.kill()
        self._fail_pending("language server closed")

    # ----- transport --------------------------------------------------------

    def _send(self, payload: Dict[str, Any]) -> None:
        if self._dead is not None:
            raise OracleUnavailable(f"language server is gone: {self._dead}")
        if self._writer is None:
            raise OracleUnavailable("language server is not started")
        data = encode_message(payload)
        try:
            with self._write_lock:
                self._writer.write(data)
                self._writer.flush()
        except (OSError, ValueError) as exc:
            self._dead = str(exc)
            raise OracleUnavailable(f"cannot write to language server: {exc}", cause=exc) from exc

    def notify(self, method: str, params: Any) -> None:
        self._send(Request(method, params).to_dict())

    def request(self, method: str, params: Any, timeout: Optional[float] = None) -> Any:
        rid = next(self._ids)
        future: Future = Future()
        with self._lock:
            self._pending[rid] = future
        try:
            self._send(Request(method, params, rid).to_dict())
            response: Response = future.result(
                timeout=self.request_timeout if timeout is None else timeout,
            )
        except FutureTimeout as exc:
            raise OracleTimeout(
                f"{method} timed out", timeout=timeout or self.request_timeout, cause=exc,
            ) from exc
        finally:
            with self._lock:
                self._pending.pop(rid, None)
        if not response.ok:
            err = response.error or {}
            raise OracleQueryError(
                f"{method} failed: {err.get('message', 'unknown error')} "
                f"(code {err.get('code')})"
            )
        return response.result

    def _read_loop(self) -> None:
        reason = "language server closed its output"
        try:
            while True:
                message = read_message(self._reader)
                if message is None:
                    break
                self._dispatch(message)
        except (OSError, ValueError) as exc:
            reason = f"cannot read from language server: {exc}"
        except OracleUnavailable as exc:
            reason = exc.message
        self._dead = reason
        logger.debug("lsp reader stopped: %s", reason)
        self._fail_pending(reason)

    def _dispatch(self, message: Dict[str, Any]) -> None:
        if "method" in message:
            if "id" in message:
                # server-to-client request: acknowledge with an empty result
                self._send({"jsonrpc": "2.0", "id": message["id"], "result": None})
            else:
                logger.debug("lsp notification %s", message["method"])
            return
        with self._lock:
            future = self._pending.get(message.get("id"))
        if future is not None and not future.done():
            future.set_result(Response.from_dict(message))

    def _fail_pending(self, reason: str) -> None:
        with self._lock:
            pending = list(self._pending.values())
            self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_exception(OracleUnavailable(reason))

    def drain_diagnostics(self) -> List[Diagnostic]:
        with self._lock:
            drained, self._diagnostics = self._diagnostics, []
        return drained

    # ----- queries ----------------------------------------------------------

    def _line_text(self, path: str, line: int) -> str:
        module = self.syntax.peek(path)
        return module.line_text(line) if module is not None else ""

    def _rescope(self, ref: RawReference) -> RawReference:
        """Give a module- or class-scoped reference its innermost enclosing def."""
        if ref.enclosing_location is not None:
            return ref
        call = ref.call_location
        module = self.syntax.peek(call.path)
        node = module.node_at(call.line, call.column) if module is not None else None
        if node is None:
            return ref
        for _child, (parent, field, _index) in module.ancestors(node):
            if isinstance(parent, (ast.FunctionDef, ast.AsyncFunctionDef)) and field == "body":
                definition = module.definition_of(parent)
                if definition is not None:
                    return RawReference(call, definition.location, definition.qualname)
        return ref

    def _ensure_document(self, path: str) -> str:
        uri = path_to_uri(path)
        with self._lock:
            if uri in self._opened:
                return uri
            self._opened.add(uri)
        module = self.syntax.peek(path)
        if module is not None:
            self.notify("textDocument/didOpen", {"textDocument": {
                "uri": uri, "languageId": "python", "version": 1, "text": module.source,
            }})
        return uri

    def find_call_sites(self, symbol: TaskSymbol) -> Sequence[RawReference]:
        if not self._started:
            self.open()
        loc = symbol.location
        uri = self._ensure_document(loc.path)
        position = {
            "line": loc.line - 1,
            "character": char_to_utf16(self._line_text(loc.path, loc.line), loc.column),
        }
        params = {"textDocument": {"uri": uri}, "position": position}

        items = None
        for attempt in range(1, self.prepare_attempts + 1):
            items = self.request("textDocument/prepareCallHierarchy", params)
            if items:
                break
            if attempt < self.prepare_attempts:
                self._sleep(self.prepare_delay)
        if not items:
            logger.warning("%s is isolated: no call hierarchy item after %d attempt(s)",
                           symbol.qualname, self.prepare_attempts)
            with self._lock:
                self._diagnostics.append(Diagnostic(
                    Severity.WARNING, ErrorCode.ISOLATED_TASK,
                    f"{symbol.qualname} is isolated: the language server returned no "
                    f"call hierarchy item after {self.prepare_attempts} attempt(s)",
                    location=loc, subject=symbol.symbol_id,
                ))
            return ()
        if not isinstance(items, list) or not isinstance(items[0], dict):
            raise OracleQueryError(f"malformed prepareCallHierarchy result for {symbol}")

        calls = self.request("callHierarchy/incomingCalls", {"item": items[0]})
        refs = [self._rescope(r) for r in parse_incoming_calls(calls, self._line_text)]
        return sorted(refs, key=lambda r: r.call_location)
