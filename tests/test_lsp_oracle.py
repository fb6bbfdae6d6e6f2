# tests/test_lsp_oracle.py
"""
Tests for the language-server oracle: message framing, URI and column
conversion, response parsing, and a full session against an in-process
fake server connected through OS pipes.
"""

import contextlib
import io
import os
import threading

import pytest

from taskgraph_static.errors import (
    ErrorCode,
    OracleQueryError,
    OracleTimeout,
    OracleUnavailable,
    Severity,
)
from taskgraph_static.lsp_oracle import (
    LspOracle,
    encode_message,
    parse_incoming_calls,
    path_to_uri,
    read_message,
    uri_to_path,
)
from taskgraph_static.registry import TaskRegistry
from taskgraph_static.symbols import RawReference, SourceLocation
from taskgraph_static.syntax import SyntaxCache, char_to_utf16, utf16_to_char
from tests.conftest import def_location, write_tree


# ── Framing ──────────────────────────────────────────────────────

class TestFraming:

    def test_encode_then_read(self):
        payload = {"jsonrpc": "2.0", "id": 1, "method": "initialize", "params": {"x": "é"}}
        stream = io.BytesIO(encode_message(payload) + encode_message({"id": 2}))
        assert read_message(stream) == payload
        assert read_message(stream) == {"id": 2}
        assert read_message(stream) is None

    def test_content_length_counts_bytes(self):
        data = encode_message({"s": "ü"})
        header, _, body = data.partition(b"\r\n\r\n")
        assert header == f"Content-Length: {len(body)}".encode()

    def test_extra_headers_are_ignored(self):
        body = b'{"id":3}'
        raw = b"Content-Type: application/vscode-jsonrpc\r\nContent-Length: 8\r\n\r\n" + body
        assert read_message(io.BytesIO(raw)) == {"id": 3}

    def test_malformed_header(self):
        with pytest.raises(ValueError):
            read_message(io.BytesIO(b"garbage\r\n\r\n{}"))

    def test_missing_length(self):
        with pytest.raises(ValueError):
            read_message(io.BytesIO(b"Content-Type: x\r\n\r\n{}"))

    def test_truncated_body_is_end_of_stream(self):
        assert read_message(io.BytesIO(b"Content-Length: 50\r\n\r\n{}")) is None


# ── Conversions ──────────────────────────────────────────────────

class TestConversions:

    def test_uri_round_trip(self, tmp_path):
        path = write_tree(tmp_path, {"a b/m.py": ""})["a b/m.py"]
        uri = path_to_uri(path)
        assert uri.startswith("file://")
        assert "%20" in uri
        assert uri_to_path(uri) == path

    def test_non_file_uri(self):
        with pytest.raises(ValueError):
            uri_to_path("untitled:Untitled-1")

    def test_utf16_columns(self):
        text = "s = '\U0001F600'; foo()"
        col = text.index("foo")
        assert char_to_utf16(text, col) == col + 1
        assert utf16_to_char(text, col + 1) == col
        assert utf16_to_char("abc", 10) == 3


# ── Response parsing ─────────────────────────────────────────────

def _item(uri, name, kind, line, character):
    pos = {"line": line, "character": character}
    rng = {"start": pos, "end": pos}
    return {"name": name, "kind": kind, "uri": uri, "range": rng, "selectionRange": rng}


class TestParseIncomingCalls:

    @pytest.fixture
    def path(self, tmp_path):
        return write_tree(tmp_path, {"m.py": "x = 1\n"})["m.py"]

    def test_function_caller(self, path):
        uri = path_to_uri(path)
        calls = [{
            "from": _item(uri, "bar", 12, 4, 4),
            "fromRanges": [
                {"start": {"line": 5, "character": 4}, "end": {"line": 5, "character": 7}},
                {"start": {"line": 8, "character": 8}, "end": {"line": 8, "character": 11}},
            ],
        }]
        refs = parse_incoming_calls(calls, lambda p, line: "")
        assert refs == [
            RawReference(SourceLocation(path, 6, 0), SourceLocation(path, 5, 0), "bar"),
            RawReference(SourceLocation(path, 9, 0), SourceLocation(path, 5, 0), "bar"),
        ]

    def test_columns_use_line_text(self, path):
        uri = path_to_uri(path)
        line = "    x = '\U0001F600' or foo()"
        calls = [{"from": _item(uri, "bar", 12, 0, 4),
                  "fromRanges": [{"start": {"line": 0, "character": line.index("foo") + 1}}]}]
        refs = parse_incoming_calls(calls, lambda p, n: line)
        assert refs[0].call_location.column == line.index("foo")

    def test_module_caller_has_no_enclosing_function(self, path):
        uri = path_to_uri(path)
        calls = [{"from": _item(uri, "m", 2, 0, 0),
                  "fromRanges": [{"start": {"line": 3, "character": 0}}]}]
        refs = parse_incoming_calls(calls, lambda p, n: "")
        assert refs[0].enclosing_location is None

    def test_null_result(self):
        assert parse_incoming_calls(None, lambda p, n: "") == []

    def test_malformed_result(self, path):
        with pytest.raises(OracleQueryError):
            parse_incoming_calls([{"from": {"uri": path_to_uri(path)}}], lambda p, n: "")


# ── Fake server session ──────────────────────────────────────────

SILENT = object()
HANG_UP_READER = object()


class ServerError(Exception):
    def __init__(self, code, message):
        super().__init__(message)
        self.code = code
        self.message = message


class FakeServer(threading.Thread):
    """Answers requests from *handlers* (method -> fn(params)) over pipes.

    A handler may return :data:`SILENT` to leave a request unanswered, or
    raise :class:`ServerError` to send an error response.  A method listed
    in *die_on* makes the server hang up without answering.

    :data:`HANG_UP_READER` closes the server's input, so the client's next
    write fails, then sends a server-to-client request and keeps its output
    open until :attr:`release` is set.
    """

    def __init__(self, handlers, die_on=()):
        super().__init__(daemon=True)
        c2s_r, c2s_w = os.pipe()
        s2c_r, s2c_w = os.pipe()
        self.inbox = os.fdopen(c2s_r, "rb")
        self.outbox = os.fdopen(s2c_w, "wb")
        self.client_streams = (os.fdopen(s2c_r, "rb"), os.fdopen(c2s_w, "wb"))
        self.handlers = handlers
        self.die_on = set(die_on)
        self.received = []
        self.release = threading.Event()

    def run(self):
        try:
            while True:
                message = read_message(self.inbox)
                if message is None:
                    break
                self.received.append(message)
                method = message.get("method")
                if method in self.die_on or method == "exit":
                    break
                if "id" not in message:
                    continue
                reply = {"jsonrpc": "2.0", "id": message["id"]}
                handler = self.handlers.get(method)
                try:
                    result = handler(message.get("params")) if handler else None
                except ServerError as exc:
                    reply["error"] = {"code": exc.code, "message": exc.message}
                else:
                    if result is SILENT:
                        continue
                    if result is HANG_UP_READER:
                        self.inbox.close()
                        self.send({"jsonrpc": "2.0", "id": "srv-1",
                                   "method": "window/workDoneProgress/create",
                                   "params": {"token": "indexing"}})
                        self.release.wait(timeout=10)
                        break
                    reply["result"] = result
                self.send(reply)
        finally:
            self.outbox.close()
            self.inbox.close()

    def send(self, payload):
        self.outbox.write(encode_message(payload))
        self.outbox.flush()

    def methods(self):
        return [m.get("method") for m in self.received]


SOURCE = '''
    @task
    def foo():
        pass

    def bar():
        foo.delay()
'''


@pytest.fixture
def project(tmp_path):
    path = write_tree(tmp_path, {"m.py": SOURCE})["m.py"]
    syntax = SyntaxCache()
    symbol = TaskRegistry(syntax=syntax).discover([path]).symbols[0]
    return tmp_path, path, syntax, symbol


@pytest.fixture
def session(project, sleeps):
    """Factory: start a fake server and an oracle wired to it."""
    root, path, syntax, symbol = project
    started = []

    def start(handlers, die_on=(), **kwargs):
        handlers.setdefault("initialize", lambda params: {"capabilities": {}})
        server = FakeServer(handlers, die_on)
        server.start()
        kwargs.setdefault("request_timeout", 2.0)
        oracle = LspOracle(["fake-lsp"], root, syntax=syntax,
                           streams=server.client_streams, sleep=sleeps, **kwargs)
        started.append((server, oracle))
        return server, oracle

    yield start

    for server, oracle in started:
        server.release.set()
        oracle.close()
        server.join(timeout=5)
        if oracle._thread is not None:
            oracle._thread.join(timeout=5)
        for stream in server.client_streams:
            with contextlib.suppress(OSError):
                stream.close()


def _incoming(path):
    uri = path_to_uri(path)
    return [{
        "from": _item(uri, "bar", 12, 4, 4),
        "fromRanges": [{"start": {"line": 5, "character": 4},
                        "end": {"line": 5, "character": 7}}],
    }]


class TestLspSession:

    def test_handshake(self, session, project):
        server, oracle = session({})
        oracle.open()
        oracle.close()
        server.join(timeout=5)
        assert server.methods() == ["initialize", "initialized", "shutdown", "exit"]
        init = server.received[0]["params"]
        assert init["rootUri"] == path_to_uri(project[0])

    def test_find_call_sites(self, session, project):
        _, path, _, symbol = project
        server, oracle = session({
            "textDocument/prepareCallHierarchy": lambda params: [_item(params["textDocument"]["uri"], "foo", 12, 1, 4)],
            "callHierarchy/incomingCalls": lambda params: _incoming(path),
        })
        refs = oracle.find_call_sites(symbol)
        assert list(refs) == [RawReference(
            SourceLocation(path, 6, 4), SourceLocation(path, 5, 4), "bar",
        )]
        prepare = next(m for m in server.received
                       if m.get("method") == "textDocument/prepareCallHierarchy")
        assert prepare["params"]["position"] == {"line": 1, "character": 4}

    def test_document_opened_once(self, session, project):
        _, path, _, symbol = project
        server, oracle = session({
            "textDocument/prepareCallHierarchy": lambda params: [],
        }, prepare_attempts=1)
        oracle.find_call_sites(symbol)
        oracle.find_call_sites(symbol)
        opened = [m for m in server.received if m.get("method") == "textDocument/didOpen"]
        assert len(opened) == 1
        assert opened[0]["params"]["textDocument"]["text"].startswith("@task")

    def test_prepare_is_retried_while_indexing(self, session, project, sleeps):
        _, path, _, symbol = project
        answers = iter([[], [], None])

        def prepare(params):
            answer = next(answers)
            return answer if answer is not None else [_item(params["textDocument"]["uri"], "foo", 12, 1, 4)]

        server, oracle = session({
            "textDocument/prepareCallHierarchy": prepare,
            "callHierarchy/incomingCalls": lambda params: [],
        }, prepare_attempts=5, prepare_delay=0.5)
        assert list(oracle.find_call_sites(symbol)) == []
        assert sleeps == [0.5, 0.5]
        assert server.methods().count("callHierarchy/incomingCalls") == 1

    def test_isolated_symbol(self, session, project, sleeps, caplog):
        _, _, _, symbol = project
        server, oracle = session({
            "textDocument/prepareCallHierarchy": lambda params: None,
        }, prepare_attempts=3, prepare_delay=1.0)
        assert oracle.find_call_sites(symbol) == ()
        assert sleeps == [1.0, 1.0]
        assert "isolated" in caplog.text
        assert "callHierarchy/incomingCalls" not in server.methods()
        diagnostics = oracle.drain_diagnostics()
        assert [d.code for d in diagnostics] == [ErrorCode.ISOLATED_TASK]
        assert diagnostics[0].severity is Severity.WARNING
        assert diagnostics[0].subject == symbol.symbol_id
        assert oracle.drain_diagnostics() == []

    def test_malformed_prepare_result(self, session, project):
        _, _, _, symbol = project
        server, oracle = session({
            "textDocument/prepareCallHierarchy": lambda params: ["not-an-item"],
        })
        with pytest.raises(OracleQueryError):
            oracle.find_call_sites(symbol)

    def test_error_response(self, session, project):
        _, _, _, symbol = project

        def fail(params):
            raise ServerError(-32603, "internal")

        server, oracle = session({"textDocument/prepareCallHierarchy": fail})
        with pytest.raises(OracleQueryError) as info:
            oracle.find_call_sites(symbol)
        assert "internal" in info.value.message

    def test_timeout(self, session, project):
        _, _, _, symbol = project
        server, oracle = session({
            "textDocument/prepareCallHierarchy": lambda params: SILENT,
        }, request_timeout=0.2)
        with pytest.raises(OracleTimeout):
            oracle.find_call_sites(symbol)

    def test_rejected_initialize_is_unavailable(self, session):
        def reject(params):
            raise ServerError(-32002, "not ready")

        server, oracle = session({"initialize": reject})
        with pytest.raises(OracleUnavailable):
            oracle.open()

    def test_class_scoped_callers_are_rescoped(self, session, project):
        root, _, syntax, symbol = project
        other = write_tree(root, {"jobs.py": '''
            class Config:
                hook = foo.s()

            def factory():
                class Local:
                    hook = foo.s()
                return Local
        '''})["jobs.py"]
        syntax.get(other)
        uri = path_to_uri(other)
        server, oracle = session({
            "textDocument/prepareCallHierarchy": lambda params: [_item(params["textDocument"]["uri"], "foo", 12, 1, 4)],
            "callHierarchy/incomingCalls": lambda params: [
                {"from": _item(uri, "Config", 5, 0, 6),
                 "fromRanges": [{"start": {"line": 1, "character": 11}}]},
                {"from": _item(uri, "Local", 5, 4, 10),
                 "fromRanges": [{"start": {"line": 5, "character": 15}}]},
            ],
        })
        assert list(oracle.find_call_sites(symbol)) == [
            RawReference(SourceLocation(other, 2, 11), None, None),
            RawReference(SourceLocation(other, 6, 15), def_location(other, "factory"), "jobs.factory"),
        ]

    def test_failed_reply_to_server_request_is_unavailable(self, session, project):
        _, _, _, symbol = project
        server, oracle = session({
            "textDocument/prepareCallHierarchy": lambda params: HANG_UP_READER,
        }, request_timeout=10.0)
        with pytest.raises(OracleUnavailable):
            oracle.find_call_sites(symbol)
        assert oracle._thread is not None
        oracle._thread.join(timeout=5)
        assert not oracle._thread.is_alive()

    def test_server_hangup_is_unavailable(self, session, project):
        _, _, _, symbol = project
        server, oracle = session({}, die_on=["textDocument/prepareCallHierarchy"])
        with pytest.raises(OracleUnavailable):
            oracle.find_call_sites(symbol)
        server.join(timeout=5)
        with pytest.raises(OracleUnavailable):
            oracle.find_call_sites(symbol)

    def test_missing_executable(self, tmp_path):
        oracle = LspOracle(["definitely-not-a-language-server-binary"], tmp_path)
        with pytest.raises(OracleUnavailable):
            oracle.open()
