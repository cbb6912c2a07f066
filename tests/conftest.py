"""Shared fixtures: an in-process fake MCP server on a pair of OS pipes."""

import json
import os
import threading
import time

import pytest

from mcplink.client import MCPClient
from mcplink.config import ClientSettings

# Returned by a handler to leave a request unanswered for the test to reply to
DEFER = object()


class FakePipe:
    """Both ends of a client <-> server connection, built on os.pipe()."""

    def __init__(self):
        c2s_read, c2s_write = os.pipe()
        s2c_read, s2c_write = os.pipe()
        # Client side (what the transport owns)
        self.stdin = open(c2s_write, 'wb', buffering=0)
        self.stdout = open(s2c_read, 'rb', buffering=0)
        # Server side
        self.server_in = open(c2s_read, 'rb')
        self.server_out = open(s2c_write, 'wb', buffering=0)
        self.terminated = False
        self.closed = False

    def close_stdin(self):
        if not self.stdin.closed:
            self.stdin.close()

    def close_server_out(self):
        try:
            self.server_out.close()
        except OSError:
            pass

    def terminate(self):
        self.terminated = True
        self.close_server_out()

    def close(self):
        self.closed = True
        for stream in (self.stdin, self.stdout, self.server_in, self.server_out):
            try:
                stream.close()
            except OSError:
                pass


class RPCFailure(Exception):
    def __init__(self, code, message, data=None):
        self.code = code
        self.message = message
        self.data = data
        super().__init__(message)


class FakeServer:
    """
    Minimal line-oriented MCP server running on a thread.

    Handlers map a method name to fn(message) returning the result, raising
    RPCFailure for an error reply, or returning DEFER to leave the request
    pending. Every message received is recorded in `received`.
    """

    def __init__(self, pipe, exit_on_eof=True):
        self.pipe = pipe
        self.exit_on_eof = exit_on_eof
        self.received = []
        self.protocol_version = "2024-11-05"
        self.capabilities = {"tools": {}}
        self.handlers = {
            "initialize": lambda msg: {
                "protocolVersion": self.protocol_version,
                "capabilities": self.capabilities,
                "serverInfo": {"name": "fake-server", "version": "1.0"},
                "instructions": "Be nice.",
            },
            "ping": lambda msg: {},
        }
        self._write_lock = threading.Lock()
        self._cond = threading.Condition()
        self._thread = threading.Thread(target=self._run, daemon=True)

    def start(self):
        self._thread.start()
        return self

    def on(self, method, fn):
        self.handlers[method] = fn

    def write(self, message):
        data = message if isinstance(message, bytes) else (json.dumps(message) + "\n").encode()
        with self._write_lock:
            try:
                self.pipe.server_out.write(data)
            except (OSError, ValueError):
                pass

    def reply(self, request_id, result):
        self.write({"jsonrpc": "2.0", "id": request_id, "result": result})

    def reply_error(self, request_id, code, message):
        self.write({"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}})

    def _run(self):
        try:
            for line in self.pipe.server_in:
                if not line.strip():
                    continue
                message = json.loads(line)
                with self._cond:
                    self.received.append(message)
                    self._cond.notify_all()
                if "method" in message and "id" in message:
                    self._respond(message)
        except (OSError, ValueError):
            pass
        if self.exit_on_eof:
            self.pipe.close_server_out()

    def _respond(self, message):
        handler = self.handlers.get(message["method"])
        if handler is None:
            self.reply_error(message["id"], -32601, f"Method not found: {message['method']}")
            return
        try:
            result = handler(message)
        except RPCFailure as e:
            error = {"code": e.code, "message": e.message}
            if e.data is not None:
                error["data"] = e.data
            self.write({"jsonrpc": "2.0", "id": message["id"], "error": error})
            return
        if result is not DEFER:
            self.reply(message["id"], result)

    def requests(self, method=None):
        with self._cond:
            return [m for m in self.received if "id" in m and "method" in m
                    and (method is None or m["method"] == method)]

    def notifications(self, method=None):
        with self._cond:
            return [m for m in self.received if "id" not in m
                    and (method is None or m["method"] == method)]

    def wait_for(self, predicate, timeout=5.0):
        deadline = time.monotonic() + timeout
        with self._cond:
            while not predicate():
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise AssertionError("fake server did not see the expected messages")
                self._cond.wait(remaining)

    def wait_for_requests(self, method, count, timeout=5.0):
        self.wait_for(lambda: len([m for m in self.received if m.get("method") == method and "id" in m]) >= count,
                      timeout)
        return self.requests(method)


@pytest.fixture
def pipe():
    p = FakePipe()
    yield p
    p.close()


@pytest.fixture
def server(pipe):
    return FakeServer(pipe).start()


@pytest.fixture
def settings():
    return ClientSettings(request_timeout=5.0, init_timeout=5.0, terminate_timeout=1.0)


@pytest.fixture
def client(pipe, server, settings):
    c = MCPClient(pipe, settings)
    yield c
    c.close()


@pytest.fixture
def ready_client(client):
    client.initialize()
    return client
