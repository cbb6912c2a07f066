"""End-to-end tests: a real server subprocess behind ServerProcess."""

import logging
import os
import sys

import pytest

from mcplink.client import create_stdio_client
from mcplink.config import ClientSettings
from mcplink.errors import InvalidStateError, TransportClosedError, TransportError
from mcplink.process import ServerProcess
from mcplink.types import ClientState

SERVER = os.path.join(os.path.dirname(__file__), "fake_mcp_server.py")

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX process groups")


@pytest.fixture
def settings():
    return ClientSettings(request_timeout=10.0, init_timeout=10.0, terminate_timeout=1.0)


def test_full_session(settings):
    with create_stdio_client([sys.executable, SERVER], settings=settings) as client:
        assert client.state is ClientState.READY
        assert client.server_info["name"] == "fake-mcp-server"
        assert [t.name for t in client.list_tools()] == ["echo", "crash"]
        assert client.call_tool("echo", {"text": "hi there"}).as_text() == "hi there"
        assert client.ping()
        process = client.transport.pipe
    assert client.state is ClientState.CLOSED
    assert process.returncode == 0


def test_string_command(settings):
    command = f"{sys.executable} {SERVER}"
    with create_stdio_client(command, settings=settings) as client:
        assert client.call_tool("echo", {"text": "x"}).as_text() == "x"


def test_server_stderr_is_logged(settings, caplog):
    with caplog.at_level(logging.INFO, logger='mcplink'):
        with create_stdio_client([sys.executable, SERVER], settings=settings) as client:
            client.list_tools()
    assert "fake server starting" in caplog.text


def test_server_crash_fails_call(settings):
    client = create_stdio_client([sys.executable, SERVER], settings=settings)
    try:
        with pytest.raises(TransportClosedError):
            client.call_tool("crash")
        assert client.state is ClientState.CLOSED
        with pytest.raises(InvalidStateError):
            client.call_tool("echo", {"text": "late"})
    finally:
        client.close()


def test_server_ignoring_eof_is_terminated(settings):
    client = create_stdio_client([sys.executable, SERVER, "--ignore-eof"], settings=settings)
    process = client.transport.pipe
    client.close()
    assert process.returncode is not None


def test_missing_command():
    with pytest.raises(TransportError):
        ServerProcess(["/nonexistent/mcp-server"]).start()


def test_empty_command():
    with pytest.raises(ValueError):
        ServerProcess([])


def test_process_close_is_safe_before_start():
    process = ServerProcess([sys.executable, SERVER])
    process.close()
    assert process.pid is None


def test_env_is_passed(tmp_path, caplog):
    script = tmp_path / "env_server.py"
    script.write_text(
        "import os, sys\n"
        "sys.stderr.write(os.environ.get('MCPLINK_TEST_MARKER', 'missing') + '\\n')\n"
    )
    with caplog.at_level(logging.INFO, logger='mcplink.server'):
        process = ServerProcess([sys.executable, str(script)], env={"MCPLINK_TEST_MARKER": "present"}).start()
        assert process.wait(10) == 0
        process.close()
    assert "present" in caplog.text
