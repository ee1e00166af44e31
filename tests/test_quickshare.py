import asyncio
import os
import socket

import pytest

from quickshare.registry import Share, ShareRegistry
from quickshare.control_client import ControlClient, ControlError
from quickshare.quickshare import QuickshareServer, main, server_running


async def start_server(tmp_path, shares=()):
    server = QuickshareServer(ShareRegistry(shares), str(tmp_path / "ctl.sock"),
                              "127.0.0.1", 0, discovery_port=0)
    task = asyncio.create_task(server.run())
    await asyncio.wait_for(server.started.wait(), timeout=5)
    return server, task


async def in_thread(fn, *args):
    return await asyncio.get_running_loop().run_in_executor(None, fn, *args)


def test_client_manages_running_server(tmp_path):
    report = tmp_path / "report.txt"
    report.write_text("hello\n")

    def client_session(path):
        with ControlClient(path, timeout=5) as client:
            assert client.ping()
            added = client.add(f"report:{report}")
            with pytest.raises(ControlError, match="Share exists already"):
                client.add("report:/tmp/y")
            with pytest.raises(ControlError, match="Share not found"):
                client.remove("missing")
            return added, client.list()

    async def scenario():
        server, task = await start_server(tmp_path, [Share("boot", "/tmp/boot")])
        result = await in_thread(client_session, server.socket_path)
        server.shutdown()
        await asyncio.wait_for(task, timeout=5)
        return result

    added, listing = asyncio.run(scenario())
    assert added == ("report", str(report))
    assert listing == [("boot", "/tmp/boot"), ("report", str(report))]


def test_stop_removes_socket_and_closes_listeners(tmp_path):
    def stop(path):
        with ControlClient(path, timeout=5) as client:
            client.stop()

    async def scenario():
        server, task = await start_server(tmp_path)
        assert server_running(server.socket_path)
        port = server.http.port

        await in_thread(stop, server.socket_path)
        await asyncio.wait_for(task, timeout=5)

        with pytest.raises(OSError):
            await asyncio.open_connection("127.0.0.1", port)
        return server.socket_path

    path = asyncio.run(scenario())
    assert not os.path.exists(path)
    assert not server_running(path)


def test_stop_cuts_off_other_sessions(tmp_path):
    async def scenario():
        server, task = await start_server(tmp_path)
        reader, idle = await asyncio.open_unix_connection(server.socket_path)
        idle.write(b"ping\n")
        assert await reader.readline() == b"pong\n"

        _, writer = await asyncio.open_unix_connection(server.socket_path)
        writer.write(b"stop\n")
        await asyncio.wait_for(task, timeout=5)
        return await asyncio.wait_for(reader.read(), timeout=5)

    assert asyncio.run(scenario()) == b""


def test_http_listener_failure_releases_socket(tmp_path):
    blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    blocker.bind(("127.0.0.1", 0))
    blocker.listen()
    port = blocker.getsockname()[1]

    async def scenario():
        server = QuickshareServer(ShareRegistry(), str(tmp_path / "ctl.sock"),
                                  "127.0.0.1", port, discovery_port=None)
        with pytest.raises(OSError):
            await server.run()
        return server.socket_path

    with blocker:
        path = asyncio.run(scenario())
    assert not os.path.exists(path)


def test_cli_client_mode_without_server(tmp_path, capsys):
    stale = tmp_path / "ctl.sock"
    stale.write_text("")
    with pytest.raises(SystemExit) as exc:
        main(["--socket", str(stale), "--ls"])
    assert exc.value.code == 1
    assert "Error connecting to server socket" in capsys.readouterr().err


def test_cli_commands_need_a_server(tmp_path):
    with pytest.raises(SystemExit) as exc:
        main(["--socket", str(tmp_path / "ctl.sock"), "--stop"])
    assert exc.value.code == 1


def test_cli_client_adds_lists_and_stops(tmp_path, capsys):
    report = tmp_path / "report.txt"
    report.write_text("hello\n")

    def run_cli(*argv):
        with pytest.raises(SystemExit) as exc:
            main(list(argv))
        return exc.value.code

    async def scenario():
        server, task = await start_server(tmp_path)
        path = server.socket_path
        codes = [
            await in_thread(run_cli, "--socket", path, f"report:{report}"),
            await in_thread(run_cli, "--socket", path, f"report:{report}"),
            await in_thread(run_cli, "--socket", path, "--ls"),
            await in_thread(run_cli, "--socket", path, "--rm", "report", "--stop"),
        ]
        await asyncio.wait_for(task, timeout=5)
        return codes

    assert asyncio.run(scenario()) == [0, 1, 0, 0]
    out = capsys.readouterr().out
    assert f"Serving: report ({report})" in out
    assert f"Error adding share 'report:{report}': Share exists already" in out
    assert f"  - report {report}" in out
    assert "Removed: report" in out


def test_cli_client_reports_dropped_connection(tmp_path, capsys):
    path = str(tmp_path / "ctl.sock")

    # answers the first command, then goes away like a server that was stopped
    async def handle(reader, writer):
        line = await reader.readline()
        name = line.decode().split()[1].split(":")[0]
        writer.write(f"OK Share \"{name}\"@'/tmp/{name}'\n".encode())
        await writer.drain()
        await reader.readline()
        writer.close()

    def run_cli():
        with pytest.raises(SystemExit) as exc:
            main(["--socket", path, "first:/tmp/first", "second:/tmp/second"])
        return exc.value.code

    async def scenario():
        server = await asyncio.start_unix_server(handle, path)
        try:
            return await in_thread(run_cli)
        finally:
            server.close()

    assert asyncio.run(scenario()) == 1
    captured = capsys.readouterr()
    assert "Serving: first (/tmp/first)" in captured.out
    assert "Lost connection to server" in captured.err
