#
# Quickshare
# License: MIT
#

import os
import sys
import signal
import asyncio
import logging
import argparse

from alive_progress import alive_bar

from quickshare.registry import Share, ShareRegistry, ShareExistsError, InvalidShareError
from quickshare.control_server import SimpleControlServer
from quickshare.control_client import ControlClient, ControlError
from quickshare.simple_http_server import SimpleHTTPServer
from quickshare.discovery import DiscoveryResponder, find_servers

DEFAULT_PORT = 8249
CONTROL_SOCKET = "/var/tmp/quickshare"

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s,%(msecs)d %(levelname)s: %(message)s",
    datefmt="%H:%M:%S",
)


def server_running(socket_path):
    # Two instances started at the same moment can both see no socket here and
    # race to become the server; the loser fails to bind and exits.
    return os.path.exists(socket_path)


class QuickshareServer:
    def __init__(self, registry=None, socket_path=CONTROL_SOCKET, host="0.0.0.0",
                 port=DEFAULT_PORT, discovery_port=DEFAULT_PORT):
        self.registry = registry if registry is not None else ShareRegistry()
        self.socket_path = socket_path
        self.control = SimpleControlServer(socket_path, self.registry, on_stop=self.shutdown)
        self.http = SimpleHTTPServer(self.registry, host, port)
        self.discovery = None
        if discovery_port is not None:
            self.discovery = DiscoveryResponder(host, discovery_port)
        self.tasks = []
        self.started = asyncio.Event()
        self.stopping = asyncio.Event()

    async def start(self):
        # the control socket goes first, its presence tells later invocations
        # that a server is running
        await self.control.start()
        try:
            await self.http.start()
        except OSError:
            self.control.close()
            raise

        if self.discovery is not None:
            try:
                await self.discovery.start()
            except OSError as e:
                # discovery is optional, keep serving without it
                logging.error(f"Error creating udp server: {e}")
                self.discovery = None

        self.tasks = [
            asyncio.create_task(self.control.serve_forever()),
            asyncio.create_task(self.http.serve_forever()),
        ]
        logging.info(f"Started http://localhost:{self.http.port}")
        self.started.set()

    # only raises the signal, run() does the closing
    def shutdown(self):
        self.stopping.set()

    async def wait_stopped(self):
        await self.stopping.wait()

    def close(self):
        self.control.close()
        self.http.close()
        if self.discovery is not None:
            self.discovery.close()
        for task in self.tasks:
            task.cancel()
        self.tasks = []

    async def run(self):
        await self.start()
        try:
            await self.wait_stopped()
        finally:
            self.close()
        logging.info("Server stopped")


async def run_server(args, shares):
    registry = ShareRegistry()
    for share in shares:
        try:
            registry.add(share)
        except ShareExistsError:
            print(f"Error adding share '{share.spec()}': Share exists already")
            continue
        print(f"Serving: {share.name} ({share.path})")

    discovery_port = None if args.no_discovery else args.port
    server = QuickshareServer(registry, args.socket, args.bind, args.port, discovery_port)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, server.shutdown)

    try:
        await server.run()
    except OSError as e:
        logging.error(f"Error starting server: {e}")
        return 1
    return 0


def run_client(args, shares):
    try:
        client = ControlClient(args.socket).connect()
    except OSError as e:
        print(f"Error connecting to server socket: {e}", file=sys.stderr)
        print(f"Remove '{args.socket}' if no quickshare server is running", file=sys.stderr)
        return 1

    with client:
        try:
            return client_session(client, args, shares)
        except OSError as e:
            # server went away mid-session, e.g. another invocation sent stop
            print(f"Lost connection to server: {e}", file=sys.stderr)
            return 1


def client_session(client, args, shares):
    status = 0
    if args.ls or not (shares or args.rm or args.stop):
        for name, path in client.list():
            print(f"  - {name} {path}")

    for share in shares:
        try:
            name, path = client.add(share.spec())
        except ControlError as e:
            print(f"Error adding share '{share.spec()}': {e}")
            status = 1
        else:
            print(f"Serving: {name} ({path})")

    for name in args.rm:
        try:
            client.remove(name)
        except ControlError as e:
            print(f"Error removing share '{name}': {e}")
            status = 1
        else:
            print(f"Removed: {name}")

    if args.stop:
        client.stop()
        print("Server stopped")

    return status


def do_discover(args):
    print("Discovering servers in network ... ")
    with alive_bar(title="Discovering", elapsed=False, stats=False) as bar:
        def found(hostname, addr):
            print(f"  - {hostname} (http://{addr[0]}:{args.port})")
            bar()

        try:
            servers = find_servers(args.port, timeout=args.timeout, broadcast=args.broadcast, found=found)
        except OSError as e:
            logging.error(f"Error sending broadcast: {e}")
            return 1
    if len(servers) == 0:
        print("No servers found")
    return 0


def parse_shares(files):
    shares = []
    for spec in files:
        spec = spec.strip()
        if not spec:
            continue
        try:
            shares.append(Share.parse(spec))
        except InvalidShareError as e:
            logging.error(str(e))
            sys.exit(1)
    return shares


def main(argv=None):
    parser = argparse.ArgumentParser(prog='quickshare', description='Quick file share server')
    parser.add_argument('-v', '--verbose', help='Verbose output (debug logging)', action='count', default=0)
    parser.add_argument('--port', type=int, help='HTTP and discovery port', default=DEFAULT_PORT)
    parser.add_argument('--bind', help='Address to listen on', default='0.0.0.0')
    parser.add_argument('--socket', help='Control socket path', default=CONTROL_SOCKET)
    parser.add_argument('--no-discovery', help='Do not answer discovery broadcasts', action='store_true')
    parser.add_argument('--ls', help='List all current shares', action='store_true')
    parser.add_argument('--rm', help='Remove a share (repeatable)', action='append', default=[], metavar='NAME')
    parser.add_argument('--stop', help='Stop the server', action='store_true')
    parser.add_argument('--discover', help='Search the network for shares', action='store_true')
    parser.add_argument('--broadcast', help='Explicit broadcast IP address for --discover')
    parser.add_argument('--timeout', type=float, help='Seconds to wait for discovery replies', default=3)
    parser.add_argument('files', nargs='*', help='Files to share, as path or name:path', metavar='FILES')

    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if args.discover:
        sys.exit(do_discover(args))

    shares = parse_shares(args.files)

    if server_running(args.socket):
        sys.exit(run_client(args, shares))

    if args.ls or args.rm or args.stop:
        logging.error("No server running")
        sys.exit(1)

    sys.exit(asyncio.run(run_server(args, shares)))


if __name__ == "__main__":
    main()
