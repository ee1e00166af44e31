#
# Quickshare
# License: MIT
#

import asyncio
import logging
import socket
import time

DISCOVERY_TOKEN = b'DISCOVER'


class DiscoveryProtocol(asyncio.DatagramProtocol):
    def __init__(self, identity):
        self.identity = identity
        self.transport = None

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data, addr):
        logging.debug(f"UDP RECEIVE {addr} : {data}")
        if data.strip() == DISCOVERY_TOKEN:
            self.transport.sendto(self.identity.encode('utf-8'), addr)

    def error_received(self, exc):
        logging.error(f"UDP receive error: {exc}")


class DiscoveryResponder:
    """Answers DISCOVER broadcasts with the host name. Knows nothing about shares."""

    def __init__(self, host="0.0.0.0", port=0, identity=None):
        self.host = host
        self.port = port
        self.identity = identity or socket.gethostname() or "unknown"
        self.transport = None

    async def start(self):
        loop = asyncio.get_running_loop()
        self.transport, _ = await loop.create_datagram_endpoint(
            lambda: DiscoveryProtocol(self.identity),
            local_addr=(self.host, self.port))
        self.port = self.transport.get_extra_info('sockname')[1]
        logging.debug(f"UDP server started on {self.transport.get_extra_info('sockname')}")

    def close(self):
        if self.transport is not None:
            self.transport.close()
            self.transport = None


# Broadcast DISCOVER and collect the answers, returns a list of (hostname, addr)
# in order of arrival. The request is repeated every `interval` seconds until
# `timeout` runs out; `found` is called once for every new responder.
def find_servers(port, timeout=3, broadcast=None, interval=1, found=None):
    if broadcast is None:
        broadcast = '<broadcast>'
    servers = []
    seen = set()
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    with sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
        sock.settimeout(min(interval, timeout))

        start = time.time()
        last_sent = None
        while True:
            now = time.time()
            if now - start > timeout:
                break
            if last_sent is None or now - last_sent >= interval:
                logging.debug("Sending broadcast ...")
                sock.sendto(DISCOVERY_TOKEN, (broadcast, port))
                last_sent = now
            try:
                data, addr = sock.recvfrom(2048)
            except (socket.timeout, ConnectionRefusedError):
                # refused: ICMP port unreachable from a unicast target without a server
                continue
            if addr in seen:
                continue
            seen.add(addr)
            server = (data.decode('utf-8', errors='replace').strip(), addr)
            servers.append(server)
            if found is not None:
                found(*server)
    return servers
