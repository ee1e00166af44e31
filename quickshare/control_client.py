#
# Quickshare
# License: MIT
#

import logging
import re
import socket

ADD_RESPONSE = re.compile(r"^OK Share \"(.*)\"@'(.*)'$")


class ControlError(Exception):
    pass


class ControlClient:
    """Talks to a running quickshare server over its control socket."""

    def __init__(self, path, timeout=None):
        self.path = path
        self.timeout = timeout
        self.sock = None
        self.reader = None

    def connect(self):
        logging.debug(f"Connecting to server '{self.path}' ...")
        self.sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        self.sock.settimeout(self.timeout)
        try:
            self.sock.connect(self.path)
        except OSError:
            self.sock.close()
            self.sock = None
            raise
        self.reader = self.sock.makefile('r', encoding='utf-8', newline='\n')
        logging.debug("Connected to unix socket")
        return self

    def close(self):
        if self.reader is not None:
            self.reader.close()
            self.reader = None
        if self.sock is not None:
            self.sock.close()
            self.sock = None

    def __enter__(self):
        return self.connect()

    def __exit__(self, *args):
        self.close()

    def send(self, line):
        self.sock.sendall((line + '\n').encode('utf-8'))

    def readline(self):
        line = self.reader.readline()
        if not line:
            raise ConnectionError("Connection closed by server")
        return line.strip()

    def request(self, line):
        self.send(line)
        response = self.readline()
        if response.startswith("ERR"):
            raise ControlError(response[4:])
        return response

    def ping(self):
        return self.request("ping") == "pong"

    def add(self, spec):
        response = self.request(f"add {spec}")
        m = ADD_RESPONSE.match(response)
        if m is None:
            raise ControlError(f"Unknown response: {response}")
        return m.group(1), m.group(2)

    def remove(self, name):
        self.request(f"rm {name}")

    def list(self):
        self.send("ls")
        shares = []
        while True:
            line = self.readline()
            if line == "OK":
                break
            name, _, path = line.partition(' ')
            shares.append((name, path))
        return shares

    def stop(self):
        self.request("stop")
