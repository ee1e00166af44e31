#
# Quickshare
# License: MIT
#

import logging
import asyncio
import os

from quickshare.registry import ShareExistsError, InvalidShareError

RESPONSE_OK = "OK"
RESPONSE_PONG = "pong"
ERR_EXISTS = "ERR Share exists already"
ERR_NOT_FOUND = "ERR Share not found"
ERR_INVALID = "ERR Invalid share"
ERR_MISSING_ARGUMENT = "ERR missing argument"
ERR_UNKNOWN_COMMAND = "ERR unknown command"


class SimpleControlServer:
    def __init__(self, path, registry, on_stop=None):
        self.path = path
        self.registry = registry
        self.on_stop = on_stop
        self.server = None
        self.connections = set()

    async def start(self):
        self.server = await asyncio.start_unix_server(self.handle_client, self.path)
        logging.debug(f'Control socket listening on {self.path}')

    async def serve_forever(self):
        await self.server.serve_forever()

    def close(self):
        if self.server is not None:
            self.server.close()
        # in-flight sessions are cut off, shutdown does not wait for clients
        for writer in list(self.connections):
            writer.close()
        self.connections.clear()
        if os.path.exists(self.path):
            os.remove(self.path)
            logging.debug(f'Removed control socket {self.path}')

    async def handle_client(self, reader, writer):
        self.connections.add(writer)
        try:
            await self.handle_client_inner(reader, writer)
        except Exception as e:
            logging.error(f"Control exception handling client: {e}")
        finally:
            self.connections.discard(writer)
            writer.close()

    async def handle_client_inner(self, reader, writer):
        while True:
            data = await reader.readline()
            if not data:
                break
            line = data.decode('utf-8', errors='replace').strip()
            logging.debug(f"Control READ {line}")
            if not line:
                continue

            if line == "stop":
                await self.send_lines(writer, [RESPONSE_OK])
                writer.close()
                logging.info("Shutting down server")
                if self.on_stop is not None:
                    self.on_stop()
                return

            await self.send_lines(writer, self.execute(line))

    def execute(self, line):
        command, _, arg = line.partition(' ')
        arg = arg.strip()

        match command:
            case "ping":
                return [RESPONSE_PONG]
            case "add":
                if not arg:
                    return [ERR_MISSING_ARGUMENT]
                return [self.add(arg)]
            case "rm":
                if not arg:
                    return [ERR_MISSING_ARGUMENT]
                if self.registry.remove(arg):
                    logging.info(f"Removed share \"{arg}\"")
                    return [RESPONSE_OK]
                return [ERR_NOT_FOUND]
            case "ls" | "list":
                lines = [f"{share.name} {share.path}" for share in self.registry.list()]
                lines.append(RESPONSE_OK)
                return lines
            case _:
                logging.debug(f"Unknown control command: {line}")
                return [ERR_UNKNOWN_COMMAND]

    def add(self, spec):
        try:
            share = self.registry.add_spec(spec)
        except InvalidShareError:
            return ERR_INVALID
        except ShareExistsError:
            return ERR_EXISTS
        logging.info(f"Added share \"{share.name}\"@'{share.path}'")
        return f"OK Share \"{share.name}\"@'{share.path}'"

    async def send_lines(self, writer, lines):
        writer.write(''.join(line + '\n' for line in lines).encode('utf-8'))
        await writer.drain()
