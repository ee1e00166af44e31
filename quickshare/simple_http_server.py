#
# Quickshare
# License: MIT
#

import logging
import asyncio
import os
import html
from urllib.parse import quote, unquote, urlsplit

REASONS = {
    200: "OK",
    400: "Bad Request",
    404: "Not Found",
    405: "Method Not Allowed",
    500: "Internal Server Error",
}


def content_disposition(name):
    if name.isascii():
        return f"attachment; filename={name}"
    fallback = ''.join(c if c.isascii() else '_' for c in name)
    return f"attachment; filename={fallback}; filename*=UTF-8''{quote(name, safe='')}"


class SimpleHTTPServer:
    BufferSize = 65536
    MaxHeaderSize = 8192

    def __init__(self, registry, host="0.0.0.0", port=0):
        self.registry = registry
        self.host = host
        self.port = port
        self.server = None
        self.connections = set()

    async def start(self):
        self.server = await asyncio.start_server(self.handle_client, self.host, self.port)
        self.port = self.server.sockets[0].getsockname()[1]
        logging.debug(f'HTTP Listening on {self.server.sockets[0].getsockname()}')

    async def serve_forever(self):
        await self.server.serve_forever()

    def close(self):
        if self.server is not None:
            self.server.close()
        for writer in list(self.connections):
            writer.close()
        self.connections.clear()

    def render_index(self):
        shares = self.registry.list()
        body = "<h1>Quickshare File Server</h1>\n"
        if len(shares) == 0:
            body += "<p>No shares on this server</p>\n"
        else:
            body += f"<p>{len(shares)} share(s) on this server:\n<ul>\n"
            for share in shares:
                name = html.escape(share.name)
                body += f"<li><a href=\"/{quote(share.name)}\">{name}</a></li>\n"
            body += "</ul></p>\n"
        return body.encode('utf-8')

    # returns a dict with 'status', 'headers' and either 'body' or an open 'file'
    def resolve(self, path):
        name = unquote(urlsplit(path).path)
        if name.startswith('/'):
            name = name[1:]

        if name == "" or name == "index.html":
            body = self.render_index()
            return {
                'status': 200,
                'headers': {
                    'Content-Type': 'text/html; charset=utf-8',
                    'Content-Length': len(body),
                },
                'body': body,
            }

        share = self.registry.lookup(name)
        if share is None:
            logging.debug(f"HTTP share {name} not found")
            return self.error_response(404, b"Object not found")

        try:
            f = open(share.path, 'rb')
        except OSError as e:
            logging.error(f"Error sending file: {e}")
            return self.error_response(500, b"Server error")
        try:
            size = os.fstat(f.fileno()).st_size
        except OSError as e:
            f.close()
            logging.error(f"Error sending file: {e}")
            return self.error_response(500, b"Server error")

        return {
            'status': 200,
            'headers': {
                'Content-Type': 'application/octet-stream',
                'Content-Disposition': content_disposition(share.name),
                'Content-Length': size,
            },
            'share': share,
            'file': f,
        }

    def error_response(self, status, body):
        return {
            'status': status,
            'headers': {
                'Content-Type': 'text/plain; charset=utf-8',
                'Content-Length': len(body),
            },
            'body': body,
        }

    async def handle_client(self, reader, writer):
        self.connections.add(writer)
        try:
            await self.handle_client_inner(reader, writer)
        except Exception as e:
            logging.error(f"HTTP Exception handling client: {e}")
        finally:
            self.connections.discard(writer)
            writer.close()

    async def handle_client_inner(self, reader, writer):
        peer = writer.get_extra_info('peername')
        data = b''
        while b'\r\n\r\n' not in data:
            chunk = await reader.read(1024)
            if not chunk:
                break
            data += chunk
            if len(data) > self.MaxHeaderSize:
                break

        if not data:
            return
        if b'\r\n\r\n' not in data[:self.MaxHeaderSize + 4]:
            await self.send_response(writer, self.error_response(400, b"Bad request"))
            return

        logging.debug(f"HTTP request from {peer}: {data}")
        request_line = data.decode('latin-1').splitlines()[0]
        parts = request_line.split()
        if len(parts) != 3:
            await self.send_response(writer, self.error_response(400, b"Bad request"))
            return

        method, path, _ = parts
        if method not in ("GET", "HEAD"):
            await self.send_response(writer, self.error_response(405, b"Method not allowed"))
            return

        response = self.resolve(path)
        if 'share' in response:
            logging.info(f"{peer} {method} {response['share'].name}")
        await self.send_response(writer, response, send_body=(method == "GET"))

    def write_header(self, writer, response):
        status = response['status']
        header = f"HTTP/1.1 {status} {REASONS[status]}\r\n"
        for key, value in response['headers'].items():
            header += f"{key}: {value}\r\n"
        header += "Connection: close\r\n"
        header += "\r\n"
        writer.write(header.encode('latin-1'))

    async def send_response(self, writer, response, send_body=True):
        if 'file' in response:
            with response['file'] as f:
                self.write_header(writer, response)
                if send_body and not await self.send_file(writer, f):
                    return
        else:
            self.write_header(writer, response)
            if send_body:
                writer.write(response['body'])

        await writer.drain()

    async def send_file(self, writer, f):
        total = 0
        while True:
            try:
                data = f.read(self.BufferSize)
            except OSError as e:
                # headers are already out, all we can do is drop the connection
                logging.error(f"Error sending file: {e}")
                writer.transport.abort()
                return False
            if not data:
                break
            writer.write(data)
            await writer.drain()
            total += len(data)
        logging.debug(f"HTTP wrote total {total} bytes")
        return True
