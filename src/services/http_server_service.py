import http.server
import logging
import os
import re
import socket
import socketserver
import threading
from concurrent.futures import Executor
from typing import Optional

from exceptions.tile_engine_exceptions import ServerError
from services.map_tile_service import MapTileService

logger = logging.getLogger(__name__)

CACHE_CONTROL = 'public, max-age=31536000'
TILE_TIMEOUT = 60

TILE_ROUTE = re.compile(r'^/tile/([^/]+)/(\d+)/(\d+)/(\d+)\.png$')
IMAGE_ROUTE = re.compile(r'^/image/([^/.]+)(\.[A-Za-z0-9]+)?$')
REPROJECTED_ROUTE = re.compile(r'^/reprojected/([^/.]+)(\.jpg)?$')

CONTENT_TYPES = {
    '.png': 'image/png',
    '.jpg': 'image/jpeg',
    '.jpeg': 'image/jpeg',
    '.bmp': 'image/bmp',
    '.tif': 'image/tiff',
    '.tiff': 'image/tiff',
}


class _ThreadingServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    daemon_threads = True
    allow_reuse_address = True


class MapTileHTTPServer:
    """Loopback HTTP server for map tiles, stored images and reprojected overlays"""

    def __init__(self, tile_service: MapTileService, host: str = '127.0.0.1', port: int = 0,
                 executor: Optional[Executor] = None):
        self.tile_service = tile_service
        self.host = host
        self.requested_port = port
        self.executor = executor
        self.httpd: Optional[socketserver.TCPServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def port(self) -> int:
        if self.httpd is None:
            return 0
        return self.httpd.server_address[1]

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    def _render_tile(self, map_id: str, z: int, x: int, y: int) -> Optional[bytes]:
        if self.executor is None:
            return self.tile_service.get_tile(map_id, z, x, y)
        future = self.executor.submit(self.tile_service.get_tile, map_id, z, x, y)
        return future.result(timeout=TILE_TIMEOUT)

    def create_request_handler(self):
        """Create the request handler bound to this server's services"""
        server_service = self
        tile_service = self.tile_service

        class MapTileRequestHandler(http.server.BaseHTTPRequestHandler):
            timeout = 60

            def log_message(self, format, *args):
                logger.debug("%s - %s", self.address_string(), format % args)

            def log_error(self, format, *args):
                logger.warning("%s - %s", self.address_string(), format % args)

            def handle_one_request(self):
                try:
                    super().handle_one_request()
                except (ConnectionAbortedError, ConnectionResetError, BrokenPipeError, socket.timeout):
                    logger.debug("Client connection dropped")

            def end_headers(self):
                self.send_header('Access-Control-Allow-Origin', '*')
                self.send_header('Cache-Control', CACHE_CONTROL)
                super().end_headers()

            def do_OPTIONS(self):
                self.send_response(200)
                self.send_header('Access-Control-Allow-Methods', 'GET, OPTIONS')
                self.end_headers()

            def do_GET(self):
                path = self.path.split('?', 1)[0]
                try:
                    match = TILE_ROUTE.match(path)
                    if match:
                        self._handle_tile(match.group(1), int(match.group(2)),
                                          int(match.group(3)), int(match.group(4)))
                        return
                    match = REPROJECTED_ROUTE.match(path)
                    if match:
                        self._handle_reprojected(match.group(1))
                        return
                    match = IMAGE_ROUTE.match(path)
                    if match:
                        self._handle_image(match.group(1))
                        return
                    self._send_not_found()
                except Exception as e:
                    logger.error(f"Error handling {path}: {e}")
                    self._send_status(500, b'Internal Server Error')

            def _handle_tile(self, map_id: str, z: int, x: int, y: int):
                data = server_service._render_tile(map_id, z, x, y)
                if data is None:
                    self._send_not_found()
                    return
                self._send_bytes(data, 'image/png')

            def _handle_image(self, map_id: str):
                image_path = tile_service.registry.get_image_path(map_id)
                if not image_path:
                    self._send_not_found()
                    return
                ext = os.path.splitext(image_path)[1].lower()
                self._send_file(image_path, CONTENT_TYPES.get(ext, 'application/octet-stream'))

            def _handle_reprojected(self, map_id: str):
                image_path = tile_service.get_reprojected_path(map_id)
                if not os.path.exists(image_path):
                    self._send_not_found()
                    return
                self._send_file(image_path, 'image/jpeg')

            def _send_bytes(self, content: bytes, content_type: str):
                self.send_response(200)
                self.send_header('Content-Type', content_type)
                self.send_header('Content-Length', str(len(content)))
                self.end_headers()
                self.wfile.write(content)

            def _send_file(self, file_path: str, content_type: str):
                """Stream a file in chunks; stored map images can be very large"""
                size = os.path.getsize(file_path)
                with open(file_path, 'rb') as f:
                    self.send_response(200)
                    self.send_header('Content-Type', content_type)
                    self.send_header('Content-Length', str(size))
                    self.end_headers()
                    while True:
                        chunk = f.read(64 * 1024)
                        if not chunk:
                            break
                        self.wfile.write(chunk)

            def _send_status(self, status: int, body: bytes):
                self.send_response(status)
                self.send_header('Content-Type', 'text/plain')
                self.send_header('Content-Length', str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def _send_not_found(self):
                self._send_status(404, b'Not Found')

        return MapTileRequestHandler

    def _bind(self) -> None:
        if self.httpd is not None:
            return
        handler = self.create_request_handler()
        try:
            self.httpd = _ThreadingServer((self.host, self.requested_port), handler)
        except OSError as e:
            raise ServerError(f"Cannot bind tile server to {self.host}:{self.requested_port}: {e}")
        logger.info(f"Tile server listening on {self.base_url}")

    def start(self) -> None:
        """Serve requests on a background thread"""
        self._bind()
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self.httpd.serve_forever, name='map-tile-server', daemon=True)
        self._thread.start()

    def serve_forever(self) -> None:
        """Serve requests on the calling thread until interrupted"""
        self._bind()
        try:
            self.httpd.serve_forever()
        except KeyboardInterrupt:
            logger.info("Tile server stopped by user")
        finally:
            self.httpd.server_close()
            self.httpd = None

    def stop(self) -> None:
        if self.httpd is None:
            return
        if self._thread is not None:
            self.httpd.shutdown()
            self._thread.join(timeout=5)
            self._thread = None
        self.httpd.server_close()
        self.httpd = None
        logger.info("Tile server stopped")
