"""
Proxy Gateway - Transparent reverse proxy in front of the application service
Forwards every request to the target origin, rewrites HTML pages on the way back
and tunnels WebSocket upgrades untouched
"""

import asyncio
import logging
import uuid
from typing import List, Optional, Tuple
from urllib.parse import urlsplit

import aiohttp
from sanic import Request, Sanic
from sanic.compat import Header
from sanic.exceptions import WebsocketClosed
from sanic.response import HTTPResponse, text
from sanic.server.protocols.websocket_protocol import WebSocketProtocol
from websockets.exceptions import ConnectionClosed

from errors import ProxyBindFailure, UpstreamProxyError
from html_injector import (
    Headers,
    ProxyConfiguration,
    get_header,
    is_html,
    rewrite_html_response,
    without_headers,
)

logger = logging.getLogger(__name__)

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]
HOP_BY_HOP = (
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
)
WEBSOCKET_HANDSHAKE = (
    "sec-websocket-key",
    "sec-websocket-version",
    "sec-websocket-extensions",
    "sec-websocket-protocol",
    "sec-websocket-accept",
)
# Let the client's own headers through untouched instead of aiohttp defaults
SKIP_AUTO_HEADERS = ("Accept", "Accept-Encoding", "User-Agent", "Content-Type")
STREAM_CHUNK_SIZE = 64 * 1024
SERVER_CLOSE_TIMEOUT = 5.0
PROXY_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, OSError, UpstreamProxyError)


def is_websocket_upgrade(request: Request) -> bool:
    """Check if a request asks to switch to the WebSocket protocol"""
    return request.headers.get("upgrade", "").lower() == "websocket"


def request_target(request: Request) -> str:
    """Path and query string of the incoming request"""
    if request.query_string:
        return f"{request.path}?{request.query_string}"
    return request.path


def forwarded_request_headers(request: Request, target_origin: str, *extra_drop: str) -> Headers:
    """Client headers for the upstream request, with Host pointing at the target"""
    headers = without_headers(list(request.headers.items()), "host", *HOP_BY_HOP, *extra_drop)
    headers.append(("Host", urlsplit(target_origin).netloc))
    return headers


def requested_subprotocols(request: Request) -> List[str]:
    """Subprotocols listed in the client's WebSocket handshake"""
    protocols = []
    for value in request.headers.getall("sec-websocket-protocol", []):
        protocols.extend(item.strip() for item in value.split(",") if item.strip())
    return protocols


def websocket_origin(target_origin: str) -> str:
    """ws:// or wss:// form of an http(s) origin"""
    if target_origin.startswith("https://"):
        return "wss://" + target_origin[len("https://"):]
    if target_origin.startswith("http://"):
        return "ws://" + target_origin[len("http://"):]
    return target_origin


class RelayedResponse(HTTPResponse):
    """Streamed upstream response whose headers go out as received"""

    @property
    def processed_headers(self):
        # Sanic fills in a missing content-type; an upstream without one stays without one
        if self.content_type is not None:
            return super().processed_headers
        return (
            (name.encode("ascii"), f"{value}".encode(errors="surrogateescape"))
            for name, value in self.headers.items()
        )


class ProxyGateway:
    """Owns the proxy listener and the upstream client session"""

    def __init__(self, config: ProxyConfiguration):
        self.config = config
        self.app = Sanic(f"devsession_proxy_{uuid.uuid4().hex[:8]}", configure_logging=False)
        self.app.config.DEBUG = False
        self.app.config.AUTO_RELOAD = False
        # Touchup rewrites the shared Http class on every server start; a second app would break it
        self.app.config.TOUCHUP = False
        self.app.config.RESPONSE_TIMEOUT = 600
        self.app.config.KEEP_ALIVE_TIMEOUT = 30
        self.server = None
        self.session: Optional[aiohttp.ClientSession] = None
        self.listen_port: Optional[int] = None
        self._stopped = False
        self._register_routes()

    def _register_routes(self):
        """Route every path and method to the proxy handler"""

        async def proxy(request: Request, path: str = ""):
            return await self.handle(request)

        # Upgraded requests answer through the websocket handshake, not a response object
        proxy.is_websocket = True

        self.app.add_route(proxy, "/", methods=PROXY_METHODS, name="proxy_root")
        self.app.add_route(proxy, "/<path:path>", methods=PROXY_METHODS, name="proxy_path")

    async def start(self, listen_port: int, host: str = "0.0.0.0") -> None:
        """Bind the listener; bind errors raise ProxyBindFailure"""
        self.session = aiohttp.ClientSession(
            auto_decompress=False,
            timeout=aiohttp.ClientTimeout(total=None, sock_connect=10),
        )

        try:
            server = await self.app.create_server(
                host=host,
                port=listen_port,
                protocol=WebSocketProtocol,
                access_log=False,
                return_asyncio_server=True,
                asyncio_server_kwargs={"start_serving": False},
            )
        except OSError as e:
            await self.session.close()
            self.session = None
            raise ProxyBindFailure(listen_port, e.strerror or str(e)) from e

        await server.startup()
        await server.before_start()
        await server.start_serving()
        await server.after_start()

        self.server = server
        self.listen_port = listen_port
        logger.info(f"Proxy listening on {host}:{listen_port} -> {self.config.target_origin}")

    async def stop(self) -> None:
        """Close the listener, open connections and the upstream session; idempotent"""
        if self._stopped:
            return
        self._stopped = True

        if self.server is not None:
            server, self.server = self.server, None
            await server.before_stop()
            server.server.close()
            for connection in list(server.connections):
                connection.close()
            try:
                await asyncio.wait_for(server.wait_closed(), timeout=SERVER_CLOSE_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning("Proxy connections did not close in time")
            await server.after_stop()
            logger.info(f"Proxy on port {self.listen_port} closed")

        if self.session is not None:
            session, self.session = self.session, None
            await session.close()

    async def handle(self, request: Request) -> Optional[HTTPResponse]:
        """Forward one request; upstream failures become a 500 for this client only"""
        try:
            if is_websocket_upgrade(request):
                await self._tunnel_websocket(request)
                return None
            return await self._forward(request)
        except PROXY_ERRORS as e:
            logger.error(f"Proxy error for {request.method} {request_target(request)}: {e}")
            if request.responded:
                return None
            return text("Proxy error", status=500)

    async def _forward(self, request: Request) -> Optional[HTTPResponse]:
        """Send the request upstream and relay or rewrite the response"""
        url = self.config.target_origin + request_target(request)
        headers = forwarded_request_headers(request, self.config.target_origin)

        async with self.session.request(
            request.method,
            url,
            headers=headers,
            data=request.body or None,
            allow_redirects=False,
            skip_auto_headers=SKIP_AUTO_HEADERS,
        ) as upstream:
            response_headers = without_headers(list(upstream.headers.items()), *HOP_BY_HOP)
            content_type = get_header(response_headers, "content-type")

            if self.config.inject_overlay and is_html(content_type):
                body = await upstream.read()
                exchange = rewrite_html_response(upstream.status, response_headers, body, self.config)
                return HTTPResponse(body=exchange.body, status=exchange.status, headers=Header(exchange.headers))

            response = await request.respond(
                RelayedResponse(
                    status=upstream.status,
                    headers=Header(response_headers),
                    content_type=content_type,
                )
            )
            async for chunk in upstream.content.iter_chunked(STREAM_CHUNK_SIZE):
                await response.send(chunk)
            await response.eof()
            return None

    async def _tunnel_websocket(self, request: Request) -> None:
        """Connect upstream first, then accept the client with the same subprotocol and relay frames"""
        url = websocket_origin(self.config.target_origin) + request_target(request)
        headers = forwarded_request_headers(request, self.config.target_origin, *WEBSOCKET_HANDSHAKE)

        upstream = await self.session.ws_connect(
            url,
            protocols=requested_subprotocols(request),
            headers=headers,
            max_msg_size=0,
        )
        try:
            subprotocols = [upstream.protocol] if upstream.protocol else None
            client = await request.transport.get_protocol().websocket_handshake(request, subprotocols)
            logger.debug(f"WebSocket tunnel open: {request_target(request)}")
            await self._relay(client, upstream)
        finally:
            await upstream.close()
            logger.debug(f"WebSocket tunnel closed: {request_target(request)}")

    async def _relay(self, client, upstream: aiohttp.ClientWebSocketResponse) -> None:
        """Copy frames both ways until either side closes"""

        async def client_to_upstream():
            while True:
                message = await client.recv()
                if message is None:
                    return
                if isinstance(message, bytes):
                    await upstream.send_bytes(message)
                else:
                    await upstream.send_str(message)

        async def upstream_to_client():
            async for message in upstream:
                if message.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                    await client.send(message.data)
                else:
                    return

        tasks = [asyncio.create_task(client_to_upstream()), asyncio.create_task(upstream_to_client())]
        try:
            done, _pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                error = task.exception()
                if error and not isinstance(error, (ConnectionClosed, WebsocketClosed)):
                    logger.warning(f"WebSocket relay stopped: {error}")
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await client.close()


def describe_origin(host: str, port: int) -> Tuple[str, str]:
    """Client-reachable host and origin for a service bound on `host`"""
    client_host = "localhost" if host == "0.0.0.0" else host
    return client_host, f"http://{client_host}:{port}"
