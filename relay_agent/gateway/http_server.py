"""Minimal HTTP gateway: JSON dispatch plus health, metrics and session listing."""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING, Any
from urllib.parse import parse_qs, urlsplit

from loguru import logger

from relay_agent.observability.metrics import MetricsStore
from relay_agent.pipeline.context import InboundEvent

if TYPE_CHECKING:
    from relay_agent.pipeline.dispatcher import Dispatcher

MAX_HEADER_BYTES = 16 * 1024
MAX_BODY_BYTES = 1024 * 1024


class GatewayHttpServer:
    """Serve the dispatcher over a tiny HTTP/1.1 endpoint (one request per connection)."""

    def __init__(
        self,
        dispatcher: Dispatcher,
        *,
        metrics: MetricsStore | None = None,
        host: str = "127.0.0.1",
        port: int = 18790,
        default_hours: int = 24,
    ):
        self.dispatcher = dispatcher
        self.metrics = metrics if metrics is not None else dispatcher.metrics
        self.host = (host or "127.0.0.1").strip()
        self.port = int(port) if int(port) > 0 else 0
        self.default_hours = int(default_hours) if int(default_hours) > 0 else 24
        self._server: asyncio.Server | None = None

    @property
    def is_running(self) -> bool:
        return self._server is not None

    @property
    def bound_port(self) -> int:
        """Actual listening port; differs from `port` when binding to port 0."""
        sockets = self._server.sockets if self._server else None
        return sockets[0].getsockname()[1] if sockets else self.port

    async def start(self) -> None:
        if self._server:
            return
        self._server = await asyncio.start_server(self._handle_client, host=self.host, port=self.port)
        logger.info(f"Gateway listening on http://{self.host}:{self.bound_port}")

    async def stop(self) -> None:
        if not self._server:
            return
        self._server.close()
        await self._server.wait_closed()
        self._server = None

    def _http_response(
        self, status: int, body: str, content_type: str = "text/plain; charset=utf-8"
    ) -> bytes:
        reason = {
            200: "OK",
            400: "Bad Request",
            404: "Not Found",
            405: "Method Not Allowed",
            413: "Payload Too Large",
            500: "Internal Server Error",
            503: "Service Unavailable",
        }.get(status, "OK")
        data = body.encode("utf-8")
        headers = [
            f"HTTP/1.1 {status} {reason}",
            f"Content-Type: {content_type}",
            f"Content-Length: {len(data)}",
            "Connection: close",
            "",
            "",
        ]
        return "\r\n".join(headers).encode("utf-8") + data

    def _json_response(self, status: int, payload: Any) -> bytes:
        body = json.dumps(payload, ensure_ascii=False, indent=2) + "\n"
        return self._http_response(status, body, content_type="application/json; charset=utf-8")

    async def _read_request(
        self, reader: asyncio.StreamReader
    ) -> tuple[str, str, dict[str, str], bytes] | None:
        try:
            head = await reader.readuntil(b"\r\n\r\n")
        except (asyncio.IncompleteReadError, asyncio.LimitOverrunError):
            return None
        if len(head) > MAX_HEADER_BYTES:
            return None
        lines = head.decode("utf-8", errors="ignore").split("\r\n")
        parts = lines[0].strip().split() if lines else []
        if len(parts) < 2:
            return None

        headers: dict[str, str] = {}
        for line in lines[1:]:
            if ":" in line:
                name, value = line.split(":", 1)
                headers[name.strip().lower()] = value.strip()

        body = b""
        length = headers.get("content-length", "0") or "0"
        try:
            size = int(length)
        except ValueError:
            return None
        if size > MAX_BODY_BYTES:
            raise ValueError("payload too large")
        if size > 0:
            body = await reader.readexactly(size)
        return parts[0].upper(), parts[1], headers, body

    async def _route(self, method: str, target: str, body: bytes) -> bytes:
        parsed = urlsplit(target)
        path = parsed.path or "/"

        if path == "/dispatch":
            if method != "POST":
                return self._http_response(405, "method not allowed\n")
            return await self._dispatch(body)

        if method != "GET":
            return self._http_response(405, "method not allowed\n")

        if path == "/health":
            return self._http_response(200, "ok\n")

        if path == "/sessions":
            return self._json_response(200, {"sessions": self.dispatcher.registry.keys()})

        if path == "/metrics":
            if self.metrics is None:
                return self._http_response(503, "metrics disabled\n")
            return self._json_response(200, self.metrics.snapshot(hours=self._window_hours(parsed.query)))

        return self._http_response(404, "not found\n")

    def _window_hours(self, query: str) -> int:
        values = parse_qs(query or "").get("hours") or []
        try:
            return max(1, int(values[0].strip()))
        except (IndexError, ValueError):
            return self.default_hours

    async def _dispatch(self, body: bytes) -> bytes:
        try:
            payload = json.loads(body.decode("utf-8") or "{}")
        except (UnicodeDecodeError, json.JSONDecodeError):
            return self._json_response(400, {"error": "invalid JSON body"})
        if not isinstance(payload, dict):
            return self._json_response(400, {"error": "expected a JSON object"})
        try:
            event = InboundEvent.from_dict(payload)
        except ValueError as e:
            return self._json_response(400, {"error": str(e)})
        if event.source == "channel" and not event.channel_id:
            return self._json_response(400, {"error": "channel events need channelId"})

        result = await self.dispatcher.dispatch(event)
        return self._json_response(200, result.to_dict())

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        try:
            try:
                request = await self._read_request(reader)
            except ValueError:
                writer.write(self._http_response(413, "payload too large\n"))
                await writer.drain()
                return
            if request is None:
                writer.write(self._http_response(400, "bad request\n"))
                await writer.drain()
                return
            method, target, _, body = request
            writer.write(await self._route(method, target, body))
            await writer.drain()
        except Exception as e:
            logger.error(f"Gateway request failed: {e}")
            writer.write(self._http_response(500, "internal error\n"))
            await writer.drain()
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except Exception:
                pass
