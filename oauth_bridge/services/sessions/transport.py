import asyncio
import json
import logging
from abc import ABC, abstractmethod
from contextlib import suppress
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

from mcp.server.lowlevel import Server
from mcp.server.streamable_http import StreamableHTTPServerTransport
from mcp.server.transport_security import TransportSecuritySettings
from starlette.types import Message, Receive, Scope, Send

logger = logging.getLogger(__name__)

SESSION_HEADER = b"mcp-session-id"


@dataclass(frozen=True)
class SessionContext:
    """Resolved identity of one protocol session, passed explicitly to tools."""

    session_id: str
    user_id: str


TransportClosedHook = Callable[[str], Awaitable[None]]


class Transport(ABC):
    """A live, routable protocol session."""

    session_id: str
    # set by the owner; called with the session id if the transport dies on its own
    on_closed: Optional[TransportClosedHook] = None

    @abstractmethod
    async def start(self) -> None:
        """Bring the session up; returns once it is ready to accept requests."""

    @abstractmethod
    async def handle_request(self, scope: Scope, receive: Receive, send: Send) -> None:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


TransportFactory = Callable[[SessionContext], Transport]


class BufferedResponse:
    """
    ASGI ``send`` that holds a response back instead of writing it.

    Used for the ``initialize`` round trip: the session only counts as
    initialized once the protocol answered with a JSON-RPC result, and the
    client must not learn the session id before that is recorded.
    """

    def __init__(self):
        self.messages: List[Message] = []

    async def __call__(self, message: Message) -> None:
        self.messages.append(message)

    @property
    def status(self) -> Optional[int]:
        for message in self.messages:
            if message["type"] == "http.response.start":
                return message["status"]
        return None

    @property
    def body(self) -> bytes:
        return b"".join(
            message.get("body", b"")
            for message in self.messages
            if message["type"] == "http.response.body"
        )

    @property
    def initialized(self) -> bool:
        if self.status != 200:
            return False
        try:
            payload = json.loads(self.body)
        except ValueError:
            return False
        return isinstance(payload, dict) and "result" in payload

    async def replay(self, send: Send, *, drop_session_header: bool = False) -> None:
        for message in self.messages:
            if drop_session_header and message["type"] == "http.response.start":
                message = {
                    **message,
                    "headers": [
                        (name, value)
                        for name, value in message.get("headers", [])
                        if name.lower() != SESSION_HEADER
                    ],
                }
            await send(message)


class McpTransport(Transport):
    """
    Streamable HTTP MCP transport bound to a per-session tool server.

    The tool server runs as a background task reading from the transport's
    streams until the transport is closed. If that task ends while the
    transport is still open, ``on_closed`` is notified.
    """

    def __init__(
        self,
        context: SessionContext,
        server: Server,
        security_settings: Optional[TransportSecuritySettings] = None,
    ):
        self.session_id = context.session_id
        self._server = server
        self._http = StreamableHTTPServerTransport(
            mcp_session_id=context.session_id,
            is_json_response_enabled=True,
            security_settings=security_settings,
        )
        self._task: Optional[asyncio.Task] = None
        self._closing = False
        self._closed_hook_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        ready = asyncio.Event()

        async def run_server() -> None:
            async with self._http.connect() as (read_stream, write_stream):
                ready.set()
                await self._server.run(
                    read_stream,
                    write_stream,
                    self._server.create_initialization_options(),
                    stateless=False,
                )

        self._task = asyncio.create_task(run_server())
        waiter = asyncio.create_task(ready.wait())
        done, _ = await asyncio.wait(
            {self._task, waiter},
            return_when=asyncio.FIRST_COMPLETED,
        )

        if self._task in done:
            waiter.cancel()
            # surfaces the startup failure, or flags a server that exited early
            self._task.result()
            raise RuntimeError(f"MCP server for session {self.session_id} exited during startup")

        self._task.add_done_callback(self._server_exited)

    def _server_exited(self, task: asyncio.Task) -> None:
        if self._closing:
            return

        if not task.cancelled() and task.exception() is not None:
            logger.error(
                f"[SESSION] MCP server for session {self.session_id} crashed",
                exc_info=task.exception(),
            )
        else:
            logger.warning(f"[SESSION] MCP server for session {self.session_id} stopped unexpectedly")

        if self.on_closed:
            self._closed_hook_task = asyncio.create_task(self.on_closed(self.session_id))

    @property
    def closed(self) -> bool:
        return self._closing or (self._task is not None and self._task.done())

    async def handle_request(self, scope: Scope, receive: Receive, send: Send) -> None:
        await self._http.handle_request(scope, receive, send)

    async def close(self) -> None:
        self._closing = True
        await self._http.terminate()

        if self._task and not self._task.done():
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
