# src/mcsocks/supervisor.py
"""
Connection supervisor for mcsocks.

Owns the listening socket and the accept loop. Every accepted client gets its
own task that resolves the target, dials it through the SOCKS5 proxy and
relays bytes; whatever happens inside that task stays inside it.
"""

import asyncio
import logging
import signal
import socket
from typing import Any, Optional, Set, Tuple

from .config import ForwarderConfig
from .network import LISTEN_BACKLOG, Stream, format_host_port
from .relay import relay
from .resolver import TargetResolver
from .robustness import (
    ForwarderError,
    ListenerFatalError,
    RelayError,
    log_with_context,
)
from .session import (
    SESSION_STATE_CLOSED,
    SESSION_STATE_CONNECTING,
    SESSION_STATE_RELAYING,
    SESSION_STATE_RESOLVING,
    Session,
)
from .socks5 import Socks5Connector

logger = logging.getLogger(__name__)


class ForwardingServer:
    """Accept loop plus per-connection resolve → connect → relay pipeline."""

    def __init__(
        self,
        config: ForwarderConfig,
        resolver: Optional[Any] = None,
        connector: Optional[Any] = None,
    ):
        self.config = config
        self.resolver = resolver or TargetResolver(
            port=config.target_port,
            nameservers=config.nameservers,
            timeout=config.dns_timeout,
        )
        self.connector = connector or Socks5Connector(
            config.proxy,
            config.username,
            config.password,
            timeout=config.connect_timeout,
        )
        self.sock: Optional[socket.socket] = None
        self._running = False
        self._accept_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def listen_address(self) -> Tuple[str, int]:
        return (self.config.listen_host, self.config.listen_port)

    @property
    def sockname(self) -> Optional[Tuple[str, int]]:
        """Address actually bound (useful with listen_port 0)."""
        if self.sock is None:
            return None
        return self.sock.getsockname()[:2]

    @property
    def active_sessions(self) -> int:
        return len(self._tasks)

    async def start(self):
        host, port = self.listen_address
        family = socket.AF_INET6 if ":" in host else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((host, port))
            sock.listen(LISTEN_BACKLOG)
            sock.setblocking(False)
        except OSError as e:
            sock.close()
            raise ListenerFatalError(format_host_port(host, port), e) from e

        self.sock = sock
        self._running = True
        bound_host, bound_port = self.sockname
        logger.info(
            f"Forwarding from {format_host_port(bound_host, bound_port)} to {self.config.server} "
            f"through proxy {self.config.proxy} (auth: {self.config.uses_auth})"
        )

    async def serve_forever(self):
        """Run the accept loop until close()/stop() or a fatal listener error."""
        if self.sock is None:
            await self.start()
        self._accept_task = asyncio.create_task(self._accept_loop())
        try:
            await self._accept_task
        except asyncio.CancelledError:
            if self._running:
                raise
        finally:
            await self._teardown()

    async def _accept_loop(self):
        loop = asyncio.get_running_loop()
        while self._running:
            try:
                client_sock, peer = await loop.sock_accept(self.sock)
            except ConnectionAbortedError as e:
                logger.warning(f"Client went away before accept completed: {e}")
                continue
            except OSError as e:
                raise ListenerFatalError(format_host_port(*self.listen_address), e) from e

            task = asyncio.create_task(self.handle_connection(client_sock, peer))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    def close(self):
        """Stop accepting; serve_forever() tears down live sessions and returns."""
        self._running = False
        if self._accept_task is not None and not self._accept_task.done():
            self._accept_task.cancel()

    async def stop(self):
        self.close()
        if self._accept_task is not None:
            await asyncio.gather(self._accept_task, return_exceptions=True)
        await self._teardown()

    async def _teardown(self):
        if self.sock is not None:
            self.sock.close()
            self.sock = None
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Closed {len(tasks)} in-flight session(s)")

    async def handle_connection(self, client_sock: socket.socket, peer: Any) -> Session:
        """Drive one client through RESOLVING → CONNECTING → RELAYING → CLOSED."""
        session = Session(client_addr=peer)
        client: Optional[Stream] = None
        upstream: Optional[Stream] = None
        try:
            client = await Stream.from_socket(client_sock)

            session.transition(SESSION_STATE_RESOLVING)
            try:
                session.target = await self.resolver.resolve(self.config.server)
                session.transition(SESSION_STATE_CONNECTING)
                upstream = await self.connector.connect(session.target)
            except ForwarderError as e:
                session.fail(e)
                log_with_context(f"{e.kind} for client {peer}: {e}", "error", session.context())
                return session

            session.transition(SESSION_STATE_RELAYING)
            logger.info(f"Forwarding client {peer} to {session.target}...")
            try:
                stats = await relay(client, upstream, self.config.buffer_size)
                session.bytes_up, session.bytes_down = stats.a_to_b, stats.b_to_a
            except RelayError as e:
                session.error = e
                log_with_context(f"{e.kind} for client {peer}: {e}", "warning", session.context())

            session.transition(SESSION_STATE_CLOSED)
            logger.info(
                f"Client {peer} disconnected after {session.duration:.1f}s "
                f"({session.bytes_up} bytes up, {session.bytes_down} bytes down)"
            )
            return session
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(f"Unexpected error handling client {peer}")
            return session
        finally:
            if client is not None:
                await client.close()
            else:
                client_sock.close()
            if upstream is not None:
                await upstream.close()


async def serve(config: ForwarderConfig) -> None:
    """Run a ForwardingServer until SIGINT/SIGTERM; raises ListenerFatalError."""
    server = ForwardingServer(config)
    await server.start()

    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, server.close)
            installed.append(sig)
        except (NotImplementedError, RuntimeError) as e:
            logger.debug(f"Signal handler for {sig!r} unavailable: {e}")

    try:
        await server.serve_forever()
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
        logger.info("Forwarder stopped")
