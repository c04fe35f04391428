"""SSH tunnel manager.

Forwards a local TCP listener on 127.0.0.1 to a target host/port through an
SSH session to a bastion. Each accepted local connection gets its own SSH
channel and two forwarding tasks (one per direction); byte order within a
forwarded stream is preserved, streams are independent of each other.

State machine:

    UNCONFIGURED -> CONNECTING -> ESTABLISHED -> CLOSED
                        |              |
                        v              v
                      FAILED  <--------+ (SSH session lost)

``start()`` returns only once the tunnel is ESTABLISHED (or raises
TunnelError). ``close()`` is idempotent; closing during CONNECTING aborts the
handshake. The tunnel is never re-established internally.

Example:
    tunnel = SSHTunnel(settings)
    await tunnel.start()
    descriptor = descriptor.rewrite_for_tunnel(tunnel.local_port)
    ...
    await tunnel.close()
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Literal

from pydantic import SecretStr

from .dsn import TUNNEL_LOCAL_HOST
from .exceptions import TunnelError

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 30.0
DRAIN_TIMEOUT = 30.0
BUFFER_SIZE = 64 * 1024


def _import_asyncssh() -> Any:  # noqa: ANN401
    """Import asyncssh lazily so the dependency stays optional."""
    try:
        import asyncssh

        return asyncssh
    except ImportError as e:
        raise ImportError(
            "asyncssh is required for SSH tunneling. "
            "Install with: pip install 'sqlbridge-mcp[ssh]'"
        ) from e


class TunnelState(str, Enum):
    UNCONFIGURED = "unconfigured"
    CONNECTING = "connecting"
    ESTABLISHED = "established"
    CLOSED = "closed"
    FAILED = "failed"


@dataclass(frozen=True)
class TunnelSettings:
    """SSH endpoint and forwarding target.

    Attributes:
        host: Bastion host
        port: Bastion SSH port
        username: Login user
        auth_type: "password" or "key"
        password: Password for password auth
        key_path: Private key file for key auth
        key_passphrase: Optional passphrase for the key
        target_host: Host the bastion forwards to
        target_port: Port the bastion forwards to
        known_hosts: known_hosts file; host keys are not verified when unset
    """

    host: str
    username: str
    target_host: str
    target_port: int
    port: int = 22
    auth_type: Literal["password", "key"] = "password"
    password: SecretStr | None = None
    key_path: str | None = None
    key_passphrase: SecretStr | None = None
    known_hosts: str | None = None

    @property
    def endpoint(self) -> str:
        return f"{self.username}@{self.host}:{self.port}"

    @property
    def target(self) -> str:
        return f"{self.target_host}:{self.target_port}"


# Opens an SSH session; the returned object must provide open_connection(),
# close() and wait_closed() like asyncssh.SSHClientConnection.
SSHConnector = Callable[[TunnelSettings], Awaitable[Any]]


async def connect_ssh(settings: TunnelSettings) -> Any:  # noqa: ANN401
    """Open an SSH session with asyncssh using password or key authentication."""
    asyncssh = _import_asyncssh()

    options: dict[str, Any] = {
        "port": settings.port,
        "username": settings.username,
        "known_hosts": settings.known_hosts,
    }
    if settings.auth_type == "key":
        options["client_keys"] = [settings.key_path]
        if settings.key_passphrase is not None:
            options["passphrase"] = settings.key_passphrase.get_secret_value()
    else:
        options["client_keys"] = None
        options["password"] = settings.password.get_secret_value() if settings.password else None

    if settings.known_hosts is None:
        logger.warning(f"SSH host key verification disabled for {settings.endpoint}")

    return await asyncssh.connect(settings.host, **options)


class SSHTunnel:
    """Process-wide SSH port forward owned by the server lifespan."""

    def __init__(self, settings: TunnelSettings, connector: SSHConnector | None = None) -> None:
        self.settings = settings
        self._connector = connector or connect_ssh
        self._state = TunnelState.UNCONFIGURED
        self._ssh: Any = None
        self._listener: asyncio.Server | None = None
        self._local_port: int | None = None
        self._connect_task: asyncio.Task[None] | None = None
        self._watch_task: asyncio.Task[None] | None = None
        self._forwards: set[asyncio.Task[Any]] = set()
        self._shutdown = asyncio.Event()
        self._close_lock = asyncio.Lock()
        self._released = False

    @property
    def state(self) -> TunnelState:
        return self._state

    @property
    def is_established(self) -> bool:
        return self._state is TunnelState.ESTABLISHED

    @property
    def local_port(self) -> int:
        """Bound local port; only valid while ESTABLISHED."""
        if not self.is_established or self._local_port is None:
            raise TunnelError(f"SSH tunnel is {self._state.value}, no local port is bound")
        return self._local_port

    @property
    def active_forwards(self) -> int:
        return len(self._forwards)

    async def start(self) -> int:
        """Connect to the bastion and bind the local listener.

        Returns:
            The bound local port

        Raises:
            TunnelError: The SSH handshake or the listener failed, or the
                tunnel was closed while connecting
        """
        if self._state is not TunnelState.UNCONFIGURED:
            raise TunnelError(f"SSH tunnel cannot start from state {self._state.value}")

        self._set_state(TunnelState.CONNECTING)
        self._connect_task = asyncio.create_task(self._connect())
        try:
            await self._connect_task
        except asyncio.CancelledError:
            if self._state is TunnelState.CLOSED:
                raise TunnelError(
                    f"SSH tunnel to {self.settings.endpoint} closed while connecting"
                ) from None
            await self._release()
            self._set_state(TunnelState.CLOSED)
            raise
        except TunnelError:
            await self._release()
            self._set_state(TunnelState.FAILED)
            raise
        finally:
            self._connect_task = None

        return self.local_port

    async def close(self) -> None:
        """Tear the tunnel down; safe to call any number of times."""
        async with self._close_lock:
            if self._released:
                return

            if self._state is TunnelState.CONNECTING and self._connect_task is not None:
                self._set_state(TunnelState.CLOSED)
                self._connect_task.cancel()
                await asyncio.wait([self._connect_task])
            elif self._state is not TunnelState.FAILED:
                self._set_state(TunnelState.CLOSED)

            await self._release()

    async def _connect(self) -> None:
        settings = self.settings
        logger.info(f"Opening SSH tunnel via {settings.endpoint} to {settings.target}")
        try:
            self._ssh = await asyncio.wait_for(self._connector(settings), CONNECT_TIMEOUT)
        except TimeoutError as e:
            raise TunnelError(
                f"SSH connection to {settings.endpoint} timed out after {CONNECT_TIMEOUT:g}s"
            ) from e
        except Exception as e:
            # asyncssh raises its own hierarchy (DisconnectError, PermissionDenied, ...)
            raise TunnelError(
                f"SSH connection to {settings.endpoint} failed: {type(e).__name__}: {e}"
            ) from e

        try:
            self._listener = await asyncio.start_server(self._forward, TUNNEL_LOCAL_HOST, 0)
        except OSError as e:
            raise TunnelError(f"Could not bind local tunnel listener: {e}") from e

        self._local_port = self._listener.sockets[0].getsockname()[1]
        self._watch_task = asyncio.create_task(self._watch(self._ssh))
        self._set_state(TunnelState.ESTABLISHED)
        logger.info(
            f"SSH tunnel established: {TUNNEL_LOCAL_HOST}:{self._local_port} -> "
            f"{settings.target} via {settings.endpoint}"
        )

    async def _watch(self, ssh: Any) -> None:  # noqa: ANN401
        await ssh.wait_closed()
        if self._state is TunnelState.ESTABLISHED:
            self._set_state(TunnelState.FAILED)
            logger.error(f"SSH session to {self.settings.endpoint} was lost")

    async def _forward(
        self, local_reader: asyncio.StreamReader, local_writer: asyncio.StreamWriter
    ) -> None:
        """Serve one accepted local connection over a new SSH channel."""
        task = asyncio.current_task()
        if task is not None:
            self._forwards.add(task)
        peer = local_writer.get_extra_info("peername")
        try:
            if self._shutdown.is_set() or not self.is_established:
                return
            try:
                remote_reader, remote_writer = await self._ssh.open_connection(
                    self.settings.target_host, self.settings.target_port
                )
            except Exception as e:
                logger.warning(
                    f"SSH channel to {self.settings.target} for {peer} failed: "
                    f"{type(e).__name__}: {e}"
                )
                return

            logger.debug(f"Forwarding {peer} -> {self.settings.target}")
            pipes = asyncio.gather(
                _pipe(local_reader, remote_writer),
                _pipe(remote_reader, local_writer),
            )
            # Every forward watches the same shutdown event set by _release
            shutdown = asyncio.ensure_future(self._shutdown.wait())
            try:
                await asyncio.wait({pipes, shutdown}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                shutdown.cancel()
                if not pipes.done():
                    pipes.cancel()
                    await asyncio.wait([pipes])
                remote_writer.close()

            if pipes.cancelled():
                logger.debug(f"Forward for {peer} stopped by tunnel shutdown")
            else:
                pipes.result()
        finally:
            local_writer.close()
            try:
                await local_writer.wait_closed()
            except (ConnectionError, OSError):
                pass
            if task is not None:
                self._forwards.discard(task)

    async def _release(self) -> None:
        """Signal forwards to stop, wait for them to finish, then close the SSH session."""
        if self._released:
            return
        self._released = True
        self._shutdown.set()

        if self._watch_task is not None:
            self._watch_task.cancel()
            try:
                await self._watch_task
            except asyncio.CancelledError:
                pass

        if self._listener is not None:
            self._listener.close()

        if self._forwards:
            pending = set(self._forwards)
            logger.info(f"Stopping {len(pending)} forwarded connection(s)")
            _, still_open = await asyncio.wait(pending, timeout=DRAIN_TIMEOUT)
            for task in still_open:
                task.cancel()
            if still_open:
                logger.warning(f"Cancelled {len(still_open)} forwarded connection(s) after drain")
                await asyncio.wait(still_open)

        if self._listener is not None:
            await self._listener.wait_closed()
            self._listener = None
            logger.info(f"Released local tunnel port {self._local_port}")

        if self._ssh is not None:
            self._ssh.close()
            await self._ssh.wait_closed()
            self._ssh = None

    def _set_state(self, state: TunnelState) -> None:
        if state is not self._state:
            logger.info(f"SSH tunnel {self._state.value} -> {state.value}")
            self._state = state


async def _pipe(reader: Any, writer: Any) -> None:  # noqa: ANN401
    """Copy bytes from reader to writer until EOF."""
    try:
        while data := await reader.read(BUFFER_SIZE):
            writer.write(data)
            await writer.drain()
        if writer.can_write_eof():
            writer.write_eof()
    except (ConnectionError, OSError) as e:
        logger.debug(f"Forwarded stream ended: {e}")
