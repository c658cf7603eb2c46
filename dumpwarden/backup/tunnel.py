"""
SSH sessions and local port forwarding for remote machines.

A tunnel binds an ephemeral port on 127.0.0.1 and relays every accepted
connection to the database host through a `direct-tcpip` channel on one SSH
transport. The dump utility and the connectivity probe then talk to
127.0.0.1:<port> as if the database were local.
"""

import io
import logging
import socket
import threading
import time
from typing import Callable, List, Optional, Tuple

import paramiko
from paramiko import SSHClient, AutoAddPolicy

from dumpwarden.backup.errors import (
    TunnelAuthenticationError,
    DialError,
    ForwardUnreachableError,
    ToolExecutionError,
)

logger = logging.getLogger(__name__)

BUFFER_SIZE = 32768
ACCEPT_POLL_INTERVAL = 0.5
RELAY_GRACE_SECONDS = 5.0

_KEY_CLASSES = (paramiko.RSAKey, paramiko.ECDSAKey, paramiko.Ed25519Key)


def load_private_key(key_data: str, passphrase: Optional[str] = None) -> paramiko.PKey:
    """
    Parse an inline PEM/OpenSSH private key.

    Raises:
        TunnelAuthenticationError: If no supported key type can parse it
    """
    last_error = None
    for key_class in _KEY_CLASSES:
        try:
            return key_class.from_private_key(io.StringIO(key_data), password=passphrase or None)
        except paramiko.PasswordRequiredException as e:
            raise TunnelAuthenticationError(f"Private key is encrypted and no passphrase was given: {e}")
        except (paramiko.SSHException, ValueError) as e:
            last_error = e
    raise TunnelAuthenticationError(f"Failed to parse private key: {last_error}")


class SSHSession:
    """
    One authenticated SSH connection to a remote machine.

    Authentication order: inline private key, key file path, password.
    """

    def __init__(self, endpoint, connect_timeout: int = 30):
        """
        Args:
            endpoint: SSHEndpoint snapshot
            connect_timeout: Seconds allowed for TCP connect and SSH handshake
        """
        self.endpoint = endpoint
        self.connect_timeout = connect_timeout
        self.client = None

    def connect(self):
        """
        Open and authenticate the session.

        Raises:
            TunnelAuthenticationError: No credential supplied or credentials rejected
            DialError: Host unreachable or handshake failed within the timeout
        """
        endpoint = self.endpoint
        if not endpoint.has_credentials:
            raise TunnelAuthenticationError(
                "No SSH authentication method available (need private key or password)"
            )

        connect_kwargs = {
            'hostname': endpoint.host,
            'port': endpoint.port,
            'username': endpoint.username,
            'timeout': self.connect_timeout,
            'banner_timeout': self.connect_timeout,
            'auth_timeout': self.connect_timeout,
            'allow_agent': False,
            'look_for_keys': False,
        }

        if endpoint.private_key:
            connect_kwargs['pkey'] = load_private_key(endpoint.private_key, endpoint.passphrase)
        if endpoint.key_path:
            connect_kwargs['key_filename'] = endpoint.key_path
            if endpoint.passphrase:
                connect_kwargs['passphrase'] = endpoint.passphrase
        if endpoint.password:
            connect_kwargs['password'] = endpoint.password

        client = SSHClient()
        client.set_missing_host_key_policy(AutoAddPolicy())

        address = f"{endpoint.host}:{endpoint.port}"
        logger.info(f"SSH: connecting to {address} as {endpoint.username}")
        try:
            client.connect(**connect_kwargs)
        except paramiko.AuthenticationException as e:
            client.close()
            raise TunnelAuthenticationError(f"SSH authentication failed for {address}: {e}")
        except (paramiko.SSHException, socket.timeout, OSError) as e:
            client.close()
            raise DialError(f"Failed to connect to SSH server {address}: {e}")

        self.client = client
        logger.info(f"SSH: connected to {address}")
        return self

    @property
    def transport(self):
        if self.client is None:
            return None
        return self.client.get_transport()

    def execute(self, command: str, timeout: Optional[int] = None) -> bytes:
        """
        Run a command on the remote host and return its stdout.

        Raises:
            ToolExecutionError: If the command exits non-zero, or the channel
                fails or times out
        """
        if self.client is None:
            self.connect()

        try:
            _, stdout, stderr = self.client.exec_command(command, timeout=timeout or self.connect_timeout)
            output = stdout.read()
            exit_status = stdout.channel.recv_exit_status()
            error_text = stderr.read().decode(errors='replace').strip() if exit_status != 0 else ''
        except (paramiko.SSHException, OSError) as e:
            # socket.timeout is an OSError
            raise ToolExecutionError(f"Remote command '{command}' failed: {e}")

        if exit_status != 0:
            raise ToolExecutionError(
                f"Remote command '{command}' exited with {exit_status}",
                returncode=exit_status,
                stderr=error_text,
            )
        return output

    def test_connection(self) -> str:
        """Connect, run an echo command and disconnect."""
        self.connect()
        try:
            try:
                output = self.execute("echo 'SSH connection test successful'")
            except ToolExecutionError as e:
                raise DialError(f"SSH test command failed: {e}")
            if not output.strip():
                raise DialError("SSH test command returned empty output")
            return output.decode(errors='replace').strip()
        finally:
            self.close()

    def open_forward_channel(self, host: str, port: int, timeout: Optional[float] = None):
        """Open a direct-tcpip channel to host:port through the SSH transport."""
        transport = self.transport
        if transport is None or not transport.is_active():
            raise DialError("SSH transport is not connected")
        return transport.open_channel(
            'direct-tcpip',
            (host, port),
            ('127.0.0.1', 0),
            timeout=timeout or self.connect_timeout,
        )

    def close(self):
        if self.client is not None:
            self.client.close()
            self.client = None

    def __enter__(self):
        return self.connect()

    def __exit__(self, exc_type, exc, tb):
        self.close()


class SSHTunnel:
    """
    Local port forward 127.0.0.1:<ephemeral> -> forward_host:forward_port.

    One accept thread supervises the listener; each accepted connection gets
    its own forward channel and two pump threads, one per direction.
    """

    def __init__(
        self,
        endpoint,
        forward_host: str,
        forward_port: int,
        settle_seconds: float = 3.0,
        connect_timeout: int = 30,
        session: Optional[SSHSession] = None,
    ):
        self.endpoint = endpoint
        self.forward_host = forward_host
        self.forward_port = forward_port
        self.settle_seconds = settle_seconds
        self.session = session or SSHSession(endpoint, connect_timeout=connect_timeout)

        self.local_address: Optional[Tuple[str, int]] = None
        self._listener: Optional[socket.socket] = None
        self._accept_thread: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._relays: List[threading.Thread] = []
        self._pairs = []
        self._lock = threading.Lock()
        self._closed = False

    def open(self) -> Tuple[str, int]:
        """
        Start forwarding and return the local (host, port).

        Raises:
            TunnelAuthenticationError, DialError: SSH session could not be established
            ForwardUnreachableError: Forward target refused the probe dial
        """
        if self.session.client is None:
            self.session.connect()

        try:
            self._probe_forward_target()

            listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            listener.bind(('127.0.0.1', 0))
            listener.listen(16)
            listener.settimeout(ACCEPT_POLL_INTERVAL)
        except Exception:
            self.session.close()
            raise

        self._listener = listener
        self.local_address = listener.getsockname()[:2]

        self._accept_thread = threading.Thread(
            target=self._accept_loop,
            name=f"tunnel-accept-{self.local_address[1]}",
            daemon=True,
        )
        self._accept_thread.start()

        logger.info(
            f"SSH tunnel established: {self.local_address[0]}:{self.local_address[1]} -> "
            f"{self.forward_host}:{self.forward_port}"
        )

        if self.settle_seconds:
            time.sleep(self.settle_seconds)

        return self.local_address

    def _probe_forward_target(self):
        target = f"{self.forward_host}:{self.forward_port}"
        logger.info(f"SSH tunnel: testing remote connection to {target}")
        try:
            channel = self.session.open_forward_channel(self.forward_host, self.forward_port)
        except (paramiko.ChannelException, paramiko.SSHException, OSError) as e:
            raise ForwardUnreachableError(f"Cannot connect to {target} through SSH: {e}")
        channel.close()

    def _accept_loop(self):
        while not self._stop.is_set():
            try:
                local_conn, peer = self._listener.accept()
            except socket.timeout:
                continue
            except OSError:
                # Listener closed
                break

            local_conn.settimeout(None)
            try:
                remote = self.session.open_forward_channel(self.forward_host, self.forward_port)
            except (paramiko.ChannelException, paramiko.SSHException, OSError) as e:
                logger.warning(
                    f"SSH tunnel: failed to open channel to {self.forward_host}:{self.forward_port} "
                    f"for {peer}: {e}"
                )
                _close_end(local_conn)
                continue

            self._start_relay(local_conn, remote)

        logger.debug("SSH tunnel: accept loop finished")

    def _start_relay(self, local_conn, remote):
        pair = (local_conn, remote)
        with self._lock:
            self._pairs.append(pair)

        finished = threading.Event()

        def pump(src, dst):
            try:
                while True:
                    data = src.recv(BUFFER_SIZE)
                    if not data:
                        break
                    dst.sendall(data)
            except (OSError, EOFError, paramiko.SSHException):
                pass
            finally:
                # Either direction ending tears down both ends
                if not finished.is_set():
                    finished.set()
                    _close_end(local_conn)
                    _close_end(remote)
                    with self._lock:
                        if pair in self._pairs:
                            self._pairs.remove(pair)

        for src, dst, direction in ((local_conn, remote, 'up'), (remote, local_conn, 'down')):
            thread = threading.Thread(target=pump, args=(src, dst), name=f"tunnel-pump-{direction}", daemon=True)
            with self._lock:
                self._relays.append(thread)
            thread.start()

    @property
    def active_relays(self) -> int:
        with self._lock:
            return len(self._pairs)

    def close(self):
        """Stop accepting, drain relays for a bounded time and close the session."""
        with self._lock:
            if self._closed:
                return
            self._closed = True

        logger.info("Closing SSH tunnel")
        self._stop.set()

        if self._listener is not None:
            _close_end(self._listener)
        if self._accept_thread is not None:
            self._accept_thread.join(timeout=ACCEPT_POLL_INTERVAL * 4)

        deadline = time.monotonic() + RELAY_GRACE_SECONDS
        with self._lock:
            relays = list(self._relays)
        for thread in relays:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            thread.join(timeout=remaining)

        with self._lock:
            pairs = list(self._pairs)
            self._pairs.clear()
        for local_conn, remote in pairs:
            _close_end(local_conn)
            _close_end(remote)

        self.session.close()

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


def _close_end(end):
    # shutdown wakes a thread blocked in recv on the same socket
    try:
        end.shutdown(socket.SHUT_RDWR)
    except (OSError, EOFError, paramiko.SSHException):
        pass
    try:
        end.close()
    except (OSError, EOFError, paramiko.SSHException):
        pass


def open_tunnel(
    endpoint,
    forward_host: str,
    forward_port: int,
    settle_seconds: float = 3.0,
    connect_timeout: int = 30,
) -> Tuple[Tuple[str, int], Callable[[], None]]:
    """
    Open a tunnel and return ((local_host, local_port), closer).

    The closer is idempotent.
    """
    tunnel = SSHTunnel(
        endpoint,
        forward_host,
        forward_port,
        settle_seconds=settle_seconds,
        connect_timeout=connect_timeout,
    )
    address = tunnel.open()
    return address, tunnel.close
