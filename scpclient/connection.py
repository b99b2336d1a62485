"""SSH connection lifecycle for scpclient.

Opens an authenticated paramiko transport and hands out one
:class:`~scpclient.session.ParamikoSession` per transfer.  Host keys are
checked against ``~/.ssh/known_hosts``; stored passwords live in the OS
keyring, never on disk.
"""

from __future__ import annotations

import getpass
import logging
import socket
import threading
from enum import Enum, auto
from pathlib import Path
from typing import Callable, Optional

import keyring
import keyring.errors
import paramiko

from scpclient.session import ParamikoSession

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

StateChangeCallback = Callable[["ConnectionState", Optional[str]], None]

_KEYRING_SERVICE = "scpclient"


# ---------------------------------------------------------------------------
# Custom exceptions
# ---------------------------------------------------------------------------


class UnknownHostError(Exception):
    """Raised when the remote host key is not in known_hosts.

    Carries the fingerprint and key so the caller can prompt the user and
    optionally save it to known_hosts via :func:`accept_host_key`.
    """

    def __init__(
        self,
        message: str,
        hostname: str = "",
        key_type: str = "",
        fingerprint: str = "",
        key: paramiko.PKey | None = None,
    ) -> None:
        """Initialise with optional host-key metadata."""
        super().__init__(message)
        self.hostname = hostname
        self.key_type = key_type
        self.fingerprint = fingerprint
        self.key = key


class ConnectionError(Exception):  # noqa: A001  (shadows built-in intentionally)
    """Raised when a session is requested from a client that is not connected."""


# ---------------------------------------------------------------------------
# Host-key policy
# ---------------------------------------------------------------------------


class _CapturingPolicy(paramiko.MissingHostKeyPolicy):
    """Raises UnknownHostError with fingerprint info instead of silently rejecting."""

    def missing_host_key(
        self,
        client: paramiko.SSHClient,
        hostname: str,
        key: paramiko.PKey,
    ) -> None:
        """Capture fingerprint and raise :exc:`UnknownHostError`."""
        fingerprint = ":".join(f"{b:02x}" for b in key.get_fingerprint())
        raise UnknownHostError(
            f"Host '{hostname}' is not in known_hosts.\n"
            f"Key type: {key.get_name()}\n"
            f"Fingerprint (MD5): {fingerprint}",
            hostname=hostname,
            key_type=key.get_name(),
            fingerprint=fingerprint,
            key=key,
        )


def _close_client_safely(client: paramiko.SSHClient) -> None:
    """Close *client*, ignoring errors from an already-dead socket."""
    try:
        client.close()
    except Exception:
        pass


def accept_host_key(hostname: str, key: paramiko.PKey, known_hosts: Path | None = None) -> None:
    """Append *key* for *hostname* to the known_hosts file and save.

    Creates the file and its directory if they do not exist.
    """
    known_hosts_path = known_hosts or Path.home() / ".ssh" / "known_hosts"
    known_hosts_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

    host_keys = paramiko.HostKeys(str(known_hosts_path)) if known_hosts_path.exists() else paramiko.HostKeys()
    host_keys.add(hostname, key.get_name(), key)
    host_keys.save(str(known_hosts_path))
    logger.info("Saved host key for %s to %s", hostname, known_hosts_path)


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class ConnectionState(Enum):
    """States for the SSH connection lifecycle."""

    DISCONNECTED = auto()
    CONNECTING = auto()
    CONNECTED = auto()
    ERROR = auto()


class SSHConnection:
    """Manages one authenticated SSH connection.

    Thread-safety: ``_lock`` protects state transitions; :meth:`open_session`
    may be called from any thread, each call yields an independent channel.
    """

    def __init__(
        self,
        host: str,
        port: int = 22,
        username: str | None = None,
        auth_type: str = "agent",
        key_path: str | None = None,
        password: str | None = None,
        connect_timeout: float = 15.0,
        keepalive_interval: int = 30,
        known_hosts: Path | None = None,
        on_state_change: StateChangeCallback | None = None,
    ) -> None:
        """Initialise connection parameters (does NOT connect yet).

        Args:
            host: Hostname or IP of the remote server.
            port: SSH port (default 22).
            username: SSH username; paramiko falls back to the local user.
            auth_type: ``"password"``, ``"key"`` or ``"agent"``.
            key_path: Private key file (used when auth_type="key").
            password: Explicit password; when omitted the keyring is consulted.
            connect_timeout: Seconds allowed for the TCP connect and SSH handshake.
            keepalive_interval: Seconds between transport keepalives, 0 to disable.
            known_hosts: Alternate known_hosts file.
            on_state_change: Called with ``(new_state, optional_message)``.
        """
        self.host = host
        self.port = port
        self.username = username
        self.auth_type = auth_type
        self.key_path = key_path
        self.connect_timeout = connect_timeout
        self.keepalive_interval = keepalive_interval
        self.known_hosts = known_hosts or Path.home() / ".ssh" / "known_hosts"
        self._password = password
        self._on_state_change = on_state_change

        self._client: paramiko.SSHClient | None = None
        self._state = ConnectionState.DISCONNECTED
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # State management
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        """Current connection state (thread-safe read)."""
        with self._lock:
            return self._state

    def _set_state(self, new_state: ConnectionState, message: str | None = None) -> None:
        """Update state and fire the state-change callback (must hold lock)."""
        self._state = new_state
        logger.debug(
            "Connection state → %s%s",
            new_state.name,
            f" ({message})" if message else "",
        )
        if self._on_state_change:
            try:
                self._on_state_change(new_state, message)
            except Exception:
                logger.exception("Exception in on_state_change callback")

    # ------------------------------------------------------------------
    # Connect / disconnect
    # ------------------------------------------------------------------

    def connect(self) -> None:
        """Establish the SSH connection.

        Raises:
            UnknownHostError: Host key is not in known_hosts (carries fingerprint).
            paramiko.AuthenticationException: Wrong credentials.
            socket.timeout: Connection timed out.
            OSError: Network-level failure.
        """
        with self._lock:
            if self._state in (ConnectionState.CONNECTED, ConnectionState.CONNECTING):
                logger.debug("connect() called but already %s", self._state.name)
                return
            self._set_state(ConnectionState.CONNECTING)

        try:
            self._do_connect()
        except Exception as exc:
            with self._lock:
                self._set_state(ConnectionState.ERROR, str(exc))
            raise

    def _connect_kwargs(self) -> dict:
        connect_kwargs: dict = {
            "hostname": self.host,
            "port": self.port,
            "username": self.username,
            "timeout": self.connect_timeout,
            "allow_agent": self.auth_type == "agent",
            "look_for_keys": self.auth_type in ("agent", "key"),
        }

        if self.auth_type == "password":
            password = self._password or keyring.get_password(_KEYRING_SERVICE, self._profile_key)
            if password:
                connect_kwargs["password"] = password
        elif self.auth_type == "key" and self.key_path:
            connect_kwargs["key_filename"] = self.key_path
            if self._password:
                connect_kwargs["passphrase"] = self._password
        return connect_kwargs

    def _do_connect(self) -> None:
        """Internal connection logic — called without holding the lock."""
        logger.info("Connecting to %s@%s:%d", self.username or "", self.host, self.port)

        client = paramiko.SSHClient()
        if self.known_hosts.exists():
            client.load_host_keys(str(self.known_hosts))
        client.set_missing_host_key_policy(_CapturingPolicy())

        try:
            client.connect(**self._connect_kwargs())
        except UnknownHostError:
            _close_client_safely(client)
            raise
        except paramiko.BadHostKeyException as exc:
            _close_client_safely(client)
            raise UnknownHostError(
                f"Host key mismatch for {self.host} — check {self.known_hosts}",
                hostname=self.host,
            ) from exc
        except (paramiko.SSHException, socket.timeout, OSError):
            _close_client_safely(client)
            raise

        transport = client.get_transport()
        if transport and self.keepalive_interval:
            transport.set_keepalive(self.keepalive_interval)

        with self._lock:
            self._client = client
            self._set_state(ConnectionState.CONNECTED)
        logger.info("Connected to %s", self.host)

    def disconnect(self) -> None:
        """Close the SSH connection."""
        with self._lock:
            if self._client:
                _close_client_safely(self._client)
                self._client = None
            self._set_state(ConnectionState.DISCONNECTED)
        logger.info("Disconnected from %s", self.host)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def get_transport(self) -> paramiko.Transport:
        """Return the underlying paramiko Transport.

        Raises:
            ConnectionError: If not currently connected.
        """
        with self._lock:
            if self._client is None or self._state != ConnectionState.CONNECTED:
                raise ConnectionError(
                    f"Not connected to {self.host} (state: {self._state.name})"
                )
            transport = self._client.get_transport()
            if transport is None or not transport.is_active():
                raise ConnectionError("SSH transport unavailable")
            return transport

    def open_session(self) -> ParamikoSession:
        """Open a fresh command channel for one transfer."""
        return ParamikoSession.open(self.get_transport())

    # ------------------------------------------------------------------
    # Credential helpers
    # ------------------------------------------------------------------

    @property
    def _profile_key(self) -> str:
        """Keyring account key for this connection (user@host)."""
        return f"{self.username or getpass.getuser()}@{self.host}"

    def store_password(self, password: str) -> None:
        """Store *password* in the OS keyring for this connection."""
        keyring.set_password(_KEYRING_SERVICE, self._profile_key, password)
        logger.debug("Password stored in keyring for %s", self._profile_key)

    def delete_password(self) -> None:
        """Remove the stored password from the OS keyring."""
        try:
            keyring.delete_password(_KEYRING_SERVICE, self._profile_key)
        except keyring.errors.PasswordDeleteError:
            pass
        logger.debug("Password deleted from keyring for %s", self._profile_key)
