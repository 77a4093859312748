"""
SFTP Connector
==============
Lists and downloads files from an SFTP directory over paramiko.
Blocking paramiko calls run in the default executor.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import io
import logging
import socket
import stat
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Any, Optional

import paramiko

from ..exceptions import ConfigurationError, ConnectorError
from ..mime import guess_mime_type
from ..models.provider_config import SFTPSourceConfig
from .base import AccessCredential, FetchedFile, ListResult, RemoteObject, SourceConnector

logger = logging.getLogger(__name__)


def join_remote_path(directory: str, name: str) -> str:
    """Join a remote directory and file name with POSIX separators."""
    return str(PurePosixPath(directory or "/") / name)


def host_key_matches(server_key: paramiko.PKey, expected: str) -> bool:
    """
    Compare a server key against a pinned fingerprint.

    Accepts a hex SHA-256 digest of the key blob or the OpenSSH
    ``SHA256:<base64>`` form.
    """
    digest = hashlib.sha256(server_key.asbytes()).digest()
    expected = expected.strip()
    if expected.startswith("SHA256:"):
        return base64.b64encode(digest).decode().rstrip("=") == expected[len("SHA256:"):].rstrip("=")
    return digest.hex() == expected.lower().replace(":", "")


class SFTPConnector(SourceConnector):
    """
    SFTP connector for one source directory.

    Features:
    - Password and PEM private-key authentication
    - Optional host key pinning
    - Non-recursive listing of regular files
    """

    provider_name = "SFTP"

    def __init__(self, config: SFTPSourceConfig, timeout: float = 20.0):
        self.config = config
        self.timeout = timeout
        self._transport: Optional[paramiko.Transport] = None
        self._sftp: Optional[paramiko.SFTPClient] = None

    async def list(self, secrets: dict[str, Any]) -> ListResult:
        loop = asyncio.get_event_loop()
        await loop.run_in_executor(None, self._sync_connect, secrets)
        objects = await loop.run_in_executor(None, self._scan_directory, self.config.remote_path)
        logger.info(f"Found {len(objects)} files on {self.config.host}:{self.config.remote_path}")
        return ListResult(credential=AccessCredential(secrets=secrets), objects=objects)

    async def download(self, obj: RemoteObject, credential: AccessCredential) -> FetchedFile:
        loop = asyncio.get_event_loop()
        await loop.run_in_executor(None, self._sync_connect, credential.secrets)
        content = await loop.run_in_executor(None, self._download_file, obj.remote_path)
        return FetchedFile(
            name=obj.name,
            content=content,
            mime_type=guess_mime_type(obj.name),
            remote=obj,
        )

    async def close(self) -> None:
        loop = asyncio.get_event_loop()
        await loop.run_in_executor(None, self._sync_disconnect)

    def _sync_connect(self, secrets: dict[str, Any]) -> None:
        """Synchronous connection establishment."""
        if self._sftp is not None:
            return

        username = secrets.get("username")
        if not username:
            raise ConfigurationError("SFTP username is required")

        try:
            sock = socket.create_connection((self.config.host, self.config.port), timeout=self.timeout)
            self._transport = paramiko.Transport(sock)
            self._transport.banner_timeout = self.timeout
            self._transport.auth_timeout = self.timeout
            self._transport.start_client(timeout=self.timeout)

            host_key = secrets.get("host_key")
            if host_key and not host_key_matches(self._transport.get_remote_server_key(), host_key):
                raise ConnectorError(f"SFTP host key mismatch for {self.config.host}")

            if secrets.get("private_key_pem"):
                key = self._load_private_key(secrets["private_key_pem"], secrets.get("passphrase"))
                self._transport.auth_publickey(username, key)
            elif secrets.get("password"):
                self._transport.auth_password(username, secrets["password"])
            else:
                raise ConfigurationError("SFTP password or private_key_pem is required")

            self._sftp = paramiko.SFTPClient.from_transport(self._transport)
            self._sftp.get_channel().settimeout(self.timeout)
        except (ConfigurationError, ConnectorError):
            self._sync_disconnect()
            raise
        except (paramiko.SSHException, OSError) as e:
            self._sync_disconnect()
            raise ConnectorError(f"SFTP connection to {self.config.host} failed: {e}") from e

        logger.info(f"Connected to SFTP server {self.config.host}")

    def _load_private_key(self, pem: str, passphrase: Optional[str]) -> paramiko.PKey:
        """Load a private key from PEM text."""
        key_classes = [
            paramiko.RSAKey,
            paramiko.Ed25519Key,
            paramiko.ECDSAKey,
        ]

        for key_class in key_classes:
            try:
                return key_class.from_private_key(io.StringIO(pem), password=passphrase)
            except (paramiko.SSHException, ValueError):
                continue

        raise ConfigurationError("Unable to load SFTP private key")

    def _sync_disconnect(self) -> None:
        """Synchronous disconnection."""
        if self._sftp:
            try:
                self._sftp.close()
            except (paramiko.SSHException, OSError) as e:
                logger.debug(f"Error closing SFTP client: {e}")
            self._sftp = None

        if self._transport:
            try:
                self._transport.close()
            except (paramiko.SSHException, OSError) as e:
                logger.debug(f"Error closing SFTP transport: {e}")
            self._transport = None

    def _scan_directory(self, path: str) -> list[RemoteObject]:
        """List regular files in one directory."""
        try:
            entries = self._sftp.listdir_attr(path)
        except (IOError, paramiko.SSHException) as e:
            raise ConnectorError(f"Cannot list SFTP directory {path}: {e}") from e

        objects = []
        for entry in entries:
            if entry.st_mode is not None and not stat.S_ISREG(entry.st_mode):
                continue

            modified_at = None
            if entry.st_mtime is not None:
                modified_at = datetime.fromtimestamp(entry.st_mtime, tz=timezone.utc).replace(tzinfo=None)

            objects.append(RemoteObject(
                name=entry.filename,
                remote_path=join_remote_path(path, entry.filename),
                modified_at=modified_at,
                size=entry.st_size,
            ))

        return objects

    def _download_file(self, remote_path: str) -> bytes:
        """Download a file into memory."""
        buffer = io.BytesIO()
        try:
            self._sftp.getfo(remote_path, buffer)
        except (IOError, paramiko.SSHException) as e:
            raise ConnectorError(f"SFTP download of {remote_path} failed: {e}") from e
        return buffer.getvalue()
