"""
FTPS Connector
==============
Explicit-TLS FTP listing and download with optional client certificates.
"""

from __future__ import annotations

import asyncio
import logging
import os
import ssl
import tempfile
from ftplib import FTP_TLS, all_errors, error_perm
from pathlib import PurePosixPath
from typing import Any, Optional

from ..exceptions import ConfigurationError, ConnectorError
from ..mime import guess_mime_type
from ..models.provider_config import FTPSSourceConfig
from .base import (
    AccessCredential,
    FetchedFile,
    ListResult,
    RemoteObject,
    SourceConnector,
    parse_remote_timestamp,
)

logger = logging.getLogger(__name__)


def parse_mlsd_modify(value: Optional[str]):
    """Parse an MLSD ``modify`` fact (YYYYMMDDHHMMSS[.sss], UTC)."""
    if not value:
        return None
    digits = value.split(".")[0]
    if len(digits) != 14 or not digits.isdigit():
        return None
    return parse_remote_timestamp(
        f"{digits[0:4]}-{digits[4:6]}-{digits[6:8]}T{digits[8:10]}:{digits[10:12]}:{digits[12:14]}+00:00"
    )


class FTPSConnector(SourceConnector):
    """FTPS connector for one source directory."""

    provider_name = "FTPS"

    def __init__(self, config: FTPSSourceConfig, timeout: float = 20.0):
        self.config = config
        self.timeout = timeout
        self._ftp: Optional[FTP_TLS] = None
        self._cert_files: list[str] = []

    async def list(self, secrets: dict[str, Any]) -> ListResult:
        loop = asyncio.get_event_loop()
        await loop.run_in_executor(None, self._sync_connect, secrets)
        objects = await loop.run_in_executor(None, self._list_directory, self.config.remote_path)
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

    def _build_ssl_context(self, secrets: dict[str, Any]) -> ssl.SSLContext:
        """TLS context with optional private CA and client certificate."""
        context = ssl.create_default_context(cadata=secrets.get("ca_cert_pem") or None)

        cert_pem = secrets.get("client_cert_pem")
        key_pem = secrets.get("client_key_pem")
        if cert_pem:
            # load_cert_chain only accepts file paths
            cert_path = self._write_temp_pem(cert_pem)
            key_path = self._write_temp_pem(key_pem) if key_pem else None
            context.load_cert_chain(cert_path, key_path)

        return context

    def _write_temp_pem(self, pem: str) -> str:
        fd, path = tempfile.mkstemp(suffix=".pem")
        with os.fdopen(fd, "w") as f:
            f.write(pem)
        self._cert_files.append(path)
        return path

    def _sync_connect(self, secrets: dict[str, Any]) -> None:
        if self._ftp is not None:
            return

        username = secrets.get("username")
        if not username:
            raise ConfigurationError("FTPS username is required")

        try:
            self._ftp = FTP_TLS(context=self._build_ssl_context(secrets), timeout=self.timeout)
            self._ftp.connect(self.config.host, self.config.port)
            self._ftp.login(username, secrets.get("password") or "")
            self._ftp.prot_p()
        except ssl.SSLError as e:
            self._sync_disconnect()
            raise ConnectorError(f"FTPS TLS negotiation with {self.config.host} failed: {e}") from e
        except all_errors as e:
            self._sync_disconnect()
            raise ConnectorError(f"FTPS connection to {self.config.host} failed: {e}") from e

        logger.info(f"Connected to FTPS server {self.config.host}")

    def _sync_disconnect(self) -> None:
        if self._ftp is not None:
            try:
                self._ftp.quit()
            except all_errors:
                self._ftp.close()
            self._ftp = None

        for path in self._cert_files:
            try:
                os.remove(path)
            except OSError:
                logger.debug(f"Could not remove temporary PEM {path}")
        self._cert_files = []

    def _list_directory(self, path: str) -> list[RemoteObject]:
        try:
            return self._list_mlsd(path)
        except error_perm as e:
            # 500/502: server has no MLSD
            if not str(e).startswith(("500", "502")):
                raise ConnectorError(f"Cannot list FTPS directory {path}: {e}") from e
        except all_errors as e:
            raise ConnectorError(f"Cannot list FTPS directory {path}: {e}") from e

        logger.debug(f"MLSD unsupported on {self.config.host}, falling back to NLST")
        try:
            return self._list_nlst(path)
        except all_errors as e:
            raise ConnectorError(f"Cannot list FTPS directory {path}: {e}") from e

    def _list_mlsd(self, path: str) -> list[RemoteObject]:
        objects = []
        for name, facts in self._ftp.mlsd(path, facts=["type", "size", "modify"]):
            if facts.get("type", "file") != "file":
                continue
            size = facts.get("size")
            objects.append(RemoteObject(
                name=name,
                remote_path=str(PurePosixPath(path or "/") / name),
                modified_at=parse_mlsd_modify(facts.get("modify")),
                size=int(size) if size and size.isdigit() else None,
            ))
        return objects

    def _list_nlst(self, path: str) -> list[RemoteObject]:
        objects = []
        self._ftp.voidcmd("TYPE I")
        for entry in self._ftp.nlst(path):
            name = PurePosixPath(entry).name
            full_path = str(PurePosixPath(path or "/") / name)
            try:
                size = self._ftp.size(full_path)
            except error_perm:
                # SIZE is refused for directories
                continue
            objects.append(RemoteObject(name=name, remote_path=full_path, size=size))
        return objects

    def _download_file(self, remote_path: str) -> bytes:
        chunks: list[bytes] = []
        try:
            self._ftp.retrbinary(f"RETR {remote_path}", chunks.append)
        except all_errors as e:
            raise ConnectorError(f"FTPS download of {remote_path} failed: {e}") from e
        return b"".join(chunks)
