"""
Connector Base
==============
Shared polling contract implemented by every provider connector.
"""

from __future__ import annotations

import fnmatch
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

logger = logging.getLogger(__name__)

DEFAULT_GLOB = "**/*"


@dataclass
class RemoteObject:
    """A file found on a remote provider."""
    name: str
    remote_path: Optional[str] = None
    remote_id: Optional[str] = None
    modified_at: Optional[datetime] = None
    size: Optional[int] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def identity(self) -> str:
        return self.remote_id if self.remote_id is not None else (self.remote_path or "")


@dataclass
class AccessCredential:
    """
    Credential handed back by ``list``.

    ``secrets`` is the long-lived blob (possibly with a rotated refresh
    token); the access token is short-lived and never persisted.
    """
    secrets: dict[str, Any]
    access_token: Optional[str] = None
    expires_at: Optional[datetime] = None


@dataclass
class ListResult:
    """Listing plus the credential to use for downloads."""
    credential: AccessCredential
    objects: list[RemoteObject]


@dataclass
class FetchedFile:
    """Downloaded bytes ready for the import pipeline."""
    name: str
    content: bytes
    mime_type: str
    remote: Optional[RemoteObject] = None


def parse_remote_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 or epoch timestamp to naive UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        parsed = datetime.fromtimestamp(value, tz=timezone.utc)
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            logger.debug(f"Unparseable remote timestamp: {value!r}")
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def matches_glob(filename: str, pattern: Optional[str]) -> bool:
    """
    Case-insensitive glob match on a file name.

    Leading ``**/`` segments match zero or more directories, so the default
    ``**/*`` matches every name.
    """
    pattern = pattern or DEFAULT_GLOB
    while pattern.startswith("**/"):
        pattern = pattern[3:]
    if pattern in ("", "**"):
        pattern = "*"
    return fnmatch.fnmatch(filename.lower(), pattern.lower())


def select_candidates(objects: list[RemoteObject], pattern: Optional[str], limit: int) -> list[RemoteObject]:
    """Filter by glob first, then cap to the batch limit, keeping listing order."""
    matching = [obj for obj in objects if matches_glob(obj.name, pattern)]
    return matching[:max(0, limit)]


class SourceConnector(ABC):
    """
    Abstract base for provider connectors.

    A connector is built per run from the validated source config. It keeps
    no state beyond the credential it is handed and a transport handle that
    lives until :meth:`close`; renewed credentials are returned, never stored.
    """

    provider_name: str = ""

    @abstractmethod
    async def list(self, secrets: dict[str, Any]) -> ListResult:
        """List plain files at the configured location."""
        pass

    @abstractmethod
    async def download(self, obj: RemoteObject, credential: AccessCredential) -> FetchedFile:
        """Download one listed object."""
        pass

    async def close(self) -> None:
        """Release transport resources."""
        return None

    async def __aenter__(self) -> "SourceConnector":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
