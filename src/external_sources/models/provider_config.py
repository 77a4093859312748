"""
Provider Configuration
======================
Tagged union of per-provider source configs, validated at the write boundary
and again when a run loads the stored JSON.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from ..exceptions import ConfigurationError


class SourceProvider(str, Enum):
    """Supported external providers."""
    SFTP = "SFTP"
    FTPS = "FTPS"
    GOOGLE_DRIVE = "GOOGLE_DRIVE"
    ONEDRIVE = "ONEDRIVE"

    @property
    def is_cloud_drive(self) -> bool:
        return self in (SourceProvider.GOOGLE_DRIVE, SourceProvider.ONEDRIVE)


DocumentType = Literal["invoice", "receipt", "bank_statement", "other"]


class _BaseSourceConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    file_glob: str = "**/*"
    document_type: Optional[DocumentType] = None
    bank_account_id: Optional[str] = None


class SFTPSourceConfig(_BaseSourceConfig):
    provider: Literal["SFTP"] = "SFTP"
    host: str = Field(min_length=1)
    port: int = Field(default=22, ge=1, le=65535)
    remote_path: str = "/"


class FTPSSourceConfig(_BaseSourceConfig):
    provider: Literal["FTPS"] = "FTPS"
    host: str = Field(min_length=1)
    port: int = Field(default=21, ge=1, le=65535)
    remote_path: str = "/"


class GoogleDriveSourceConfig(_BaseSourceConfig):
    provider: Literal["GOOGLE_DRIVE"] = "GOOGLE_DRIVE"
    folder_id: str = Field(min_length=1)


class OneDriveSourceConfig(_BaseSourceConfig):
    provider: Literal["ONEDRIVE"] = "ONEDRIVE"
    folder_id: str = Field(min_length=1)


SourceConfig = Annotated[
    Union[SFTPSourceConfig, FTPSSourceConfig, GoogleDriveSourceConfig, OneDriveSourceConfig],
    Field(discriminator="provider"),
]

_source_config_adapter: TypeAdapter = TypeAdapter(SourceConfig)


def _describe(exc: ValidationError) -> str:
    messages = []
    for error in exc.errors():
        field = ".".join(str(part) for part in error["loc"][1:]) or "config"
        if error["type"] == "missing":
            messages.append(f"{field} is required")
        else:
            messages.append(f"{field}: {error['msg']}")
    return "; ".join(messages)


def validate_source_config(provider: SourceProvider, raw: Optional[dict[str, Any]]) -> SourceConfig:
    """
    Validate a config blob against its provider variant.

    Raises pydantic.ValidationError; callers at the write boundary surface it
    as a request error.
    """
    payload = dict(raw or {})
    payload["provider"] = SourceProvider(provider).value
    return _source_config_adapter.validate_python(payload)


def load_source_config(provider: SourceProvider, raw: Optional[dict[str, Any]]) -> SourceConfig:
    """Parse a stored config for a run, raising ConfigurationError on missing fields."""
    try:
        return validate_source_config(provider, raw)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid {SourceProvider(provider).value} config: {_describe(e)}") from e


def dump_source_config(config: SourceConfig) -> dict[str, Any]:
    """Serialize a validated config for storage, without the discriminator."""
    return config.model_dump(mode="json", exclude={"provider"})
