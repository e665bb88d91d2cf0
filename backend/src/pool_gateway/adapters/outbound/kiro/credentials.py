"""Kiro OAuth credential documents.

A credential is either a JSON file on disk (refreshed tokens are written
back) or a base64-encoded JSON blob supplied inline (kept in memory only).
"""

from __future__ import annotations

import asyncio
import base64
import binascii
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import orjson
import structlog

from pool_gateway.domain.exceptions import GatewayError
from pool_gateway.shared.providers.types import CredentialKind, CredentialRef, utcnow

logger = structlog.get_logger(__name__)

AUTH_METHOD_SOCIAL = "social"
AUTH_METHOD_IDC = "IdC"
DEFAULT_REGION = "us-east-1"


class CredentialError(GatewayError):
    """The credential document is missing or unreadable."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="CREDENTIAL_ERROR")


def _parse_expiry(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    if isinstance(value, (int, float)):
        # Epoch milliseconds
        return datetime.fromtimestamp(value / 1000, timezone.utc)
    text = str(value).replace("Z", "+00:00")
    parsed = datetime.fromisoformat(text)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class KiroCredentials:
    access_token: str | None = None
    refresh_token: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    auth_method: str = AUTH_METHOD_SOCIAL
    expires_at: datetime | None = None
    profile_arn: str | None = None
    region: str = DEFAULT_REGION

    @property
    def is_social(self) -> bool:
        return self.auth_method == AUTH_METHOD_SOCIAL

    def expires_within(self, window: timedelta, *, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return self.access_token is None
        return self.expires_at <= (now or utcnow()) + window

    def refreshed(
        self,
        *,
        access_token: str,
        refresh_token: str | None,
        profile_arn: str | None,
        expires_at: datetime,
    ) -> KiroCredentials:
        return replace(
            self,
            access_token=access_token,
            refresh_token=refresh_token or self.refresh_token,
            profile_arn=profile_arn or self.profile_arn,
            expires_at=expires_at,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any], *, default_region: str = DEFAULT_REGION) -> KiroCredentials:
        return cls(
            access_token=data.get("accessToken"),
            refresh_token=data.get("refreshToken"),
            client_id=data.get("clientId"),
            client_secret=data.get("clientSecret"),
            auth_method=data.get("authMethod") or AUTH_METHOD_SOCIAL,
            expires_at=_parse_expiry(data.get("expiresAt")),
            profile_arn=data.get("profileArn"),
            region=data.get("region") or default_region,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "clientId": self.client_id,
            "clientSecret": self.client_secret,
            "authMethod": self.auth_method,
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
            "profileArn": self.profile_arn,
            "region": self.region,
        }
        return {k: v for k, v in data.items() if v is not None}


def decode_base64_credentials(blob: str) -> dict[str, Any]:
    try:
        data = orjson.loads(base64.b64decode(blob, validate=False))
    except (binascii.Error, orjson.JSONDecodeError, ValueError) as exc:
        raise CredentialError(f"Invalid base64 credential blob: {exc}") from exc
    if not isinstance(data, dict):
        raise CredentialError("Base64 credential blob must decode to a JSON object")
    return data


def _read_json(path: Path) -> dict[str, Any]:
    try:
        data = orjson.loads(path.read_bytes())
    except FileNotFoundError as exc:
        raise CredentialError(f"Credential file not found: {path}") from exc
    except orjson.JSONDecodeError as exc:
        raise CredentialError(f"Credential file is not valid JSON: {path}") from exc
    if not isinstance(data, dict):
        raise CredentialError(f"Credential file must hold a JSON object: {path}")
    return data


def _merge_write(path: Path, updates: dict[str, Any]) -> None:
    # Keep fields we do not manage (e.g. clientIdHash)
    existing: dict[str, Any] = {}
    if path.exists():
        try:
            loaded = orjson.loads(path.read_bytes())
            if isinstance(loaded, dict):
                existing = loaded
        except orjson.JSONDecodeError:
            logger.warning("credential_file_unparseable_overwriting", path=str(path))
    existing.update(updates)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_bytes(orjson.dumps(existing, option=orjson.OPT_INDENT_2))
    tmp.replace(path)


async def load_credentials(ref: CredentialRef, *, default_region: str = DEFAULT_REGION) -> KiroCredentials:
    if ref.kind == CredentialKind.FILE:
        data = await asyncio.to_thread(_read_json, Path(ref.value))
    elif ref.kind == CredentialKind.INLINE:
        data = decode_base64_credentials(ref.value)
    else:
        raise CredentialError(f"Kiro instances need an OAuth credential, not {ref.kind.value}")
    return KiroCredentials.from_dict(data, default_region=default_region)


async def save_credentials(ref: CredentialRef, creds: KiroCredentials) -> None:
    """Write refreshed tokens back to the credential file; inline blobs are not persisted."""
    if ref.kind != CredentialKind.FILE:
        return
    updates: dict[str, Any] = {
        "accessToken": creds.access_token,
        "refreshToken": creds.refresh_token,
        "expiresAt": creds.expires_at.isoformat() if creds.expires_at else None,
    }
    if creds.profile_arn:
        updates["profileArn"] = creds.profile_arn
    await asyncio.to_thread(_merge_write, Path(ref.value), updates)
