"""Credential providers: where idToken and a1Data come from"""

import base64
import binascii
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import unquote

import orjson
from loguru import logger

from .config import A1_DATA_COOKIE, ID_TOKEN_COOKIE
from .exceptions import CredentialsMissingError
from .models import Credentials


def normalize_a1_data(value: str) -> str:
    """URL-decode a1Data when the browser stored it percent-encoded"""
    value = (value or "").replace("\r", "").replace("\n", "")
    if "%7B" in value.upper() or "%7D" in value.upper():
        return unquote(value)
    return value


class CredentialProvider(ABC):
    """Supplies the current session material. Read once per session start."""

    @abstractmethod
    async def get_credentials(self) -> Credentials:
        ...


class StaticCredentialProvider(CredentialProvider):
    """Credentials passed in directly (CLI flags, tests)"""

    def __init__(self, id_token: str, a1_data: str):
        self.id_token = id_token
        self.a1_data = a1_data

    async def get_credentials(self) -> Credentials:
        if not self.id_token or not self.a1_data:
            raise CredentialsMissingError("Missing auth cookies (idToken/a1Data)")
        return Credentials(id_token=self.id_token.strip(), a1_data=normalize_a1_data(self.a1_data))


class CookieFileCredentialProvider(CredentialProvider):
    """
    Reads idToken and a1Data from a cookie export on every call.

    Accepts either a ``{"name": "value"}`` mapping or the list of cookie
    records most browser extensions export (``[{"name": ..., "value": ...}]``).
    The file is re-read each time so a fresh browser login is picked up
    by the next session without restarting.
    """

    def __init__(self, cookie_file: Path):
        self.cookie_file = cookie_file
        logger.info(f"Credential provider initialized: {cookie_file}")

    def _load_cookies(self) -> Dict[str, str]:
        if not self.cookie_file.exists():
            raise CredentialsMissingError(f"Cookie file not found: {self.cookie_file}")

        try:
            data = orjson.loads(self.cookie_file.read_bytes())
        except orjson.JSONDecodeError as e:
            raise CredentialsMissingError(f"Cookie file is not valid JSON: {e}") from e

        if isinstance(data, dict):
            return {str(k): str(v) for k, v in data.items() if v is not None}
        if isinstance(data, list):
            cookies = {}
            for record in data:
                if isinstance(record, dict) and "name" in record:
                    cookies[str(record["name"])] = str(record.get("value") or "")
            return cookies
        raise CredentialsMissingError(f"Unrecognised cookie file layout in {self.cookie_file}")

    async def get_credentials(self) -> Credentials:
        cookies = self._load_cookies()
        id_token = cookies.get(ID_TOKEN_COOKIE, "").strip()
        a1_data = cookies.get(A1_DATA_COOKIE, "")
        if not id_token or not a1_data:
            missing = [n for n, v in ((ID_TOKEN_COOKIE, id_token), (A1_DATA_COOKIE, a1_data)) if not v]
            raise CredentialsMissingError(f"Missing auth cookies: {', '.join(missing)}")
        logger.debug(f"Loaded credentials from {self.cookie_file} (token length {len(id_token)})")
        return Credentials(id_token=id_token, a1_data=normalize_a1_data(a1_data))


@dataclass(frozen=True)
class CredentialCheck:
    """Local sanity check of the session material"""

    token_valid: bool
    a1_valid: bool
    expires_at: Optional[datetime] = None

    @property
    def ok(self) -> bool:
        return self.token_valid and self.a1_valid


def decode_jwt_payload(token: str) -> Optional[Dict[str, Any]]:
    """Decode the (unverified) payload segment of a JWT"""
    parts = token.split(".")
    if len(parts) < 2:
        return None
    segment = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        payload = orjson.loads(base64.urlsafe_b64decode(segment))
    except (binascii.Error, ValueError):
        return None
    return payload if isinstance(payload, dict) else None


def inspect_credentials(credentials: Credentials, now: Optional[datetime] = None) -> CredentialCheck:
    """
    Check the token is an unexpired JWT and a1Data parses as JSON.

    Nothing is verified against the server; this only catches stale or
    truncated cookies before a session burns its first requests on 401s.
    """
    now = now or datetime.now(timezone.utc)

    payload = decode_jwt_payload(credentials.id_token)
    expires_at = None
    token_valid = payload is not None
    if payload is not None and payload.get("exp"):
        try:
            expires_at = datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError):
            token_valid = False
        else:
            token_valid = expires_at > now

    try:
        a1_valid = isinstance(orjson.loads(credentials.a1_data), dict)
    except orjson.JSONDecodeError:
        a1_valid = False

    return CredentialCheck(token_valid=token_valid, a1_valid=a1_valid, expires_at=expires_at)
