"""API client for the Reserve America shopping cart"""

import time
from typing import Any, Dict, Optional, Tuple

import orjson
from curl_cffi import CurlError
from curl_cffi.requests import AsyncSession
from loguru import logger

from .classifier import classify_outcome
from .config import (
    ADD_ITEM_ENDPOINT,
    ADD_ITEM_HEADERS,
    CART_ENDPOINT,
    CART_HEADERS,
    DEFAULT_MAX_CONCURRENT,
    DEFAULT_REQUEST_TIMEOUT,
    IMPERSONATE,
)
from .exceptions import CartReadError
from .models import AttemptOutcome, AttemptRequest, CartSnapshot, Credentials, Decision


def build_add_item_headers(credentials: Credentials) -> Dict[str, str]:
    """Browser headers for the add-item POST, in captured order"""
    headers = dict(ADD_ITEM_HEADERS)
    headers["a1data"] = credentials.a1_data
    headers["authorization"] = credentials.id_token
    return headers


def build_cart_headers(credentials: Credentials) -> Dict[str, str]:
    """Browser headers for the cart GET, in captured order"""
    headers = dict(CART_HEADERS)
    headers["authorization"] = credentials.id_token
    headers["a1data"] = credentials.a1_data
    return headers


def encode_payload(request: AttemptRequest) -> bytes:
    """Compact JSON body, same bytes a browser's JSON.stringify produces"""
    return orjson.dumps(request.to_payload())


def parse_body(text: str) -> Dict[str, Any]:
    """Parse a response body, tolerating empty or non-JSON content"""
    if not text:
        return {}
    try:
        data = orjson.loads(text)
    except orjson.JSONDecodeError:
        logger.debug(f"   ← Non-JSON body: {text[:200]!r}")
        return {}
    return data if isinstance(data, dict) else {"data": data}


class RAApiClient:
    """
    Shopping cart client:
    - curl_cffi with Chrome TLS impersonation but no impersonated headers,
      so only the captured headers (which claim Chrome 141) go on the wire
    - One shared session so hundreds of attempts reuse connections
    - Transport failures reported as HTTP 000 outcomes, never raised
    """

    def __init__(
        self,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        max_clients: int = DEFAULT_MAX_CONCURRENT,
        impersonate: str = IMPERSONATE,
    ):
        """
        Initialize API client.

        Args:
            timeout: Per-request timeout in seconds
            max_clients: Connection pool size (match the concurrency cap)
            impersonate: curl_cffi browser fingerprint
        """
        self.timeout = timeout
        self.max_clients = max_clients
        self.impersonate = impersonate
        self._session: Optional[AsyncSession] = None

        logger.info(f"Cart client initialized with curl_cffi (impersonate: {self.impersonate})")

    async def __aenter__(self):
        # TLS fingerprint only; the captured headers are the whole header set
        self._session = AsyncSession(
            impersonate=self.impersonate,
            max_clients=self.max_clients,
            default_headers=False,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    @property
    def session(self) -> AsyncSession:
        if self._session is None:
            raise RuntimeError("RAApiClient used outside of 'async with'")
        return self._session

    async def add_item(self, request: AttemptRequest) -> AttemptOutcome:
        """POST one add-item attempt. Transport problems become HTTP 000."""
        headers = build_add_item_headers(request.credentials)
        body = encode_payload(request)

        start_time = time.time()
        try:
            response = await self.session.post(
                ADD_ITEM_ENDPOINT,
                data=body,
                headers=headers,
                timeout=self.timeout,
            )
        except (CurlError, TimeoutError, ConnectionError) as e:
            elapsed = time.time() - start_time
            logger.debug(f"   ← Transport failure after {elapsed:.2f}s: {e}")
            return AttemptOutcome(http_status=0, error=str(e) or type(e).__name__, response_time=elapsed)

        elapsed = time.time() - start_time
        text = response.text or ""
        outcome = AttemptOutcome(
            http_status=response.status_code,
            body=parse_body(text),
            text=text,
            response_time=elapsed,
        )
        logger.debug(f"   ← Response {outcome.http_status} ({elapsed:.2f}s)")

        if outcome.http_status == 400:
            logger.debug(f"   400 details - raw body: {text[:600]}")
            logger.debug(f"   400 details - payload sent: {body.decode()}")
            logger.debug(f"   400 details - token length: {len(request.credentials.id_token)}")

        return outcome

    async def get_cart(self, credentials: Credentials) -> CartSnapshot:
        """Read current cart holdings"""
        try:
            response = await self.session.get(
                CART_ENDPOINT,
                headers=build_cart_headers(credentials),
                timeout=self.timeout,
            )
        except (CurlError, TimeoutError, ConnectionError) as e:
            raise CartReadError(f"Cart request failed: {e}") from e

        if response.status_code != 200:
            raise CartReadError(
                f"Cart request returned HTTP {response.status_code}", status=response.status_code
            )

        try:
            body = orjson.loads(response.text or "")
        except orjson.JSONDecodeError as e:
            raise CartReadError(f"Cart response is not JSON: {e}", status=response.status_code) from e
        if not isinstance(body, dict):
            raise CartReadError("Cart response is not a JSON object", status=response.status_code)

        snapshot = CartSnapshot.from_body(body)
        logger.debug(
            f"   Cart: itemsCount={snapshot.items_count}, "
            f"addedItems={len(snapshot.added_items)}"
        )
        return snapshot

    async def probe_add_item(self, request: AttemptRequest) -> Tuple[AttemptOutcome, Decision]:
        """Send one add-item request and classify it (queue-mode preflight)"""
        logger.info(
            f"🔍 Probe: additem {request.target.arrival_date} "
            f"facility={request.target.facility_id} site={request.target.site_id}"
        )
        outcome = await self.add_item(request)
        decision = classify_outcome(outcome)
        logger.info(
            f"   Probe result: HTTP {outcome.http_status} → {decision.kind.value}"
            + (f" ({decision.server_message})" if decision.server_message else "")
        )
        return outcome, decision
