import orjson
import pytest
from curl_cffi import CurlError

import ra_booker.api_client as api_client
from ra_booker.api_client import RAApiClient, build_add_item_headers, parse_body
from ra_booker.config import ADD_ITEM_HEADERS, CART_HEADERS
from ra_booker.exceptions import CartReadError
from ra_booker.models import AttemptRequest, BookingTarget, Credentials, DecisionKind

CREDS = Credentials("jwt-token", '{"a1":1}')
REQUEST = AttemptRequest(target=BookingTarget("NY", "140", "245719", "2026-05-17", 1), credentials=CREDS)


class FakeResponse:
    def __init__(self, status_code, text=""):
        self.status_code = status_code
        self.text = text


class FakeSession:
    """Stands in for curl_cffi AsyncSession; replays queued responses"""

    instances = []

    def __init__(self, *args, **kwargs):
        self.kwargs = kwargs
        self.responses = []
        self.calls = []
        self.closed = False
        FakeSession.instances.append(self)

    async def post(self, url, data=None, headers=None, timeout=None):
        self.calls.append(("POST", url, data, headers))
        return self._next()

    async def get(self, url, headers=None, timeout=None):
        self.calls.append(("GET", url, None, headers))
        return self._next()

    def _next(self):
        result = self.responses.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    async def close(self):
        self.closed = True


@pytest.fixture
def fake_session(monkeypatch):
    FakeSession.instances = []
    monkeypatch.setattr(api_client, "AsyncSession", FakeSession)
    return FakeSession


def test_headers_carry_credentials_in_captured_order():
    headers = build_add_item_headers(CREDS)
    assert headers["authorization"] == "jwt-token"
    assert headers["a1data"] == '{"a1":1}'
    assert list(headers)[0] == "a1data"


def test_parse_body_tolerates_garbage():
    assert parse_body("") == {}
    assert parse_body("<html>") == {}
    assert parse_body("[1, 2]") == {"data": [1, 2]}
    assert parse_body('{"ok": true}') == {"ok": True}


@pytest.mark.asyncio
async def test_add_item_posts_compact_payload(fake_session):
    async with RAApiClient(max_clients=5) as client:
        session = fake_session.instances[0]
        session.responses.append(FakeResponse(200, '{"itemsCount": 1}'))
        outcome = await client.add_item(REQUEST)

    assert session.closed
    assert session.kwargs["max_clients"] == 5
    method, url, data, headers = session.calls[0]
    assert method == "POST"
    assert url.endswith("/shoppingcart/0/additem")
    assert orjson.loads(data) == REQUEST.to_payload()
    assert b" " not in data
    assert outcome.http_status == 200
    assert outcome.body == {"itemsCount": 1}


@pytest.mark.asyncio
async def test_only_captured_headers_are_sent(fake_session):
    async with RAApiClient() as client:
        session = fake_session.instances[0]
        session.responses.append(FakeResponse(200, "{}"))
        session.responses.append(FakeResponse(200, '{"itemsCount": 0}'))
        await client.add_item(REQUEST)
        await client.get_cart(CREDS)

    assert session.kwargs["impersonate"] == "chrome"
    assert session.kwargs["default_headers"] is False
    (_, _, _, post_headers), (_, _, _, get_headers) = session.calls
    assert list(post_headers) == list(ADD_ITEM_HEADERS)
    assert list(get_headers) == list(CART_HEADERS)


@pytest.mark.asyncio
async def test_add_item_transport_error_is_status_zero(fake_session):
    async with RAApiClient() as client:
        fake_session.instances[0].responses.append(CurlError("Connection reset by peer"))
        outcome = await client.add_item(REQUEST)
    assert outcome.http_status == 0
    assert outcome.is_transport_failure
    assert "Connection reset" in outcome.error


@pytest.mark.asyncio
async def test_add_item_keeps_non_json_text(fake_session):
    async with RAApiClient() as client:
        fake_session.instances[0].responses.append(FakeResponse(503, "Service Unavailable"))
        outcome = await client.add_item(REQUEST)
    assert outcome.body == {}
    assert outcome.text == "Service Unavailable"
    assert outcome.server_message == "Service Unavailable"


@pytest.mark.asyncio
async def test_get_cart_snapshot(fake_session):
    body = {"itemsCount": 2, "lastChanges": {"addedItems": [{"siteID": "245719"}, "junk"]}}
    async with RAApiClient() as client:
        fake_session.instances[0].responses.append(FakeResponse(200, orjson.dumps(body).decode()))
        snapshot = await client.get_cart(CREDS)
    assert snapshot.items_count == 2
    assert snapshot.added_items == ({"siteID": "245719"},)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [FakeResponse(401, ""), FakeResponse(200, "<html>"), FakeResponse(200, "[]"), CurlError("timeout")],
)
async def test_get_cart_failures_raise(fake_session, response):
    async with RAApiClient() as client:
        fake_session.instances[0].responses.append(response)
        with pytest.raises(CartReadError):
            await client.get_cart(CREDS)


@pytest.mark.asyncio
async def test_probe_classifies(fake_session):
    body = {"faults": [{"msgKey": "R1-V-100017.error", "defaultMessage": "within 9 Months"}]}
    async with RAApiClient() as client:
        fake_session.instances[0].responses.append(FakeResponse(417, orjson.dumps(body).decode()))
        outcome, decision = await client.probe_add_item(REQUEST)
    assert outcome.http_status == 417
    assert decision.kind is DecisionKind.TERMINAL_ERROR


def test_session_outside_context_raises():
    with pytest.raises(RuntimeError):
        RAApiClient().session
