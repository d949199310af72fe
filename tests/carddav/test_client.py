"""Tests for cardsync.carddav.client against an httpx.MockTransport server."""

from __future__ import annotations

import base64

import httpx
import pytest

from cardsync.carddav.client import (
    AddressBook,
    CardDavClient,
    RemoteVCard,
    client_for_connection,
    verify_connection,
)
from cardsync.carddav.retry import RetryPolicy
from cardsync.errors import (
    CardDavNetworkError,
    CardDavProtocolError,
    CardDavRequestError,
    UnsafeServerUrlError,
)
from cardsync.models import CardDavConnection

pytestmark = pytest.mark.unit

SERVER = "https://dav.example.com"
BOOK = f"{SERVER}/addressbooks/alice/contacts/"

PRINCIPAL_XML = """<?xml version="1.0"?>
<d:multistatus xmlns:d="DAV:">
  <d:response>
    <d:href>/</d:href>
    <d:propstat>
      <d:prop><d:current-user-principal><d:href>/principals/alice/</d:href>
      </d:current-user-principal></d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
  </d:response>
</d:multistatus>"""

HOME_SET_XML = """<?xml version="1.0"?>
<d:multistatus xmlns:d="DAV:" xmlns:card="urn:ietf:params:xml:ns:carddav">
  <d:response>
    <d:href>/principals/alice/</d:href>
    <d:propstat>
      <d:prop><card:addressbook-home-set><d:href>/addressbooks/alice/</d:href>
      </card:addressbook-home-set></d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
  </d:response>
</d:multistatus>"""

BOOKS_XML = """<?xml version="1.0"?>
<d:multistatus xmlns:d="DAV:" xmlns:card="urn:ietf:params:xml:ns:carddav"
               xmlns:cs="http://calendarserver.org/ns/">
  <d:response>
    <d:href>/addressbooks/alice/</d:href>
    <d:propstat>
      <d:prop><d:resourcetype><d:collection/></d:resourcetype></d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
  </d:response>
  <d:response>
    <d:href>/addressbooks/alice/contacts</d:href>
    <d:propstat>
      <d:prop>
        <d:resourcetype><d:collection/><card:addressbook/></d:resourcetype>
        <d:displayname>Contacts</d:displayname>
        <card:addressbook-description>Personal</card:addressbook-description>
        <cs:getctag>ctag-7</cs:getctag>
        <d:sync-token>token-3</d:sync-token>
      </d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
  </d:response>
</d:multistatus>"""

REPORT_XML = """<?xml version="1.0"?>
<d:multistatus xmlns:d="DAV:" xmlns:card="urn:ietf:params:xml:ns:carddav">
  <d:response>
    <d:href>/addressbooks/alice/contacts/ada.vcf</d:href>
    <d:propstat>
      <d:prop>
        <d:getetag>"e1"</d:getetag>
        <card:address-data>BEGIN:VCARD
VERSION:3.0
UID:ada
FN:Ada Lovelace
END:VCARD
</card:address-data>
      </d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
  </d:response>
  <d:response>
    <d:href>/addressbooks/alice/contacts/empty.vcf</d:href>
    <d:propstat>
      <d:prop><d:getetag>"e2"</d:getetag><card:address-data/></d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
  </d:response>
  <d:response>
    <d:href>/addressbooks/alice/contacts/gone.vcf</d:href>
    <d:propstat>
      <d:prop><d:getetag/></d:prop>
      <d:status>HTTP/1.1 404 Not Found</d:status>
    </d:propstat>
  </d:response>
</d:multistatus>"""

LISTING_XML = """<?xml version="1.0"?>
<d:multistatus xmlns:d="DAV:">
  <d:response>
    <d:href>/addressbooks/alice/contacts/</d:href>
    <d:propstat>
      <d:prop><d:resourcetype><d:collection/></d:resourcetype></d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
  </d:response>
  <d:response>
    <d:href>/addressbooks/alice/contacts/grace.vcf</d:href>
    <d:propstat>
      <d:prop><d:getetag>"listed"</d:getetag><d:resourcetype/></d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
  </d:response>
</d:multistatus>"""


class _Server:
    """Scripted CardDAV server recording every request."""

    def __init__(self, handler=None) -> None:
        self.requests: list[httpx.Request] = []
        self._handler = handler or self.default

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self._handler(request)

    @staticmethod
    def default(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if request.method == "PROPFIND":
            if path == "/":
                return httpx.Response(207, text=PRINCIPAL_XML)
            if path == "/principals/alice/":
                return httpx.Response(207, text=HOME_SET_XML)
            if path == "/addressbooks/alice/":
                return httpx.Response(207, text=BOOKS_XML)
        if request.method == "REPORT":
            return httpx.Response(207, text=REPORT_XML)
        return httpx.Response(404, text="Not Found")


class _Sleeps:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _client(server: _Server, *, sleeps: _Sleeps | None = None, **kwargs) -> CardDavClient:
    return CardDavClient(
        server_url=f"{SERVER}/",
        username="alice",
        password="s3cret",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(server)),
        sleep=sleeps or _Sleeps(),
        **kwargs,
    )


class TestDiscovery:
    async def test_fetch_address_books(self):
        server = _Server()

        books = await _client(server).fetch_address_books()

        assert books == [
            AddressBook(
                url=BOOK,
                display_name="Contacts",
                description="Personal",
                ctag="ctag-7",
                sync_token="token-3",
            )
        ]
        assert [(r.method, r.url.path, r.headers["Depth"]) for r in server.requests] == [
            ("PROPFIND", "/", "0"),
            ("PROPFIND", "/principals/alice/", "0"),
            ("PROPFIND", "/addressbooks/alice/", "1"),
        ]

    async def test_basic_auth_header(self):
        server = _Server()

        await _client(server).fetch_address_books()

        expected = "Basic " + base64.b64encode(b"alice:s3cret").decode()
        assert all(r.headers["Authorization"] == expected for r in server.requests)

    async def test_missing_principal_falls_back_to_server_url(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/" and b"current-user-principal" in request.content:
                return httpx.Response(207, text='<d:multistatus xmlns:d="DAV:"/>')
            if request.url.path == "/" and b"addressbook-home-set" in request.content:
                return httpx.Response(207, text=HOME_SET_XML)
            return _Server.default(request)

        books = await _client(_Server(handler)).fetch_address_books()

        assert [book.url for book in books] == [BOOK]

    async def test_invalid_xml_is_protocol_error(self):
        server = _Server(lambda request: httpx.Response(207, text="<not-xml"))
        with pytest.raises(CardDavProtocolError):
            await _client(server).fetch_address_books()

    async def test_auth_failure_is_not_retried(self):
        sleeps = _Sleeps()
        server = _Server(lambda request: httpx.Response(401, text="Unauthorized"))

        with pytest.raises(CardDavRequestError) as exc_info:
            await _client(server, sleeps=sleeps).fetch_address_books()

        assert exc_info.value.status_code == 401
        assert len(server.requests) == 1
        assert sleeps.delays == []


class TestFetchVCards:
    async def test_addressbook_query_report(self):
        server = _Server()

        cards = await _client(server).fetch_vcards(AddressBook(url=BOOK))

        assert len(cards) == 1
        assert cards[0].url == f"{BOOK}ada.vcf"
        assert cards[0].etag == '"e1"'
        assert "UID:ada" in cards[0].data
        assert server.requests[0].method == "REPORT"
        assert server.requests[0].headers["Depth"] == "1"

    async def test_falls_back_to_propfind_and_get(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "REPORT":
                return httpx.Response(405, text="Method Not Allowed")
            if request.method == "PROPFIND":
                return httpx.Response(207, text=LISTING_XML)
            if request.method == "GET":
                return httpx.Response(
                    200,
                    text="BEGIN:VCARD\r\nVERSION:3.0\r\nUID:grace\r\nEND:VCARD\r\n",
                    headers={"ETag": '"fresh"'},
                )
            return httpx.Response(500)

        server = _Server(handler)

        cards = await _client(server).fetch_vcards(AddressBook(url=BOOK))

        assert [(c.url, c.etag) for c in cards] == [(f"{BOOK}grace.vcf", '"fresh"')]
        assert [r.method for r in server.requests] == ["REPORT", "PROPFIND", "GET"]

    async def test_other_report_errors_propagate(self):
        server = _Server(lambda request: httpx.Response(404, text="nope"))
        with pytest.raises(CardDavRequestError) as exc_info:
            await _client(server).fetch_vcards(AddressBook(url=BOOK))
        assert exc_info.value.status_code == 404


class TestWrites:
    async def test_create_uses_if_none_match(self):
        server = _Server(
            lambda request: httpx.Response(201, headers={"ETag": '"new"'})
        )

        card = await _client(server).create_vcard(AddressBook(url=BOOK), "BEGIN:VCARD", "x.vcf")

        request = server.requests[0]
        assert request.method == "PUT"
        assert str(request.url) == f"{BOOK}x.vcf"
        assert request.headers["If-None-Match"] == "*"
        assert request.headers["Content-Type"].startswith("text/vcard")
        assert card == RemoteVCard(url=f"{BOOK}x.vcf", etag='"new"', data="BEGIN:VCARD")

    async def test_create_honours_location_header(self):
        server = _Server(
            lambda request: httpx.Response(
                201, headers={"Location": "/addressbooks/alice/contacts/server-name.vcf"}
            )
        )

        card = await _client(server).create_vcard(AddressBook(url=BOOK), "data", "x.vcf")

        assert card.url == f"{BOOK}server-name.vcf"
        assert card.etag is None

    async def test_update_sends_if_match(self):
        server = _Server(lambda request: httpx.Response(204, headers={"ETag": '"v2"'}))

        card = await _client(server).update_vcard(
            RemoteVCard(url="/addressbooks/alice/contacts/a.vcf", etag='"v1"'), "new data"
        )

        request = server.requests[0]
        assert request.headers["If-Match"] == '"v1"'
        assert request.content == b"new data"
        assert card.url == f"{BOOK}a.vcf"
        assert card.etag == '"v2"'

    async def test_update_without_etag_is_unconditional(self):
        server = _Server(lambda request: httpx.Response(204))

        await _client(server).update_vcard(RemoteVCard(url=f"{BOOK}a.vcf"), "data")

        assert "If-Match" not in server.requests[0].headers

    async def test_stale_etag_surfaces_412(self):
        server = _Server(lambda request: httpx.Response(412, text="Precondition Failed"))

        with pytest.raises(CardDavRequestError) as exc_info:
            await _client(server).update_vcard(RemoteVCard(url=f"{BOOK}a.vcf", etag='"old"'), "")

        assert exc_info.value.status_code == 412
        assert len(server.requests) == 1

    async def test_delete_with_and_without_etag(self):
        server = _Server(lambda request: httpx.Response(204))
        client = _client(server)

        await client.delete_vcard(RemoteVCard(url=f"{BOOK}a.vcf", etag='"v1"'))
        await client.delete_vcard_by_url(f"{BOOK}b.vcf")

        assert [r.headers["If-Match"] for r in server.requests] == ['"v1"', "*"]
        assert all(r.method == "DELETE" for r in server.requests)


class TestRetries:
    async def test_server_errors_are_retried(self):
        responses = iter([httpx.Response(503), httpx.Response(502), httpx.Response(204)])
        server = _Server(lambda request: next(responses))
        sleeps = _Sleeps()

        await _client(server, sleeps=sleeps).delete_vcard_by_url(f"{BOOK}a.vcf")

        assert len(server.requests) == 3
        assert sleeps.delays == [1.0, 2.0]

    async def test_network_errors_become_typed_errors(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        server = _Server(handler)
        sleeps = _Sleeps()

        with pytest.raises(CardDavNetworkError):
            await _client(
                server, sleeps=sleeps, retry_policy=RetryPolicy(max_attempts=2)
            ).delete_vcard_by_url(f"{BOOK}a.vcf")

        assert len(server.requests) == 2
        assert sleeps.delays == [1.0]

    async def test_error_message_is_truncated(self):
        server = _Server(lambda request: httpx.Response(400, text="x" * 1000))
        with pytest.raises(CardDavRequestError) as exc_info:
            await _client(server).delete_vcard_by_url(f"{BOOK}a.vcf")
        assert len(exc_info.value.message) == 200


class TestHelpers:
    def test_resolve_url(self):
        client = CardDavClient(server_url=f"{SERVER}/dav/", username="a", password="b")
        assert client.resolve_url("/x/y.vcf") == f"{SERVER}/x/y.vcf"
        assert client.resolve_url("https://other.example.com/z") == "https://other.example.com/z"

    async def test_client_for_connection_decrypts_password(self, secrets):
        server = _Server()
        connection = CardDavConnection(
            id="c-1",
            user_id="user-1",
            server_url=f"{SERVER}/",
            username="alice",
            password=secrets.encrypt("s3cret"),
        )
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(server))

        client = client_for_connection(connection, secrets, http_client=http_client)
        await client.fetch_address_books()

        expected = "Basic " + base64.b64encode(b"alice:s3cret").decode()
        assert server.requests[0].headers["Authorization"] == expected


class TestVerifyConnection:
    async def test_lists_books(self):
        async def resolver(host: str) -> list[str]:
            return ["93.184.216.34"]

        http_client = httpx.AsyncClient(transport=httpx.MockTransport(_Server()))

        books = await verify_connection(
            f"{SERVER}/", "alice", "s3cret", http_client=http_client, resolver=resolver
        )

        assert [book.display_name for book in books] == ["Contacts"]

    async def test_rejects_internal_url_before_any_request(self):
        server = _Server()
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(server))

        with pytest.raises(UnsafeServerUrlError):
            await verify_connection("http://127.0.0.1:5232/", "a", "b", http_client=http_client)

        assert server.requests == []
