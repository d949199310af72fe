"""CardDAV transport client.

Speaks just enough WebDAV/CardDAV for a two-way sync:

- address-book discovery (``current-user-principal`` ->
  ``addressbook-home-set`` -> Depth-1 collection listing)
- bulk fetch through an ``addressbook-query`` REPORT, with a PROPFIND + GET
  fallback for servers that reject the REPORT
- single-resource create/update/delete guarded by etag preconditions

Every request goes through ``with_retry``; only transient failures (network
errors, 5xx, 429) are retried.  Everything else surfaces as a typed
``CardDavRequestError`` carrying the HTTP status.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING
from urllib.parse import urljoin, urlsplit
from xml.etree import ElementTree

import httpx
from pydantic import BaseModel, ConfigDict

from cardsync.carddav.retry import DEFAULT_RETRY_POLICY, RetryPolicy, with_retry
from cardsync.carddav.url_validation import Resolver, validate_server_url
from cardsync.errors import CardDavNetworkError, CardDavProtocolError, CardDavRequestError

if TYPE_CHECKING:
    from cardsync.credentials import SecretStore
    from cardsync.models import CardDavConnection

logger = logging.getLogger(__name__)

DAV_NS = "DAV:"
CARDDAV_NS = "urn:ietf:params:xml:ns:carddav"
CALSERVER_NS = "http://calendarserver.org/ns/"

VCARD_CONTENT_TYPE = "text/vcard; charset=utf-8"
XML_CONTENT_TYPE = "application/xml; charset=utf-8"

_FALLBACK_REPORT_STATUSES = frozenset({400, 403, 405, 415, 501})

PRINCIPAL_BODY = """<?xml version="1.0" encoding="utf-8"?>
<d:propfind xmlns:d="DAV:">
  <d:prop><d:current-user-principal/></d:prop>
</d:propfind>"""

HOME_SET_BODY = """<?xml version="1.0" encoding="utf-8"?>
<d:propfind xmlns:d="DAV:" xmlns:card="urn:ietf:params:xml:ns:carddav">
  <d:prop><card:addressbook-home-set/></d:prop>
</d:propfind>"""

ADDRESS_BOOKS_BODY = """<?xml version="1.0" encoding="utf-8"?>
<d:propfind xmlns:d="DAV:" xmlns:card="urn:ietf:params:xml:ns:carddav"
            xmlns:cs="http://calendarserver.org/ns/">
  <d:prop>
    <d:resourcetype/>
    <d:displayname/>
    <card:addressbook-description/>
    <cs:getctag/>
    <d:sync-token/>
  </d:prop>
</d:propfind>"""

ADDRESSBOOK_QUERY_BODY = """<?xml version="1.0" encoding="utf-8"?>
<card:addressbook-query xmlns:d="DAV:" xmlns:card="urn:ietf:params:xml:ns:carddav">
  <d:prop>
    <d:getetag/>
    <card:address-data/>
  </d:prop>
</card:addressbook-query>"""

ETAG_LISTING_BODY = """<?xml version="1.0" encoding="utf-8"?>
<d:propfind xmlns:d="DAV:">
  <d:prop><d:getetag/><d:resourcetype/></d:prop>
</d:propfind>"""


def _tag(namespace: str, name: str) -> str:
    return f"{{{namespace}}}{name}"


class AddressBook(BaseModel):
    """A CardDAV address-book collection."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    url: str
    display_name: str | None = None
    description: str | None = None
    ctag: str | None = None
    sync_token: str | None = None


class RemoteVCard(BaseModel):
    """A vCard resource as seen on the server."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    url: str
    etag: str | None = None
    data: str = ""


class CardDavClient:
    """Async CardDAV client authenticating with HTTP Basic credentials."""

    def __init__(
        self,
        *,
        server_url: str,
        username: str,
        password: str,
        http_client: httpx.AsyncClient | None = None,
        retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._server_url = server_url.strip()
        self._auth = httpx.BasicAuth(username, password)
        self._retry_policy = retry_policy
        self._sleep = sleep
        self._owns_http_client = http_client is None
        self._http_client = (
            http_client
            if http_client is not None
            else httpx.AsyncClient(
                timeout=httpx.Timeout(20.0, connect=10.0),
                follow_redirects=True,
            )
        )

    @property
    def server_url(self) -> str:
        return self._server_url

    async def __aenter__(self) -> CardDavClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.shutdown()

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    def resolve_url(self, href: str) -> str:
        """Resolve a server-relative href against the server URL."""
        if urlsplit(href).scheme in {"http", "https"}:
            return href
        return urljoin(self._server_url, href)

    # -- Discovery ---------------------------------------------------------

    async def fetch_address_books(self) -> list[AddressBook]:
        """Discover the address books visible to the authenticated user."""
        principal_url = await self._find_principal_url()
        home_url = await self._find_home_set_url(principal_url)
        root = await self._propfind(home_url, ADDRESS_BOOKS_BODY, depth="1")

        books: list[AddressBook] = []
        for response in root.iter(_tag(DAV_NS, "response")):
            href = _text(response.find(_tag(DAV_NS, "href")))
            prop = _ok_prop(response)
            if href is None or prop is None:
                continue
            resourcetype = prop.find(_tag(DAV_NS, "resourcetype"))
            if resourcetype is None or resourcetype.find(_tag(CARDDAV_NS, "addressbook")) is None:
                continue
            books.append(
                AddressBook(
                    url=_collection_url(self.resolve_url(href)),
                    display_name=_text(prop.find(_tag(DAV_NS, "displayname"))),
                    description=_text(prop.find(_tag(CARDDAV_NS, "addressbook-description"))),
                    ctag=_text(prop.find(_tag(CALSERVER_NS, "getctag"))),
                    sync_token=_text(prop.find(_tag(DAV_NS, "sync-token"))),
                )
            )
        logger.debug("Discovered %s CardDAV address book(s) under %s", len(books), home_url)
        return books

    async def _find_principal_url(self) -> str:
        root = await self._propfind(self._server_url, PRINCIPAL_BODY, depth="0")
        href = _first_nested_href(root, _tag(DAV_NS, "current-user-principal"))
        if href is None:
            return self._server_url
        return self.resolve_url(href)

    async def _find_home_set_url(self, principal_url: str) -> str:
        root = await self._propfind(principal_url, HOME_SET_BODY, depth="0")
        href = _first_nested_href(root, _tag(CARDDAV_NS, "addressbook-home-set"))
        if href is None:
            return principal_url
        return self.resolve_url(href)

    # -- Fetch -------------------------------------------------------------

    async def fetch_vcards(self, address_book: AddressBook) -> list[RemoteVCard]:
        """Fetch every vCard of ``address_book`` with its etag."""
        try:
            root = await self._xml_request(
                "REPORT", address_book.url, ADDRESSBOOK_QUERY_BODY, depth="1"
            )
        except CardDavRequestError as exc:
            if exc.status_code not in _FALLBACK_REPORT_STATUSES:
                raise
            logger.info(
                "addressbook-query rejected by %s (%s); falling back to PROPFIND + GET",
                address_book.url,
                exc.status_code,
            )
            return await self._fetch_vcards_individually(address_book)

        cards: list[RemoteVCard] = []
        for response in root.iter(_tag(DAV_NS, "response")):
            href = _text(response.find(_tag(DAV_NS, "href")))
            prop = _ok_prop(response)
            if href is None or prop is None:
                continue
            data_element = prop.find(_tag(CARDDAV_NS, "address-data"))
            if data_element is None or not (data_element.text or "").strip():
                continue
            cards.append(
                RemoteVCard(
                    url=self.resolve_url(href),
                    etag=_text(prop.find(_tag(DAV_NS, "getetag"))),
                    data=data_element.text or "",
                )
            )
        return cards

    async def _fetch_vcards_individually(self, address_book: AddressBook) -> list[RemoteVCard]:
        root = await self._propfind(address_book.url, ETAG_LISTING_BODY, depth="1")
        cards: list[RemoteVCard] = []
        for response in root.iter(_tag(DAV_NS, "response")):
            href = _text(response.find(_tag(DAV_NS, "href")))
            prop = _ok_prop(response)
            if href is None or prop is None:
                continue
            resourcetype = prop.find(_tag(DAV_NS, "resourcetype"))
            if resourcetype is not None and len(resourcetype):
                continue
            url = self.resolve_url(href)
            response_obj = await self._send("GET", url, headers={"Accept": "text/vcard"})
            cards.append(
                RemoteVCard(
                    url=url,
                    etag=response_obj.headers.get("ETag")
                    or _text(prop.find(_tag(DAV_NS, "getetag"))),
                    data=response_obj.text,
                )
            )
        return cards

    # -- Writes ------------------------------------------------------------

    async def create_vcard(
        self, address_book: AddressBook, data: str, filename: str
    ) -> RemoteVCard:
        """Create a new resource; fails with 412 if ``filename`` already exists."""
        url = urljoin(_collection_url(address_book.url), filename)
        response = await self._send(
            "PUT",
            url,
            headers={"Content-Type": VCARD_CONTENT_TYPE, "If-None-Match": "*"},
            content=data,
        )
        location = response.headers.get("Location")
        return RemoteVCard(
            url=self.resolve_url(location) if location else url,
            etag=response.headers.get("ETag"),
            data=data,
        )

    async def update_vcard(self, vcard: RemoteVCard, data: str) -> RemoteVCard:
        """Overwrite ``vcard``; fails with 412 when its etag is stale."""
        headers = {"Content-Type": VCARD_CONTENT_TYPE}
        if vcard.etag:
            headers["If-Match"] = vcard.etag
        url = self.resolve_url(vcard.url)
        response = await self._send("PUT", url, headers=headers, content=data)
        return RemoteVCard(url=url, etag=response.headers.get("ETag"), data=data)

    async def delete_vcard(self, vcard: RemoteVCard) -> None:
        """Delete ``vcard`` only if it still carries the known etag."""
        await self.delete_vcard_by_url(vcard.url, etag=vcard.etag or "*")

    async def delete_vcard_by_url(self, url: str, *, etag: str = "*") -> None:
        """Delete the resource at ``url``; ``etag="*"`` deletes unconditionally."""
        await self._send("DELETE", self.resolve_url(url), headers={"If-Match": etag})

    # -- Plumbing ----------------------------------------------------------

    async def _propfind(self, url: str, body: str, *, depth: str) -> ElementTree.Element:
        return await self._xml_request("PROPFIND", url, body, depth=depth)

    async def _xml_request(
        self, method: str, url: str, body: str, *, depth: str
    ) -> ElementTree.Element:
        response = await self._send(
            method,
            url,
            headers={"Depth": depth, "Content-Type": XML_CONTENT_TYPE},
            content=body,
        )
        try:
            return ElementTree.fromstring(response.content)
        except ElementTree.ParseError as exc:
            raise CardDavProtocolError(f"Invalid XML from {method} {url}: {exc}") from exc

    async def _send(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        content: str | None = None,
    ) -> httpx.Response:
        async def _attempt() -> httpx.Response:
            try:
                response = await self._http_client.request(
                    method,
                    url,
                    headers=headers,
                    content=content.encode("utf-8") if content is not None else None,
                    auth=self._auth,
                )
            except httpx.TransportError as exc:
                raise CardDavNetworkError(f"{method} {url} failed: {exc}") from exc
            if response.status_code < 200 or response.status_code >= 300:
                raise CardDavRequestError(
                    status_code=response.status_code,
                    message=_safe_error_message(response),
                    url=url,
                )
            return response

        return await with_retry(
            _attempt,
            policy=self._retry_policy,
            description=f"CardDAV {method} {url}",
            sleep=self._sleep,
        )


def _text(element: ElementTree.Element | None) -> str | None:
    if element is None or element.text is None:
        return None
    value = element.text.strip()
    return value or None


def _ok_prop(response: ElementTree.Element) -> ElementTree.Element | None:
    """Return the ``prop`` of the first propstat with a 2xx status."""
    for propstat in response.findall(_tag(DAV_NS, "propstat")):
        status = _text(propstat.find(_tag(DAV_NS, "status"))) or "HTTP/1.1 200 OK"
        parts = status.split()
        if len(parts) >= 2 and parts[1].startswith("2"):
            return propstat.find(_tag(DAV_NS, "prop"))
    return None


def _first_nested_href(root: ElementTree.Element, property_tag: str) -> str | None:
    for element in root.iter(property_tag):
        href = _text(element.find(_tag(DAV_NS, "href")))
        if href is not None:
            return href
    return None


def _collection_url(url: str) -> str:
    return url if url.endswith("/") else f"{url}/"


def _safe_error_message(response: httpx.Response) -> str:
    text = response.text.strip()
    if text:
        return " ".join(text.split())[:200]
    return response.reason_phrase or "unknown error"


def client_for_connection(
    connection: CardDavConnection,
    secrets: SecretStore,
    *,
    http_client: httpx.AsyncClient | None = None,
) -> CardDavClient:
    """Build a client for ``connection``, decrypting its password just in time."""
    return CardDavClient(
        server_url=connection.server_url,
        username=connection.username,
        password=secrets.decrypt(connection.password),
        http_client=http_client,
    )


async def verify_connection(
    server_url: str,
    username: str,
    password: str,
    *,
    http_client: httpx.AsyncClient | None = None,
    resolver: Resolver | None = None,
) -> list[AddressBook]:
    """Validate ``server_url`` and prove the credentials by running discovery."""
    await validate_server_url(server_url, resolver=resolver)
    client = CardDavClient(
        server_url=server_url,
        username=username,
        password=password,
        http_client=http_client,
    )
    try:
        return await client.fetch_address_books()
    finally:
        await client.shutdown()
