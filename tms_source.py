"""
Reads collection objects from a TMS (eMuseum-style) JSON api, one page at a time.

Endpoints used:
- `{api_url}/objects/json?key=KEY&page=N` -- a page of object references, with the collection count.
    {"count": 1234, "objects": [{"id": 5189}, {"id": 5190}, ...]}
- `{api_url}/objects/{id}/json?key=KEY` -- one object's fields.
    {"object": {"id": {"value": 5189}, "title": {"value": "Bathers"}, ...}}

Errors are split in two kinds: a `CollectionFetchError` means the collection itself can't be
  read (fatal for an export), an `ObjectFetchError` means one object couldn't be fetched (skippable).
"""

import asyncio
import logging
from collections import deque

import httpx

from tms_export_config import Credentials

log = logging.getLogger(__name__)


class TmsApiError(Exception):
    """
    Base for errors talking to the TMS api.
    """


class CollectionFetchError(TmsApiError):
    """
    Raised when counting or paging through the collection fails.
    """


class ObjectFetchError(TmsApiError):
    """
    Raised when a single collection object can't be fetched.
    """


class TmsObject:
    """
    Wraps one object's json from the TMS api.
    - Field values may arrive bare or wrapped like `{"value": ..., "label": ...}`; both are handled.
    - Only `description_with_fields()` and `field_names()` are used by the exporter.
    """

    def __init__(self, fields: dict[str, object]) -> None:
        self.fields: dict[str, object] = fields

    @staticmethod
    def from_json(data: dict[str, object]) -> 'TmsObject':
        obj: object = data.get('object', data) if isinstance(data, dict) else None
        if not isinstance(obj, dict):
            raise ValueError('object json has no fields')
        return TmsObject(obj)

    def field_names(self) -> list[str]:
        return list(self.fields.keys())

    def description_with_fields(self, field_names: list[str]) -> dict[str, object]:
        """
        Returns {name: value} for the requested fields the object actually has, in the requested order.
        """
        description: dict[str, object] = {}
        for name in field_names:
            if name not in self.fields:
                continue
            value: object = self.fields[name]
            if isinstance(value, dict) and 'value' in value:
                value = value['value']
            if value is None:
                continue
            description[name] = value
        return description

    def __repr__(self) -> str:
        return f'TmsObject({self.fields.get("id")!r})'


class TmsPagedSource:
    """
    Pages through a TMS collection, handing out one object at a time.
    - Counts the collection from the first page (and keeps that page's references buffered).
    - Fetches the next page only when the buffered references run out.
    - Treats an empty page as the end of the collection.
    - Pops an object's reference before fetching it, so an object that fails is skipped, not retried.
    - Maps httpx errors, error statuses, and bad json to `CollectionFetchError` / `ObjectFetchError`.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        credentials: Credentials,
        api_url: str,
        *,
        request_pause_seconds: float = 0.0,
    ) -> None:
        self.client: httpx.AsyncClient = client
        self.credentials: Credentials = credentials
        self.root_url: str = api_url.rstrip('/')
        self.request_pause_seconds: float = request_pause_seconds
        self.next_page: int = 1
        self.exhausted: bool = False
        self.buffer: deque[object] = deque()

    @property
    def collection_url(self) -> str:
        return f'{self.root_url}/objects/json'

    def object_url(self, object_id: object) -> str:
        return f'{self.root_url}/objects/{object_id}/json'

    async def count(self) -> int:
        """
        Returns the collection's object count, as reported by the first page.
        Called by: TmsExporter.count_objects()
        """
        page_json: dict[str, object] = await self._fetch_page()
        try:
            total: int = int(page_json['count'])  # type: ignore[arg-type]
        except (KeyError, TypeError, ValueError) as exc:
            raise CollectionFetchError(f'no usable `count` in page json from ``{self.collection_url}``') from exc
        return total

    async def has_more(self) -> bool:
        """
        Returns True if another object reference is available; fetches the next page if needed.
        Called by: TmsExporter.process_collection()
        """
        if self.buffer:
            return True
        if self.exhausted:
            return False
        await self._fetch_page()
        return bool(self.buffer)

    async def next(self) -> TmsObject | None:
        """
        Fetches the next buffered object; returns None when nothing is buffered.
        Called by: TmsExporter.process_collection()
        """
        if not self.buffer:
            return None
        ref: object = self.buffer.popleft()
        object_id: object = ref.get('id') if isinstance(ref, dict) else ref
        if object_id is None:
            raise ObjectFetchError(f'object reference has no id: ``{ref!r}``')
        url: str = self.object_url(object_id)
        try:
            data: dict[str, object] = await self._get_json(url)
            return TmsObject.from_json(data)
        except (httpx.HTTPError, ValueError) as exc:
            raise ObjectFetchError(f'unable to fetch object ``{object_id}`` from ``{url}``: {exc}') from exc

    async def _fetch_page(self) -> dict[str, object]:
        """
        Fetches the next page of object references into the buffer.
        Called by: count(), has_more()
        """
        page: int = self.next_page
        try:
            page_json: dict[str, object] = await self._get_json(self.collection_url, {'page': page})
        except (httpx.HTTPError, ValueError) as exc:
            raise CollectionFetchError(f'unable to fetch page {page} of ``{self.collection_url}``: {exc}') from exc
        refs: object = page_json.get('objects') if isinstance(page_json, dict) else None
        if not isinstance(refs, list):
            raise CollectionFetchError(f'page {page} of ``{self.collection_url}`` has no `objects` list')
        log.debug(f'page {page}: {len(refs)} object references')
        self.next_page = page + 1
        if not refs:
            self.exhausted = True
        self.buffer.extend(refs)
        return page_json

    async def _get_json(self, url: str, params: dict[str, object] | None = None) -> dict[str, object]:
        query: dict[str, object] = dict(params or {})
        if self.credentials.key:
            query['key'] = self.credentials.key
        auth: tuple[str, str] | None = None
        if self.credentials.username and self.credentials.password:
            auth = (self.credentials.username, self.credentials.password)
        if self.request_pause_seconds:
            await asyncio.sleep(self.request_pause_seconds)
        log.debug(f'trying url, ``{url}``; page, ``{query.get("page")}``')
        if auth is None:
            resp: httpx.Response = await self.client.get(url, params=query, follow_redirects=True)
        else:
            resp = await self.client.get(url, params=query, auth=auth, follow_redirects=True)
        resp.raise_for_status()
        return resp.json()
