"""Notion MCP server with page snapshots and recovery.

Every destructive tool captures the page (properties plus its nested block
tree) to a JSON artifact on disk before mutating it, so the change can be
rolled back with notion_manage_backups.

Tools:
- notion_search / notion_list_databases / notion_query_database: discovery
- notion_get_database_schema / notion_recent_updates: workspace context
- notion_read_page: Read a page as a snapshot document
- notion_create_page / notion_update_page / notion_delete_page: mutations
- notion_manage_backups: capture, list, restore and clean up artifacts

Token: Passed via --token-file <path> CLI argument, or NOTION_API_KEY.
"""

import asyncio
import copy
import glob
import json
import logging
import math
import os
import random
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Optional, Union

import httpx
from mcp.server.fastmcp import FastMCP
from starlette.requests import Request
from starlette.responses import JSONResponse

logger = logging.getLogger("notion-snapshot-mcp")

# Retry configuration
MAX_RETRIES = 3
RETRY_BASE_DELAY = 1.0  # seconds
RETRY_JITTER_MAX = 0.5  # max random jitter to add (seconds)

# Defaults shared by the CLI and SnapshotConfig
DEFAULT_BACKUP_DIR = "./backups"
DEFAULT_MAX_BLOCK_DEPTH = 3
DEFAULT_MAX_BACKUPS_PER_PAGE = 5
DEFAULT_BACKUP_RETENTION_DAYS = 30
DEFAULT_CLEANUP_INTERVAL_HOURS = 24


# =============================================================================
# Errors
# =============================================================================


class SnapshotError(Exception):
    """Base class for failures raised by the snapshot subsystem."""


class RemoteUnavailable(SnapshotError):
    """A Notion API call failed (network, auth, rate limit, server error)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class NotFound(SnapshotError):
    """A page, block, or backup artifact does not exist."""


class MalformedArtifact(SnapshotError):
    """A backup artifact exists but cannot be parsed."""

    def __init__(self, location: Union[str, Path], reason: str):
        super().__init__(f"Malformed backup {Path(location).name}: {reason}")
        self.location = Path(location)
        self.reason = reason


class PartialFailure(SnapshotError):
    """A multi-step operation completed some steps and failed others.

    Attributes:
        failures: (what, error) pairs, one per failed step or item.
    """

    def __init__(self, message: str, failures: list[tuple[str, Exception]]):
        super().__init__(message)
        self.failures = failures


class RestoreFailed(PartialFailure):
    """A restore aborted part way through.

    The page may be left partially restored; `step` names where it stopped so
    the caller can decide whether manual cleanup is needed.
    """

    def __init__(
        self,
        page_id: str,
        location: Path,
        step: str,
        completed_steps: list[str],
        cause: Exception,
        deleted_count: int = 0,
        created_count: int = 0,
    ):
        done = ", ".join(completed_steps) if completed_steps else "none"
        message = (
            f"Restore of page {page_id} from {location.name} failed at step "
            f"'{step}' (completed: {done}; deleted {deleted_count} block(s), "
            f"created {created_count}): {cause}"
        )
        super().__init__(message, [(step, cause)])
        self.page_id = page_id
        self.location = location
        self.step = step
        self.completed_steps = completed_steps
        self.deleted_count = deleted_count
        self.created_count = created_count


class BackupFailed(SnapshotError):
    """No backup exists because capturing the page failed."""

    def __init__(self, page_id: str, cause: Exception):
        super().__init__(f"Could not back up page {page_id}: {cause}")
        self.page_id = page_id
        self.cause = cause


# =============================================================================
# Retry Helpers
# =============================================================================


def _compute_retry_delay(attempt: int, retry_after: float | None = None) -> float:
    """Compute exponential backoff delay with jitter for rate limiting.

    Args:
        attempt: Current retry attempt number (0-indexed).
        retry_after: Optional Retry-After header value from server.

    Returns:
        Delay in seconds, including random jitter to prevent thundering herd.
    """
    base_delay = RETRY_BASE_DELAY * (2 ** attempt)
    if retry_after is not None:
        base_delay = max(retry_after, base_delay)
    return base_delay + random.uniform(0, RETRY_JITTER_MAX)


def _http_error_detail(e: httpx.HTTPStatusError, max_len: int = 300) -> str:
    """Extract error detail from an HTTP status error.

    Args:
        e: The HTTP status error exception.
        max_len: Maximum length of error detail to return.

    Returns:
        Truncated error response text or string representation of the error.
    """
    if e.response is not None:
        return e.response.text[:max_len]
    return str(e)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# ID System
# =============================================================================

UUID_PATTERN = re.compile(
    r'^[0-9a-f]{8}-?[0-9a-f]{4}-?[0-9a-f]{4}-?[0-9a-f]{4}-?[0-9a-f]{12}$',
    re.IGNORECASE
)
NOTION_URL_PATTERN = re.compile(
    r'https?://(?:www\.)?notion\.(?:so|site)/(?:[^/]+/)?([^?#]+)',
    re.IGNORECASE
)


def normalize_uuid(uuid_str: str) -> str:
    """Normalize a UUID to standard format with dashes.

    Args:
        uuid_str: UUID with or without dashes.

    Returns:
        UUID in format xxxxxxxx-xxxx-xxxx-xxxx-xxxxxxxxxxxx

    Raises:
        ValueError: If input is not a valid UUID (wrong length or invalid chars).
    """
    clean = uuid_str.replace('-', '').lower()
    if len(clean) != 32:
        raise ValueError(f"Invalid UUID length: {uuid_str}")
    if not all(c in '0123456789abcdef' for c in clean):
        raise ValueError(f"Invalid UUID characters: {uuid_str}")
    return f"{clean[:8]}-{clean[8:12]}-{clean[12:16]}-{clean[16:20]}-{clean[20:]}"


def extract_uuid_from_url(url: str) -> Optional[str]:
    """Extract a Notion UUID from a URL.

    Handles formats like:
    - https://notion.so/workspace/Page-Title-abc123def456...
    - https://www.notion.so/Page-abc123def456...

    Returns:
        Normalized UUID or None if not found.
    """
    match = NOTION_URL_PATTERN.match(url)
    if not match:
        return None

    # UUID sits at the end of the path, possibly after a title slug
    uuid_match = re.search(r'([0-9a-f]{32}|[0-9a-f-]{36})$', match.group(1), re.IGNORECASE)
    if uuid_match:
        return normalize_uuid(uuid_match.group(1))
    return None


def resolve_page_ref(ref: str) -> str:
    """Resolve a page reference (UUID with or without dashes, or URL).

    Raises:
        ValueError: If the reference is neither a UUID nor a Notion URL.
    """
    ref = ref.strip()
    if UUID_PATTERN.match(ref):
        return normalize_uuid(ref)
    extracted = extract_uuid_from_url(ref)
    if extracted:
        return extracted
    raise ValueError(f"Could not resolve reference: {ref}")


# =============================================================================
# Notion API Gateway
# =============================================================================

NOTION_API_BASE = "https://api.notion.com/v1"
NOTION_VERSION = "2025-09-03"
DEFAULT_PAGE_SIZE = 100


@dataclass
class ChildrenPage:
    """One page of a block's children plus the continuation cursor."""
    items: list[dict]
    next_cursor: Optional[str] = None
    has_more: bool = False


class NotionGateway:
    """Authenticated async access to the Notion pages/blocks/databases API.

    Concurrency is bounded by a semaphore and 429 responses are retried with
    exponential backoff. Errors come out as NotFound (HTTP 404) or
    RemoteUnavailable (anything else); callers never see raw httpx errors.
    """

    def __init__(
        self,
        token: str,
        client: Optional[httpx.AsyncClient] = None,
        max_concurrency: int = 50,
        base_url: str = NOTION_API_BASE,
    ):
        self._token = token
        self._client = client
        self._max_concurrency = max_concurrency
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._base_url = base_url

    @property
    def has_token(self) -> bool:
        return bool(self._token)

    def _get_semaphore(self) -> asyncio.Semaphore:
        """Get or create the rate-limiting semaphore."""
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self._max_concurrency)
        return self._semaphore

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the async HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=30.0)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    async def request(
        self,
        method: str,
        endpoint: str,
        json_body: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> dict:
        """Make an authenticated request with rate limiting and retry.

        Args:
            method: GET, POST, PATCH or DELETE.
            endpoint: API path, e.g. "/pages/<id>".
            json_body: Request body for POST/PATCH.
            params: Query string parameters.

        Returns:
            Decoded JSON response.

        Raises:
            NotFound: The API answered 404.
            RemoteUnavailable: Any other failure, including exhausted retries.
        """
        if method not in ("GET", "POST", "PATCH", "DELETE"):
            raise ValueError(f"Unsupported method: {method}")

        client = await self._get_client()
        headers = {
            "Authorization": f"Bearer {self._token}",
            "Notion-Version": NOTION_VERSION,
            "Content-Type": "application/json",
        }
        url = f"{self._base_url}{endpoint}"
        body = (json_body or {}) if method in ("POST", "PATCH") else None

        async with self._get_semaphore():
            for attempt in range(MAX_RETRIES):
                try:
                    response = await client.request(
                        method, url, headers=headers, json=body, params=params
                    )
                except httpx.HTTPError as e:
                    raise RemoteUnavailable(f"{method} {endpoint} failed: {e}") from e

                if response.status_code == 429:
                    if attempt == MAX_RETRIES - 1:
                        break
                    try:
                        retry_after = float(response.headers.get("Retry-After", RETRY_BASE_DELAY))
                    except ValueError:
                        retry_after = None
                    delay = _compute_retry_delay(attempt, retry_after)
                    logger.warning(f"Rate limited, waiting {delay:.1f}s (attempt {attempt + 1})")
                    await asyncio.sleep(delay)
                    continue

                try:
                    response.raise_for_status()
                except httpx.HTTPStatusError as e:
                    status = e.response.status_code
                    if status == 404:
                        raise NotFound(f"{endpoint}: {_http_error_detail(e, 200)}") from e
                    raise RemoteUnavailable(
                        f"HTTP {status}: {_http_error_detail(e)}", status_code=status
                    ) from e
                return response.json()

        raise RemoteUnavailable(
            f"Max retries ({MAX_RETRIES}) exceeded for {method} {endpoint}",
            status_code=429,
        )

    # --- pages and blocks -------------------------------------------------

    async def get_page(self, page_id: str) -> dict:
        """Fetch page metadata and properties."""
        return await self.request("GET", f"/pages/{page_id}")

    async def list_children(
        self,
        block_id: str,
        start_cursor: Optional[str] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> ChildrenPage:
        """Fetch one page of a block's immediate children."""
        params: dict = {"page_size": page_size}
        if start_cursor:
            params["start_cursor"] = start_cursor
        result = await self.request("GET", f"/blocks/{block_id}/children", params=params)
        return ChildrenPage(
            items=result.get("results", []),
            next_cursor=result.get("next_cursor"),
            has_more=bool(result.get("has_more")),
        )

    async def update_page_properties(self, page_id: str, properties: dict, unarchive: bool = False) -> dict:
        """Write page properties.

        With unarchive=True the same PATCH also takes the page out of the
        trash; Notion rejects property and children writes on archived pages.
        """
        body: dict = {"properties": properties}
        if unarchive:
            body["archived"] = False
        return await self.request("PATCH", f"/pages/{page_id}", json_body=body)

    async def delete_block(self, block_id: str) -> dict:
        """Delete (archive) a block."""
        return await self.request("DELETE", f"/blocks/{block_id}")

    async def append_children(self, parent_id: str, blocks: list[dict]) -> list[dict]:
        """Append blocks to a parent; the API assigns the new block IDs.

        Returns:
            List of created block objects with IDs.
        """
        result = await self.request(
            "PATCH",
            f"/blocks/{parent_id}/children",
            json_body={"children": blocks}
        )
        return result.get("results", [])

    async def archive_page(self, page_id: str) -> dict:
        """Archive a page (Notion's logical delete)."""
        return await self.request("PATCH", f"/pages/{page_id}", json_body={"archived": True})

    async def create_page(
        self,
        parent: dict,
        properties: dict,
        children: Optional[list[dict]] = None
    ) -> dict:
        body: dict = {"parent": parent, "properties": properties}
        if children:
            body["children"] = children
        return await self.request("POST", "/pages", json_body=body)

    # --- discovery ----------------------------------------------------------

    async def search(
        self,
        query: str = "",
        object_type: Optional[str] = None,
        page_size: int = 20,
    ) -> list[dict]:
        """Search pages/data sources by title, most recently edited first.

        Args:
            query: Title query; empty matches everything shared.
            object_type: "page" or "data_source" to filter results.
            page_size: Maximum results (capped at 100).
        """
        body: dict = {
            "query": query,
            "page_size": min(page_size, 100),
            "sort": {"direction": "descending", "timestamp": "last_edited_time"},
        }
        if object_type:
            body["filter"] = {"property": "object", "value": object_type}
        result = await self.request("POST", "/search", json_body=body)
        return result.get("results", [])

    async def get_database(self, database_id: str) -> dict:
        """Fetch database container metadata (title, data_sources list)."""
        return await self.request("GET", f"/databases/{database_id}")

    async def get_data_source(self, data_source_id: str) -> dict:
        """Fetch a data source; its `properties` hold the column schema."""
        return await self.request("GET", f"/data_sources/{data_source_id}")

    async def query_data_source(
        self,
        data_source_id: str,
        limit: int = 50
    ) -> tuple[list[dict], bool]:
        """Query data source rows (API 2025-09-03).

        Returns:
            Tuple of (rows, has_more).
        """
        rows: list[dict] = []
        start_cursor = None
        has_more = False

        while len(rows) < limit:
            body: dict = {"page_size": min(DEFAULT_PAGE_SIZE, limit - len(rows))}
            if start_cursor:
                body["start_cursor"] = start_cursor

            result = await self.request(
                "POST",
                f"/data_sources/{data_source_id}/query",
                json_body=body
            )
            rows.extend(result.get("results", []))
            has_more = result.get("has_more", False)

            if not has_more or len(rows) >= limit:
                break
            start_cursor = result.get("next_cursor")

        return rows[:limit], has_more

    async def get_me(self) -> dict:
        return await self.request("GET", "/users/me")


def get_page_title(page: dict) -> str:
    """Extract title from page properties."""
    for prop in page.get("properties", {}).values():
        if isinstance(prop, dict) and prop.get("type") == "title":
            return "".join(t.get("plain_text", "") for t in prop.get("title", []))
    return "Untitled"


def get_database_title(database: dict) -> str:
    """Extract title from database metadata."""
    title_array = database.get("title", [])
    return "".join(t.get("plain_text", "") for t in title_array) or "Untitled"


# =============================================================================
# Snapshot Data Model
# =============================================================================

# Block types this server knows by name. Anything else is carried as an
# opaque block; both kinds round-trip identically.
KNOWN_BLOCK_TYPES = frozenset({
    'paragraph', 'heading_1', 'heading_2', 'heading_3',
    'bulleted_list_item', 'numbered_list_item', 'to_do', 'toggle',
    'quote', 'callout', 'code', 'divider', 'equation',
    'column_list', 'column', 'table', 'table_row', 'table_of_contents',
    'breadcrumb', 'synced_block', 'template', 'link_to_page', 'link_preview',
    'bookmark', 'embed', 'image', 'video', 'audio', 'file', 'pdf',
    'child_page', 'child_database', 'unsupported',
})

# Keys owned by the flat artifact record; a payload using any of them is
# stored nested under its type key instead of merged.
_RESERVED_RECORD_KEYS = frozenset({
    'id', 'type', 'has_children', 'created_time', 'last_edited_time', 'children',
})


def _payload_needs_nesting(block_type: str, payload: dict) -> bool:
    keys = set(payload)
    return bool(keys & _RESERVED_RECORD_KEYS) or keys == {block_type}


@dataclass
class ContentBlock:
    """One node of a page's block tree.

    `children` is None when children were not fetched (leaf block, or the
    depth budget ran out) and a list only when they were.
    """
    type: str
    payload: dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None
    has_children: bool = False
    created_time: Optional[str] = None
    last_edited_time: Optional[str] = None
    children: Optional[list["ContentBlock"]] = None

    @property
    def is_opaque(self) -> bool:
        return self.type not in KNOWN_BLOCK_TYPES

    @classmethod
    def from_notion(cls, raw: dict) -> "ContentBlock":
        """Build from a Notion API block object."""
        block_type = raw.get("type") or "unsupported"
        payload = raw.get(block_type)
        return cls(
            type=block_type,
            payload=dict(payload) if isinstance(payload, dict) else {},
            id=raw.get("id"),
            has_children=bool(raw.get("has_children")),
            created_time=raw.get("created_time"),
            last_edited_time=raw.get("last_edited_time"),
        )

    def to_record(self) -> dict:
        """Flatten into the artifact record format.

        The payload is merged next to id/type/timestamps unless one of its
        keys would collide with those, in which case it stays nested under
        the type key (e.g. image payloads carry their own "type").
        """
        record: dict[str, Any] = {}
        if self.id is not None:
            record["id"] = self.id
        record["type"] = self.type
        record["has_children"] = self.has_children
        if self.created_time is not None:
            record["created_time"] = self.created_time
        if self.last_edited_time is not None:
            record["last_edited_time"] = self.last_edited_time

        if _payload_needs_nesting(self.type, self.payload):
            record[self.type] = self.payload
        else:
            record.update(self.payload)

        if self.children is not None:
            record["children"] = [child.to_record() for child in self.children]
        return record

    @classmethod
    def from_record(cls, record: dict) -> "ContentBlock":
        """Inverse of to_record.

        Raises:
            ValueError: If the record is not a block record.
        """
        if not isinstance(record, dict):
            raise ValueError("block record must be an object")
        block_type = record.get("type")
        if not isinstance(block_type, str) or not block_type:
            raise ValueError("block record is missing 'type'")

        extra = {k: v for k, v in record.items() if k not in _RESERVED_RECORD_KEYS}
        if set(extra) == {block_type} and isinstance(extra[block_type], dict):
            payload = extra[block_type]
        else:
            payload = extra

        children = record.get("children")
        if children is not None:
            if not isinstance(children, list):
                raise ValueError(f"block {record.get('id')} has non-list 'children'")
            children = [cls.from_record(child) for child in children]

        return cls(
            type=block_type,
            payload=payload,
            id=record.get("id"),
            has_children=bool(record.get("has_children")),
            created_time=record.get("created_time"),
            last_edited_time=record.get("last_edited_time"),
            children=children,
        )

    def to_create_request(self) -> dict:
        """API write shape: no id and no children, payload under its type."""
        return {"object": "block", "type": self.type, self.type: copy.deepcopy(self.payload)}


@dataclass
class PageSnapshot:
    """Properties and depth-bounded block tree of one page at capture time."""
    page_id: str
    properties: dict
    blocks: list[ContentBlock]
    captured_at: Optional[datetime] = None
    url: Optional[str] = None
    created_time: Optional[str] = None
    last_edited_time: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "page": {
                "id": self.page_id,
                "url": self.url,
                "created_time": self.created_time,
                "last_edited_time": self.last_edited_time,
                "properties": self.properties,
            },
            "blocks": [block.to_record() for block in self.blocks],
        }

    @classmethod
    def from_dict(cls, data: Any, captured_at: Optional[datetime] = None) -> "PageSnapshot":
        """Parse an artifact body.

        Raises:
            ValueError: If required fields are missing or mistyped.
        """
        if not isinstance(data, dict):
            raise ValueError("artifact body must be a JSON object")
        page = data.get("page")
        if not isinstance(page, dict):
            raise ValueError("missing 'page' object")
        page_id = page.get("id")
        if not isinstance(page_id, str) or not page_id:
            raise ValueError("missing 'page.id'")
        properties = page.get("properties")
        if not isinstance(properties, dict):
            raise ValueError("missing 'page.properties'")
        blocks = data.get("blocks")
        if not isinstance(blocks, list):
            raise ValueError("missing 'blocks' list")

        return cls(
            page_id=page_id,
            properties=properties,
            blocks=[ContentBlock.from_record(b) for b in blocks],
            captured_at=captured_at,
            url=page.get("url"),
            created_time=page.get("created_time"),
            last_edited_time=page.get("last_edited_time"),
        )


@dataclass(frozen=True)
class ArtifactDescriptor:
    """Artifact metadata derived from its file name and stat, not its body."""
    page_id: str
    captured_at: datetime
    location: Path
    size_bytes: int

    @property
    def filename(self) -> str:
        return self.location.name

    def to_dict(self) -> dict:
        return {
            "page_id": self.page_id,
            "captured_at": format_timestamp(self.captured_at),
            "filename": self.filename,
            "path": str(self.location),
            "size_bytes": self.size_bytes,
        }


# =============================================================================
# Artifact Naming
# =============================================================================
# page_<pageId>_<ISO-8601 UTC with ':' replaced by '-'>.json
# Only the time part's dashes are turned back into colons on parse, so page
# IDs and dates with dashes round-trip.

ARTIFACT_NAME_PATTERN = re.compile(
    r'^page_(?P<page_id>.+)_(?P<date>\d{4}-\d{2}-\d{2})'
    r'T(?P<time>\d{2}-\d{2}-\d{2}(?:\.\d{1,6})?)Z\.json$'
)


def _as_utc(dt: datetime) -> datetime:
    # Naive datetimes are taken to be UTC
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    """ISO-8601 UTC with microseconds, e.g. 2026-10-19T08:15:02.123456Z."""
    return _as_utc(dt).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _validate_page_id(page_id: str) -> None:
    if not page_id or any(ch in page_id for ch in ("/", "\\", "\0", os.sep)):
        raise ValueError(f"Invalid page ID for a backup name: {page_id!r}")


def artifact_name(page_id: str, captured_at: datetime) -> str:
    """Build the artifact file name for a page and capture time."""
    _validate_page_id(page_id)
    return f"page_{page_id}_{format_timestamp(captured_at).replace(':', '-')}.json"


def parse_artifact_name(name: str) -> Optional[tuple[str, datetime]]:
    """Parse an artifact file name into (page_id, captured_at).

    Returns:
        None for names that are not artifact names.
    """
    match = ARTIFACT_NAME_PATTERN.match(name)
    if not match:
        return None
    time_part = match.group("time").replace("-", ":")
    try:
        captured_at = datetime.fromisoformat(f"{match.group('date')}T{time_part}+00:00")
    except ValueError:
        return None
    return match.group("page_id"), captured_at


# =============================================================================
# Tree Materializer
# =============================================================================


class TreeMaterializer:
    """Drains a block's paginated children into an ordered, depth-bounded tree."""

    def __init__(self, gateway: NotionGateway, page_size: int = DEFAULT_PAGE_SIZE):
        self._gateway = gateway
        self._page_size = page_size

    async def list_all_children(self, block_id: str) -> list[dict]:
        """Fetch every immediate child of a block, following next_cursor."""
        items: list[dict] = []
        cursor = None
        while True:
            page = await self._gateway.list_children(
                block_id, start_cursor=cursor, page_size=self._page_size
            )
            items.extend(page.items)
            if not page.has_more or not page.next_cursor:
                break
            cursor = page.next_cursor
        return items

    async def materialize(self, root_block_id: str, max_depth: int) -> list[ContentBlock]:
        """Materialize the children of `root_block_id` down to `max_depth` levels.

        The worklist holds (target list, block id, remaining depth) entries and
        is drained one level at a time; sibling subtrees within a level are
        fetched concurrently, pagination within one parent stays sequential.
        A block whose children fall outside the budget keeps children=None.

        Args:
            root_block_id: Page or block ID whose children are fetched.
            max_depth: Number of levels to fetch; 0 returns [] without I/O.

        Returns:
            Top-level blocks in API order with nested children attached.

        Raises:
            ValueError: If max_depth is negative.
            NotFound, RemoteUnavailable: Any fetch failure aborts the whole tree.
        """
        if max_depth < 0:
            raise ValueError(f"max_depth must be >= 0, got {max_depth}")

        root: list[ContentBlock] = []
        worklist: list[tuple[list[ContentBlock], str, int]] = []
        if max_depth > 0:
            worklist.append((root, root_block_id, max_depth))

        while worklist:
            fetched = await asyncio.gather(*[
                self.list_all_children(block_id) for _, block_id, _ in worklist
            ])

            next_worklist = []
            for (target, _, remaining), raw_children in zip(worklist, fetched):
                for raw in raw_children:
                    block = ContentBlock.from_notion(raw)
                    if block.has_children and block.id and remaining - 1 > 0:
                        block.children = []
                        next_worklist.append((block.children, block.id, remaining - 1))
                    target.append(block)
            worklist = next_worklist

        return root


# =============================================================================
# Snapshot Store
# =============================================================================


class SnapshotStore:
    """Writes, lists and loads page snapshot artifacts in one directory.

    Artifacts are immutable once written. Writes go to a hidden temp file
    that is renamed into place, so listing never sees a partial artifact.
    """

    def __init__(
        self,
        root: Union[str, Path],
        gateway: Optional[NotionGateway] = None,
        materializer: Optional[TreeMaterializer] = None,
        max_depth: int = DEFAULT_MAX_BLOCK_DEPTH,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.root = Path(root)
        self._gateway = gateway
        if materializer is None and gateway is not None:
            materializer = TreeMaterializer(gateway)
        self._materializer = materializer
        self.max_depth = max_depth
        self._clock = clock

    async def fetch_snapshot(self, page_id: str, max_depth: Optional[int] = None) -> PageSnapshot:
        """Read a page's properties and block tree without persisting them."""
        if self._gateway is None or self._materializer is None:
            raise RuntimeError("SnapshotStore has no gateway configured")
        depth = self.max_depth if max_depth is None else max_depth

        page = await self._gateway.get_page(page_id)
        blocks = await self._materializer.materialize(page_id, depth)
        return PageSnapshot(
            page_id=page.get("id") or page_id,
            properties=page.get("properties", {}),
            blocks=blocks,
            url=page.get("url"),
            created_time=page.get("created_time"),
            last_edited_time=page.get("last_edited_time"),
        )

    async def capture(self, page_id: str) -> ArtifactDescriptor:
        """Capture a page and persist it as a new artifact.

        Args:
            page_id: Page ID; also the name key used by list_artifacts.

        Returns:
            Descriptor of the written artifact.

        Raises:
            ValueError: If page_id cannot be used in a file name.
            NotFound, RemoteUnavailable: Fetching the page failed.
            OSError: The artifact could not be written (nothing is left behind).
        """
        _validate_page_id(page_id)
        snapshot = await self.fetch_snapshot(page_id)
        descriptor = await asyncio.to_thread(self._write, page_id, snapshot)
        logger.info(f"Created backup of {page_id} at {descriptor.location}")
        return descriptor

    def _write(self, page_id: str, snapshot: PageSnapshot) -> ArtifactDescriptor:
        self.root.mkdir(parents=True, exist_ok=True)

        captured_at = _as_utc(self._clock())
        path = self.root / artifact_name(page_id, captured_at)
        while path.exists():
            captured_at += timedelta(microseconds=1)
            path = self.root / artifact_name(page_id, captured_at)
        snapshot.captured_at = captured_at

        data = json.dumps(snapshot.to_dict(), indent=2, ensure_ascii=False)
        tmp_path = path.with_name(f".{path.name}.tmp")
        try:
            tmp_path.write_text(data + "\n", encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError:
            tmp_path.unlink(missing_ok=True)
            raise

        return ArtifactDescriptor(
            page_id=page_id,
            captured_at=captured_at,
            location=path,
            size_bytes=path.stat().st_size,
        )

    def _scan(self, pattern: str) -> list[ArtifactDescriptor]:
        if not self.root.is_dir():
            return []

        descriptors = []
        for path in self.root.glob(pattern):
            parsed = parse_artifact_name(path.name)
            if parsed is None:
                logger.debug(f"Skipping non-backup file {path.name}")
                continue
            try:
                size = path.stat().st_size
            except FileNotFoundError:
                # Evicted between glob and stat
                continue
            page_id, captured_at = parsed
            descriptors.append(ArtifactDescriptor(page_id, captured_at, path, size))
        return descriptors

    def list_artifacts(self, page_id: str) -> list[ArtifactDescriptor]:
        """List a page's artifacts, most recent first."""
        _validate_page_id(page_id)
        descriptors = [
            d for d in self._scan(f"page_{glob.escape(page_id)}_*.json")
            if d.page_id == page_id
        ]
        return sorted(descriptors, key=lambda d: d.captured_at, reverse=True)

    def list_all_artifacts(self) -> list[ArtifactDescriptor]:
        """List every artifact in the store, most recent first."""
        return sorted(self._scan("page_*.json"), key=lambda d: d.captured_at, reverse=True)

    def list_temp_files(self) -> list[ArtifactDescriptor]:
        """List leftover `.page_*.json.tmp` files from interrupted writes.

        The descriptor's captured_at is the timestamp of the artifact the
        write was producing.
        """
        if not self.root.is_dir():
            return []

        descriptors = []
        for path in self.root.glob(".page_*.json.tmp"):
            parsed = parse_artifact_name(path.name[1:-len(".tmp")])
            if parsed is None:
                continue
            try:
                size = path.stat().st_size
            except FileNotFoundError:
                # Renamed into place or swept meanwhile
                continue
            page_id, captured_at = parsed
            descriptors.append(ArtifactDescriptor(page_id, captured_at, path, size))
        return descriptors

    def resolve_location(self, location: Union[str, Path]) -> Path:
        if isinstance(location, str) and Path(location).name == location:
            return self.root / location
        return Path(location)

    def load(self, location: Union[str, Path]) -> PageSnapshot:
        """Read and parse one artifact.

        Args:
            location: Artifact path, or a bare file name inside the store.

        Raises:
            NotFound: The artifact does not exist.
            MalformedArtifact: The artifact is not a valid snapshot.
        """
        path = self.resolve_location(location)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError as e:
            raise NotFound(f"Backup file not found: {path.name}") from e
        except (IsADirectoryError, UnicodeDecodeError) as e:
            raise MalformedArtifact(path, str(e)) from e

        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise MalformedArtifact(path, f"invalid JSON: {e}") from e

        parsed = parse_artifact_name(path.name)
        try:
            return PageSnapshot.from_dict(data, captured_at=parsed[1] if parsed else None)
        except ValueError as e:
            raise MalformedArtifact(path, str(e)) from e

    def delete(self, descriptor: ArtifactDescriptor) -> None:
        descriptor.location.unlink()


# =============================================================================
# Retention
# =============================================================================


@dataclass(frozen=True)
class RetentionPolicy:
    """Count and age limits; None or math.inf disables a limit."""
    max_artifacts_per_page: Optional[float] = DEFAULT_MAX_BACKUPS_PER_PAGE
    max_artifact_age_days: Optional[float] = DEFAULT_BACKUP_RETENTION_DAYS

    def __post_init__(self):
        for name in ("max_artifacts_per_page", "max_artifact_age_days"):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise ValueError(f"{name} must be >= 0, got {value}")

    @property
    def count_limit(self) -> Optional[int]:
        value = self.max_artifacts_per_page
        if value is None or math.isinf(value):
            return None
        return int(value)

    @property
    def age_limit(self) -> Optional[timedelta]:
        value = self.max_artifact_age_days
        if value is None or math.isinf(value):
            return None
        return timedelta(days=value)


# Temp files younger than this may still belong to a write in progress
TEMP_FILE_GRACE = timedelta(hours=1)


@dataclass
class EvictionFailure:
    descriptor: ArtifactDescriptor
    error: Exception


@dataclass
class EvictionResult:
    """Outcome of one retention pass."""
    evicted: list[ArtifactDescriptor] = field(default_factory=list)
    failures: list[EvictionFailure] = field(default_factory=list)
    # Stale temp files from interrupted writes
    swept: list[ArtifactDescriptor] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.evicted)

    @property
    def ok(self) -> bool:
        return not self.failures

    def raise_for_failures(self) -> None:
        """Raise PartialFailure if any deletion failed."""
        if self.failures:
            raise PartialFailure(
                f"Evicted {self.count} backup(s); {len(self.failures)} could not be deleted",
                [(f.descriptor.filename, f.error) for f in self.failures],
            )


class RetentionManager:
    """Applies count-based and age-based eviction over a SnapshotStore."""

    def __init__(self, store: SnapshotStore, clock: Callable[[], datetime] = _utcnow):
        self._store = store
        self._clock = clock

    def select(
        self,
        descriptors: list[ArtifactDescriptor],
        policy: RetentionPolicy,
        now: datetime,
    ) -> list[ArtifactDescriptor]:
        """Pick the artifacts the policy evicts.

        An artifact is evicted if it is beyond the per-page count cutoff or
        older than the age cutoff, whichever fires.
        """
        marked: dict[Path, ArtifactDescriptor] = {}

        count_limit = policy.count_limit
        if count_limit is not None:
            by_page: dict[str, list[ArtifactDescriptor]] = {}
            for d in descriptors:
                by_page.setdefault(d.page_id, []).append(d)
            for group in by_page.values():
                group.sort(key=lambda d: d.captured_at)
                excess = len(group) - count_limit
                for d in group[:max(excess, 0)]:
                    marked[d.location] = d

        age_limit = policy.age_limit
        if age_limit is not None:
            now = _as_utc(now)
            for d in descriptors:
                if now - d.captured_at > age_limit:
                    marked[d.location] = d

        return sorted(marked.values(), key=lambda d: (d.page_id, d.captured_at))

    def evict(self, policy: RetentionPolicy, now: Optional[datetime] = None) -> EvictionResult:
        """Delete every artifact the policy selects.

        Deletion is best-effort: a failure is logged and recorded in the
        result and the batch carries on. Temp files left by interrupted
        writes are swept once older than TEMP_FILE_GRACE, whatever the policy.
        """
        now = self._clock() if now is None else now
        result = EvictionResult()

        for d in self.select(self._store.list_all_artifacts(), policy, now):
            try:
                self._store.delete(d)
            except FileNotFoundError:
                logger.info(f"Backup already removed: {d.filename}")
                continue
            except OSError as e:
                logger.warning(f"Failed to delete backup {d.filename}: {e}")
                result.failures.append(EvictionFailure(d, e))
                continue
            logger.info(f"Deleted old backup: {d.filename}")
            result.evicted.append(d)

        self._sweep_temp_files(_as_utc(now), result)
        return result

    def _sweep_temp_files(self, now: datetime, result: EvictionResult) -> None:
        for d in self._store.list_temp_files():
            if now - d.captured_at <= TEMP_FILE_GRACE:
                continue
            try:
                self._store.delete(d)
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning(f"Failed to delete stale temp file {d.filename}: {e}")
                result.failures.append(EvictionFailure(d, e))
                continue
            logger.info(f"Deleted stale temp file: {d.filename}")
            result.swept.append(d)


class RetentionScheduler:
    """Runs retention once at start and then every `interval_seconds`."""

    def __init__(self, manager: RetentionManager, policy: RetentionPolicy, interval_seconds: float):
        self._manager = manager
        self._policy = policy
        self._interval = interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self) -> Optional[EvictionResult]:
        logger.info("Running backup cleanup...")
        try:
            result = self._manager.evict(self._policy)
        except Exception:
            logger.exception("Backup cleanup failed")
            return None
        logger.info(f"Backup cleanup removed {result.count} backup(s), {len(result.failures)} failure(s)")
        return result

    def _loop(self) -> None:
        while not self._stop.wait(self._interval):
            self.run_once()

    def start(self) -> None:
        self.run_once()
        self._thread = threading.Thread(target=self._loop, name="backup-retention", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)


# =============================================================================
# Restore
# =============================================================================

# Computed property types the API rejects on write
READ_ONLY_PROPERTY_TYPES = frozenset({
    'formula', 'rollup', 'created_time', 'created_by',
    'last_edited_time', 'last_edited_by', 'unique_id', 'verification', 'button',
})

# Notion accepts at most 100 children per append request
APPEND_BATCH_SIZE = 100


def writable_properties(properties: dict) -> dict:
    """Drop computed properties that cannot be written back."""
    return {
        name: value for name, value in properties.items()
        if not (isinstance(value, dict) and value.get("type") in READ_ONLY_PROPERTY_TYPES)
    }


async def append_in_batches(gateway: NotionGateway, parent_id: str, blocks: list[dict]) -> int:
    """Append blocks in API-sized batches, returning how many were created."""
    created = 0
    for start in range(0, len(blocks), APPEND_BATCH_SIZE):
        batch = blocks[start:start + APPEND_BATCH_SIZE]
        await gateway.append_children(parent_id, batch)
        created += len(batch)
    return created


@dataclass
class RestoreResult:
    page_id: str
    location: Path
    deleted_count: int
    created_count: int


@dataclass
class _RestoreProgress:
    step: str = ""
    completed: list[str] = field(default_factory=list)
    deleted: int = 0
    created: int = 0

    def begin(self, step: str) -> None:
        if self.step:
            self.completed.append(self.step)
        self.step = step


class Restorer:
    """Replays a stored snapshot onto the live page.

    Block content is replaced clear-then-recreate: every current top-level
    child is deleted, then the snapshot's top-level blocks are appended with
    fresh IDs. Children below the top level are not recreated. A failure in
    between leaves the page partially restored.
    """

    def __init__(
        self,
        gateway: NotionGateway,
        store: SnapshotStore,
        materializer: Optional[TreeMaterializer] = None,
    ):
        self._gateway = gateway
        self._store = store
        self._materializer = materializer or TreeMaterializer(gateway)

    async def replace_children(
        self,
        page_id: str,
        blocks: list[dict],
        progress: Optional[_RestoreProgress] = None,
    ) -> tuple[int, int]:
        """Delete all top-level children of a page, then append `blocks`.

        Returns:
            (deleted_count, created_count)
        """
        progress = progress or _RestoreProgress()

        progress.begin("list_children")
        existing = await self._materializer.list_all_children(page_id)

        progress.begin("delete_blocks")
        for raw in existing:
            await self._gateway.delete_block(raw["id"])
            progress.deleted += 1

        progress.begin("append_blocks")
        for start in range(0, len(blocks), APPEND_BATCH_SIZE):
            batch = blocks[start:start + APPEND_BATCH_SIZE]
            await self._gateway.append_children(page_id, batch)
            progress.created += len(batch)

        return progress.deleted, progress.created

    async def restore(self, location: Union[str, Path]) -> RestoreResult:
        """Restore the page recorded in an artifact.

        Args:
            location: Artifact path, or its file name inside the store.

        Raises:
            NotFound, MalformedArtifact: The artifact could not be loaded;
                the page was not touched.
            RestoreFailed: A remote step failed; names the step and the
                steps already completed.
        """
        snapshot = await asyncio.to_thread(self._store.load, location)
        path = self._store.resolve_location(location)
        page_id = snapshot.page_id
        logger.info(f"Restoring page {page_id} from {path.name}")

        progress = _RestoreProgress()
        try:
            # A page deleted after its backup sits in the trash; bring it back
            # in the same write so the block steps below are accepted.
            progress.begin("update_properties")
            await self._gateway.update_page_properties(
                page_id, writable_properties(snapshot.properties), unarchive=True
            )
            await self.replace_children(
                page_id,
                [block.to_create_request() for block in snapshot.blocks],
                progress,
            )
        except SnapshotError as e:
            logger.error(f"Restore of {page_id} failed at step '{progress.step}': {e}")
            raise RestoreFailed(
                page_id,
                path,
                progress.step,
                list(progress.completed),
                e,
                deleted_count=progress.deleted,
                created_count=progress.created,
            ) from e

        logger.info(
            f"Restored page {page_id}: deleted {progress.deleted} block(s), "
            f"created {progress.created}"
        )
        return RestoreResult(page_id, path, progress.deleted, progress.created)


# =============================================================================
# Snapshot Service
# =============================================================================


@dataclass
class SnapshotConfig:
    """Runtime settings for the snapshot subsystem."""
    backup_dir: Path = Path(DEFAULT_BACKUP_DIR)
    max_block_depth: int = DEFAULT_MAX_BLOCK_DEPTH
    max_backups_per_page: int = DEFAULT_MAX_BACKUPS_PER_PAGE
    backup_retention_days: float = DEFAULT_BACKUP_RETENTION_DAYS
    cleanup_interval_hours: float = DEFAULT_CLEANUP_INTERVAL_HOURS

    def __post_init__(self):
        self.backup_dir = Path(self.backup_dir).expanduser()
        if self.max_block_depth < 1:
            raise ValueError(f"max_block_depth must be >= 1, got {self.max_block_depth}")
        if self.max_backups_per_page < 1:
            raise ValueError(f"max_backups_per_page must be >= 1, got {self.max_backups_per_page}")
        if self.backup_retention_days <= 0:
            raise ValueError(f"backup_retention_days must be > 0, got {self.backup_retention_days}")
        if self.cleanup_interval_hours <= 0:
            raise ValueError(f"cleanup_interval_hours must be > 0, got {self.cleanup_interval_hours}")

    def retention_policy(self) -> RetentionPolicy:
        return RetentionPolicy(self.max_backups_per_page, self.backup_retention_days)


class SnapshotService:
    """Entry point used by the tool layer: capture, list, restore, retention.

    Nothing here serializes operations on the same page; callers running
    concurrent mutations against one page must serialize them themselves.
    The synchronous methods touch the backup directory directly; async
    callers run them through asyncio.to_thread.
    """

    def __init__(
        self,
        gateway: NotionGateway,
        config: SnapshotConfig,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.gateway = gateway
        self.config = config
        self.materializer = TreeMaterializer(gateway)
        self.store = SnapshotStore(
            config.backup_dir,
            gateway,
            self.materializer,
            max_depth=config.max_block_depth,
            clock=clock,
        )
        self.retention = RetentionManager(self.store, clock=clock)
        self.restorer = Restorer(gateway, self.store, self.materializer)

    async def capture_page(self, page_id: str) -> ArtifactDescriptor:
        return await self.store.capture(page_id)

    def list_artifacts(self, page_id: str) -> list[ArtifactDescriptor]:
        return self.store.list_artifacts(page_id)

    async def restore_artifact(self, location: Union[str, Path]) -> RestoreResult:
        return await self.restorer.restore(location)

    def run_retention(self, policy: Optional[RetentionPolicy] = None) -> EvictionResult:
        return self.retention.evict(policy or self.config.retention_policy())

    async def guard_mutation(self, page_id: str, skip_backup: bool = False) -> Optional[ArtifactDescriptor]:
        """Back up a page before a mutation.

        Returns:
            The artifact descriptor, or None when the caller skipped the backup.

        Raises:
            BackupFailed: The capture failed, so no backup exists.
        """
        if skip_backup:
            logger.warning(f"Backup skipped for {page_id} at caller's request")
            return None
        try:
            return await self.capture_page(page_id)
        except (SnapshotError, OSError) as e:
            logger.error(f"Failed to create backup of {page_id}: {e}")
            raise BackupFailed(page_id, e) from e

    async def update_page(
        self,
        page_id: str,
        properties: Optional[dict] = None,
        content: Optional[list[dict]] = None,
    ) -> None:
        """Update properties and/or replace the page's top-level content."""
        if properties:
            await self.gateway.update_page_properties(page_id, properties)
        if content:
            await self.restorer.replace_children(page_id, content)

    def scheduler(self) -> RetentionScheduler:
        return RetentionScheduler(
            self.retention,
            self.config.retention_policy(),
            self.config.cleanup_interval_hours * 3600,
        )


# =============================================================================
# Self-Healing Error Messages
# =============================================================================


def _error(code: str, message: str, hint: str | None = None, ref: str | None = None) -> str:
    """Format error with optional self-healing hint.

    Args:
        code: Error code (e.g., REF_GONE, BACKUP_FAILED)
        message: Human-readable description
        hint: Suggestion on how to fix the issue
        ref: The reference that failed (for context)

    Returns:
        Formatted error string with hint if provided.
    """
    parts = [f"error: {code} - {message}"]
    if ref:
        parts.append(f"ref: {ref}")
    if hint:
        parts.append(f"hint: {hint}")
    return "\n".join(parts)


HINTS = {
    "unknown_id": "Use notion_search to find the page by title, or provide a full Notion UUID/URL.",
    "ref_gone": "The object may be deleted, in trash, or not shared with this integration. Check Notion UI or search by title.",
    "missing_capability": "Share the page/database with the integration: open in Notion → Share → invite the integration.",
    "rate_limited": "Too many requests. Wait a moment and try again.",
    "invalid_token": "Token is invalid or expired. Check the --token-file contents or NOTION_API_KEY.",
    "backup_failed": "No backup exists for this change. Fix the cause, or pass skip_backup=true to proceed unprotected (not recommended).",
    "unknown_backup": "Use notion_manage_backups with action=list to see available backup filenames.",
    "malformed_backup": "The backup file is corrupt. Pick an older backup from action=list.",
    "restore_partial": "The page may be partially restored. Check it in Notion, then re-run the restore once the cause is fixed.",
}


def _describe_error(e: Exception, ref: str | None = None) -> str:
    """Map an exception onto an _error() message."""
    if isinstance(e, RestoreFailed):
        return _error("RESTORE_FAILED", str(e), hint=HINTS["restore_partial"], ref=ref)
    if isinstance(e, BackupFailed):
        return _error("BACKUP_FAILED", str(e), hint=HINTS["backup_failed"], ref=ref)
    if isinstance(e, MalformedArtifact):
        return _error("MALFORMED_BACKUP", str(e), hint=HINTS["malformed_backup"], ref=ref)
    if isinstance(e, PartialFailure):
        return _error("PARTIAL_FAILURE", str(e), ref=ref)
    if isinstance(e, NotFound):
        return _error("REF_GONE", f"Object not found: {e}", hint=HINTS["ref_gone"], ref=ref)
    if isinstance(e, RemoteUnavailable):
        if e.status_code == 401:
            return _error("INVALID_TOKEN", "Token is invalid or expired", hint=HINTS["invalid_token"])
        if e.status_code == 403:
            return _error("MISSING_CAPABILITY", "Integration lacks access", hint=HINTS["missing_capability"], ref=ref)
        if e.status_code == 429:
            return _error("RATE_LIMITED", "Too many requests", hint=HINTS["rate_limited"])
        return _error("HTTP_ERROR", str(e), ref=ref)
    if isinstance(e, ValueError):
        return _error("INVALID_ARGUMENT", str(e), ref=ref)
    return _error("UNEXPECTED", f"{type(e).__name__}: {e}", ref=ref)


# =============================================================================
# MCP Server
# =============================================================================

mcp = FastMCP("notion-snapshot-mcp", host="127.0.0.1", port=2052)

# Installed by main(); tests install their own
_service: Optional[SnapshotService] = None


def _get_service() -> SnapshotService:
    if _service is None:
        raise RuntimeError("Snapshot service is not configured. Start the server via main().")
    return _service


@mcp.tool()
async def notion_check_auth() -> str:
    """Verify Notion authentication and return workspace info."""
    try:
        result = await _get_service().gateway.get_me()
    except Exception as e:
        return _describe_error(e)

    bot_name = result.get("name", "Unknown")
    bot_type = result.get("type", "unknown")
    workspace_name = result.get("bot", {}).get("workspace_name", "Unknown workspace")
    return f"authenticated as '{bot_name}' ({bot_type}) in workspace '{workspace_name}'"


@mcp.tool()
async def notion_search(query: str, filter_type: str = "all", limit: int = 20) -> str:
    """Search Notion by title.

    Args:
        query: Search query (matched against page/database titles).
        filter_type: Filter results - "page", "database", or "all" (default).
        limit: Maximum results to return (default 20, max 100).

    Returns:
        One line per result: "<id> page|db  <title>".
    """
    object_type = {"page": "page", "database": "data_source"}.get(filter_type)
    try:
        results = await _get_service().gateway.search(query, object_type, limit)
    except Exception as e:
        return _describe_error(e)

    lines = []
    for item in results:
        if item.get("object") == "page":
            lines.append(f"{item.get('id', '')} page  {get_page_title(item)}")
        elif item.get("object") == "data_source":
            # notion_query_database takes the database ID, not the data source ID
            db_id = item.get("parent", {}).get("database_id", item.get("id", ""))
            lines.append(f"{db_id} db    {get_database_title(item)}")

    if not lines:
        return f"No results for '{query}'"
    return f"Found {len(lines)} result(s) for '{query}':\n" + "\n".join(lines)


@mcp.tool()
async def notion_list_databases(limit: int = 20) -> str:
    """List databases shared with the integration, most recently edited first."""
    try:
        results = await _get_service().gateway.search("", "data_source", limit)
    except Exception as e:
        return _describe_error(e)

    lines = []
    for item in results:
        db_id = item.get("parent", {}).get("database_id", item.get("id", ""))
        lines.append(f"{db_id}  {get_database_title(item)}  (edited {item.get('last_edited_time', '?')})")
    if not lines:
        return "No databases shared with this integration."
    return "\n".join(lines)


@mcp.tool()
async def notion_query_database(database_id: str, limit: int = 50) -> str:
    """List rows (pages) of a database.

    Args:
        database_id: Database UUID or URL.
        limit: Maximum rows to return (default 50).
    """
    try:
        db_id = resolve_page_ref(database_id)
        gateway = _get_service().gateway
        database = await gateway.get_database(db_id)
        data_sources = database.get("data_sources", [])
        if not data_sources:
            return _error("NO_DATA_SOURCES", "Database has no data sources", ref=db_id)
        rows, has_more = await gateway.query_data_source(data_sources[0]["id"], limit=limit)
    except Exception as e:
        return _describe_error(e, ref=database_id)

    lines = [f"Database '{get_database_title(database)}' - {len(rows)} row(s)"]
    for row in rows:
        lines.append(f"{row.get('id', '')}  {get_page_title(row)}")
    if has_more:
        lines.append("(more rows available; raise limit)")
    return "\n".join(lines)


def _format_property_schema(name: str, prop: dict) -> str:
    prop_type = prop.get("type", "unknown")
    line = f"- {name} ({prop_type})"
    config = prop.get(prop_type)
    if isinstance(config, dict) and config.get("options"):
        names = ", ".join(o.get("name", "") for o in config["options"])
        line += f": {names}"
    return line


@mcp.tool()
async def notion_get_database_schema(database_id: str) -> str:
    """Show a database's columns, so create/update calls can match them.

    Args:
        database_id: Database UUID or URL.

    Returns:
        One line per property: "- <name> (<type>)", followed by the option
        names for select, multi_select and status columns.
    """
    try:
        db_id = resolve_page_ref(database_id)
        gateway = _get_service().gateway
        database = await gateway.get_database(db_id)
        data_sources = database.get("data_sources", [])
        if not data_sources:
            return _error("NO_DATA_SOURCES", "Database has no data sources", ref=db_id)
        data_source = await gateway.get_data_source(data_sources[0]["id"])
    except Exception as e:
        return _describe_error(e, ref=database_id)

    properties = data_source.get("properties", {})
    lines = [f"Database '{get_database_title(database)}' - {len(properties)} properties"]
    for name, prop in properties.items():
        lines.append(_format_property_schema(name, prop))
    return "\n".join(lines)


@mcp.tool()
async def notion_recent_updates(max_items: int = 5) -> str:
    """List the most recently edited pages and databases in the workspace.

    Args:
        max_items: Maximum entries to return (default 5, max 100).
    """
    try:
        results = await _get_service().gateway.search("", None, max_items)
    except Exception as e:
        return _describe_error(e)

    lines = []
    for item in results:
        edited = item.get("last_edited_time", "?")
        if item.get("object") == "page":
            parent_type = item.get("parent", {}).get("type", "")
            parent = {"database_id": "database", "data_source_id": "database",
                      "page_id": "page"}.get(parent_type, "workspace")
            lines.append(f"{item.get('id', '')} page  {get_page_title(item)}  (in {parent}, edited {edited})")
        elif item.get("object") == "data_source":
            db_id = item.get("parent", {}).get("database_id", item.get("id", ""))
            lines.append(f"{db_id} db    {get_database_title(item)}  (edited {edited})")

    if not lines:
        return "No recent updates."
    return f"{len(lines)} most recent update(s):\n" + "\n".join(lines)


@mcp.tool()
async def notion_read_page(page_id: str, depth: Optional[int] = None) -> str:
    """Read a page's properties and nested blocks as a JSON snapshot document.

    Args:
        page_id: Page UUID or Notion URL.
        depth: Block nesting levels to fetch (default: server's --max-block-depth).
    """
    try:
        resolved = resolve_page_ref(page_id)
        snapshot = await _get_service().store.fetch_snapshot(resolved, max_depth=depth)
    except Exception as e:
        return _describe_error(e, ref=page_id)
    return json.dumps(snapshot.to_dict(), indent=2, ensure_ascii=False)


@mcp.tool()
async def notion_create_page(
    parent_id: str,
    properties: dict,
    parent_type: str = "page",
    content: Optional[list[dict]] = None,
) -> str:
    """Create a new page under a page or in a database.

    Args:
        parent_id: Parent page or database UUID/URL.
        properties: Page properties (see notion_get_database_schema).
        parent_type: "page" (default) or "database".
        content: Optional Notion block objects for the page body.
    """
    if parent_type not in ("page", "database"):
        return _error("INVALID_ARGUMENT", f"parent_type must be 'page' or 'database', got '{parent_type}'")
    try:
        resolved = resolve_page_ref(parent_id)
        gateway = _get_service().gateway
        blocks = content or []
        page = await gateway.create_page(
            {f"{parent_type}_id": resolved},
            properties,
            children=blocks[:APPEND_BATCH_SIZE],
        )
        if len(blocks) > APPEND_BATCH_SIZE:
            await append_in_batches(gateway, page["id"], blocks[APPEND_BATCH_SIZE:])
    except Exception as e:
        return _describe_error(e, ref=parent_id)
    return f"Page created successfully. New page ID: {page.get('id')}"


@mcp.tool()
async def notion_update_page(
    page_id: str,
    properties: Optional[dict] = None,
    content: Optional[list[dict]] = None,
    skip_backup: bool = False,
) -> str:
    """Update a page's properties and/or replace its content.

    The page is backed up first. If the backup fails the update is NOT
    applied; retry with skip_backup=true to proceed without one.

    Args:
        page_id: Page UUID or Notion URL.
        properties: Properties to update.
        content: New top-level blocks; replaces all existing content.
        skip_backup: Skip the backup (not recommended).
    """
    if not properties and not content:
        return _error("INVALID_ARGUMENT", "Either properties or content must be provided")
    try:
        resolved = resolve_page_ref(page_id)
    except ValueError as e:
        return _error("UNKNOWN_ID", str(e), hint=HINTS["unknown_id"], ref=page_id)

    service = _get_service()
    try:
        backup = await service.guard_mutation(resolved, skip_backup=skip_backup)
    except BackupFailed as e:
        return _error(
            "BACKUP_FAILED",
            f"Could not create a backup; no backup exists and the update was not performed. {e.cause}",
            hint=HINTS["backup_failed"],
            ref=resolved,
        )

    try:
        await service.update_page(resolved, properties, content)
    except Exception as e:
        return _describe_error(e, ref=resolved)

    if backup is None:
        return f"Page {resolved} updated successfully (no backup taken)."
    return f"Page {resolved} updated successfully. Backup: {backup.filename}"


@mcp.tool()
async def notion_delete_page(page_id: str, skip_backup: bool = False) -> str:
    """Delete (archive) a page.

    The page is backed up first; if that fails the deletion is aborted.

    Args:
        page_id: Page UUID or Notion URL.
        skip_backup: Skip the backup (not recommended).
    """
    try:
        resolved = resolve_page_ref(page_id)
    except ValueError as e:
        return _error("UNKNOWN_ID", str(e), hint=HINTS["unknown_id"], ref=page_id)

    service = _get_service()
    try:
        backup = await service.guard_mutation(resolved, skip_backup=skip_backup)
    except BackupFailed as e:
        return _error(
            "BACKUP_FAILED",
            f"Safety procedure failed: could not create backup before deletion. Operation aborted. {e.cause}",
            hint=HINTS["backup_failed"],
            ref=resolved,
        )

    try:
        await service.gateway.archive_page(resolved)
    except Exception as e:
        return _describe_error(e, ref=resolved)

    if backup is None:
        return f"Page {resolved} has been deleted (no backup taken)."
    return f"Page {resolved} has been deleted. Backup: {backup.filename}"


def _format_backup_list(page_id: str, descriptors: list[ArtifactDescriptor]) -> str:
    if not descriptors:
        return f"No backups found for page {page_id}."
    lines = [f"Available backups for page {page_id}:", ""]
    for i, d in enumerate(descriptors, 1):
        lines.append(f"{i}. {d.filename}")
        lines.append(f"   Captured: {format_timestamp(d.captured_at)}")
        lines.append(f"   Size: {math.ceil(d.size_bytes / 1024)} KB")
    return "\n".join(lines)


@mcp.tool()
async def notion_manage_backups(
    action: str,
    page_id: Optional[str] = None,
    backup_filename: Optional[str] = None,
    max_backups_per_page: Optional[int] = None,
    max_backup_age_days: Optional[float] = None,
) -> str:
    """Capture, list, restore, or clean up page backups.

    Actions:
        capture   Back up page_id now.
        list      List page_id's backups, newest first.
        restore   Restore backup_filename onto its page. Current top-level
                  blocks are deleted and the backup's top-level blocks are
                  recreated with new IDs; nested children are not recreated.
                  If a step fails the page may be left partially restored.
        cleanup   Delete backups beyond max_backups_per_page per page or older
                  than max_backup_age_days (defaults: server settings).
    """
    service = _get_service()

    if action in ("capture", "list"):
        if not page_id:
            return _error("INVALID_ARGUMENT", f"page_id is required for action '{action}'")
        try:
            resolved = resolve_page_ref(page_id)
            if action == "capture":
                descriptor = await service.capture_page(resolved)
                return f"Backup created: {descriptor.filename} ({descriptor.size_bytes} bytes)"
            return _format_backup_list(resolved, await asyncio.to_thread(service.list_artifacts, resolved))
        except Exception as e:
            return _describe_error(e, ref=page_id)

    if action == "restore":
        if not backup_filename:
            return _error("INVALID_ARGUMENT", "backup_filename is required for restore")
        if Path(backup_filename).name != backup_filename:
            return _error("INVALID_ARGUMENT", "backup_filename must be a file name, not a path",
                          hint=HINTS["unknown_backup"])
        try:
            result = await service.restore_artifact(backup_filename)
        except NotFound as e:
            return _error("UNKNOWN_BACKUP", str(e), hint=HINTS["unknown_backup"], ref=backup_filename)
        except Exception as e:
            return _describe_error(e, ref=backup_filename)
        return (
            f"Page {result.page_id} has been restored from backup {backup_filename} "
            f"({result.deleted_count} block(s) removed, {result.created_count} recreated)."
        )

    if action == "cleanup":
        defaults = service.config.retention_policy()
        try:
            policy = RetentionPolicy(
                max_backups_per_page if max_backups_per_page is not None else defaults.max_artifacts_per_page,
                max_backup_age_days if max_backup_age_days is not None else defaults.max_artifact_age_days,
            )
            result = await asyncio.to_thread(service.run_retention, policy)
        except Exception as e:
            return _describe_error(e)

        text = (
            f"Backup cleanup removed {result.count} backup(s). Kept at most "
            f"{policy.max_artifacts_per_page} per page and removed backups older "
            f"than {policy.max_artifact_age_days} days."
        )
        if result.failures:
            failed = "\n".join(f"  ⚠ {f.descriptor.filename}: {f.error}" for f in result.failures)
            return _error("PARTIAL_FAILURE", f"{text} {len(result.failures)} could not be deleted:\n{failed}")
        return text

    return _error("INVALID_ARGUMENT", f"Unknown action: {action}",
                  hint="Use one of: capture, list, restore, cleanup.")


# =============================================================================
# HTTP Endpoints (/health)
# =============================================================================

async def health_endpoint(request: Request) -> JSONResponse:
    """Health check endpoint for easy testing."""
    if _service is None:
        return JSONResponse({"status": "unconfigured"}, status_code=503)

    return JSONResponse({
        "status": "ok",
        "token_loaded": _service.gateway.has_token,
        "backup_dir": str(_service.config.backup_dir),
        "backups": len(await asyncio.to_thread(_service.store.list_all_artifacts)),
    })


# =============================================================================
# Main Entry Point
# =============================================================================

def _load_token(token_file: Optional[str]) -> str:
    """Read the token from --token-file, falling back to NOTION_API_KEY."""
    if token_file:
        token_path = Path(token_file).expanduser()
        if not token_path.exists():
            logger.error(f"Token file not found: {token_path}")
            raise SystemExit(1)
        token = token_path.read_text().strip()
        if not token:
            logger.error("Token file is empty")
            raise SystemExit(1)
        logger.info(f"Notion token loaded from {token_path}")
        return token

    token = os.environ.get("NOTION_API_KEY", "").strip()
    if not token:
        logger.error("No Notion token. Pass --token-file <path> or set NOTION_API_KEY.")
        raise SystemExit(1)
    return token


def main():
    """Run the Notion snapshot MCP server.

    Supports two transport modes:
    - stdio (default): launched directly by the MCP client
    - http: standalone server on port 2052

    Usage:
        notion-snapshot-mcp --token-file ~/.notion_token
        notion-snapshot-mcp --token-file ~/.notion_token --http
    """
    import argparse

    global _service

    parser = argparse.ArgumentParser(description="Notion MCP Server with page backups")
    parser.add_argument(
        "--token-file",
        help="Path to file containing Notion API token (default: NOTION_API_KEY env var)"
    )
    parser.add_argument(
        "--http",
        action="store_true",
        help="Run as HTTP server on localhost:2052 instead of stdio"
    )
    parser.add_argument(
        "--backup-dir",
        default=os.environ.get("BACKUP_DIR", DEFAULT_BACKUP_DIR),
        help="Directory for page backups (env: BACKUP_DIR)"
    )
    parser.add_argument(
        "--max-block-depth",
        type=int,
        default=os.environ.get("MAX_BLOCK_DEPTH", str(DEFAULT_MAX_BLOCK_DEPTH)),
        help="Nesting levels captured per backup (env: MAX_BLOCK_DEPTH)"
    )
    parser.add_argument(
        "--max-backups-per-page",
        type=int,
        default=os.environ.get("MAX_BACKUPS_PER_PAGE", str(DEFAULT_MAX_BACKUPS_PER_PAGE)),
        help="Backups kept per page by cleanup (env: MAX_BACKUPS_PER_PAGE)"
    )
    parser.add_argument(
        "--backup-retention-days",
        type=float,
        default=os.environ.get("BACKUP_RETENTION_DAYS", str(DEFAULT_BACKUP_RETENTION_DAYS)),
        help="Maximum backup age in days (env: BACKUP_RETENTION_DAYS)"
    )
    parser.add_argument(
        "--cleanup-interval-hours",
        type=float,
        default=os.environ.get("CLEANUP_INTERVAL_HOURS", str(DEFAULT_CLEANUP_INTERVAL_HOURS)),
        help="Hours between scheduled cleanups (env: CLEANUP_INTERVAL_HOURS)"
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        default=os.environ.get("DEBUG") == "true",
        help="Enable debug logging (env: DEBUG=true)"
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S"
    )

    token = _load_token(args.token_file)
    try:
        config = SnapshotConfig(
            backup_dir=Path(args.backup_dir),
            max_block_depth=args.max_block_depth,
            max_backups_per_page=args.max_backups_per_page,
            backup_retention_days=args.backup_retention_days,
            cleanup_interval_hours=args.cleanup_interval_hours,
        )
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        raise SystemExit(1)

    config.backup_dir.mkdir(parents=True, exist_ok=True)
    logger.info(f"Backups stored in {config.backup_dir.resolve()}")

    _service = SnapshotService(NotionGateway(token), config)
    scheduler = _service.scheduler()
    scheduler.start()

    try:
        if args.http:
            import uvicorn

            app = mcp.streamable_http_app()
            app.add_route("/health", health_endpoint, methods=["GET"])

            logger.info("Starting Notion snapshot MCP server on http://127.0.0.1:2052")
            uvicorn.run(app, host="127.0.0.1", port=2052, log_level="warning")
        else:
            mcp.run()
    finally:
        scheduler.stop()


if __name__ == "__main__":
    main()
