from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Generic, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from timeledger.core.config import Settings, get_settings
from timeledger.core.errors import (
    IntegrationUnavailableError,
    RemoteAuthError,
    RemoteConfigError,
    RemoteError,
    RemoteRequestError,
    RemoteTransientError,
)
from timeledger.services.remote.schemas import (
    RemoteIssue,
    RemoteMembership,
    RemoteProject,
    RemoteTimeEntry,
    RemoteUser,
)
from timeledger.services.resilience import CircuitBreaker, CircuitBreakerConfig, RetryPolicy, retry_async
from timeledger.services.telemetry import increment_counter, record_external_call


logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_INTEGRATION = "redmine"


@dataclass(frozen=True)
class CollectionSpec:
    path: str
    key: str
    timeout_setting: str
    delay_setting: str


COLLECTIONS: dict[str, CollectionSpec] = {
    "users": CollectionSpec("/users.json", "users", "remote_timeout_ms", "remote_user_page_delay_ms"),
    "projects": CollectionSpec("/projects.json", "projects", "remote_timeout_ms", "remote_project_page_delay_ms"),
    "issues": CollectionSpec("/issues.json", "issues", "remote_issue_timeout_ms", "remote_issue_page_delay_ms"),
    "time_entries": CollectionSpec(
        "/time_entries.json", "time_entries", "remote_time_entry_timeout_ms", "remote_time_entry_page_delay_ms"
    ),
}


@dataclass(frozen=True)
class PageResult:
    items: list[dict[str, Any]]
    has_more: bool


@dataclass
class FetchResult(Generic[ModelT]):
    """Outcome of a paginated collection fetch.

    ``complete`` is True only when every page was retrieved; deletion
    reconciliation must not run against an incomplete result. ``seen_ids``
    holds every remote id the listing reported, including records whose
    payload later failed to parse or load.
    ``skipped`` counts listed records whose detail fetch failed.
    """

    items: list[ModelT] = field(default_factory=list)
    seen_ids: set[int] = field(default_factory=set)
    complete: bool = True
    failed_pages: int = 0
    invalid: int = 0
    skipped: int = 0
    error: RemoteError | None = None


def _config_hash(settings: Settings) -> str:
    raw = f"{settings.redmine_url.rstrip('/')}|{settings.redmine_api_key}|{settings.remote_timeout_ms}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def _date_param(value: date) -> str:
    return value.isoformat()


def spent_on_filter(spent_from: date | None, spent_to: date | None) -> str | None:
    # Redmine range syntax: "><from|to", ">=from" or "<=to".
    if spent_from and spent_to:
        return f"><{_date_param(spent_from)}|{_date_param(spent_to)}"
    if spent_from:
        return f">={_date_param(spent_from)}"
    if spent_to:
        return f"<={_date_param(spent_to)}"
    return None


class RedmineClient:
    """Paginated, retrying reader for the Redmine REST API."""

    def __init__(
        self,
        settings_provider: Callable[[], Settings] | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings_provider = settings_provider or get_settings
        self._transport = transport
        self._http: httpx.AsyncClient | None = None
        self._http_hash: str | None = None
        self._lock = asyncio.Lock()

    @property
    def settings(self) -> Settings:
        return self._settings_provider()

    async def _client(self) -> httpx.AsyncClient:
        # Rebuild the HTTP client whenever URL, key or timeout change underneath us.
        settings = self.settings
        if not settings.redmine_url or not settings.redmine_api_key:
            raise RemoteConfigError("Redmine URL and API key must be configured")
        current = _config_hash(settings)
        if self._http is not None and self._http_hash == current:
            return self._http
        async with self._lock:
            if self._http is None or self._http_hash != current:
                stale = self._http
                self._http = httpx.AsyncClient(
                    base_url=settings.redmine_url.rstrip("/"),
                    headers={
                        "X-Redmine-API-Key": settings.redmine_api_key,
                        "Content-Type": "application/json",
                    },
                    timeout=settings.remote_timeout_ms / 1000.0,
                    transport=self._transport,
                )
                self._http_hash = current
                if stale is not None:
                    logger.info("redmine_client_rebuilt reason=config_changed")
                    await stale.aclose()
        return self._http

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None
            self._http_hash = None

    def _retry_policy(self, timeout_ms: int) -> RetryPolicy:
        settings = self.settings
        return RetryPolicy(
            # Leave headroom so the HTTP timeout fires before the outer guard.
            timeout_ms=timeout_ms + 5000,
            max_attempts=settings.remote_retry_max_attempts,
            backoff_ms=settings.remote_retry_backoff_ms,
            max_backoff_ms=settings.remote_retry_max_backoff_ms,
        )

    async def get_json(
        self,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        timeout_ms: int | None = None,
    ) -> dict[str, Any]:
        timeout_ms = timeout_ms or self.settings.remote_timeout_ms
        client = await self._client()

        async def _call() -> dict[str, Any]:
            started = time.monotonic()
            try:
                response = await client.get(path, params=params, timeout=timeout_ms / 1000.0)
            except httpx.TimeoutException as exc:
                record_external_call(integration=_INTEGRATION, latency_ms=_elapsed_ms(started), success=False)
                raise RemoteTransientError(f"timeout calling {path}") from exc
            except httpx.TransportError as exc:
                record_external_call(integration=_INTEGRATION, latency_ms=_elapsed_ms(started), success=False)
                raise RemoteTransientError(f"network error calling {path}: {exc}") from exc
            status = response.status_code
            record_external_call(integration=_INTEGRATION, latency_ms=_elapsed_ms(started), success=status < 400)
            if status in (401, 403):
                raise RemoteAuthError(f"remote rejected credentials for {path}", status_code=status)
            if status == 429 or status >= 500:
                raise RemoteTransientError(f"remote returned {status} for {path}", status_code=status)
            if status >= 400:
                raise RemoteRequestError(f"remote returned {status} for {path}", status_code=status)
            try:
                return response.json()
            except ValueError as exc:
                raise RemoteRequestError(f"invalid JSON from {path}", status_code=status) from exc

        try:
            return await retry_async(_call, policy=self._retry_policy(timeout_ms), operation=f"redmine.get {path}")
        except TimeoutError as exc:
            raise RemoteTransientError(f"timeout calling {path}") from exc

    async def fetch_page(
        self,
        collection: str,
        offset: int,
        limit: int,
        filters: dict[str, Any] | None = None,
    ) -> PageResult:
        spec = COLLECTIONS[collection]
        return await self._fetch_spec_page(spec, offset, limit, filters)

    async def _fetch_spec_page(
        self,
        spec: CollectionSpec,
        offset: int,
        limit: int,
        filters: dict[str, Any] | None,
    ) -> PageResult:
        params: dict[str, Any] = {"limit": limit, "offset": offset}
        params.update({key: value for key, value in (filters or {}).items() if value is not None})
        payload = await self.get_json(spec.path, params=params, timeout_ms=getattr(self.settings, spec.timeout_setting))
        items = list(payload.get(spec.key) or [])
        return PageResult(items=items, has_more=len(items) == limit)

    async def _paginate(self, spec: CollectionSpec, filters: dict[str, Any] | None = None) -> FetchResult:
        # Pages are requested sequentially so offsets stay consistent.
        settings = self.settings
        limit = settings.remote_page_size
        delay_s = getattr(settings, spec.delay_setting) / 1000.0
        breaker = CircuitBreaker(
            f"redmine.{spec.key}",
            config=CircuitBreakerConfig(
                failure_threshold=settings.remote_breaker_consecutive_failures,
                open_seconds=3600,
                half_open_trials=1,
            ),
        )
        result: FetchResult = FetchResult()
        offset = 0
        while True:
            try:
                breaker.before_call()
            except IntegrationUnavailableError:
                logger.error(
                    "remote_fetch_aborted collection=%s fetched=%d failed_pages=%d",
                    spec.key,
                    len(result.items),
                    result.failed_pages,
                )
                increment_counter(f"remote_fetch_aborted_total.{spec.key}")
                result.complete = False
                break
            try:
                page = await self._fetch_spec_page(spec, offset, limit, filters)
            except RemoteConfigError:
                raise
            except RemoteAuthError as exc:
                # Credentials will not get better by retrying the next page.
                logger.error("remote_fetch_unauthorized collection=%s status=%s", spec.key, exc.status_code)
                result.complete = False
                result.error = exc
                break
            except RemoteError as exc:
                breaker.record_failure()
                result.failed_pages += 1
                result.complete = False
                result.error = exc
                logger.warning(
                    "remote_page_failed collection=%s offset=%d consecutive=%d error=%s",
                    spec.key,
                    offset,
                    breaker.failures,
                    exc,
                )
                offset += limit
                await asyncio.sleep(delay_s)
                continue
            breaker.record_success()
            result.items.extend(page.items)
            if not page.has_more:
                break
            offset += limit
            await asyncio.sleep(delay_s)
        logger.info(
            "remote_fetch_completed collection=%s items=%d complete=%s",
            spec.key,
            len(result.items),
            result.complete,
        )
        return result

    def _parse(self, model: type[ModelT], raw: FetchResult) -> FetchResult[ModelT]:
        parsed: FetchResult[ModelT] = FetchResult(
            complete=raw.complete,
            failed_pages=raw.failed_pages,
            error=raw.error,
        )
        for item in raw.items:
            remote_id = item.get("id")
            if isinstance(remote_id, int):
                parsed.seen_ids.add(remote_id)
            try:
                parsed.items.append(model.model_validate(item))
            except ValidationError as exc:
                parsed.invalid += 1
                logger.warning("remote_payload_invalid model=%s id=%s errors=%d", model.__name__, remote_id, exc.error_count())
        return parsed

    async def fetch_user_detail(self, user_id: int) -> RemoteUser:
        payload = await self.get_json(f"/users/{user_id}.json")
        return RemoteUser.model_validate(payload.get("user") or {})

    async def fetch_users(self) -> FetchResult[RemoteUser]:
        """List every user id (any status) and load full records in small batches."""
        # An empty status filter includes locked and registered users.
        listing = await self._paginate(COLLECTIONS["users"], {"status": ""})
        settings = self.settings
        batch_size = max(1, settings.remote_user_detail_batch_size)
        result: FetchResult[RemoteUser] = FetchResult(
            complete=listing.complete,
            failed_pages=listing.failed_pages,
            error=listing.error,
        )
        listed = [item for item in listing.items if isinstance(item.get("id"), int)]
        result.seen_ids = {item["id"] for item in listed}
        for start in range(0, len(listed), batch_size):
            batch = listed[start : start + batch_size]
            details = await asyncio.gather(
                *(self.fetch_user_detail(item["id"]) for item in batch),
                return_exceptions=True,
            )
            for item, detail in zip(batch, details):
                if isinstance(detail, RemoteUser):
                    result.items.append(detail)
                    continue
                # Skip the user; its id stays in seen_ids so deletion reconciliation keeps the local row.
                result.skipped += 1
                logger.warning("remote_user_detail_failed user_id=%s error=%s", item["id"], detail)
            if start + batch_size < len(listed):
                await asyncio.sleep(settings.remote_user_detail_batch_delay_ms / 1000.0)
        return result

    async def fetch_projects(self) -> FetchResult[RemoteProject]:
        raw = await self._paginate(COLLECTIONS["projects"])
        return self._parse(RemoteProject, raw)

    async def fetch_project_detail(self, project_id: int) -> RemoteProject:
        payload = await self.get_json(f"/projects/{project_id}.json")
        return RemoteProject.model_validate(payload.get("project") or {})

    async def fetch_issues(
        self,
        *,
        updated_after: date | None = None,
        project_id: int | None = None,
    ) -> FetchResult[RemoteIssue]:
        filters: dict[str, Any] = {"status_id": "*"}
        if updated_after is not None:
            filters["updated_on"] = f">={_date_param(updated_after)}"
        if project_id is not None:
            filters["project_id"] = project_id
        raw = await self._paginate(COLLECTIONS["issues"], filters)
        return self._parse(RemoteIssue, raw)

    async def fetch_time_entries(
        self,
        *,
        spent_from: date | None = None,
        spent_to: date | None = None,
        project_id: int | None = None,
    ) -> FetchResult[RemoteTimeEntry]:
        filters: dict[str, Any] = {"spent_on": spent_on_filter(spent_from, spent_to)}
        if project_id is not None:
            filters["project_id"] = project_id
        raw = await self._paginate(COLLECTIONS["time_entries"], filters)
        return self._parse(RemoteTimeEntry, raw)

    async def fetch_project_members(self, project_id: int) -> FetchResult[RemoteMembership]:
        spec = CollectionSpec(
            f"/projects/{project_id}/memberships.json",
            "memberships",
            "remote_timeout_ms",
            "remote_project_detail_delay_ms",
        )
        try:
            first = await self._fetch_spec_page(spec, 0, self.settings.remote_page_size, None)
        except (RemoteAuthError, RemoteRequestError) as exc:
            # Archived or restricted projects hide their memberships; treat as empty.
            if exc.status_code in (403, 404):
                logger.info("remote_memberships_unavailable project_id=%s status=%s", project_id, exc.status_code)
                return FetchResult()
            raise
        if not first.has_more:
            return self._parse(RemoteMembership, FetchResult(items=first.items))
        raw = await self._paginate(spec)
        return self._parse(RemoteMembership, raw)

    async def test_connection(self) -> bool:
        try:
            await self.fetch_page("users", 0, 1, {"status": ""})
        except RemoteError as exc:
            logger.warning("remote_connection_failed error=%s", exc)
            return False
        return True


def _elapsed_ms(started: float) -> float:
    return (time.monotonic() - started) * 1000.0
