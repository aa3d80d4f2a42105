from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException

from backend.app.dependencies import (
    get_auth_service,
    get_cache_settings_repository,
    get_cache_size_limit,
    get_cache_stores,
    get_caption_fetcher,
    get_feed_fetcher,
    get_quota_tracker,
    get_summary_orchestrator,
    get_throttler,
)
from backend.app.models.api_contracts import (
    AuthCodeRequest,
    AuthTokenResponse,
    AuthUrlResponse,
    CacheExportDocument,
    CacheImportResponse,
    CacheNamespaceStatsResponse,
    CacheSettingsPayload,
    CacheStatsResponse,
    FeedItemResponse,
    FeedResponse,
    QuotaResponse,
    SummaryResponse,
    TranscriptResponse,
)
from backend.app.repositories.cache_store import CacheStore, SharedSizeLimit
from backend.app.repositories.quota_repository import QuotaTracker
from backend.app.repositories.settings_repository import CacheSettingsRepository
from backend.app.services.auth_service import GoogleAuthService, Principal, has_caption_scope
from backend.app.services.errors import ErrorKind, FetchError
from backend.app.services.request_throttler import RequestThrottler
from backend.app.services.resource_fetchers import CaptionFetcher, FeedFetcher
from backend.app.services.summarization import SummaryOrchestrator

router = APIRouter()


@dataclass(frozen=True)
class BearerCredentials:
    access_token: str
    principal: Principal


def require_credentials(
    auth_service: Annotated[GoogleAuthService, Depends(get_auth_service)],
    authorization: Annotated[str | None, Header()] = None,
) -> BearerCredentials:
    access_token = _parse_bearer(authorization)
    if access_token is None:
        raise FetchError(ErrorKind.AUTH_INVALID, "Missing or malformed Authorization header.")
    return BearerCredentials(
        access_token=access_token,
        principal=auth_service.validate_token(access_token),
    )


def _parse_bearer(authorization: str | None) -> str | None:
    if authorization is None:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


@contextmanager
def _invalidate_on_auth_failure(
    auth_service: GoogleAuthService, credentials: BearerCredentials
) -> Iterator[None]:
    try:
        yield
    except FetchError as exc:
        if exc.kind is ErrorKind.AUTH_INVALID:
            auth_service.invalidate(credentials.access_token)
        raise


@router.get(
    "/youtube/feed",
    response_model=FeedResponse,
    tags=["youtube"],
    operation_id="youtube_feed",
)
async def youtube_feed(
    credentials: Annotated[BearerCredentials, Depends(require_credentials)],
    fetcher: Annotated[FeedFetcher, Depends(get_feed_fetcher)],
    auth_service: Annotated[GoogleAuthService, Depends(get_auth_service)],
    force_refresh: bool = False,
) -> FeedResponse:
    with _invalidate_on_auth_failure(auth_service, credentials):
        outcome = await fetcher.fetch_feed(
            credentials.access_token,
            credentials.principal.subject,
            force_refresh=force_refresh,
        )
    return FeedResponse(
        items=[
            FeedItemResponse(
                id=item.id,
                title=item.title,
                thumbnail=item.thumbnail,
                published_at=item.published_at,
                channel_id=item.channel_id,
                channel_title=item.channel_title,
                video_url=item.video_url,
            )
            for item in outcome.value
        ],
        cache_hit=outcome.cache_hit,
        degraded=outcome.degraded,
        note=outcome.note,
    )


@router.get(
    "/transcripts/{video_id}",
    response_model=TranscriptResponse,
    tags=["youtube"],
    operation_id="video_transcript",
)
async def video_transcript(
    video_id: str,
    credentials: Annotated[BearerCredentials, Depends(require_credentials)],
    fetcher: Annotated[CaptionFetcher, Depends(get_caption_fetcher)],
    auth_service: Annotated[GoogleAuthService, Depends(get_auth_service)],
    force_refresh: bool = False,
) -> TranscriptResponse:
    with _invalidate_on_auth_failure(auth_service, credentials):
        outcome = await fetcher.fetch_transcript(
            video_id, credentials.access_token, force_refresh=force_refresh
        )
    return TranscriptResponse(
        video_id=outcome.value.video_id,
        transcript=outcome.value.text,
        source=outcome.value.source,
        cache_hit=outcome.cache_hit,
        degraded=outcome.degraded,
        note=outcome.note,
    )


@router.get(
    "/summary/{video_id}",
    response_model=SummaryResponse,
    tags=["summary"],
    operation_id="video_summary",
)
async def video_summary(
    video_id: str,
    credentials: Annotated[BearerCredentials, Depends(require_credentials)],
    orchestrator: Annotated[SummaryOrchestrator, Depends(get_summary_orchestrator)],
    auth_service: Annotated[GoogleAuthService, Depends(get_auth_service)],
    force_refresh: bool = False,
) -> SummaryResponse:
    with _invalidate_on_auth_failure(auth_service, credentials):
        outcome = await orchestrator.summarize_video(
            video_id, credentials.access_token, force_refresh=force_refresh
        )
    return SummaryResponse(
        video_id=outcome.video_id,
        summary=outcome.summary,
        cache_hit=outcome.cache_hit,
        stale=outcome.stale,
        note=outcome.note,
    )


@router.get("/quota", response_model=QuotaResponse, tags=["system"], operation_id="quota_usage")
def quota_usage(
    quota: Annotated[QuotaTracker, Depends(get_quota_tracker)],
    throttler: Annotated[RequestThrottler, Depends(get_throttler)],
) -> QuotaResponse:
    snapshot = quota.snapshot()
    return QuotaResponse(
        date=snapshot.usage.day,
        units_consumed=snapshot.usage.units_consumed,
        daily_limit=snapshot.daily_limit,
        warning_threshold=snapshot.warning_threshold,
        warning=snapshot.warning,
        units_by_operation=dict(snapshot.usage.units_by_operation),
        throttle_requests_last_minute=throttler.current_rate(),
        throttle_queue_depth=throttler.queue_depth,
    )


@router.get(
    "/cache/stats", response_model=CacheStatsResponse, tags=["cache"], operation_id="cache_stats"
)
def cache_stats(
    stores: Annotated[dict[str, CacheStore], Depends(get_cache_stores)],
) -> CacheStatsResponse:
    return _stats_response(stores)


@router.delete(
    "/cache",
    response_model=CacheStatsResponse,
    tags=["cache"],
    operation_id="cache_clear_all",
    dependencies=[Depends(require_credentials)],
)
def cache_clear_all(
    stores: Annotated[dict[str, CacheStore], Depends(get_cache_stores)],
) -> CacheStatsResponse:
    for store in stores.values():
        store.clear()
    return _stats_response(stores)


@router.delete(
    "/cache/{namespace}",
    response_model=CacheNamespaceStatsResponse,
    tags=["cache"],
    operation_id="cache_clear_namespace",
    dependencies=[Depends(require_credentials)],
)
def cache_clear_namespace(
    namespace: str,
    stores: Annotated[dict[str, CacheStore], Depends(get_cache_stores)],
) -> CacheNamespaceStatsResponse:
    store = stores.get(namespace)
    if store is None:
        raise HTTPException(
            status_code=404,
            detail=f"Unknown cache namespace. Expected one of: {', '.join(sorted(stores))}.",
        )
    store.clear()
    return _namespace_stats(store)


@router.get(
    "/cache/export",
    response_model=CacheExportDocument,
    tags=["cache"],
    operation_id="cache_export",
)
def cache_export(
    stores: Annotated[dict[str, CacheStore], Depends(get_cache_stores)],
) -> CacheExportDocument:
    return CacheExportDocument(
        namespaces={namespace: store.export_document() for namespace, store in stores.items()}
    )


@router.post(
    "/cache/import",
    response_model=CacheImportResponse,
    tags=["cache"],
    operation_id="cache_import",
    dependencies=[Depends(require_credentials)],
)
def cache_import(
    document: CacheExportDocument,
    stores: Annotated[dict[str, CacheStore], Depends(get_cache_stores)],
) -> CacheImportResponse:
    imported: dict[str, int] = {}
    for namespace, entries in document.namespaces.items():
        store = stores.get(namespace)
        if store is None:
            continue
        imported[namespace] = store.import_document(entries)
    return CacheImportResponse(imported=imported)


@router.get(
    "/cache/settings",
    response_model=CacheSettingsPayload,
    tags=["cache"],
    operation_id="cache_settings_get",
)
def cache_settings_get(
    repository: Annotated[CacheSettingsRepository, Depends(get_cache_settings_repository)],
) -> CacheSettingsPayload:
    return CacheSettingsPayload.from_settings(repository.get())


@router.put(
    "/cache/settings",
    response_model=CacheSettingsPayload,
    tags=["cache"],
    operation_id="cache_settings_update",
    dependencies=[Depends(require_credentials)],
)
def cache_settings_update(
    payload: CacheSettingsPayload,
    repository: Annotated[CacheSettingsRepository, Depends(get_cache_settings_repository)],
    size_limit: Annotated[SharedSizeLimit, Depends(get_cache_size_limit)],
) -> CacheSettingsPayload:
    updated = repository.update(payload.to_settings())
    if updated.auto_cleanup_enabled:
        size_limit.sweep()
    return CacheSettingsPayload.from_settings(updated)


@router.get("/auth/url", response_model=AuthUrlResponse, tags=["auth"], operation_id="auth_url")
def auth_url(
    auth_service: Annotated[GoogleAuthService, Depends(get_auth_service)],
    state: str | None = None,
) -> AuthUrlResponse:
    return AuthUrlResponse(url=auth_service.authorization_url(state=state))


@router.post(
    "/auth/token", response_model=AuthTokenResponse, tags=["auth"], operation_id="auth_token"
)
def auth_token(
    request: AuthCodeRequest,
    auth_service: Annotated[GoogleAuthService, Depends(get_auth_service)],
) -> AuthTokenResponse:
    grant = auth_service.exchange_code(request.code)
    return AuthTokenResponse(
        access_token=grant.access_token,
        expires_in=grant.expires_in,
        refresh_token=grant.refresh_token,
        scope=grant.scope,
        token_type=grant.token_type,
        caption_scope_granted=has_caption_scope(set((grant.scope or "").split())),
    )


def _stats_response(stores: dict[str, CacheStore]) -> CacheStatsResponse:
    namespaces = [_namespace_stats(store) for store in stores.values()]
    return CacheStatsResponse(
        namespaces=namespaces,
        total_bytes=sum(item.approximate_bytes for item in namespaces),
    )


def _namespace_stats(store: CacheStore) -> CacheNamespaceStatsResponse:
    stats = store.stats()
    return CacheNamespaceStatsResponse(
        namespace=stats.namespace,
        entry_count=stats.entry_count,
        approximate_bytes=stats.approximate_bytes,
        newest_stored_at=stats.newest_stored_at,
        expired_count=stats.expired_count,
    )
