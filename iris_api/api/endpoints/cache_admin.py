from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from iris_api.core.auth import AdminPrincipal, get_current_admin
from iris_api.schemas.answer import CacheClearResult, CacheStatsRead
from iris_api.services.errors import CacheBackendUnavailable
from iris_api.services.runtime import IrisRuntime, get_runtime

router = APIRouter(prefix="/iris/cache", tags=["iris-admin"])


@router.post("/clear", response_model=CacheClearResult)
def clear_cache(
    pattern: Optional[str] = Query(default=None, max_length=256),
    runtime: IrisRuntime = Depends(get_runtime),
    admin: AdminPrincipal = Depends(get_current_admin),
):
    _ = admin
    stats_before = runtime.cache.get_stats()
    try:
        cleared = runtime.cache.clear(pattern or None)
    except CacheBackendUnavailable as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    stats_after = runtime.cache.get_stats()
    scope = f" matching '{pattern}'" if pattern else ""
    return CacheClearResult(
        success=True,
        message=f"Cleared {cleared} cached answer(s){scope}",
        cleared_count=cleared,
        pattern=pattern or None,
        stats_before=CacheStatsRead(**stats_before),
        stats_after=CacheStatsRead(**stats_after),
    )


@router.get("/stats", response_model=CacheStatsRead)
def cache_stats(
    runtime: IrisRuntime = Depends(get_runtime),
    admin: AdminPrincipal = Depends(get_current_admin),
):
    _ = admin
    return CacheStatsRead(**runtime.cache.get_stats())
