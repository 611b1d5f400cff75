from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI

from iris_api.api.router import api_router
from iris_api.core.auth import parse_admin_tokens
from iris_api.core.config import settings
from iris_api.core.database import init_db
from iris_api.services.runtime import get_runtime

logger = logging.getLogger("iris_api.security")

DEFAULT_DEV_TOKEN = "local-dev-token"


def _using_default_dev_token() -> bool:
    return DEFAULT_DEV_TOKEN in parse_admin_tokens(settings.admin_tokens)


def _emit_startup_security_notice() -> None:
    if not settings.admin_auth_enabled:
        logger.warning(
            "SECURITY WARNING: ADMIN_AUTH_ENABLED=false. Cache admin routes are open and must not be exposed publicly."
        )
    if _using_default_dev_token():
        logger.warning(
            "SECURITY WARNING: default admin token '%s' is active. Replace it before any non-local exposure.",
            DEFAULT_DEV_TOKEN,
        )
    if not settings.rate_limit_enabled:
        logger.warning("SECURITY NOTICE: RATE_LIMIT_ENABLED=false. The answer route accepts unlimited requests.")
    if not settings.security_guard_enabled:
        logger.warning("SECURITY NOTICE: SECURITY_GUARD_ENABLED=false. Prompt-injection screening is off.")


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    app.state.runtime = get_runtime()
    _emit_startup_security_notice()
    yield


app = FastAPI(title="iris-api", lifespan=lifespan)
app.include_router(api_router, prefix=settings.api_prefix)


@app.get("/health")
def health():
    runtime = get_runtime()
    return {
        "ok": True,
        "kb_items": len(runtime.kb.items),
        "llm_provider": settings.llm_provider,
        "cache_backend": runtime.cache.backend.name,
    }
