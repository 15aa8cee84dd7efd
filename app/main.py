from __future__ import annotations

import logging
import threading
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from app.api.routes import router
from app.config.settings import Settings, get_settings
from app.errors import MissingCredentialConfig
from app.integrations.kite_rest import KiteRestClient
from app.services.quote_cache import PriceCache
from app.services.quote_gateway import QuoteQueryService
from app.services.session_state import SessionController

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

# helmet-style defaults for a JSON/plain-text API
SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "Referrer-Policy": "no-referrer",
    "X-DNS-Prefetch-Control": "off",
    "X-Download-Options": "noopen",
    "X-Permitted-Cross-Domain-Policies": "none",
    "Cross-Origin-Opener-Policy": "same-origin",
    "Cross-Origin-Resource-Policy": "same-origin",
    "Strict-Transport-Security": "max-age=15552000; includeSubDomains",
    "Content-Security-Policy": "default-src 'self'; frame-ancestors 'self'; object-src 'none'",
}


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=_LOG_FORMAT)


def _check_credential_config(settings: Settings) -> None:
    missing = settings.missing_credentials()
    if missing:
        exc = MissingCredentialConfig(f"missing env vars: {','.join(missing)}")
        logger.error("[BOOT][config] kind=%s %s", exc.kind, exc)


def _bootstrap_session(app: FastAPI) -> None:
    settings = app.state.settings
    controller = app.state.session_controller
    if settings.KITE_ACCESS_TOKEN:
        worker = threading.Thread(
            target=lambda: controller.set_credential(settings.KITE_ACCESS_TOKEN, source="env"),
            daemon=True,
            name="session-bootstrap",
        )
        app.state.bootstrap_thread = worker
        worker.start()
    else:
        logger.info("[BOOT][login] no access token yet, visit %s", app.state.rest_client.login_url())


@asynccontextmanager
async def lifespan(app: FastAPI):
    _check_credential_config(app.state.settings)
    _bootstrap_session(app)
    settings = app.state.settings
    logger.info("[BOOT][ready] base_url=%s tracked=%d", settings.APP_BASE_URL, app.state.session_controller.tracked)
    try:
        yield
    finally:
        app.state.session_controller.close()
        worker = getattr(app.state, "bootstrap_thread", None)
        if worker is not None:
            worker.join(timeout=1.0)


def create_app(settings: Settings | None = None, *, rest_client=None, stream_factory=None) -> FastAPI:
    settings = settings or get_settings()

    app = FastAPI(title="Kite Price Relay", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def access_log(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info(
            "[HTTP] %s %s %d %.1fms",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
        )
        return response

    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        return response

    app.include_router(router)

    rest_client = rest_client or KiteRestClient(
        api_key=settings.KITE_API_KEY,
        api_secret=settings.KITE_API_SECRET,
        base_url=settings.KITE_API_ROOT,
        login_url=settings.KITE_LOGIN_URL,
        timeout=settings.KITE_HTTP_TIMEOUT_SEC,
    )
    price_cache = PriceCache()

    app.state.settings = settings
    app.state.rest_client = rest_client
    app.state.price_cache = price_cache
    app.state.session_controller = SessionController(
        universe=settings.NIFTY100,
        rest_client=rest_client,
        price_cache=price_cache,
        exchange=settings.KITE_EXCHANGE,
        ws_url=settings.KITE_WS_URL,
        max_retries=settings.KITE_WS_MAX_RETRIES,
        stream_factory=stream_factory,
    )
    app.state.quote_query_service = QuoteQueryService(price_cache=price_cache)
    return app


app = create_app()


def main() -> None:
    import uvicorn

    settings = get_settings()
    configure_logging(settings.LOG_LEVEL)
    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)


if __name__ == "__main__":
    main()
