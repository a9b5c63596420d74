from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import api as api_module
from .config import Settings, get_settings, runtime_secret_issues

logger = logging.getLogger(__name__)

_PROVIDERS = ("zapi", "twilio", "whatsapp")


def _enforce_runtime_secrets(settings: Settings) -> None:
    issues = runtime_secret_issues(settings)
    if not issues or settings.runtime_secret_guard_mode == "off":
        return
    if settings.runtime_secret_guard_mode == "enforce":
        raise RuntimeError(
            "runtime secret guard blocked startup: "
            + "; ".join(issues)
            + ". Remediation: disable unused providers via WEBHOOK_PROVIDER_*_ENABLED=false "
            + "or set the required provider secrets."
        )
    for issue in issues:
        logger.warning("runtime secret guard warning: %s", issue)


@asynccontextmanager
async def _lifespan(_: FastAPI) -> AsyncIterator[None]:
    yield
    # Drain background MessageCreated handlers before the process exits.
    api_module.event_bus.shutdown()


def create_app() -> FastAPI:
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    _enforce_runtime_secrets(settings)

    enabled = [provider for provider in _PROVIDERS if settings.webhook_provider_enabled(provider)]
    logger.info(
        "starting %s store=%s providers=%s signature_mode=%s events=%s",
        settings.app_name,
        settings.store_backend,
        ",".join(enabled) or "none",
        settings.webhook_signature_mode,
        settings.event_dispatch_mode,
    )

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=_lifespan)
    # Provider webhooks and the staff inbox are served from different origins.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(api_module.router)
    return app


app = create_app()
