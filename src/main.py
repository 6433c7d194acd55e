import logging

import sentry_sdk
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.config.config import Config
from src.config.logging_config import configure_logging

configure_logging()
logger = logging.getLogger(__name__)

# Initialize Sentry for error monitoring
if Config.SENTRY_ENABLED and Config.SENTRY_DSN:

    def sentry_traces_sampler(sampling_context):
        """Skip health probes; sample everything else at the configured rate."""
        if sampling_context.get("parent_sampled") is not None:
            return 1.0

        path = ""
        if "asgi_scope" in sampling_context:
            path = sampling_context["asgi_scope"].get("path", "")
        if path == "/healthz":
            return 0.0

        if Config.SENTRY_ENVIRONMENT == "development":
            return 1.0
        return Config.SENTRY_TRACES_SAMPLE_RATE

    sentry_sdk.init(
        dsn=Config.SENTRY_DSN,
        environment=Config.SENTRY_ENVIRONMENT,
        release=Config.SENTRY_RELEASE,
        traces_sampler=sentry_traces_sampler,
        send_default_pii=False,
    )
    logger.info(
        f"Sentry initialized (environment: {Config.SENTRY_ENVIRONMENT}, "
        f"release: {Config.SENTRY_RELEASE})"
    )
else:
    logger.info("Sentry disabled (SENTRY_ENABLED=false or SENTRY_DSN not set)")


def create_app() -> FastAPI:
    app = FastAPI(
        title="Lucía Billing API",
        description="Stripe checkout, billing portal and webhook reconciliation",
        version="1.0.0",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=Config.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "Idempotency-Key", "stripe-signature"],
    )

    ok, missing = Config.validate_critical_env_vars()
    if not ok:
        logger.warning(f"Missing configuration: {', '.join(missing)}")

    # Route handlers read the raw request body themselves; no body-parsing
    # middleware may be added ahead of the webhook route.
    from src.routes import health, payments

    app.include_router(health.router)
    app.include_router(payments.router)

    logger.info("Lucía billing API ready")
    return app


app = create_app()

if __name__ == "__main__":
    import os

    import uvicorn

    logger.info("Starting Lucía billing API...")
    uvicorn.run("src.main:app", host="0.0.0.0", port=int(os.environ.get("PORT", "8080")))
