from contextlib import asynccontextmanager

from fastapi import FastAPI

from blockdesk.api.routes import content, ping, tickets
from blockdesk.core.config import Settings, get_settings
from blockdesk.core.logging import configure_logging, init_tracer, shutdown_tracer
from blockdesk.metrics import metrics_registry
from blockdesk.security.roles import RoleDirectory
from blockdesk.services.blob_stores import BlobStore, HttpBlobStore, InMemoryBlobStore
from blockdesk.services.content_store import ContentStoreClient
from blockdesk.services.ledger import InMemoryLedger, LedgerGateway
from blockdesk.services.postgres import PostgresPool
from blockdesk.services.postgres_ledger import PostgresLedgerGateway
from blockdesk.tickets.directory import TicketDirectory
from blockdesk.tickets.reconciler import EventReconciler, IdentityLabels
from blockdesk.tickets.service import TicketService
from blockdesk.tickets.workflow import WorkflowEngine


def build_content_store(settings: Settings) -> ContentStoreClient:
    remote: BlobStore
    if settings.content_store_url:
        remote = HttpBlobStore(settings.content_store_url, timeout=settings.content_request_timeout)
    else:
        remote = InMemoryBlobStore()
    return ContentStoreClient(
        remote,
        cache_size=settings.content_cache_size,
        negative_ttl=settings.content_negative_ttl_seconds,
        put_retries=settings.content_put_retries,
        retry_backoff=settings.content_retry_backoff_seconds,
        max_content_bytes=settings.max_content_bytes,
        metrics=metrics_registry,
    )


def build_ticket_service(
    settings: Settings,
    ledger: LedgerGateway,
    content_store: ContentStoreClient,
) -> TicketService:
    return TicketService(
        ledger,
        content_store,
        directory=TicketDirectory(metrics=metrics_registry),
        reconciler=EventReconciler(
            content_store,
            labeler=IdentityLabels(settings.identity_labels),
            metrics=metrics_registry,
        ),
        workflow=WorkflowEngine(ledger, allow_self_assign=settings.allow_self_assign, metrics=metrics_registry),
        inline_content_limit=settings.inline_content_limit,
        metrics=metrics_registry,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - executed by framework
    settings = get_settings()
    logger = configure_logging(settings)
    tracer_provider = init_tracer(settings)

    app.state.logger = logger
    app.state.tracer_provider = tracer_provider
    app.state.metrics_registry = metrics_registry
    app.state.role_directory = RoleDirectory.from_settings(settings)

    postgres_pool = None
    ledger: LedgerGateway
    if settings.ledger_backend == "postgres":
        postgres_pool = PostgresPool(dsn=settings.postgres_dsn)
        gateway = PostgresLedgerGateway(await postgres_pool.get_pool())
        await gateway.ensure_schema()
        ledger = gateway
    else:
        ledger = InMemoryLedger()
    app.state.postgres_pool = postgres_pool

    content_store = build_content_store(settings)
    service = build_ticket_service(settings, ledger, content_store)
    app.state.content_store = content_store
    app.state.ticket_service = service
    await service.rebuild()
    logger.info("Ticket service ready with %s ledger", settings.ledger_backend)
    try:
        yield
    finally:
        await ledger.close()
        await content_store.close()
        if postgres_pool is not None:
            await postgres_pool.close()
        shutdown_tracer(tracer_provider)


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.include_router(ping.router)
    app.include_router(tickets.router)
    app.include_router(content.router)
    return app


app = create_app()
