import logging
from datetime import timedelta

from fastapi import FastAPI

from loanflow.core.settings import settings
from loanflow.services.audit import AuditTrailRecorder
from loanflow.services.identity import AuthService, TokenIdentityVerifier, UserAccountCache
from loanflow.services.lifecycle import LifecycleOrchestrator
from loanflow.services.notifications import Notifier, RecordStoreNotifier
from loanflow.services.queries import QueryThreadEngine
from loanflow.services.record_store import RecordStore, WebhookRecordStore

logger = logging.getLogger(__name__)


def configure_services(app: FastAPI, store: RecordStore, notifier: Notifier | None = None) -> None:
    """Wire the service graph for one record store onto ``app.state``."""
    notifier = notifier or RecordStoreNotifier(store)
    recorder = AuditTrailRecorder(store)
    query_engine = QueryThreadEngine(
        store,
        notifier,
        edit_window=timedelta(minutes=settings.query_edit_window_minutes),
    )
    accounts = UserAccountCache(store, settings.user_account_cache_ttl_seconds)

    app.state.record_store = store
    app.state.notifier = notifier
    app.state.recorder = recorder
    app.state.query_engine = query_engine
    app.state.user_accounts = accounts
    app.state.auth_service = AuthService(store, accounts)
    app.state.identity_verifier = TokenIdentityVerifier()
    app.state.orchestrator = LifecycleOrchestrator(store, recorder, query_engine, notifier)


def register_event_handlers(app: FastAPI) -> None:
    @app.on_event("startup")
    async def on_startup() -> None:
        logger.info("Application startup")
        if getattr(app.state, "record_store", None) is None:
            configure_services(app, WebhookRecordStore.from_settings())

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        logger.info("Application shutdown")
        accounts = getattr(app.state, "user_accounts", None)
        if accounts is not None:
            accounts.invalidate()
