from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from fastapi import Body, FastAPI, HTTPException, Request
from pydantic import BaseModel

from credential_store import (
    CredentialStore,
    ProviderFactory,
    ServiceAccountCredentialStore,
    SupabaseCredentialStore,
    gmail_provider_factory,
)
from history_sync import HistorySyncConsumer, MailboxResync
from mailbox_locks import MailboxLocks
from renewal_scheduler import RenewalScheduler
from supabase_state import BaseStateStore, get_state_store, utc_now
from sync_config import SyncSettings
from sync_errors import (
    CredentialMissingError,
    FetchFailedError,
    MailSyncError,
    PersistenceVerificationFailedError,
    ProviderRegistrationFailedError,
)
from telegram_notify import telegram_notifier
from watch_manager import WatchManager

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR = {
    CredentialMissingError: 401,
    ProviderRegistrationFailedError: 502,
    FetchFailedError: 502,
    PersistenceVerificationFailedError: 503,
}


@dataclass
class SyncServices:
    settings: SyncSettings
    state_store: BaseStateStore
    consumer: HistorySyncConsumer
    watch_manager: Optional[WatchManager] = None
    scheduler: Optional[RenewalScheduler] = None


def build_services(
    settings: SyncSettings,
    *,
    state_store: Optional[BaseStateStore] = None,
    credential_store: Optional[CredentialStore] = None,
    provider_factory: Optional[ProviderFactory] = None,
) -> SyncServices:
    state_store = state_store or get_state_store(
        url=settings.supabase_url,
        service_role_key=settings.supabase_service_role_key,
        timeout=settings.store_timeout,
    )
    if credential_store is None:
        if settings.service_account_file:
            credential_store = ServiceAccountCredentialStore(
                settings.service_account_file,
                delegated_user=settings.delegated_user,
            )
        else:
            credential_store = SupabaseCredentialStore(state_store)
    provider_factory = provider_factory or gmail_provider_factory(timeout=settings.provider_timeout)
    locks = MailboxLocks()

    watch_manager: Optional[WatchManager] = None
    resync: Optional[MailboxResync] = None
    scheduler: Optional[RenewalScheduler] = None
    if settings.topic_name:
        watch_manager = WatchManager(
            state_store=state_store,
            credential_store=credential_store,
            provider_factory=provider_factory,
            topic_name=settings.topic_name,
            locks=locks,
        )
        resync = MailboxResync(
            state_store=state_store,
            credential_store=credential_store,
            provider_factory=provider_factory,
            watch_manager=watch_manager,
            max_messages=settings.resync_max_messages,
        )
        scheduler = RenewalScheduler(
            watch_manager=watch_manager,
            state_store=state_store,
            renewal_window=settings.renewal_window,
            interval=settings.renewal_interval,
            max_workers=settings.renewal_max_workers,
            degraded_threshold=settings.degraded_threshold,
            resync=resync,
            notifier=(
                telegram_notifier(settings.telegram_token, settings.telegram_chat_id)
                if settings.telegram_configured
                else None
            ),
        )
    else:
        logger.warning("GMAIL_TOPIC_NAME is not configured; watch registration and renewal are disabled.")

    consumer = HistorySyncConsumer(
        state_store=state_store,
        credential_store=credential_store,
        provider_factory=provider_factory,
        locks=locks,
        resync=resync,
    )
    return SyncServices(
        settings=settings,
        state_store=state_store,
        consumer=consumer,
        watch_manager=watch_manager,
        scheduler=scheduler,
    )


class WatchPayload(BaseModel):
    email: str


def _http_error(exc: MailSyncError) -> HTTPException:
    status = _STATUS_BY_ERROR.get(type(exc), 500)
    return HTTPException(
        status_code=status,
        detail={"error": exc.kind, "email": exc.mailbox_email, "details": exc.detail, "retryable": exc.retryable},
    )


def create_app(services: SyncServices) -> FastAPI:
    app = FastAPI()
    app.state.services = services

    def _require_watch_manager() -> WatchManager:
        if services.watch_manager is None:
            raise HTTPException(status_code=400, detail="GMAIL_TOPIC_NAME must be configured.")
        return services.watch_manager

    @app.post("/gmail/push")
    async def gmail_push(request: Request):
        envelope = await request.json()
        if not isinstance(envelope, dict):
            raise HTTPException(status_code=400, detail="Invalid Pub/Sub envelope.")
        try:
            result = await asyncio.to_thread(services.consumer.handle_pubsub_envelope, envelope)
        except Exception as exc:
            logger.exception("Push handling failed")
            raise HTTPException(status_code=500, detail=str(exc))
        return {"status": "ok", "sync": result}

    @app.post("/gmail/watch")
    async def gmail_watch(payload: WatchPayload = Body(...)):
        watch_manager = _require_watch_manager()
        email = payload.email.strip()
        if not email:
            raise HTTPException(status_code=400, detail="Email is required")
        try:
            registration = await asyncio.to_thread(watch_manager.register_watch, email)
        except MailSyncError as exc:
            raise _http_error(exc)
        return {"success": True, **registration.to_dict()}

    @app.delete("/gmail/watch/{email}")
    async def gmail_unwatch(email: str):
        watch_manager = _require_watch_manager()
        existed = await asyncio.to_thread(watch_manager.deregister, email)
        if not existed:
            raise HTTPException(status_code=404, detail=f"No watch registered for {email}.")
        return {"status": "deleted", "email": email}

    # Cron-friendly endpoint for Cloud Scheduler; unauthenticated like the other cron hooks.
    @app.post("/cron/renew")
    async def cron_renew():
        if services.scheduler is None:
            raise HTTPException(status_code=400, detail="GMAIL_TOPIC_NAME must be configured.")
        results = await asyncio.to_thread(services.scheduler.run_pass)
        return {
            "renewed": sum(1 for result in results if result.ok),
            "failed": sum(1 for result in results if not result.ok),
            "results": [result.to_dict() for result in results],
        }

    @app.get("/healthz")
    @app.get("/health")
    async def healthz():
        now = utc_now()
        subscriptions = await asyncio.to_thread(services.state_store.list_subscriptions)
        status: List[Dict[str, Any]] = []
        for subscription in subscriptions:
            status.append(
                {
                    "email": subscription.email,
                    "history_id": str(subscription.history_id),
                    "watch_expiration": subscription.expires_at.isoformat(),
                    "stale": subscription.is_stale(now),
                    "renewal_failures": subscription.renewal_failures,
                    "last_error": subscription.last_error,
                    "sync_degraded": subscription.is_degraded(services.settings.degraded_threshold, now),
                }
            )
        return {
            "gmail_accounts": status,
            "watch_enabled": services.watch_manager is not None,
            "telegram_configured": services.settings.telegram_configured,
            "supabase_mode": services.state_store.__class__.__name__,
        }

    return app


app = create_app(build_services(SyncSettings.from_env()))
