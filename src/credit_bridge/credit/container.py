"""Wiring of CRM, partner clients, adapters, and services from Settings."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from dataclasses import dataclass

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from src.credit_bridge.config import Settings
from src.credit_bridge.core.database import get_session
from src.credit_bridge.credit.clients.easycredit import EasyCreditClient
from src.credit_bridge.credit.clients.iute import IuteClient
from src.credit_bridge.credit.clients.microinvest import MicroinvestClient
from src.credit_bridge.credit.crm.simla import SimlaClient
from src.credit_bridge.credit.feed import FeedService
from src.credit_bridge.credit.guard import SubmissionGuard
from src.credit_bridge.credit.orchestrator import ApplicationOrchestrator
from src.credit_bridge.credit.providers import (
    EasyCreditAdapter,
    IuteAdapter,
    MicroinvestAdapter,
    ProviderAdapter,
    ProviderRegistry,
)
from src.credit_bridge.credit.reconciliation import ReconciliationEngine
from src.credit_bridge.credit.repository import FeedRepository
from src.credit_bridge.credit.scheduler import ReconciliationScheduler

logger = structlog.get_logger(__name__)


@dataclass
class CreditServices:
    """Everything the API layer and the scheduler need, built once."""

    crm: SimlaClient
    providers: ProviderRegistry
    repository: FeedRepository
    orchestrator: ApplicationOrchestrator
    engine: ReconciliationEngine
    feed: FeedService
    scheduler: ReconciliationScheduler


def build_providers(settings: Settings) -> ProviderRegistry:
    """Build one adapter per provider. Iute is registered only when configured."""
    adapters: list[ProviderAdapter] = [
        MicroinvestAdapter(
            MicroinvestClient(
                settings.MICROINVEST_API_URL,
                settings.MICROINVEST_PARTNER_ID,
                settings.MICROINVEST_API_KEY,
                verify=settings.MICROINVEST_VERIFY_SSL,
                upload_timeout=settings.HTTP_UPLOAD_TIMEOUT,
            )
        ),
        EasyCreditAdapter(
            EasyCreditClient(
                settings.EASYCREDIT_API_URL,
                settings.EASYCREDIT_FILES_URL,
                settings.EASYCREDIT_LOGIN,
                settings.EASYCREDIT_PASSWORD,
                environment=settings.EASYCREDIT_ENVIRONMENT,
                files_timeout=settings.HTTP_FILES_TIMEOUT,
                upload_retry_delay=settings.EASYCREDIT_UPLOAD_DELAY_SECONDS,
            )
        ),
    ]
    if settings.IUTE_API_URL:
        adapters.append(
            IuteAdapter(
                IuteClient(
                    settings.IUTE_API_URL,
                    settings.IUTE_API_KEY,
                    settings.IUTE_POS_ID,
                    settings.iute_salesman_id,
                    settings.IUTE_WEBHOOK_BASE_URL,
                    timeout=settings.HTTP_TIMEOUT,
                )
            )
        )
    else:
        logger.info("container.iute_disabled", reason="IUTE_API_URL not set")
    return ProviderRegistry(adapters)


def build_services(
    settings: Settings,
    session_factory: Callable[..., AsyncGenerator[AsyncSession, None]] = get_session,
) -> CreditServices:
    crm = SimlaClient(settings.SIMLA_API_URL, settings.SIMLA_API_KEY, timeout=settings.HTTP_TIMEOUT)
    providers = build_providers(settings)
    repository = FeedRepository(session_factory)

    orchestrator = ApplicationOrchestrator(
        crm,
        providers,
        repository,
        guard=SubmissionGuard(),
        upload_delay=settings.EASYCREDIT_UPLOAD_DELAY_SECONDS,
    )
    engine = ReconciliationEngine(
        crm, providers, repository, delay=settings.RECONCILE_DELAY_SECONDS
    )
    feed = FeedService(crm, engine, repository, delay=settings.FEED_SYNC_DELAY_SECONDS)
    scheduler = ReconciliationScheduler(
        engine,
        feed,
        crm,
        repository,
        interval_minutes=settings.STATUS_CHECK_INTERVAL_MINUTES,
        initial_delay=settings.INITIAL_SYNC_DELAY_SECONDS,
    )
    return CreditServices(
        crm=crm,
        providers=providers,
        repository=repository,
        orchestrator=orchestrator,
        engine=engine,
        feed=feed,
        scheduler=scheduler,
    )
