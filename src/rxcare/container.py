"""
RxCare Service Container

Wires stores, directories, audit, notifications and every service into a
single object the API and tests hold on to.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

import structlog

from rxcare.audit.service import AuditService
from rxcare.collaborators import (
    AccessGate,
    AllowAllGate,
    HttpSmsTransport,
    InMemoryMtrDirectory,
    InMemoryPatientDirectory,
    InMemoryUserDirectory,
    LoggingEmailTransport,
    MessageTransport,
    MtrDirectory,
    PatientDirectory,
    UserDirectory,
)
from rxcare.config import Settings, get_settings
from rxcare.db.memory import MemoryAuditStore, MemoryInterventionStore
from rxcare.db.store import AuditStore, InterventionStore
from rxcare.models.base import utcnow
from rxcare.notifications.dispatcher import NotificationChannel, NotificationDispatcher
from rxcare.notifications.scheduler import AsyncioNotificationScheduler, NotificationScheduler
from rxcare.services.duplicates import DuplicateDetector
from rxcare.services.export import ExportService
from rxcare.services.interventions import InterventionService
from rxcare.services.numbering import NumberingService
from rxcare.services.outcomes import OutcomeService
from rxcare.services.reporting import ReportingService
from rxcare.services.team import TeamService

logger = structlog.get_logger(__name__)


@dataclass
class RxCareContainer:
    """Everything a request handler needs."""

    settings: Settings
    store: InterventionStore
    audit_store: AuditStore
    patients: PatientDirectory
    users: UserDirectory
    mtrs: MtrDirectory
    gate: AccessGate
    scheduler: NotificationScheduler
    dispatcher: NotificationDispatcher
    audit: AuditService
    interventions: InterventionService
    team: TeamService
    outcomes: OutcomeService
    reporting: ReportingService
    exports: ExportService

    _started: bool = field(default=False, repr=False)

    async def start(self) -> None:
        if self._started:
            return
        await self.store.connect()
        shared_pool = getattr(self.store, "pool", None)
        if shared_pool is not None and getattr(self.audit_store, "pool", False) is None:
            self.audit_store.pool = shared_pool
        await self.audit_store.connect()
        await self.scheduler.start()
        self._started = True
        logger.info("RxCare services started", store=type(self.store).__name__)

    async def stop(self) -> None:
        if not self._started:
            return
        await self.scheduler.stop()
        await self.audit_store.close()
        await self.store.close()
        self._started = False
        logger.info("RxCare services stopped")


def _transports(settings: Settings) -> dict[NotificationChannel, MessageTransport]:
    notify = settings.notifications
    transports: dict[NotificationChannel, MessageTransport] = {
        NotificationChannel.EMAIL: LoggingEmailTransport(notify.email_from_address),
    }
    if notify.sms_gateway_url:
        token = notify.sms_gateway_token.get_secret_value() if notify.sms_gateway_token else None
        transports[NotificationChannel.SMS] = HttpSmsTransport(notify.sms_gateway_url, token)
    return transports


def build_container(
    settings: Settings | None = None,
    *,
    store: InterventionStore | None = None,
    audit_store: AuditStore | None = None,
    patients: PatientDirectory | None = None,
    users: UserDirectory | None = None,
    mtrs: MtrDirectory | None = None,
    gate: AccessGate | None = None,
    scheduler: NotificationScheduler | None = None,
    transports: dict[NotificationChannel, MessageTransport] | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> RxCareContainer:
    """
    Assemble the service graph.

    Anything not passed in is built from settings: the store backend comes
    from ``STORE_BACKEND`` and directories default to in-memory ones.
    """
    settings = settings or get_settings()

    if store is None or audit_store is None:
        if settings.store.backend == "postgres":
            from rxcare.db.postgres import PostgresAuditStore, PostgresInterventionStore

            store = store or PostgresInterventionStore(settings)
            audit_store = audit_store or PostgresAuditStore(settings)
        else:
            store = store or MemoryInterventionStore()
            audit_store = audit_store or MemoryAuditStore()

    patients = patients or InMemoryPatientDirectory()
    users = users or InMemoryUserDirectory()
    mtrs = mtrs or InMemoryMtrDirectory()
    scheduler = scheduler or AsyncioNotificationScheduler()
    intervention_settings = settings.interventions

    audit = AuditService(audit_store, store, clock=clock)
    dispatcher = NotificationDispatcher(
        users,
        transports if transports is not None else _transports(settings),
        scheduler,
        settings.notifications,
        clock=clock,
    )
    numbering = NumberingService(store, max_attempts=intervention_settings.number_allocation_attempts)
    duplicates = DuplicateDetector(store, window_days=intervention_settings.duplicate_window_days)

    logger.info("Building RxCare container", store_backend=settings.store.backend)
    return RxCareContainer(
        settings=settings,
        store=store,
        audit_store=audit_store,
        patients=patients,
        users=users,
        mtrs=mtrs,
        gate=gate or AllowAllGate(),
        scheduler=scheduler,
        dispatcher=dispatcher,
        audit=audit,
        interventions=InterventionService(
            store, audit, numbering, duplicates, patients, users, mtrs, dispatcher, clock=clock,
        ),
        team=TeamService(
            store, audit, users, dispatcher,
            overdue_days=intervention_settings.assignment_overdue_days,
            clock=clock,
        ),
        outcomes=OutcomeService(store, audit, clock=clock),
        reporting=ReportingService(store, patients, intervention_settings, clock=clock),
        exports=ExportService(store, patients, users, audit, clock=clock),
    )
