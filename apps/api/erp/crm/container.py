from __future__ import annotations

from dataclasses import dataclass

from erp.core.config import Settings, get_settings
from erp.core.events import InProcessEventBus
from erp.crm.analytics import ConversionService, ForecastService, StatisticsService
from erp.crm.locks import StageLockRegistry
from erp.crm.service import (
    ActivityLogService,
    ClientDirectoryFactory,
    DealService,
    InvoiceBridgeService,
    InvoicingClientFactory,
    PipelineService,
    UserDirectoryFactory,
)
from erp.directory import SqlClientDirectory, SqlUserDirectory
from erp.invoicing import StubInvoicingClient


@dataclass
class CrmServices:
    settings: Settings
    bus: InProcessEventBus
    locks: StageLockRegistry
    pipelines: PipelineService
    deals: DealService
    activities: ActivityLogService
    statistics: StatisticsService
    forecast: ForecastService
    conversion: ConversionService
    invoices: InvoiceBridgeService


def build_crm_services(
    settings: Settings | None = None,
    *,
    bus: InProcessEventBus | None = None,
    locks: StageLockRegistry | None = None,
    client_directory_factory: ClientDirectoryFactory = SqlClientDirectory,
    user_directory_factory: UserDirectoryFactory = SqlUserDirectory,
    invoicing_client_factory: InvoicingClientFactory = StubInvoicingClient,
) -> CrmServices:
    settings = settings or get_settings()
    bus = bus or InProcessEventBus()
    locks = locks or StageLockRegistry(timeout_seconds=settings.stage_lock_timeout_seconds)

    activities = ActivityLogService(settings=settings, user_directory_factory=user_directory_factory)
    return CrmServices(
        settings=settings,
        bus=bus,
        locks=locks,
        pipelines=PipelineService(
            settings=settings,
            bus=bus,
            locks=locks,
            user_directory_factory=user_directory_factory,
            activity_service=activities,
        ),
        deals=DealService(
            settings=settings,
            bus=bus,
            locks=locks,
            activity_service=activities,
            client_directory_factory=client_directory_factory,
            user_directory_factory=user_directory_factory,
        ),
        activities=activities,
        statistics=StatisticsService(),
        forecast=ForecastService(),
        conversion=ConversionService(),
        invoices=InvoiceBridgeService(
            settings=settings,
            bus=bus,
            activity_service=activities,
            invoicing_client_factory=invoicing_client_factory,
        ),
    )
