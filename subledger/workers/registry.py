"""
Worker Registry - The background workers of one process.

Built once in the application lifespan (or by the worker CLI) and shared
through app.state with the admin endpoints.
"""

from collections.abc import Iterator
from dataclasses import dataclass

from subledger.config import Settings
from subledger.services.billing_client import StoreClients
from subledger.workers.base import PeriodicWorker, SessionFactory
from subledger.workers.expiration_sweep import ExpirationSweepWorker
from subledger.workers.reconciliation import ReconciliationWorker


@dataclass(frozen=True)
class Workers:
    """Configured worker instances."""

    reconciliation: ReconciliationWorker
    expiration_sweep: ExpirationSweepWorker

    def __iter__(self) -> Iterator[PeriodicWorker]:
        yield self.reconciliation
        yield self.expiration_sweep

    def by_name(self, name: str) -> PeriodicWorker:
        for worker in self:
            if worker.name == name:
                return worker
        raise KeyError(name)

    async def start_all(self) -> None:
        for worker in self:
            await worker.start()

    async def stop_all(self) -> None:
        for worker in self:
            await worker.stop()


def build_workers(
    settings: Settings, session_factory: SessionFactory, clients: StoreClients
) -> Workers:
    """Workers configured from settings."""
    return Workers(
        reconciliation=ReconciliationWorker(
            session_factory,
            clients,
            interval_seconds=settings.reconciliation_interval_seconds,
            batch_size=settings.reconciliation_batch_size,
            default_grace_days=settings.default_grace_period_days,
        ),
        expiration_sweep=ExpirationSweepWorker(
            session_factory,
            interval_seconds=settings.expiration_sweep_interval_seconds,
            batch_size=settings.expiration_sweep_batch_size,
            default_grace_days=settings.default_grace_period_days,
        ),
    )
