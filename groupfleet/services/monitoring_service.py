# groupfleet/services/monitoring_service.py
"""
Group monitoring scheduler.

One instance per process. Every ``interval`` seconds it evaluates each
auto-create series whose connection is online, retires full groups the series
pass missed, and publishes a per-tenant summary. A single-flight lock keeps
runs (and manual provisioning) from overlapping: a timer tick that finds a run
in progress is skipped, never queued.
"""
import asyncio
import logging
from contextlib import AbstractContextManager
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from groupfleet.core import config
from groupfleet.core.errors import FleetError
from groupfleet.core.logging_config import get_activity_logger
from groupfleet.schemas.results import (
    CleanupResult,
    DiagnosticReport,
    MonitoringStats,
    MonitoringStatus,
    OperationError,
    ProvisioningOutcome,
    SeriesStats,
)
from groupfleet.services.fleet_store import FleetStore
from groupfleet.services.provisioning_service import GroupProvisioningService
from groupfleet.ws.manager import MONITORING_SUMMARY, EventPublisher

log = logging.getLogger("groupfleet.monitoring")
activity = get_activity_logger()

SessionFactory = Callable[[], AbstractContextManager]


class GroupMonitoringScheduler:
    def __init__(
        self,
        provisioning: GroupProvisioningService,
        publisher: EventPublisher,
        session_factory: SessionFactory,
        interval: float = config.MONITOR_INTERVAL_SECONDS,
        clock: Callable[[], datetime] = datetime.utcnow,
        cleanup_max_age_days: int = config.CLEANUP_MAX_AGE_DAYS,
        cleanup_max_participants: int = config.CLEANUP_MAX_PARTICIPANTS,
        premature_retirement_percentage: float = config.PREMATURE_RETIREMENT_PERCENTAGE,
    ):
        self.provisioning = provisioning
        self.publisher = publisher
        self.session_factory = session_factory
        self.interval = interval
        self.clock = clock
        self.cleanup_max_age_days = cleanup_max_age_days
        self.cleanup_max_participants = cleanup_max_participants
        self.premature_retirement_percentage = premature_retirement_percentage

        self._lock = asyncio.Lock()
        self._timer: Optional[asyncio.Task] = None
        self._current_run: Optional[asyncio.Task] = None
        self._stop: Optional[asyncio.Event] = None
        self._next_run: Optional[datetime] = None
        self._stats = MonitoringStats()

    # ────────────────────────────────────────────
    # Timer
    # ────────────────────────────────────────────

    @property
    def is_scheduled(self) -> bool:
        return self._timer is not None and not self._timer.done()

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    def start(self) -> None:
        """Start the recurring timer (must be called from a running event loop)"""
        if self.is_scheduled:
            log.warning("⚠️ Monitoring already scheduled")
            return
        self._stop = asyncio.Event()
        self._timer = asyncio.create_task(self._timer_loop(), name="group-monitoring-timer")
        log.info(f"⏱️ Automatic monitoring started (every {self.interval:.0f}s)")

    async def stop(self) -> None:
        if not self.is_scheduled:
            return
        self._stop.set()
        await self._timer
        self._timer = None
        self._next_run = None
        if self._current_run is not None and not self._current_run.done():
            await self._current_run
        log.info("⏹️ Automatic monitoring stopped")

    async def _timer_loop(self) -> None:
        while not self._stop.is_set():
            self._next_run = self.clock() + timedelta(seconds=self.interval)
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
                return
            except asyncio.TimeoutError:
                pass
            self.tick()

    def tick(self) -> bool:
        """Fire one scheduled run in the background; skipped when a run is in progress"""
        if self.is_running:
            log.warning("⚠️ Previous monitoring run still in progress, skipping this tick")
            return False
        self._current_run = asyncio.create_task(self.run_monitoring(), name="group-monitoring-run")
        return True

    # ────────────────────────────────────────────
    # Runs
    # ────────────────────────────────────────────

    async def run_manual_check(self) -> MonitoringStats:
        log.info("🖐️ Manual monitoring run requested")
        return await self.run_monitoring()

    async def run_monitoring(self) -> MonitoringStats:
        if self.is_running:
            log.warning("⚠️ Monitoring already running, returning last statistics")
            stats = self._stats.model_copy(deep=True)
            stats.skipped = True
            return stats
        async with self._lock:
            return await self._execute_run()

    async def _execute_run(self) -> MonitoringStats:
        started = self.clock()
        stats = MonitoringStats(last_run=started)
        per_tenant: Dict[str, MonitoringStats] = {}

        def tenant_stats(tenant_id: str) -> MonitoringStats:
            return per_tenant.setdefault(tenant_id, MonitoringStats(last_run=started))

        log.info("🔍 Starting monitoring of managed groups")
        try:
            with self.session_factory() as db:
                series_list = FleetStore(db).list_monitorable_series()
                log.info(f"📋 {len(series_list)} series to check")

                for series in series_list:
                    tenant_id, name = series.tenant_id, series.name
                    current = tenant_stats(tenant_id)
                    stats.total_series_checked += 1
                    current.total_series_checked += 1
                    outcome = ProvisioningOutcome(series_name=name, tenant_id=tenant_id)
                    try:
                        await self.provisioning.process_series(db, series, outcome=outcome)
                    except Exception as e:
                        if not isinstance(e, FleetError):
                            log.exception(f"💥 Unexpected error while checking series '{name}' ({tenant_id})")
                            db.rollback()
                        else:
                            log.error(f"❌ Series '{name}' ({tenant_id}) failed: {e.message}")
                        error = OperationError.from_exception(e, target=name)
                        stats.errors.append(error)
                        current.errors.append(error)
                    # A full group may have been retired before creation failed
                    self._count_outcome(outcome, stats, current)

                await self._deactivate_full_groups(db, stats, tenant_stats)
        except Exception as e:
            log.error(f"❌ Monitoring run aborted: {e}")
            stats.errors.append(OperationError.from_exception(e, target="monitoring"))

        stats.duration_ms = int((self.clock() - started).total_seconds() * 1000)
        self._stats = stats
        log.info(
            f"✅ Monitoring finished in {stats.duration_ms}ms: {stats.total_series_checked} series, "
            f"{stats.groups_created} created, {stats.groups_deactivated} deactivated, {len(stats.errors)} errors"
        )

        for tenant_id, current in per_tenant.items():
            current.duration_ms = stats.duration_ms
            await self.publisher.publish(tenant_id, MONITORING_SUMMARY, {
                "action": "monitoring_completed",
                "stats": current.model_dump(),
            })
        return stats

    @staticmethod
    def _count_outcome(outcome: ProvisioningOutcome, *targets: MonitoringStats) -> None:
        for target in targets:
            if outcome.deactivated_group_id is not None:
                target.groups_deactivated += 1
            if outcome.created:
                target.groups_created += 1

    async def _deactivate_full_groups(self, db: Session, stats: MonitoringStats, tenant_stats) -> None:
        """Retire every active managed group that is full but was not handled by its series"""
        store = FleetStore(db)
        for group in store.managed_groups(active_only=True):
            if not group.is_full():
                continue
            current = tenant_stats(group.tenant_id)
            try:
                store.retire_group(group, now=self.clock())
            except FleetError as e:
                error = OperationError.from_exception(e, target=group.name)
                stats.errors.append(error)
                current.errors.append(error)
                continue
            stats.groups_deactivated += 1
            current.groups_deactivated += 1
            activity.info(
                f"[monitor] tenant={group.tenant_id} retired full group {group.name} "
                f"({group.participant_count()}/{group.max_participants})"
            )
            await self.provisioning.publish_deactivated(group)

    # ────────────────────────────────────────────
    # Operator actions
    # ────────────────────────────────────────────

    async def check_specific_series(self, tenant_id: str, series_name: str) -> ProvisioningOutcome:
        """Evaluate one series now, waiting for any run in progress"""
        log.info(f"🖐️ Manual check of series '{series_name}' for tenant {tenant_id}")
        async with self._lock:
            with self.session_factory() as db:
                series = self.provisioning.get_group_series_by_name(db, tenant_id, series_name)
                return await self.provisioning.process_series(db, series)

    async def force_create_next_group(self, tenant_id: str, series_name: str) -> dict:
        async with self._lock:
            with self.session_factory() as db:
                group = await self.provisioning.force_create_next_group(db, tenant_id, series_name)
                return group.summary()

    async def cleanup_inactive_groups(
        self,
        max_age_days: Optional[int] = None,
        max_participants: Optional[int] = None,
        tenant_id: Optional[str] = None,
    ) -> CleanupResult:
        """Delete managed groups retired long ago that kept almost no members"""
        max_age_days = self.cleanup_max_age_days if max_age_days is None else max_age_days
        max_participants = self.cleanup_max_participants if max_participants is None else max_participants
        cutoff = self.clock() - timedelta(days=max_age_days)
        result = CleanupResult()

        log.info(f"🧹 Cleaning managed groups inactive since {cutoff:%Y-%m-%d} with <= {max_participants} participants")
        async with self._lock:
            with self.session_factory() as db:
                store = FleetStore(db)
                for group in store.stale_inactive_groups(cutoff, max_participants, tenant_id):
                    group_id, name, count = group.id, group.name, group.participant_count()
                    try:
                        store.delete(group, what=f"group {group_id}")
                    except FleetError as e:
                        result.errors.append(OperationError.from_exception(e, target=name))
                        continue
                    result.removed += 1
                    result.removed_group_ids.append(group_id)
                    activity.info(f"[cleanup] removed inactive group {name} ({count} participants)")

        log.info(f"✅ Cleanup finished: {result.removed} groups removed")
        return result

    # ────────────────────────────────────────────
    # Reports
    # ────────────────────────────────────────────

    def get_last_stats(self) -> MonitoringStats:
        return self._stats.model_copy(deep=True)

    def get_status(self) -> MonitoringStatus:
        return MonitoringStatus(
            is_scheduled=self.is_scheduled,
            is_running=self.is_running,
            interval_seconds=self.interval,
            last_run=self._stats.last_run,
            next_run=self._next_run if self.is_scheduled else None,
        )

    def _series_stats(self, db: Session, tenant_id: str, series_name: str) -> SeriesStats:
        try:
            return self.provisioning.get_series_stats(db, tenant_id, series_name)
        except FleetError as e:
            log.error(f"❌ Stats of series '{series_name}' failed: {e.message}")
            return SeriesStats(
                series_name=series_name,
                tenant_id=tenant_id,
                error=OperationError.from_exception(e, target=series_name),
            )

    def get_all_series_stats(self, tenant_id: Optional[str] = None) -> List[SeriesStats]:
        with self.session_factory() as db:
            return [
                self._series_stats(db, s.tenant_id, s.name)
                for s in FleetStore(db).list_series(tenant_id, auto_create_only=True)
            ]

    def run_diagnostic(self, tenant_id: Optional[str] = None) -> DiagnosticReport:
        """
        Consistency report over the fleet. Reports, never fixes:
        - groups full but still active
        - groups retired while below the premature-retirement percentage
        """
        report = DiagnosticReport(timestamp=self.clock())
        with self.session_factory() as db:
            store = FleetStore(db)
            all_series = store.list_series(tenant_id)
            report.total_series = len(all_series)
            report.active_series = sum(1 for s in all_series if s.auto_create_enabled)

            groups = store.managed_groups(tenant_id)
            report.total_managed_groups = len(groups)
            total_occupancy = 0.0
            for group in groups:
                occupancy = group.occupancy_percentage()
                total_occupancy += occupancy
                report.total_participants += group.participant_count()
                full = group.is_full()

                if group.is_active:
                    report.active_groups += 1
                if full:
                    report.full_groups += 1
                elif group.is_near_capacity():
                    report.near_capacity_groups += 1

                if group.is_active and full:
                    report.full_but_active.append(group.id)
                    report.issues.append(f"Group {group.name} is full but still active")
                if not group.is_active and not full and occupancy < self.premature_retirement_percentage:
                    report.retired_prematurely.append(group.id)
                    report.issues.append(f"Group {group.name} was retired prematurely ({occupancy:.1f}%)")

            report.average_occupancy = total_occupancy / len(groups) if groups else 0.0

            for series in all_series:
                stats = self._series_stats(db, series.tenant_id, series.name)
                if stats.error:
                    report.issues.append(f"Could not compute stats of series {series.name}: {stats.error.message}")
                else:
                    report.series_details.append(stats)

        log.info(f"🩺 Diagnostic finished: {len(report.issues)} issues")
        return report
