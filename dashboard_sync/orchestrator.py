"""
Sync Orchestrator Module
Top-level sync entry points behind a process-wide single-flight guard.

Every run returns a SyncResult instead of raising, and leaves exactly one
SyncLog row behind. A request made while another run holds the guard gets
a conflict result carrying the elapsed time of the active run.
"""

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from dashboard_sync.config_manager import ConfigManager
from dashboard_sync.database.connection import get_session
from dashboard_sync.database.models import MauticTenant, SyncLog
from dashboard_sync.database.queries import QueryHelpers
from dashboard_sync.ingestion.sync import IngestionSync
from dashboard_sync.sftp_transport import TransportError
from dashboard_sync.tenant_sync import SyncError, TenantInfo, TenantSync
from dashboard_sync.utils.helpers import chunk_list, sanitize_string, utcnow
from dashboard_sync.utils.logger import get_logger

logger = get_logger(__name__)

SOURCE_FILE_DROP = 'dropcowboy'
SOURCE_API = 'mautic'


class SyncGuard:
    """
    Single-flight state: an active flag, the start time and the run kind.

    Only the orchestrator acquires and releases it.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._lock = threading.Lock()
        self._clock = clock
        self._active = False
        self._started = None
        self._started_at = None
        self._sync_type = None

    def try_acquire(self, sync_type: str) -> bool:
        """Take the guard; False if another run holds it."""
        with self._lock:
            if self._active:
                return False
            self._active = True
            self._started = self._clock()
            self._started_at = utcnow()
            self._sync_type = sync_type
            return True

    def release(self) -> None:
        with self._lock:
            self._active = False
            self._started = None
            self._started_at = None
            self._sync_type = None

    @property
    def is_active(self) -> bool:
        with self._lock:
            return self._active

    def elapsed_seconds(self) -> float:
        with self._lock:
            if not self._active:
                return 0.0
            return round(self._clock() - self._started, 3)

    def status(self) -> Dict:
        with self._lock:
            active = self._active
            return {
                'isSyncing': active,
                'elapsedSeconds': round(self._clock() - self._started, 3) if active else 0.0,
                'startTime': self._started_at.isoformat() if active else None,
                'syncType': self._sync_type,
            }


@dataclass
class SyncResult:
    success: bool
    message: str
    conflict: bool = False
    error: Optional[str] = None
    is_syncing: bool = False
    elapsed_seconds: float = 0.0
    data: Dict = field(default_factory=dict)

    def to_dict(self) -> Dict:
        result = {
            'success': self.success,
            'message': self.message,
            'isSyncing': self.is_syncing,
            'elapsedSeconds': self.elapsed_seconds,
        }
        if self.error:
            result['error'] = self.error
        if self.data:
            result['data'] = self.data
        return result


class SyncOrchestrator:
    """
    Runs ingestion, tenant syncs and backfills one at a time.
    """

    def __init__(
        self,
        session_factory: Callable = None,
        ingestion: IngestionSync = None,
        tenant_sync: TenantSync = None,
        settings: Dict = None,
        guard: SyncGuard = None
    ):
        """
        Args:
            session_factory: Returns a transactional session context manager
            ingestion: File-drop ingestion engine
            tenant_sync: API sync engine
            settings: 'orchestrator' config section override
            guard: Single-flight guard (one per process)
        """
        if settings is None:
            settings = ConfigManager().get_orchestrator_config()

        self.session_factory = session_factory or get_session
        self._ingestion = ingestion
        self._tenant_sync = tenant_sync
        self.guard = guard or SyncGuard()

        self.tenant_batch_size = max(int(settings.get('tenant_batch_size', 5)), 1)
        self.relink_after_tenant_sync = settings.get('relink_after_tenant_sync', True)

        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix='sync-runner')
        self.last_job: Optional[Future] = None

    @property
    def ingestion(self) -> IngestionSync:
        if self._ingestion is None:
            self._ingestion = IngestionSync(session_factory=self.session_factory)
        return self._ingestion

    @property
    def tenant_sync(self) -> TenantSync:
        if self._tenant_sync is None:
            self._tenant_sync = TenantSync(session_factory=self.session_factory)
        return self._tenant_sync

    # ========================================
    # Guard Handling
    # ========================================

    def _conflict(self) -> SyncResult:
        status = self.guard.status()
        logger.info(f"Sync request rejected, {status['syncType']} run active for {status['elapsedSeconds']}s")
        return SyncResult(
            success=False,
            conflict=True,
            message='Sync already in progress. Please wait for the current sync to complete.',
            error='SYNC_IN_PROGRESS',
            is_syncing=True,
            elapsed_seconds=status['elapsedSeconds'],
        )

    def _guarded(self, sync_type: str, job: Callable[[], SyncResult]) -> SyncResult:
        if not self.guard.try_acquire(sync_type):
            return self._conflict()
        try:
            return job()
        finally:
            self.guard.release()

    def start(self, kind: str, **kwargs) -> SyncResult:
        """
        Acquire the guard now and run the job on the background worker.

        Args:
            kind: 'full', 'tenant', 'backfill' or 'ingestion'
            **kwargs: Arguments of the matching run method

        Returns:
            Accepted result with the guard status, or a conflict result
        """
        jobs = {
            'full': self._run_full_sync,
            'tenant': self._run_tenant_sync,
            'backfill': self._run_backfill,
            'ingestion': self._run_ingestion,
        }
        job = jobs[kind]

        if not self.guard.try_acquire(kind):
            return self._conflict()

        def runner() -> SyncResult:
            started_at = utcnow()
            try:
                return job(**kwargs)
            except Exception as e:
                logger.error(f"Background {kind} sync crashed: {e}")
                self._log_crash(kind, kwargs, started_at, e)
                raise
            finally:
                self.guard.release()

        try:
            self.last_job = self._executor.submit(runner)
        except RuntimeError:
            self.guard.release()
            raise

        return SyncResult(success=True, message=f"{kind} sync started", is_syncing=True)

    def status(self) -> Dict:
        """Guard status plus the completion time of the last good run."""
        status = self.guard.status()
        with self.session_factory() as session:
            last = QueryHelpers(session).get_last_successful_sync()
        status['lastSyncAt'] = last.isoformat() if last else None
        return status

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    # ========================================
    # Public Entry Points
    # ========================================

    def run_full_sync(self, run_type: str = 'manual', force_full: bool = False) -> SyncResult:
        """Sync every active tenant in fixed-size concurrent batches."""
        return self._guarded('full', lambda: self._run_full_sync(run_type=run_type, force_full=force_full))

    def run_tenant_sync(self, tenant_id: int, run_type: str = 'manual', force_full: bool = False) -> SyncResult:
        """Sync a single tenant."""
        return self._guarded('tenant', lambda: self._run_tenant_sync(tenant_id=tenant_id, run_type=run_type, force_full=force_full))

    def run_backfill(
        self,
        tenant_id: int = None,
        from_date: date = None,
        to_date: date = None,
        page_limit: int = None
    ) -> SyncResult:
        """Backfill one tenant, or every active tenant when no id is given."""
        return self._guarded('backfill', lambda: self._run_backfill(
            tenant_id=tenant_id, from_date=from_date, to_date=to_date, page_limit=page_limit
        ))

    def run_ingestion(self, run_type: str = 'manual') -> SyncResult:
        """Run the file-drop ingestion."""
        return self._guarded('ingestion', lambda: self._run_ingestion(run_type=run_type))

    # ========================================
    # Run Implementations (guard already held)
    # ========================================

    def _run_full_sync(self, run_type: str = 'manual', force_full: bool = False) -> SyncResult:
        started_at = utcnow()
        logger.info(f"Starting full tenant sync ({run_type}, force_full={force_full})")

        with self.session_factory() as session:
            if force_full:
                session.query(MauticTenant).filter(MauticTenant.is_active.is_(True)).update(
                    {'last_sync_at': None}, synchronize_session=False
                )
            tenants = [TenantInfo.from_model(t) for t in QueryHelpers(session).get_active_tenants()]

        if not tenants:
            message = 'No active tenants found'
            self._write_log(SOURCE_API, run_type, 'failed', started_at, error_message=message)
            return SyncResult(success=False, message=message, error='NO_TENANTS')

        summary = self._sync_tenant_batches(tenants, force_full)
        return self._finish_tenant_run(run_type, started_at, summary)

    def _run_tenant_sync(self, tenant_id: int, run_type: str = 'manual', force_full: bool = False) -> SyncResult:
        started_at = utcnow()
        try:
            tenant = self.tenant_sync.load_tenant(tenant_id)
        except SyncError as e:
            self._write_log(SOURCE_API, run_type, 'failed', started_at, error_message=str(e))
            return SyncResult(success=False, message=str(e), error='TENANT_NOT_FOUND')

        summary = self._sync_tenant_batches([tenant], force_full)
        return self._finish_tenant_run(run_type, started_at, summary)

    def _sync_tenant_batches(self, tenants: List[TenantInfo], force_full: bool) -> Dict[str, Any]:
        """Run tenants in batches; one tenant's failure never stops the rest."""
        summary = {'totalTenants': len(tenants), 'successful': 0, 'failed': 0, 'details': []}
        batches = chunk_list(tenants, self.tenant_batch_size)

        for number, batch in enumerate(batches, start=1):
            logger.info(f"Processing tenant batch {number}/{len(batches)} ({len(batch)} tenants)")
            with ThreadPoolExecutor(max_workers=len(batch), thread_name_prefix='tenant-sync') as pool:
                futures: Dict[Future, TenantInfo] = {
                    pool.submit(self.tenant_sync.sync_tenant, tenant, force_full): tenant for tenant in batch
                }
                for future in as_completed(futures):
                    tenant = futures[future]
                    try:
                        result = future.result()
                    except Exception as e:
                        logger.error(f"[{tenant.name}] Sync failed: {e}")
                        summary['failed'] += 1
                        summary['details'].append({'tenantId': tenant.id, 'tenant': tenant.name, 'success': False, 'error': str(e)})
                        continue
                    summary['successful'] += 1
                    summary['details'].append({'tenantId': tenant.id, 'tenant': tenant.name, 'success': True, **result.to_dict()})

        return summary

    def _finish_tenant_run(self, run_type: str, started_at: datetime, summary: Dict) -> SyncResult:
        successful, failed = summary['successful'], summary['failed']
        created = sum(d.get('reportsCreated', 0) for d in summary['details'])
        errors = [f"{d['tenant']}: {d['error']}" for d in summary['details'] if not d['success']]

        if successful == 0:
            status = 'failed'
        elif failed:
            status = 'partial'
        else:
            status = 'success'

        if successful and self.relink_after_tenant_sync:
            summary['campaignsRelinked'] = self.ingestion.relink_unlinked_campaigns()

        self._write_log(
            SOURCE_API, run_type, status, started_at,
            items_processed=successful + failed,
            records_processed=created,
            error_count=failed,
            error_message='; '.join(errors) or None
        )

        message = f"Synced {successful}/{summary['totalTenants']} tenants"
        logger.info(f"{message} ({failed} failed)")
        return SyncResult(
            success=successful > 0,
            message=message,
            error='ALL_TENANTS_FAILED' if status == 'failed' else None,
            data=summary
        )

    def _run_backfill(
        self,
        tenant_id: int = None,
        from_date: date = None,
        to_date: date = None,
        page_limit: int = None
    ) -> SyncResult:
        started_at = utcnow()

        try:
            if tenant_id is not None:
                tenants = [self.tenant_sync.load_tenant(tenant_id)]
            else:
                with self.session_factory() as session:
                    tenants = [TenantInfo.from_model(t) for t in QueryHelpers(session).get_active_tenants()]
        except SyncError as e:
            self._write_log(SOURCE_API, 'backfill', 'failed', started_at, error_message=str(e))
            return SyncResult(success=False, message=str(e), error='TENANT_NOT_FOUND')

        if not tenants:
            message = 'No active tenants found'
            self._write_log(SOURCE_API, 'backfill', 'failed', started_at, error_message=message)
            return SyncResult(success=False, message=message, error='NO_TENANTS')

        details = []
        errors = []
        pages = created = months_failed = 0

        for tenant in tenants:
            try:
                result = self.tenant_sync.backfill_tenant(tenant, from_date, to_date, page_limit)
            except Exception as e:
                logger.error(f"[{tenant.name}] Backfill failed: {e}")
                errors.append(f"{tenant.name}: {e}")
                details.append({'tenantId': tenant.id, 'tenant': tenant.name, 'success': False, 'error': str(e)})
                continue

            pages += result.pages
            created += result.created
            months_failed += result.months_failed
            if result.months_failed:
                failed_months = ', '.join(m.year_month for m in result.months if m.status != 'fetched')
                errors.append(f"{tenant.name}: months not completed: {failed_months}")
            details.append({'tenantId': tenant.id, 'tenant': tenant.name, 'success': True, **result.to_dict()})

        tenants_ok = sum(1 for d in details if d['success'])
        if tenants_ok == 0:
            status = 'failed'
        elif errors:
            status = 'partial'
        else:
            status = 'success'

        self._write_log(
            SOURCE_API, 'backfill', status, started_at,
            items_processed=pages,
            records_processed=created,
            error_count=len(errors),
            error_message='; '.join(errors) or None
        )

        message = f"Backfill finished for {tenants_ok}/{len(tenants)} tenants, {months_failed} months to retry"
        logger.info(message)
        return SyncResult(
            success=tenants_ok > 0,
            message=message,
            error='BACKFILL_FAILED' if status == 'failed' else None,
            data={'tenants': details, 'created': created, 'pages': pages}
        )

    def _run_ingestion(self, run_type: str = 'manual') -> SyncResult:
        started_at = utcnow()

        try:
            result = self.ingestion.run_ingestion()
        except TransportError as e:
            logger.error(f"Ingestion aborted: {e.message}")
            self._write_log(SOURCE_FILE_DROP, run_type, 'failed', started_at, error_count=1, error_message=e.message)
            return SyncResult(success=False, message=e.message, error='TRANSPORT_ERROR')

        status = 'partial' if result.errors else 'success'
        self._write_log(
            SOURCE_FILE_DROP, run_type, status, started_at,
            items_processed=result.files_downloaded,
            campaigns_processed=result.campaigns_processed,
            records_processed=result.total_records,
            error_count=len(result.errors),
            error_message='; '.join(result.errors) or None
        )
        return SyncResult(
            success=True,
            message=f"Imported {result.files_imported} files, {result.records_inserted} new records",
            data=result.to_dict()
        )

    # ========================================
    # Sync Log
    # ========================================

    def _log_crash(self, kind: str, kwargs: Dict, started_at: datetime, error: Exception) -> None:
        """Record a failed SyncLog for a background job that raised."""
        source = SOURCE_FILE_DROP if kind == 'ingestion' else SOURCE_API
        run_type = 'backfill' if kind == 'backfill' else kwargs.get('run_type', 'manual')
        try:
            self._write_log(
                source, run_type, 'failed', started_at,
                error_count=1, error_message=f"{kind} sync crashed: {error}"
            )
        except SQLAlchemyError as e:
            logger.error(f"Could not record crashed {kind} sync: {e}")

    def _write_log(
        self,
        source: str,
        run_type: str,
        status: str,
        started_at: datetime,
        items_processed: int = 0,
        campaigns_processed: int = 0,
        records_processed: int = 0,
        error_count: int = 0,
        error_message: str = None
    ) -> None:
        with self.session_factory() as session:
            session.add(SyncLog(
                source=source,
                run_type=run_type,
                status=status,
                items_processed=items_processed,
                campaigns_processed=campaigns_processed,
                records_processed=records_processed,
                error_count=error_count,
                error_message=sanitize_string(error_message, 500),
                started_at=started_at,
                completed_at=utcnow()
            ))
