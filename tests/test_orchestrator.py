"""
Unit Tests for the Sync Orchestrator
Engines are mocked; sync logs are written to SQLite.
"""

import threading
import unittest
from unittest.mock import Mock

from dashboard_sync.database.models import MauticTenant, SyncLog
from dashboard_sync.ingestion.sync import IngestionResult
from dashboard_sync.mautic_client import MauticAPIError
from dashboard_sync.orchestrator import SyncGuard, SyncOrchestrator
from dashboard_sync.sftp_transport import TransportError
from dashboard_sync.tenant_sync import BackfillResult, MonthResult, SyncError, TenantInfo, TenantSyncResult
from tests.support import SqliteDatabase


class FakeClock:
    def __init__(self, now=100.0):
        self.now = now

    def __call__(self):
        return self.now


class TestSyncGuard(unittest.TestCase):
    """Test the single-flight guard."""

    def setUp(self):
        self.clock = FakeClock()
        self.guard = SyncGuard(clock=self.clock)

    def test_second_acquire_fails(self):
        self.assertTrue(self.guard.try_acquire('full'))
        self.assertFalse(self.guard.try_acquire('ingestion'))
        self.guard.release()
        self.assertTrue(self.guard.try_acquire('ingestion'))

    def test_status_while_active(self):
        self.guard.try_acquire('backfill')
        self.clock.now += 12.5

        status = self.guard.status()

        self.assertTrue(status['isSyncing'])
        self.assertEqual(status['elapsedSeconds'], 12.5)
        self.assertEqual(status['syncType'], 'backfill')
        self.assertIsNotNone(status['startTime'])

    def test_status_when_idle(self):
        status = self.guard.status()

        self.assertFalse(status['isSyncing'])
        self.assertEqual(status['elapsedSeconds'], 0.0)
        self.assertIsNone(status['startTime'])


class OrchestratorTestCase(unittest.TestCase):
    """Shared setup: database, mocked engines and a controllable clock."""

    def setUp(self):
        self.db = SqliteDatabase()
        self.clock = FakeClock()
        self.ingestion = Mock()
        self.ingestion.relink_unlinked_campaigns.return_value = 0
        self.tenant_sync = Mock()
        self.orchestrator = SyncOrchestrator(
            session_factory=self.db.session,
            ingestion=self.ingestion,
            tenant_sync=self.tenant_sync,
            settings={'tenant_batch_size': 2, 'relink_after_tenant_sync': True},
            guard=SyncGuard(clock=self.clock)
        )

    def tearDown(self):
        self.orchestrator.shutdown()
        self.db.close()

    def add_tenants(self, *names):
        with self.db.session() as session:
            for name in names:
                session.add(MauticTenant(
                    name=name, mautic_url=f"https://{name}.example.com", username='api', password='x', report_id='1'
                ))

    def logs(self):
        with self.db.session() as session:
            return [(log.source, log.status, log.error_count, log.error_message) for log in session.query(SyncLog).all()]


class TestSingleFlight(OrchestratorTestCase):
    """Concurrent requests are rejected with the active run's elapsed time."""

    def test_conflict_while_active(self):
        self.orchestrator.guard.try_acquire('full')
        self.clock.now += 3.2

        result = self.orchestrator.run_ingestion()

        self.assertFalse(result.success)
        self.assertTrue(result.conflict)
        self.assertTrue(result.is_syncing)
        self.assertGreater(result.elapsed_seconds, 0)
        self.assertEqual(result.error, 'SYNC_IN_PROGRESS')
        self.assertEqual(result.to_dict()['isSyncing'], True)
        self.ingestion.run_ingestion.assert_not_called()
        self.assertEqual(self.logs(), [])

    def test_guard_released_after_run(self):
        self.ingestion.run_ingestion.return_value = IngestionResult()

        self.orchestrator.run_ingestion()

        self.assertFalse(self.orchestrator.guard.is_active)

    def test_guard_released_after_crash(self):
        self.ingestion.run_ingestion.side_effect = RuntimeError('disk full')

        with self.assertRaises(RuntimeError):
            self.orchestrator.run_ingestion()

        self.assertFalse(self.orchestrator.guard.is_active)

    def test_background_start(self):
        """start() holds the guard until the background job finishes."""
        release = threading.Event()
        self.ingestion.run_ingestion.side_effect = lambda: release.wait(5) and IngestionResult()

        accepted = self.orchestrator.start('ingestion', run_type='manual')
        rejected = self.orchestrator.start('full')

        self.assertTrue(accepted.success)
        self.assertTrue(rejected.conflict)

        release.set()
        result = self.orchestrator.last_job.result(timeout=5)

        self.assertTrue(result.success)
        self.assertFalse(self.orchestrator.guard.is_active)
        self.tenant_sync.sync_tenant.assert_not_called()

    def test_background_crash_writes_failed_log(self):
        self.ingestion.run_ingestion.side_effect = RuntimeError('disk full')

        self.orchestrator.start('ingestion', run_type='scheduled')
        with self.assertRaises(RuntimeError):
            self.orchestrator.last_job.result(timeout=5)

        source, status, error_count, message = self.logs()[0]
        self.assertEqual((source, status, error_count), ('dropcowboy', 'failed', 1))
        self.assertIn('disk full', message)
        self.assertFalse(self.orchestrator.guard.is_active)

        with self.db.session() as session:
            self.assertEqual(session.query(SyncLog).one().run_type, 'scheduled')


class TestTenantRuns(OrchestratorTestCase):
    """Test run tallies and sync log statuses."""

    def test_partial_failure(self):
        """One failing tenant is counted without stopping the others."""
        self.add_tenants('alpha', 'beta', 'gamma')

        def sync_tenant(tenant, force_full):
            if tenant.name == 'beta':
                raise MauticAPIError("Authentication failed", 401)
            return TenantSyncResult(reports_created=3)

        self.tenant_sync.sync_tenant.side_effect = sync_tenant

        result = self.orchestrator.run_full_sync()

        self.assertTrue(result.success)
        self.assertEqual(result.data['successful'], 2)
        self.assertEqual(result.data['failed'], 1)
        self.ingestion.relink_unlinked_campaigns.assert_called_once()

        source, status, error_count, message = self.logs()[0]
        self.assertEqual((source, status, error_count), ('mautic', 'partial', 1))
        self.assertIn('beta', message)

    def test_tenants_run_in_bounded_batches(self):
        """Only tenants of the same batch overlap; a failed tenant does not block the next batch."""
        self.add_tenants('alpha', 'beta', 'gamma', 'delta', 'epsilon')
        batches = [{'alpha', 'beta'}, {'gamma', 'delta'}, {'epsilon'}]
        lock = threading.Lock()
        barrier = threading.Barrier(2, timeout=5)
        active = set()
        snapshots = []

        def sync_tenant(tenant, force_full):
            with lock:
                active.add(tenant.name)
                snapshots.append(set(active))
            try:
                if tenant.name != 'epsilon':
                    barrier.wait()
                if tenant.name == 'beta':
                    raise MauticAPIError("Authentication failed", 401)
                return TenantSyncResult()
            finally:
                with lock:
                    active.discard(tenant.name)

        self.tenant_sync.sync_tenant.side_effect = sync_tenant

        result = self.orchestrator.run_full_sync()

        self.assertEqual(max(len(s) for s in snapshots), 2)
        for snapshot in snapshots:
            self.assertTrue(any(snapshot <= batch for batch in batches), snapshot)
        self.assertEqual(result.data['successful'], 4)
        self.assertEqual(result.data['failed'], 1)

    def test_all_tenants_succeed(self):
        self.add_tenants('alpha', 'beta')
        self.tenant_sync.sync_tenant.return_value = TenantSyncResult(reports_created=2)

        result = self.orchestrator.run_full_sync(run_type='scheduled')

        self.assertTrue(result.success)
        self.assertIsNone(result.error)
        self.assertEqual(self.logs()[0][1], 'success')

        with self.db.session() as session:
            self.assertEqual(session.query(SyncLog).one().records_processed, 4)

    def test_all_tenants_fail(self):
        self.add_tenants('alpha')
        self.tenant_sync.sync_tenant.side_effect = MauticAPIError("down", 503)

        result = self.orchestrator.run_full_sync()

        self.assertFalse(result.success)
        self.assertEqual(result.error, 'ALL_TENANTS_FAILED')
        self.assertEqual(self.logs()[0][1], 'failed')
        self.ingestion.relink_unlinked_campaigns.assert_not_called()

    def test_no_tenants(self):
        result = self.orchestrator.run_full_sync()

        self.assertFalse(result.success)
        self.assertEqual(result.error, 'NO_TENANTS')
        self.assertEqual(self.logs()[0][1], 'failed')

    def test_inactive_tenants_are_skipped(self):
        self.add_tenants('alpha', 'beta')
        with self.db.session() as session:
            session.query(MauticTenant).filter_by(name='beta').update({'is_active': False})
        self.tenant_sync.sync_tenant.return_value = TenantSyncResult()

        result = self.orchestrator.run_full_sync()

        self.assertEqual(result.data['totalTenants'], 1)

    def test_single_tenant_not_found(self):
        self.tenant_sync.load_tenant.side_effect = SyncError('Tenant 42 not found')

        result = self.orchestrator.run_tenant_sync(42)

        self.assertEqual(result.error, 'TENANT_NOT_FOUND')
        self.assertEqual(self.logs()[0][1], 'failed')

    def test_single_tenant(self):
        tenant = TenantInfo(1, 'alpha', 'https://alpha.example.com', 'api', 'x', '1', None, None)
        self.tenant_sync.load_tenant.return_value = tenant
        self.tenant_sync.sync_tenant.return_value = TenantSyncResult(reports_created=1)

        result = self.orchestrator.run_tenant_sync(1, force_full=True)

        self.assertTrue(result.success)
        self.tenant_sync.sync_tenant.assert_called_once_with(tenant, True)


class TestBackfillAndIngestionRuns(OrchestratorTestCase):
    """Test backfill and ingestion run outcomes."""

    def test_backfill_with_failed_month_is_partial(self):
        self.add_tenants('alpha')
        backfill = BackfillResult()
        backfill.add(MonthResult('2025-01', 'fetched', created=5, pages=1))
        backfill.add(MonthResult('2025-02', 'failed', failed_pages=[2]))
        self.tenant_sync.backfill_tenant.return_value = backfill

        result = self.orchestrator.run_backfill()

        self.assertTrue(result.success)
        self.assertEqual(result.data['created'], 5)
        source, status, _, message = self.logs()[0]
        self.assertEqual(status, 'partial')
        self.assertIn('2025-02', message)

    def test_backfill_failure(self):
        self.add_tenants('alpha')
        self.tenant_sync.backfill_tenant.side_effect = SyncError('No report id configured')

        result = self.orchestrator.run_backfill()

        self.assertEqual(result.error, 'BACKFILL_FAILED')
        self.assertEqual(self.logs()[0][1], 'failed')

    def test_ingestion_transport_error(self):
        self.ingestion.run_ingestion.side_effect = TransportError('SFTP connection failed: timed out')

        result = self.orchestrator.run_ingestion()

        self.assertFalse(result.success)
        self.assertEqual(result.error, 'TRANSPORT_ERROR')
        self.assertEqual(self.logs()[0][:3], ('dropcowboy', 'failed', 1))

    def test_ingestion_with_file_errors_is_partial(self):
        self.ingestion.run_ingestion.return_value = IngestionResult(
            files_downloaded=2, files_imported=1, errors=['bad.json: JSON parsing failed']
        )

        result = self.orchestrator.run_ingestion()

        self.assertTrue(result.success)
        self.assertEqual(self.logs()[0][:3], ('dropcowboy', 'partial', 1))

    def test_status_reports_last_sync(self):
        self.ingestion.run_ingestion.return_value = IngestionResult()
        self.assertIsNone(self.orchestrator.status()['lastSyncAt'])

        self.orchestrator.run_ingestion()

        status = self.orchestrator.status()
        self.assertFalse(status['isSyncing'])
        self.assertIsNotNone(status['lastSyncAt'])


if __name__ == '__main__':
    unittest.main()
