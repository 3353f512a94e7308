"""
Mautic Tenant Sync Module
Incremental sync and resumable month-by-month backfill for one tenant.

Metadata (emails, campaigns, segments) is fetched in full and upserted
before any report page is requested. Report rows are never held beyond
one page: each page is written through the dedup layer before the next
one is fetched.
"""

import math
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dashboard_sync.config_manager import ConfigManager
from dashboard_sync.database.connection import get_session
from dashboard_sync.database.dedup import insert_ignore, save_email_reports, upsert_rows
from dashboard_sync.database.models import (
    MauticCampaign, MauticEmail, MauticFetchedMonth, MauticSegment, MauticTenant
)
from dashboard_sync.database.queries import QueryHelpers
from dashboard_sync.mautic_client import MauticAPI, MauticAPIError
from dashboard_sync.utils.helpers import (
    chunk_list, format_api_datetime, iter_months, month_key, month_window,
    parse_utc_datetime, percentage, to_int, to_str, utcnow
)
from dashboard_sync.utils.logger import get_logger

logger = get_logger(__name__)


class SyncError(Exception):
    """Raised when a sync cannot start or a tenant cannot be synced."""
    pass


class PageFetchError(Exception):
    """Raised when a report page still fails after every retry."""

    def __init__(self, message: str, page: int = None, cause: Exception = None):
        self.message = message
        self.page = page
        self.cause = cause
        super().__init__(self.message)


@dataclass
class TenantInfo:
    """Detached snapshot of a MauticTenant row."""
    id: int
    name: str
    mautic_url: str
    username: str
    password: str
    report_id: Optional[str]
    last_sync_at: Optional[datetime]
    created_at: Optional[datetime]

    @classmethod
    def from_model(cls, tenant: MauticTenant) -> 'TenantInfo':
        return cls(
            id=tenant.id,
            name=tenant.name,
            mautic_url=tenant.mautic_url,
            username=tenant.username,
            password=tenant.password,
            report_id=tenant.report_id,
            last_sync_at=tenant.last_sync_at,
            created_at=tenant.created_at,
        )


@dataclass
class TenantSyncResult:
    emails: int = 0
    campaigns: int = 0
    segments: int = 0
    reports_created: int = 0
    reports_skipped: int = 0
    report_rows: int = 0

    def to_dict(self) -> Dict:
        return {
            'emails': self.emails,
            'campaigns': self.campaigns,
            'segments': self.segments,
            'reportsCreated': self.reports_created,
            'reportsSkipped': self.reports_skipped,
            'reportRows': self.report_rows,
        }


@dataclass
class MonthResult:
    year_month: str
    status: str  # 'fetched', 'failed'
    created: int = 0
    skipped: int = 0
    pages: int = 0
    failed_pages: List[int] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class BackfillResult:
    months_fetched: int = 0
    months_skipped: int = 0
    months_failed: int = 0
    created: int = 0
    skipped: int = 0
    pages: int = 0
    months: List[MonthResult] = field(default_factory=list)

    def add(self, month: MonthResult) -> None:
        self.months.append(month)
        self.created += month.created
        self.skipped += month.skipped
        self.pages += month.pages
        if month.status == 'fetched':
            self.months_fetched += 1
        else:
            self.months_failed += 1

    def to_dict(self) -> Dict:
        return {
            'monthsFetched': self.months_fetched,
            'monthsSkipped': self.months_skipped,
            'monthsFailed': self.months_failed,
            'created': self.created,
            'skipped': self.skipped,
            'pages': self.pages,
            'failedMonths': [m.year_month for m in self.months if m.status != 'fetched'],
        }


class TenantSync:
    """
    Sync engine for the paginated reporting API.
    """

    def __init__(
        self,
        session_factory: Callable = None,
        client_factory: Callable[[TenantInfo], MauticAPI] = None,
        mautic_settings: Dict = None,
        backfill_settings: Dict = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        Args:
            session_factory: Returns a transactional session context manager
            client_factory: Builds an API client for a tenant
            mautic_settings: 'mautic' config section override
            backfill_settings: 'backfill' config section override
            sleep: Sleep function (replaced in tests)
        """
        if mautic_settings is None or backfill_settings is None:
            config = ConfigManager()
            mautic_settings = mautic_settings if mautic_settings is not None else config.get_mautic_config()
            backfill_settings = backfill_settings if backfill_settings is not None else config.get_backfill_config()

        self.session_factory = session_factory or get_session
        self.client_factory = client_factory or (lambda tenant: MauticAPI.from_tenant(tenant, mautic_settings))
        self._sleep = sleep

        self.report_page_limit = mautic_settings.get('report_page_limit', 200000)

        self.page_limit = backfill_settings.get('page_limit', 200000)
        self.min_page_limit = backfill_settings.get('min_page_limit', 1000)
        self.max_page_limit = backfill_settings.get('max_page_limit', 200000)
        self.concurrency = max(int(backfill_settings.get('concurrency', 10)), 1)
        self.max_retries = max(int(backfill_settings.get('max_retries', 6)), 1)
        self.retry_base_delay = backfill_settings.get('retry_base_delay', 2)
        self.month_pause = backfill_settings.get('month_pause_seconds', 2)

    def load_tenant(self, tenant_id: int) -> TenantInfo:
        """
        Load a tenant snapshot.

        Raises:
            SyncError: If the tenant does not exist
        """
        with self.session_factory() as session:
            tenant = session.get(MauticTenant, tenant_id)
            if tenant is None:
                raise SyncError(f"Tenant {tenant_id} not found")
            return TenantInfo.from_model(tenant)

    # ========================================
    # Incremental Sync
    # ========================================

    def sync_tenant(self, tenant: TenantInfo, force_full: bool = False) -> TenantSyncResult:
        """
        Sync metadata, then stream the email report since the last sync.

        Args:
            tenant: Tenant snapshot
            force_full: Ignore last_sync_at and fetch the whole report

        Returns:
            TenantSyncResult counts

        Raises:
            MauticAPIError: If a metadata or report request fails
            SyncError: If the tenant has no report configured
        """
        logger.info(f"[{tenant.name}] Starting sync (force_full={force_full})")
        client = self.client_factory(tenant)
        result = TenantSyncResult()

        # Metadata first; a failure here stops the tenant before any report fetch
        emails = client.fetch_emails()
        campaigns = client.fetch_campaigns()
        segments = client.fetch_segments()

        with self.session_factory() as session:
            result.emails = self._upsert_emails(session, tenant.id, emails)
            result.campaigns = self._upsert_campaigns(session, tenant.id, campaigns)
            result.segments = self._upsert_segments(session, tenant.id, segments)

        if not tenant.report_id:
            raise SyncError(f"No report id configured for tenant {tenant.name}")

        date_from = None
        if tenant.last_sync_at and not force_full:
            date_from = tenant.last_sync_at.strftime('%Y-%m-%d')

        for rows in client.iter_report_pages(tenant.report_id, date_from=date_from, limit=self.report_page_limit):
            with self.session_factory() as session:
                created, skipped = save_email_reports(session, tenant.id, rows)
            result.report_rows += len(rows)
            result.reports_created += created
            result.reports_skipped += skipped

        with self.session_factory() as session:
            row = session.get(MauticTenant, tenant.id)
            row.last_sync_at = utcnow()
            row.total_emails = result.emails
            row.total_campaigns = result.campaigns
            row.total_segments = result.segments

        logger.info(
            f"[{tenant.name}] Sync complete: {result.emails} emails, {result.campaigns} campaigns, "
            f"{result.segments} segments, {result.reports_created} reports created, "
            f"{result.reports_skipped} skipped"
        )
        return result

    # ========================================
    # Metadata Upserts
    # ========================================

    def _upsert_emails(self, session: Session, tenant_id: int, emails: List[Dict]) -> int:
        now = utcnow()
        rows = []
        for email in emails:
            sent = to_int(email.get('sentCount'))
            read = to_int(email.get('readCount'))
            clicked = to_int(email.get('clickCount'))
            unsubscribed = to_int(email.get('unsubscribeCount'))
            rows.append({
                'tenant_id': tenant_id,
                'mautic_email_id': str(email.get('id')),
                'name': to_str(email.get('name'))[:500],
                'subject': to_str(email.get('subject'))[:500] or None,
                'email_type': to_str(email.get('emailType'))[:100] or None,
                'is_published': bool(email.get('isPublished')),
                'publish_up': parse_utc_datetime(email.get('publishUp')),
                'publish_down': parse_utc_datetime(email.get('publishDown')),
                'date_added': parse_utc_datetime(email.get('dateAdded')),
                'sent_count': sent,
                'read_count': read,
                'clicked_count': clicked,
                'unsubscribed': unsubscribed,
                'bounced': to_int(email.get('bounceCount')),
                'read_rate': percentage(read, sent),
                'click_rate': percentage(clicked, sent),
                'unsubscribe_rate': percentage(unsubscribed, sent),
                'updated_at': now,
            })
        return self._upsert_batched(session, MauticEmail, rows, ['tenant_id', 'mautic_email_id'])

    def _upsert_campaigns(self, session: Session, tenant_id: int, campaigns: List[Dict]) -> int:
        now = utcnow()
        rows = []
        for campaign in campaigns:
            category = campaign.get('category')
            if isinstance(category, dict):
                category = category.get('title') or category.get('alias') or category.get('name')
            rows.append({
                'tenant_id': tenant_id,
                'mautic_campaign_id': str(campaign.get('id')),
                'name': to_str(campaign.get('name'))[:500],
                'description': campaign.get('description') or None,
                'category': to_str(category)[:255] or None,
                'is_published': bool(campaign.get('isPublished')),
                'publish_up': parse_utc_datetime(campaign.get('publishUp')),
                'publish_down': parse_utc_datetime(campaign.get('publishDown')),
                'date_added': parse_utc_datetime(campaign.get('dateAdded')),
                'created_by': to_str(campaign.get('createdBy'))[:100] or None,
                'allow_restart': bool(campaign.get('allowRestart')),
                'updated_at': now,
            })
        return self._upsert_batched(session, MauticCampaign, rows, ['tenant_id', 'mautic_campaign_id'])

    def _upsert_segments(self, session: Session, tenant_id: int, segments: List[Dict]) -> int:
        now = utcnow()
        rows = []
        for segment in segments:
            rows.append({
                'tenant_id': tenant_id,
                'mautic_segment_id': str(segment.get('id')),
                'name': to_str(segment.get('name'))[:500],
                'alias': to_str(segment.get('alias'))[:255] or None,
                'description': segment.get('description') or None,
                'is_published': bool(segment.get('isPublished')),
                'filters': segment.get('filters') or None,
                'contact_count': to_int(segment.get('leadCount')),
                'date_added': parse_utc_datetime(segment.get('dateAdded')),
                'updated_at': now,
            })
        return self._upsert_batched(session, MauticSegment, rows, ['tenant_id', 'mautic_segment_id'])

    def _upsert_batched(self, session: Session, model, rows: List[Dict], keys: List[str]) -> int:
        written = 0
        for batch in chunk_list(rows, 500):
            written += upsert_rows(session, model, batch, keys)
        return written

    # ========================================
    # Historical Backfill
    # ========================================

    def clamp_page_limit(self, page_limit: Optional[int]) -> int:
        """Bound a requested page size to the configured range."""
        requested = to_int(page_limit, default=self.page_limit) or self.page_limit
        return max(self.min_page_limit, min(requested, self.max_page_limit))

    def backfill_tenant(
        self,
        tenant: TenantInfo,
        from_date: date = None,
        to_date: date = None,
        page_limit: int = None
    ) -> BackfillResult:
        """
        Fetch report data month by month, skipping months already marked.

        Args:
            tenant: Tenant snapshot
            from_date: First day of the range (default: tenant creation date,
                or January 1 of the current year)
            to_date: Last day of the range (default: today)
            page_limit: Rows per page, clamped to the configured bounds

        Returns:
            BackfillResult with per-month outcomes

        Raises:
            SyncError: If the tenant has no report or the range is empty
        """
        if not tenant.report_id:
            raise SyncError(f"No report id configured for tenant {tenant.name}")

        today = utcnow().date()
        start = from_date or (tenant.created_at.date() if tenant.created_at else date(today.year, 1, 1))
        end = to_date or today
        if start > end:
            raise SyncError(f"Backfill range is empty: {start} > {end}")

        limit = self.clamp_page_limit(page_limit)

        with self.session_factory() as session:
            fetched = QueryHelpers(session).get_fetched_months(tenant.id)

        logger.info(f"[{tenant.name}] Backfill {start} -> {end} (page_limit={limit}, concurrency={self.concurrency})")

        client = self.client_factory(tenant)
        result = BackfillResult()
        first = True

        for year, month in iter_months(start, end):
            key = month_key(year, month)
            if key in fetched:
                logger.debug(f"[{tenant.name}] {key} already fetched, skipping")
                result.months_skipped += 1
                continue

            if not first and self.month_pause:
                self._sleep(self.month_pause)
            first = False

            month_result = self._backfill_month(client, tenant, year, month, end, limit)
            result.add(month_result)

        logger.info(
            f"[{tenant.name}] Backfill finished: {result.months_fetched} fetched, "
            f"{result.months_skipped} already done, {result.months_failed} failed, {result.created} created"
        )
        return result

    def _backfill_month(
        self,
        client: MauticAPI,
        tenant: TenantInfo,
        year: int,
        month: int,
        end: date,
        limit: int
    ) -> MonthResult:
        """Fetch and persist one month; mark it only when every page succeeded."""
        key = month_key(year, month)
        window_start, window_end = month_window(year, month, end)
        date_from = format_api_datetime(window_start)
        date_to = format_api_datetime(window_end)
        result = MonthResult(year_month=key, status='failed')

        try:
            first = self._fetch_page_with_retry(client, tenant.report_id, 1, limit, date_from, date_to)
        except PageFetchError as e:
            logger.error(f"[{tenant.name}] {key}: first page failed, month left unmarked: {e.message}")
            result.error = e.message
            result.failed_pages.append(1)
            return result

        if not isinstance(first, dict) or not isinstance(first.get('data'), list):
            logger.warning(f"[{tenant.name}] {key}: first page returned no data, month left unmarked")
            result.error = "First page returned no data"
            return result

        total = MauticAPI.report_total(first) or len(first['data'])
        total_pages = max(1, math.ceil(total / limit))
        logger.debug(f"[{tenant.name}] {key}: {total} rows in {total_pages} pages")

        created, skipped = self._save_page(tenant.id, first['data'])
        result.created += created
        result.skipped += skipped
        result.pages = 1

        if total_pages > 1:
            with ThreadPoolExecutor(max_workers=self.concurrency) as pool:
                futures = {
                    pool.submit(self._fetch_and_save_page, client, tenant, page, limit, date_from, date_to): page
                    for page in range(2, total_pages + 1)
                }
                for future in as_completed(futures):
                    page = futures[future]
                    try:
                        created, skipped = future.result()
                    except (PageFetchError, SQLAlchemyError) as e:
                        logger.error(f"[{tenant.name}] {key}: page {page} failed: {e}")
                        result.failed_pages.append(page)
                        continue
                    result.created += created
                    result.skipped += skipped
                    result.pages += 1

        if result.failed_pages:
            result.error = f"{len(result.failed_pages)} pages failed"
            logger.warning(f"[{tenant.name}] {key}: {result.error}, month left unmarked")
            return result

        self._mark_month_fetched(tenant.id, key, window_start, window_end)
        result.status = 'fetched'
        logger.info(f"[{tenant.name}] {key} complete: {result.created} created, {result.skipped} skipped")
        return result

    def _fetch_and_save_page(
        self,
        client: MauticAPI,
        tenant: TenantInfo,
        page: int,
        limit: int,
        date_from: str,
        date_to: str
    ) -> Tuple[int, int]:
        payload = self._fetch_page_with_retry(client, tenant.report_id, page, limit, date_from, date_to)
        rows = payload.get('data') if isinstance(payload, dict) else None
        if not isinstance(rows, list):
            raise PageFetchError(f"Page {page} returned no data", page)
        return self._save_page(tenant.id, rows)

    def _fetch_page_with_retry(
        self,
        client: MauticAPI,
        report_id: str,
        page: int,
        limit: int,
        date_from: str,
        date_to: str
    ) -> Dict:
        """
        Fetch one report page, retrying with a linear backoff.

        Raises:
            PageFetchError: When every attempt failed
        """
        last_error = None
        for attempt in range(1, self.max_retries + 1):
            try:
                return client.fetch_report_page(report_id, page, limit, date_from, date_to)
            except MauticAPIError as e:
                last_error = e
                if attempt < self.max_retries:
                    delay = self.retry_base_delay * attempt
                    logger.warning(f"Page {page} attempt {attempt} failed ({e.message}), retrying in {delay}s")
                    self._sleep(delay)

        raise PageFetchError(
            f"Page {page} failed after {self.max_retries} attempts: {last_error}", page, last_error
        )

    def _save_page(self, tenant_id: int, rows: List[Dict]) -> Tuple[int, int]:
        if not rows:
            return 0, 0
        with self.session_factory() as session:
            return save_email_reports(session, tenant_id, rows)

    def _mark_month_fetched(self, tenant_id: int, key: str, window_start: datetime, window_end: datetime) -> None:
        """Write the month marker; a marker that already exists is left in place."""
        with self.session_factory() as session:
            insert_ignore(session, MauticFetchedMonth, [{
                'tenant_id': tenant_id,
                'year_month': key,
                'from_date': window_start,
                'to_date': window_end,
                'created_at': utcnow(),
            }])
            session.query(MauticFetchedMonth).filter(
                MauticFetchedMonth.tenant_id == tenant_id,
                MauticFetchedMonth.year_month == key
            ).update({'from_date': window_start, 'to_date': window_end}, synchronize_session=False)
