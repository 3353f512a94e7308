"""
Unit Tests for the Dedup / Upsert Layer
Runs against a throwaway SQLite database.
"""

import unittest
from datetime import datetime

from dashboard_sync.database.dedup import (
    insert_ignore,
    insert_new_records,
    normalize_report_row,
    record_key,
    save_email_reports,
    upsert_rows
)
from dashboard_sync.database.models import (
    ImportedFile, MauticEmail, MauticEmailReport, MauticTenant, VoicemailRecord
)
from dashboard_sync.ingestion.parser import VoicemailRow
from tests.support import SqliteDatabase, report_row


def row(phone, date=None, campaign_id='C1'):
    return VoicemailRow(campaign_id=campaign_id, campaign_name='Acme - Spring', phone_number=phone, date=date)


class TestRecordKey(unittest.TestCase):
    """Test composite key construction."""

    def test_key_with_date(self):
        key = record_key('C1', '5550001', datetime(2025, 1, 15, 10, 0))
        self.assertEqual(key, 'C1|5550001|2025-01-15T10:00:00')

    def test_missing_date_uses_null_bucket(self):
        self.assertEqual(record_key('C1', '5550001', None), 'C1|5550001|null')

    def test_unparseable_date_uses_null_bucket(self):
        self.assertEqual(record_key('C1', '5550001', 'not a date'), 'C1|5550001|null')

    def test_offset_dates_normalize_to_utc(self):
        self.assertEqual(
            record_key('C1', '1', '2025-01-15T12:00:00+02:00'),
            record_key('C1', '1', '2025-01-15T10:00:00Z')
        )


class TestInsertNewRecords(unittest.TestCase):
    """Test idempotent voicemail record inserts."""

    def setUp(self):
        self.db = SqliteDatabase()

    def tearDown(self):
        self.db.close()

    def _count(self):
        with self.db.session() as session:
            return session.query(VoicemailRecord).count()

    def test_repeat_calls_insert_nothing_new(self):
        """Running the same candidates twice stores them once."""
        candidates = [row('1', datetime(2025, 1, 1, 9)), row('2', datetime(2025, 1, 1, 9)), row('3')]

        with self.db.session() as session:
            first = insert_new_records(session, 'C1', candidates)
        with self.db.session() as session:
            second = insert_new_records(session, 'C1', candidates)

        self.assertEqual(first, 3)
        self.assertEqual(second, 0)
        self.assertEqual(self._count(), 3)

    def test_overlapping_candidate_sets(self):
        with self.db.session() as session:
            insert_new_records(session, 'C1', [row('1', datetime(2025, 1, 1)), row('2', datetime(2025, 1, 2))])
        with self.db.session() as session:
            inserted = insert_new_records(session, 'C1', [row('2', datetime(2025, 1, 2)), row('3', datetime(2025, 1, 3))])

        self.assertEqual(inserted, 1)
        self.assertEqual(self._count(), 3)

    def test_duplicates_within_one_call_across_batches(self):
        """The same key in two batches of one call is inserted once."""
        when = datetime(2025, 2, 1, 8)
        candidates = [row('1', when), row('2', when), row('1', when), row('2', when), row('4')]

        with self.db.session() as session:
            inserted = insert_new_records(session, 'C1', candidates, batch_size=2)

        self.assertEqual(inserted, 3)
        self.assertEqual(self._count(), 3)

    def test_null_dates_dedup_against_stored_rows(self):
        """Two undated rows for the same phone are one record, also on rerun."""
        with self.db.session() as session:
            self.assertEqual(insert_new_records(session, 'C1', [row('7'), row('7')]), 1)
        with self.db.session() as session:
            self.assertEqual(insert_new_records(session, 'C1', [row('7')]), 0)

    def test_same_phone_different_campaign_is_new(self):
        when = datetime(2025, 3, 1)
        with self.db.session() as session:
            insert_new_records(session, 'C1', [row('1', when)])
        with self.db.session() as session:
            inserted = insert_new_records(session, 'C2', [row('1', when, campaign_id='C2')])

        self.assertEqual(inserted, 1)


class TestInsertHelpers(unittest.TestCase):
    """Test insert_ignore and upsert_rows."""

    def setUp(self):
        self.db = SqliteDatabase()
        with self.db.session() as session:
            tenant = MauticTenant(name='Tenant A', mautic_url='https://a.example.com', username='api', password='x')
            session.add(tenant)
            session.flush()
            self.tenant_id = tenant.id

    def tearDown(self):
        self.db.close()

    def test_insert_ignore_skips_conflicts(self):
        with self.db.session() as session:
            self.assertEqual(insert_ignore(session, ImportedFile, [{'filename': 'a.json'}]), 1)
        with self.db.session() as session:
            inserted = insert_ignore(session, ImportedFile, [{'filename': 'a.json'}, {'filename': 'b.json'}])

        self.assertEqual(inserted, 1)

    def test_insert_ignore_empty(self):
        with self.db.session() as session:
            self.assertEqual(insert_ignore(session, ImportedFile, []), 0)

    def test_upsert_rows_updates_existing(self):
        base = {'tenant_id': self.tenant_id, 'mautic_email_id': '10', 'name': 'Welcome', 'sent_count': 5}
        with self.db.session() as session:
            upsert_rows(session, MauticEmail, [base], ['tenant_id', 'mautic_email_id'])
        with self.db.session() as session:
            upsert_rows(session, MauticEmail, [dict(base, name='Welcome v2', sent_count=9)], ['tenant_id', 'mautic_email_id'])

        with self.db.session() as session:
            emails = session.query(MauticEmail).all()
            self.assertEqual(len(emails), 1)
            self.assertEqual(emails[0].name, 'Welcome v2')
            self.assertEqual(emails[0].sent_count, 9)


class TestSaveEmailReports(unittest.TestCase):
    """Test report row persistence."""

    def setUp(self):
        self.db = SqliteDatabase()
        with self.db.session() as session:
            tenant = MauticTenant(name='Tenant A', mautic_url='https://a.example.com', username='api', password='x')
            session.add(tenant)
            session.flush()
            self.tenant_id = tenant.id

    def tearDown(self):
        self.db.close()

    def test_invalid_and_repeated_rows_are_skipped(self):
        rows = [
            report_row(1, 'a@example.com', '2025-01-10 08:00:00'),
            report_row(1, 'a@example.com', '2025-01-10 08:00:00'),
            report_row(1, 'b@example.com', '2025-01-10 08:00:00', date_read='2025-01-11 09:00:00'),
            {'e_id': '2', 'email_address': 'c@example.com', 'date_sent': '2025-01-10'},
            {'e_id': None, 'email_address': 'd@example.com', 'subject1': 'x', 'date_sent': '2025-01-10'},
        ]

        with self.db.session() as session:
            created, skipped = save_email_reports(session, self.tenant_id, rows)

        self.assertEqual((created, skipped), (2, 3))

        with self.db.session() as session:
            read = session.query(MauticEmailReport).filter_by(email_address='b@example.com').one()
            self.assertEqual(read.date_read, datetime(2025, 1, 11, 9, 0))

    def test_second_save_creates_nothing(self):
        rows = [report_row(i, f"user{i}@example.com", '2025-01-10 08:00:00') for i in range(5)]

        with self.db.session() as session:
            self.assertEqual(save_email_reports(session, self.tenant_id, rows, batch_size=2), (5, 0))
        with self.db.session() as session:
            self.assertEqual(save_email_reports(session, self.tenant_id, rows, batch_size=2), (0, 5))

    def test_normalize_report_row(self):
        normalized = normalize_report_row(self.tenant_id, report_row('7', ' x@example.com ', '2025-01-10T08:00:00Z'))

        self.assertEqual(normalized['e_id'], 7)
        self.assertEqual(normalized['email_address'], 'x@example.com')
        self.assertEqual(normalized['date_sent'], datetime(2025, 1, 10, 8, 0))
        self.assertIsNone(normalize_report_row(self.tenant_id, 'not a row'))


if __name__ == '__main__':
    unittest.main()
