"""
Dedup / Upsert Layer
Composite-key duplicate suppression and idempotent batched writes.

Every write here is safe to repeat: records are pre-filtered against the
keys already stored and the INSERT itself skips anything the unique
constraints still reject.
"""

from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from sqlalchemy import or_
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from dashboard_sync.database.models import MauticEmailReport, VoicemailRecord
from dashboard_sync.utils.helpers import chunk_list, parse_utc_datetime, to_int, to_str
from dashboard_sync.utils.logger import get_logger

logger = get_logger(__name__)

NULL_DATE_KEY = 'null'


def dialect_insert(session: Session, model):
    """
    Build an INSERT for the session's backend that supports ON CONFLICT.

    Args:
        session: Active session
        model: ORM model class

    Returns:
        Dialect-specific insert construct
    """
    dialect = session.get_bind().dialect.name
    if dialect == 'sqlite':
        return sqlite_insert(model)
    return pg_insert(model)


def upsert_rows(
    session: Session,
    model,
    rows: List[Dict],
    index_elements: List[str],
    update_columns: Optional[List[str]] = None
) -> int:
    """
    Insert rows, updating the given columns on a unique-key conflict.

    Args:
        session: Active session
        model: ORM model class
        rows: Column dictionaries
        index_elements: Columns of the unique constraint
        update_columns: Columns to overwrite on conflict (default: all non-key columns)

    Returns:
        Number of rows written
    """
    if not rows:
        return 0

    if update_columns is None:
        update_columns = [c for c in rows[0].keys() if c not in index_elements]

    stmt = dialect_insert(session, model).values(rows)
    stmt = stmt.on_conflict_do_update(
        index_elements=index_elements,
        set_={col: stmt.excluded[col] for col in update_columns}
    )
    session.execute(stmt)
    return len(rows)


def insert_ignore(session: Session, model, rows: List[Dict]) -> int:
    """
    Insert rows, silently skipping any that violate a unique constraint.

    Returns:
        Number of rows actually inserted
    """
    if not rows:
        return 0

    stmt = dialect_insert(session, model).values(rows).on_conflict_do_nothing()
    result = session.execute(stmt)
    return max(result.rowcount or 0, 0)


# ========================================
# Voicemail Records
# ========================================

def record_key(campaign_id: str, phone_number: str, date) -> str:
    """
    Composite uniqueness key of a voicemail record.

    A missing or unparseable date falls into its own 'null' bucket.
    """
    parsed = parse_utc_datetime(date)
    date_part = parsed.isoformat() if parsed else NULL_DATE_KEY
    return f"{campaign_id}|{phone_number}|{date_part}"


def _existing_record_keys(session: Session, campaign_id: str, rows: Sequence) -> Set[str]:
    """Fetch stored keys for the (phone, date) pairs present in one batch."""
    phones = sorted({row.phone_number for row in rows})
    dates = sorted({row.date for row in rows if row.date is not None})
    has_null_date = any(row.date is None for row in rows)

    date_filters = []
    if dates:
        date_filters.append(VoicemailRecord.date.in_(dates))
    if has_null_date:
        date_filters.append(VoicemailRecord.date.is_(None))

    existing = session.query(
        VoicemailRecord.phone_number, VoicemailRecord.date
    ).filter(
        VoicemailRecord.campaign_id == campaign_id,
        VoicemailRecord.phone_number.in_(phones),
        or_(*date_filters)
    ).all()

    return {record_key(campaign_id, phone, date) for phone, date in existing}


def insert_new_records(
    session: Session,
    campaign_id: str,
    rows: Sequence,
    batch_size: int = 500
) -> int:
    """
    Insert the voicemail records of one campaign that are not stored yet.

    Safe to call repeatedly with overlapping candidate sets. Each batch
    looks up only the keys it could collide with, never the whole table.

    Args:
        session: Active session
        campaign_id: External campaign id
        rows: Parsed VoicemailRow candidates for this campaign
        batch_size: Rows per lookup and INSERT

    Returns:
        Number of records inserted
    """
    inserted = 0
    seen: Set[str] = set()

    for batch in chunk_list(list(rows), batch_size):
        existing = _existing_record_keys(session, campaign_id, batch)

        new_rows = []
        for row in batch:
            key = record_key(campaign_id, row.phone_number, row.date)
            if key in existing or key in seen:
                continue
            seen.add(key)
            new_rows.append(row.to_record(campaign_id))

        if not new_rows:
            logger.debug(f"Campaign {campaign_id}: batch of {len(batch)} already stored")
            continue

        inserted += insert_ignore(session, VoicemailRecord, new_rows)

    logger.debug(f"Campaign {campaign_id}: inserted {inserted}/{len(rows)} records")
    return inserted


# ========================================
# Email Reports
# ========================================

def normalize_report_row(tenant_id: int, row: Dict) -> Optional[Dict]:
    """
    Map one report API row to a MauticEmailReport column dict.

    Returns:
        Column dict, or None when a required field is missing
    """
    if not isinstance(row, dict):
        return None

    e_id = to_int(row.get('e_id'), default=None)
    date_sent = parse_utc_datetime(row.get('date_sent'))
    email_address = to_str(row.get('email_address'))
    subject = to_str(row.get('subject1'))

    if e_id is None or date_sent is None or not email_address or not subject:
        return None

    return {
        'tenant_id': tenant_id,
        'e_id': e_id,
        'email_address': email_address[:255],
        'subject': subject[:500],
        'date_sent': date_sent,
        'date_read': parse_utc_datetime(row.get('date_read')),
    }


def save_email_reports(
    session: Session,
    tenant_id: int,
    rows: Iterable[Dict],
    batch_size: int = 100
) -> Tuple[int, int]:
    """
    Persist one page of report rows for a tenant.

    Args:
        session: Active session
        tenant_id: MauticTenant id
        rows: Raw report rows
        batch_size: Rows per INSERT

    Returns:
        (created, skipped) counts; invalid and duplicate rows count as skipped
    """
    rows = list(rows)
    valid: List[Dict] = []
    seen: Set[Tuple] = set()

    for row in rows:
        normalized = normalize_report_row(tenant_id, row)
        if normalized is None:
            continue
        key = (normalized['e_id'], normalized['email_address'], normalized['date_sent'])
        if key in seen:
            continue
        seen.add(key)
        valid.append(normalized)

    created = 0
    for batch in chunk_list(valid, batch_size):
        created += insert_ignore(session, MauticEmailReport, batch)

    skipped = len(rows) - created
    if len(rows) != len(valid):
        logger.debug(f"Tenant {tenant_id}: {len(rows) - len(valid)} report rows invalid or repeated")

    return created, skipped
