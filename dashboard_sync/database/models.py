"""
SQLAlchemy ORM Models
Defines the database models for the reporting dashboard sync engine.
"""

from datetime import datetime

from sqlalchemy import (
    JSON, Boolean, Column, DateTime, ForeignKey, Index, Integer,
    Numeric, String, Text, UniqueConstraint
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


# ============================================
# BILLING CLIENTS & CREDENTIALS
# ============================================

class Client(Base):
    """Billing client. Created by users, never by the sync engine."""
    __tablename__ = 'clients'

    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False, index=True)
    client_type = Column(String(20), nullable=False, default='general')  # 'mautic', 'dropcowboy', 'vicidial', 'general'
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index('idx_client_type_active', 'client_type', 'is_active'),
    )

    campaigns = relationship("VoicemailCampaign", back_populates="client")


class SftpCredential(Base):
    """File-drop transport credentials. The newest row is used."""
    __tablename__ = 'sftp_credentials'

    id = Column(Integer, primary_key=True)
    host = Column(String(255), nullable=False)
    port = Column(Integer, nullable=False, default=22)
    username = Column(String(255), nullable=False)
    password = Column(String(255), nullable=False)
    remote_path = Column(String(500), nullable=False, default='/')
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# ============================================
# FILE-DROP (VOICEMAIL) MODELS
# ============================================

class ImportedFile(Base):
    """Ledger of files whose records are fully committed."""
    __tablename__ = 'imported_files'

    id = Column(Integer, primary_key=True)
    filename = Column(String(255), nullable=False, unique=True)
    imported_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class VoicemailCampaign(Base):
    """Ringless voicemail campaign discovered in dropped files."""
    __tablename__ = 'voicemail_campaigns'

    id = Column(Integer, primary_key=True)
    campaign_id = Column(String(100), nullable=False, unique=True)
    campaign_name = Column(String(255), nullable=False, index=True)
    client_id = Column(Integer, ForeignKey('clients.id', ondelete='SET NULL'), index=True)
    is_valid = Column(Boolean, nullable=False, default=True)
    record_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    client = relationship("Client", back_populates="campaigns")


class VoicemailRecord(Base):
    """One delivery attempt for one recipient of a voicemail campaign."""
    __tablename__ = 'voicemail_records'

    id = Column(Integer, primary_key=True)
    campaign_id = Column(String(100), nullable=False)
    campaign_name = Column(String(255), nullable=False, default='')
    phone_number = Column(String(20), nullable=False)
    carrier = Column(String(100), nullable=False, default='')
    line_type = Column(String(50), nullable=False, default='')
    status = Column(String(50), nullable=False, default='unknown')
    status_code = Column(Integer, nullable=False, default=0)
    status_reason = Column(Text)
    date = Column(DateTime)
    callbacks = Column(Integer, nullable=False, default=0)
    sms_count = Column(Integer, nullable=False, default=0)
    cost = Column(Numeric(14, 6), nullable=False, default=0)
    compliance_fee = Column(Numeric(14, 6), nullable=False, default=0)
    tts_fee = Column(Numeric(14, 6), nullable=False, default=0)
    first_name = Column(String(100), nullable=False, default='')
    last_name = Column(String(100), nullable=False, default='')
    company = Column(String(255), nullable=False, default='')
    email = Column(String(255), nullable=False, default='')
    record_id = Column(String(100))
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('campaign_id', 'phone_number', 'date', name='uq_voicemail_record'),
        Index('idx_voicemail_record_campaign_date', 'campaign_id', 'date'),
        Index('idx_voicemail_record_phone', 'phone_number'),
    )


# ============================================
# MAUTIC (PAGINATED API) MODELS
# ============================================

class MauticTenant(Base):
    """A Mautic instance whose data is synced."""
    __tablename__ = 'mautic_tenants'

    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False, unique=True)
    mautic_url = Column(String(500), nullable=False)
    username = Column(String(255), nullable=False)
    password = Column(Text, nullable=False)  # '<iv hex>:<ciphertext hex>'
    report_id = Column(String(100))
    is_active = Column(Boolean, nullable=False, default=True)
    last_sync_at = Column(DateTime)
    total_emails = Column(Integer, nullable=False, default=0)
    total_campaigns = Column(Integer, nullable=False, default=0)
    total_segments = Column(Integer, nullable=False, default=0)
    client_id = Column(Integer, ForeignKey('clients.id', ondelete='SET NULL'), unique=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index('idx_mautic_tenant_active_sync', 'is_active', 'last_sync_at'),
    )


class MauticEmail(Base):
    """Email definition with aggregate send statistics."""
    __tablename__ = 'mautic_emails'

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey('mautic_tenants.id', ondelete='CASCADE'), nullable=False)
    mautic_email_id = Column(String(255), nullable=False)
    name = Column(String(500), nullable=False)
    subject = Column(String(500))
    email_type = Column(String(100))
    is_published = Column(Boolean, nullable=False, default=False)
    publish_up = Column(DateTime)
    publish_down = Column(DateTime)
    date_added = Column(DateTime)
    sent_count = Column(Integer, nullable=False, default=0)
    read_count = Column(Integer, nullable=False, default=0)
    clicked_count = Column(Integer, nullable=False, default=0)
    unsubscribed = Column(Integer, nullable=False, default=0)
    bounced = Column(Integer, nullable=False, default=0)
    read_rate = Column(Numeric(5, 2), nullable=False, default=0)
    click_rate = Column(Numeric(5, 2), nullable=False, default=0)
    unsubscribe_rate = Column(Numeric(5, 2), nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('tenant_id', 'mautic_email_id', name='uq_mautic_email'),
    )


class MauticCampaign(Base):
    """Mautic marketing campaign definition."""
    __tablename__ = 'mautic_campaigns'

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey('mautic_tenants.id', ondelete='CASCADE'), nullable=False)
    mautic_campaign_id = Column(String(255), nullable=False)
    name = Column(String(500), nullable=False)
    description = Column(Text)
    category = Column(String(255))
    is_published = Column(Boolean, nullable=False, default=False)
    publish_up = Column(DateTime)
    publish_down = Column(DateTime)
    date_added = Column(DateTime)
    created_by = Column(String(100))
    allow_restart = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('tenant_id', 'mautic_campaign_id', name='uq_mautic_campaign'),
    )


class MauticSegment(Base):
    """Mautic contact segment."""
    __tablename__ = 'mautic_segments'

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey('mautic_tenants.id', ondelete='CASCADE'), nullable=False)
    mautic_segment_id = Column(String(255), nullable=False)
    name = Column(String(500), nullable=False)
    alias = Column(String(255))
    description = Column(Text)
    is_published = Column(Boolean, nullable=False, default=False)
    filters = Column(JSON)
    contact_count = Column(Integer, nullable=False, default=0)
    date_added = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('tenant_id', 'mautic_segment_id', name='uq_mautic_segment'),
    )


class MauticEmailReport(Base):
    """Per-recipient send event from the tenant's email report."""
    __tablename__ = 'mautic_email_reports'

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey('mautic_tenants.id', ondelete='CASCADE'), nullable=False)
    e_id = Column(Integer, nullable=False, index=True)
    email_address = Column(String(255), nullable=False)
    subject = Column(String(500), nullable=False)
    date_sent = Column(DateTime, nullable=False, index=True)  # UTC
    date_read = Column(DateTime)  # UTC
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('tenant_id', 'e_id', 'email_address', 'date_sent', name='uq_mautic_email_report'),
    )


class MauticFetchedMonth(Base):
    """Backfill completion marker for one tenant and calendar month."""
    __tablename__ = 'mautic_fetched_months'

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey('mautic_tenants.id', ondelete='CASCADE'), nullable=False)
    year_month = Column(String(7), nullable=False)  # 'YYYY-MM'
    from_date = Column(DateTime)
    to_date = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('tenant_id', 'year_month', name='uq_fetched_month'),
    )


# ============================================
# SYNC TRACKING
# ============================================

class SyncLog(Base):
    """Append-only record of one sync run."""
    __tablename__ = 'sync_logs'

    id = Column(Integer, primary_key=True)
    source = Column(String(20), nullable=False)  # 'dropcowboy', 'mautic'
    run_type = Column(String(20), nullable=False)  # 'manual', 'scheduled', 'backfill'
    status = Column(String(20), nullable=False)  # 'success', 'partial', 'failed'
    items_processed = Column(Integer, nullable=False, default=0)  # files or pages
    campaigns_processed = Column(Integer, nullable=False, default=0)
    records_processed = Column(Integer, nullable=False, default=0)
    error_count = Column(Integer, nullable=False, default=0)
    error_message = Column(Text)
    started_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    completed_at = Column(DateTime)

    __table_args__ = (
        Index('idx_sync_log_source_status', 'source', 'status'),
        Index('idx_sync_log_started', 'started_at'),
    )
