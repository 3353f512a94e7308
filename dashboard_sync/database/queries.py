"""
Database Query Helpers Module
Read helpers and manual maintenance operations over the synced tables.
"""

from datetime import datetime
from typing import Dict, List, Optional, Set

from sqlalchemy import func
from sqlalchemy.orm import Session

from dashboard_sync.database.models import (
    Client, ImportedFile, MauticFetchedMonth, MauticTenant, SftpCredential,
    SyncLog, VoicemailCampaign, VoicemailRecord
)
from dashboard_sync.utils.logger import get_logger

logger = get_logger(__name__)


class QueryHelpers:
    """Query helper functions for database operations."""

    def __init__(self, session: Session):
        """Initialize with database session."""
        self.session = session

    # ========================================
    # Ingestion Ledgers
    # ========================================

    def get_imported_filenames(self) -> Set[str]:
        """Get filenames whose records are fully committed."""
        return {name for (name,) in self.session.query(ImportedFile.filename).all()}

    def get_sftp_credentials(self) -> Optional[Dict]:
        """Get the newest SFTP credentials as a dict, or None."""
        cred = self.session.query(SftpCredential).order_by(
            SftpCredential.updated_at.desc(), SftpCredential.id.desc()
        ).first()
        if cred is None:
            return None
        return {
            'host': cred.host,
            'port': cred.port,
            'username': cred.username,
            'password': cred.password,
            'remote_path': cred.remote_path,
        }

    def get_match_candidates(self, client_type: str) -> List[Client]:
        """Get active clients eligible for campaign auto-linking."""
        return self.session.query(Client).filter(
            Client.client_type == client_type,
            Client.is_active.is_(True)
        ).all()

    # ========================================
    # Tenant Queries
    # ========================================

    def get_active_tenants(self) -> List[MauticTenant]:
        """Get active Mautic tenants ordered by id."""
        return self.session.query(MauticTenant).filter(
            MauticTenant.is_active.is_(True)
        ).order_by(MauticTenant.id).all()

    def get_fetched_months(self, tenant_id: int) -> Set[str]:
        """Get the 'YYYY-MM' keys already backfilled for a tenant."""
        rows = self.session.query(MauticFetchedMonth.year_month).filter(
            MauticFetchedMonth.tenant_id == tenant_id
        ).all()
        return {year_month for (year_month,) in rows}

    # ========================================
    # Sync Logs
    # ========================================

    def get_sync_logs(self, limit: int = 20, source: str = None) -> List[SyncLog]:
        """Get the most recent sync logs."""
        query = self.session.query(SyncLog)
        if source:
            query = query.filter(SyncLog.source == source)
        return query.order_by(SyncLog.started_at.desc(), SyncLog.id.desc()).limit(limit).all()

    def get_last_successful_sync(self, source: str = None) -> Optional[datetime]:
        """Get completion time of the newest successful or partial run."""
        query = self.session.query(func.max(SyncLog.completed_at)).filter(
            SyncLog.status.in_(['success', 'partial'])
        )
        if source:
            query = query.filter(SyncLog.source == source)
        return query.scalar()

    # ========================================
    # Manual Campaign Linking
    # ========================================

    def link_campaign(self, campaign_id: str, client_id: int) -> VoicemailCampaign:
        """
        Link a voicemail campaign to a client, replacing any existing link.

        Raises:
            LookupError: If the campaign or client does not exist
        """
        campaign = self._get_campaign(campaign_id)
        client = self.session.get(Client, client_id)
        if client is None:
            raise LookupError(f"Client {client_id} not found")

        campaign.client_id = client.id
        logger.info(f"Campaign {campaign_id} linked to client {client.name}")
        return campaign

    def unlink_campaign(self, campaign_id: str) -> VoicemailCampaign:
        """
        Remove a campaign's client link.

        Raises:
            LookupError: If the campaign does not exist
        """
        campaign = self._get_campaign(campaign_id)
        campaign.client_id = None
        logger.info(f"Campaign {campaign_id} unlinked")
        return campaign

    def _get_campaign(self, campaign_id: str) -> VoicemailCampaign:
        campaign = self.session.query(VoicemailCampaign).filter(
            VoicemailCampaign.campaign_id == campaign_id
        ).first()
        if campaign is None:
            raise LookupError(f"Campaign {campaign_id} not found")
        return campaign

    def clear_voicemail_data(self) -> Dict[str, int]:
        """
        Delete all voicemail records, campaigns and import ledger rows.

        The next ingestion run re-imports every file still on the server.
        """
        records = self.session.query(VoicemailRecord).delete(synchronize_session=False)
        campaigns = self.session.query(VoicemailCampaign).delete(synchronize_session=False)
        files = self.session.query(ImportedFile).delete(synchronize_session=False)

        logger.warning(f"Cleared voicemail data: {records} records, {campaigns} campaigns, {files} imported files")
        return {'records': records, 'campaigns': campaigns, 'importedFiles': files}
