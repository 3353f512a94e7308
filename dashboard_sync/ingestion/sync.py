"""
Voicemail Ingestion Sync
Downloads dropped campaign files over SFTP and loads them into the database.

Pipeline: list -> download new files -> parse -> match client -> dedup insert
-> mark file imported.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

import paramiko
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dashboard_sync.config_manager import ConfigManager
from dashboard_sync.database.connection import get_session
from dashboard_sync.database.dedup import dialect_insert, insert_ignore, insert_new_records
from dashboard_sync.database.models import ImportedFile, VoicemailCampaign, VoicemailRecord
from dashboard_sync.database.queries import QueryHelpers
from dashboard_sync.ingestion.matcher import match_client
from dashboard_sync.ingestion.parser import CampaignGroup, FileCorruptionError, group_by_campaign, parse_file
from dashboard_sync.sftp_transport import SftpTransport, TransportError
from dashboard_sync.utils.helpers import utcnow
from dashboard_sync.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class DownloadResult:
    files_downloaded: int = 0
    total_files: int = 0
    details: List[Dict] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


@dataclass
class IngestionResult:
    files_downloaded: int = 0
    campaigns_processed: int = 0
    total_records: int = 0
    records_inserted: int = 0
    files_imported: int = 0
    errors: List[str] = field(default_factory=list)
    downloads: List[Dict] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            'filesDownloaded': self.files_downloaded,
            'campaignsProcessed': self.campaigns_processed,
            'totalRecords': self.total_records,
            'recordsInserted': self.records_inserted,
            'filesImported': self.files_imported,
            'errors': list(self.errors),
            'downloads': list(self.downloads),
        }


class IngestionSync:
    """
    File-drop ingestion for the voicemail provider.
    """

    def __init__(
        self,
        session_factory: Callable = None,
        transport_factory: Callable[[Dict, Dict], SftpTransport] = None,
        sftp_settings: Dict = None,
        settings: Dict = None
    ):
        """
        Args:
            session_factory: Returns a transactional session context manager
            transport_factory: Builds a transport from (credentials, sftp settings)
            sftp_settings: 'sftp' config section override
            settings: 'ingestion' config section override
        """
        if sftp_settings is None or settings is None:
            config = ConfigManager()
            sftp_settings = sftp_settings if sftp_settings is not None else config.get_sftp_config()
            settings = settings if settings is not None else config.get_ingestion_config()

        self.session_factory = session_factory or get_session
        self.transport_factory = transport_factory or SftpTransport.from_settings
        self.sftp_settings = sftp_settings

        self.staging_dir = Path(sftp_settings.get('local_data_dir', './data/campaigns'))
        self.extension = sftp_settings.get('file_extension', '.json')
        self.batch_size = settings.get('insert_batch_size', 500)
        self.match_client_type = settings.get('match_client_type', 'mautic')

    # ========================================
    # Entry Point
    # ========================================

    def run_ingestion(self) -> IngestionResult:
        """
        Download new files and import everything staged but not yet imported.

        Returns:
            IngestionResult with per-run counts and per-file errors

        Raises:
            TransportError: If credentials are missing or the server cannot be listed
        """
        logger.info("Starting voicemail ingestion")

        download = self.download_new_files()
        result = self.import_staged_files()

        result.files_downloaded = download.files_downloaded
        result.downloads = download.details
        result.errors = download.errors + result.errors

        logger.info(
            f"Ingestion finished: {result.files_downloaded} downloaded, {result.files_imported} imported, "
            f"{result.campaigns_processed} campaigns, {result.records_inserted}/{result.total_records} records inserted, "
            f"{len(result.errors)} errors"
        )
        return result

    # ========================================
    # Download
    # ========================================

    def _staged_filenames(self) -> List[str]:
        if not self.staging_dir.exists():
            return []
        return sorted(p.name for p in self.staging_dir.iterdir() if p.is_file() and p.name.endswith(self.extension))

    def download_new_files(self) -> DownloadResult:
        """
        Download remote files that are neither imported nor already staged.

        A file that fails to download or arrives empty is reported and the
        run continues with the next file.

        Raises:
            TransportError: If credentials are missing or connect/list fails
        """
        self.staging_dir.mkdir(parents=True, exist_ok=True)

        with self.session_factory() as session:
            helpers = QueryHelpers(session)
            credentials = helpers.get_sftp_credentials()
            imported = helpers.get_imported_filenames()

        if credentials is None:
            raise TransportError("No SFTP credentials found in database")

        staged = set(self._staged_filenames())
        result = DownloadResult()

        with self.transport_factory(credentials, self.sftp_settings) as transport:
            remote_files = transport.list_files(self.extension)
            new_files = [f for f in remote_files if f.name not in imported and f.name not in staged]

            result.total_files = len(new_files)
            logger.info(f"{len(remote_files)} remote files, {len(new_files)} new")

            for index, remote in enumerate(new_files, start=1):
                local_path = self.staging_dir / remote.name
                logger.debug(f"[{index}/{len(new_files)}] Downloading {remote.name} ({remote.size} bytes)")

                detail = {'filename': remote.name, 'success': False, 'size': remote.size, 'timestamp': utcnow().isoformat()}
                try:
                    size = transport.download(remote.name, local_path)
                except (IOError, OSError, paramiko.SSHException) as e:
                    logger.error(f"Download failed for {remote.name}: {e}")
                    local_path.unlink(missing_ok=True)
                    result.errors.append(f"{remote.name}: download failed: {e}")
                    result.details.append(detail)
                    continue

                detail['success'] = True
                result.files_downloaded += 1
                if size == 0:
                    logger.error(f"Downloaded file is empty: {remote.name}")
                    result.errors.append(f"{remote.name}: downloaded file is empty")
                result.details.append(detail)

        return result

    # ========================================
    # Import
    # ========================================

    def import_staged_files(self) -> IngestionResult:
        """Import every staged file that has no ImportedFile row yet."""
        result = IngestionResult()

        with self.session_factory() as session:
            imported = QueryHelpers(session).get_imported_filenames()

        for filename in self._staged_filenames():
            if filename in imported:
                continue
            self._import_file(self.staging_dir / filename, result)

        return result

    def _import_file(self, path: Path, result: IngestionResult) -> None:
        """Import one file; a corrupt file is deleted so it is fetched again."""
        try:
            rows = parse_file(path)
        except FileCorruptionError as e:
            logger.error(f"Corrupt file {path.name}: {e.message}")
            result.errors.append(f"{path.name}: {e.message}")
            path.unlink(missing_ok=True)
            return

        groups = group_by_campaign(rows)

        with self.session_factory() as session:
            candidates = QueryHelpers(session).get_match_candidates(self.match_client_type)
            candidates = [_Candidate(c.id, c.name) for c in candidates]

        # Each campaign group commits on its own; the file is marked only after all of them
        try:
            for group in groups:
                with self.session_factory() as session:
                    inserted = self._import_group(session, group, candidates)
                result.campaigns_processed += 1
                result.total_records += len(group.rows)
                result.records_inserted += inserted

            with self.session_factory() as session:
                insert_ignore(session, ImportedFile, [{'filename': path.name, 'imported_at': utcnow()}])
        except SQLAlchemyError as e:
            logger.error(f"Database error importing {path.name}, file left unmarked: {e}")
            result.errors.append(f"{path.name}: database error: {e}")
            return

        result.files_imported += 1
        logger.info(f"Imported {path.name}: {len(groups)} campaigns, {len(rows)} records")

    def _import_group(self, session: Session, group: CampaignGroup, candidates: List) -> int:
        """Upsert the campaign row, then insert its new records."""
        client_id = self._resolve_link(session, group, candidates)
        self._upsert_campaign(session, group, client_id)

        inserted = insert_new_records(session, group.campaign_id, group.rows, self.batch_size)
        self._refresh_record_count(session, group.campaign_id)
        return inserted

    def _resolve_link(self, session: Session, group: CampaignGroup, candidates: List) -> Optional[int]:
        """Keep an existing link, otherwise try a name match."""
        existing = session.query(VoicemailCampaign.client_id).filter(
            VoicemailCampaign.campaign_id == group.campaign_id
        ).scalar()
        if existing is not None:
            return existing

        matched = match_client(group.campaign_name, candidates)
        if matched is None:
            logger.debug(f"No client matches campaign '{group.campaign_name}'")
            return None

        logger.info(f"Campaign '{group.campaign_name}' matched client '{matched.name}'")
        return matched.id

    def _upsert_campaign(self, session: Session, group: CampaignGroup, client_id: Optional[int]) -> None:
        now = utcnow()
        stmt = dialect_insert(session, VoicemailCampaign).values(
            campaign_id=group.campaign_id,
            campaign_name=group.campaign_name[:255],
            client_id=client_id,
            is_valid=True,
            created_at=now,
            updated_at=now
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=['campaign_id'],
            set_={
                'campaign_name': stmt.excluded.campaign_name,
                # A stored link always wins over a fresh match
                'client_id': func.coalesce(VoicemailCampaign.client_id, stmt.excluded.client_id),
                'updated_at': now,
            }
        )
        session.execute(stmt)

    def _refresh_record_count(self, session: Session, campaign_id: str) -> None:
        count = session.query(func.count(VoicemailRecord.id)).filter(
            VoicemailRecord.campaign_id == campaign_id
        ).scalar()
        session.query(VoicemailCampaign).filter(
            VoicemailCampaign.campaign_id == campaign_id
        ).update({'record_count': count}, synchronize_session=False)

    # ========================================
    # Relinking
    # ========================================

    def relink_unlinked_campaigns(self) -> int:
        """
        Run the client matcher again for campaigns that have no link.

        Linked campaigns are never touched.

        Returns:
            Number of campaigns newly linked
        """
        linked = 0
        with self.session_factory() as session:
            candidates = QueryHelpers(session).get_match_candidates(self.match_client_type)
            unlinked = session.query(VoicemailCampaign).filter(VoicemailCampaign.client_id.is_(None)).all()

            for campaign in unlinked:
                matched = match_client(campaign.campaign_name, candidates)
                if matched is not None:
                    campaign.client_id = matched.id
                    linked += 1

        if linked:
            logger.info(f"Linked {linked} previously unlinked campaigns")
        return linked


@dataclass
class _Candidate:
    id: int
    name: str
