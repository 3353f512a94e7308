"""
Shared Test Fixtures
SQLite-backed sessions and in-memory stand-ins for the SFTP server and the
Mautic API.
"""

import json
import shutil
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, List, Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from dashboard_sync.database.models import Base
from dashboard_sync.mautic_client import MauticAPIError
from dashboard_sync.sftp_transport import RemoteFile


class SqliteDatabase:
    """Throwaway file-backed database shared by the worker threads of one test."""

    def __init__(self):
        self.directory = tempfile.mkdtemp(prefix='dashboard-sync-test-')
        self.engine = create_engine(
            f"sqlite:///{Path(self.directory) / 'test.db'}",
            connect_args={'check_same_thread': False, 'timeout': 30}
        )
        Base.metadata.create_all(self.engine)
        self._factory = sessionmaker(bind=self.engine)

    @contextmanager
    def session(self):
        """Transactional scope, same contract as get_session()."""
        session = self._factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def close(self) -> None:
        self.engine.dispose()
        shutil.rmtree(self.directory, ignore_errors=True)


class FakeTransport:
    """
    SFTP stand-in serving files from a dict.

    A value that is an exception instance is raised by download().
    """

    def __init__(self, files: Dict[str, object]):
        self.files = files
        self.downloaded: List[str] = []
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.closed = True

    def list_files(self, extension: str = '.json') -> List[RemoteFile]:
        names = sorted(name for name in self.files if name.endswith(extension))
        return [RemoteFile(name, len(self._content(name) or b'')) for name in names]

    def download(self, filename: str, local_path: Path) -> int:
        content = self.files[filename]
        if isinstance(content, Exception):
            Path(local_path).write_bytes(b'partial')
            raise content
        data = self._content(filename)
        Path(local_path).write_bytes(data)
        self.downloaded.append(filename)
        return len(data)

    def _content(self, name: str) -> Optional[bytes]:
        content = self.files[name]
        if isinstance(content, Exception):
            return None
        if isinstance(content, bytes):
            return content
        if isinstance(content, str):
            return content.encode('utf-8')
        return json.dumps(content).encode('utf-8')


class FakeMauticClient:
    """
    Mautic API stand-in.

    Args:
        emails, campaigns, segments: Metadata collections
        report_pages: Pages yielded by iter_report_pages
        page_handler: Called as handler(page, date_from, date_to, limit) by
            fetch_report_page; returns a payload or raises
    """

    def __init__(
        self,
        emails: List[Dict] = None,
        campaigns: List[Dict] = None,
        segments: List[Dict] = None,
        report_pages: List[List[Dict]] = None,
        page_handler: Callable = None
    ):
        self.emails = emails or []
        self.campaigns = campaigns or []
        self.segments = segments or []
        self.report_pages = report_pages or []
        self.page_handler = page_handler
        self.report_calls: List[Dict] = []
        self.page_calls: List[tuple] = []

    def fetch_emails(self) -> List[Dict]:
        return list(self.emails)

    def fetch_campaigns(self) -> List[Dict]:
        return list(self.campaigns)

    def fetch_segments(self) -> List[Dict]:
        return list(self.segments)

    def iter_report_pages(self, report_id, date_from=None, limit=None):
        self.report_calls.append({'report_id': report_id, 'date_from': date_from, 'limit': limit})
        for page in self.report_pages:
            yield page

    def fetch_report_page(self, report_id, page, limit, date_from, date_to):
        self.page_calls.append((page, date_from, date_to, limit))
        if self.page_handler is None:
            raise MauticAPIError("No page handler configured")
        return self.page_handler(page, date_from, date_to, limit)


def report_row(e_id: int, email: str, date_sent: str, subject: str = 'Newsletter', date_read: str = None) -> Dict:
    """Build one raw email report row."""
    return {
        'e_id': str(e_id),
        'email_address': email,
        'subject1': subject,
        'date_sent': date_sent,
        'date_read': date_read,
    }
