"""
Mautic REST API Client Module
Handles communication with one tenant's Mautic instance.
"""

from typing import Any, Dict, Generator, List, Optional
from urllib.parse import urljoin

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from dashboard_sync.config_manager import ConfigManager
from dashboard_sync.utils.encryption import decrypt
from dashboard_sync.utils.logger import get_logger

logger = get_logger(__name__)


class MauticAPIError(Exception):
    """Custom exception for Mautic API errors."""

    def __init__(self, message: str, status_code: int = None, response: dict = None):
        self.message = message
        self.status_code = status_code
        self.response = response
        super().__init__(self.message)


def normalize_url(url: str) -> str:
    """Add a scheme when missing and strip the trailing slash."""
    normalized = (url or '').strip()
    if not normalized.startswith(('http://', 'https://')):
        normalized = 'https://' + normalized
    return normalized.rstrip('/')


def _as_list(collection: Any) -> List[Dict]:
    """Mautic returns collections either as a list or as a dict keyed by id."""
    if isinstance(collection, dict):
        return list(collection.values())
    if isinstance(collection, list):
        return collection
    return []


def _total(payload: Dict, *keys: str) -> int:
    for key in keys:
        try:
            value = int(payload.get(key) or 0)
        except (TypeError, ValueError):
            value = 0
        if value:
            return value
    return 0


class MauticAPI:
    """
    Mautic REST API client with offset pagination, retries and basic auth.
    """

    def __init__(self, base_url: str, username: str, password: str, settings: Dict = None):
        """
        Args:
            base_url: Tenant origin, with or without scheme
            username: API user
            password: Plain-text API password
            settings: 'mautic' config section override
        """
        if settings is None:
            settings = ConfigManager().get_mautic_config()

        self.base_url = normalize_url(base_url)
        self.username = username
        self.password = password

        self.request_timeout = settings.get('request_timeout', 30)
        self.report_timeout = settings.get('report_timeout', 120)
        self.max_retries = settings.get('max_retries', 3)
        self.retry_delay = settings.get('retry_delay', 1)
        self.page_size = settings.get('metadata_page_size', 1000)
        self.report_page_limit = settings.get('report_page_limit', 200000)

        self._session = self._create_session()

        logger.debug(f"Mautic client initialized for {self.base_url}")

    @classmethod
    def from_tenant(cls, tenant, settings: Dict = None) -> 'MauticAPI':
        """Build a client for a MauticTenant, decrypting its stored password."""
        return cls(tenant.mautic_url, tenant.username, decrypt(tenant.password), settings)

    def _create_session(self) -> requests.Session:
        """Create requests session with retry logic."""
        session = requests.Session()
        session.auth = (self.username, self.password)
        session.headers.update({
            'Accept': 'application/json',
            'Content-Type': 'application/json'
        })

        retry_strategy = Retry(
            total=self.max_retries,
            backoff_factor=self.retry_delay,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=['GET']
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount('https://', adapter)
        session.mount('http://', adapter)

        return session

    def close(self) -> None:
        self._session.close()

    def _make_request(
        self,
        method: str,
        endpoint: str,
        params: Dict = None,
        timeout: float = None
    ) -> Dict:
        """
        Make HTTP request to the Mautic API.

        Args:
            method: HTTP method
            endpoint: Path below /api/
            params: Query parameters
            timeout: Seconds before giving up

        Returns:
            Response JSON

        Raises:
            MauticAPIError: If request fails
        """
        url = urljoin(f"{self.base_url}/api/", endpoint)

        try:
            response = self._session.request(
                method=method,
                url=url,
                params=params,
                timeout=timeout or self.request_timeout
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Request failed: {e}")
            raise MauticAPIError(f"Request failed: {str(e)}")

        if response.status_code == 401:
            raise MauticAPIError("Authentication failed. Check your credentials.", 401)
        elif response.status_code == 403:
            raise MauticAPIError("Access forbidden. Check API permissions.", 403)
        elif response.status_code == 404:
            raise MauticAPIError(f"Resource not found: {endpoint}", 404)
        elif response.status_code >= 400:
            raise MauticAPIError(f"API error: {response.text[:500]}", response.status_code)

        try:
            payload = response.json() if response.text else {}
        except ValueError:
            raise MauticAPIError(f"Invalid JSON from {endpoint}", response.status_code)

        # Empty results sometimes come back as a bare []
        if not isinstance(payload, dict):
            logger.warning(f"Non-object JSON body from {endpoint}, treating as empty")
            return {}
        return payload

    def _paginate_collection(self, endpoint: str, data_key: str) -> List[Dict]:
        """
        Fetch a whole metadata collection with start/limit paging.

        Stops once the reported total is reached or a short page arrives.
        """
        items: List[Dict] = []
        start = 0

        while True:
            response = self._make_request('GET', endpoint, params={
                'start': start,
                'limit': self.page_size,
                'orderBy': 'id',
                'orderByDir': 'ASC'
            })

            page = _as_list(response.get(data_key))
            items.extend(page)

            total = _total(response, 'total')
            if not page:
                break
            if total and len(items) >= total:
                break
            if not total and len(page) < self.page_size:
                break

            start += len(page)
            logger.debug(f"Fetched {len(items)}/{total or '?'} {data_key}")

        return items

    # ========================================
    # Metadata Methods
    # ========================================

    def fetch_emails(self) -> List[Dict]:
        """Fetch all emails with their aggregate statistics."""
        emails = self._paginate_collection('emails', 'emails')
        logger.info(f"Fetched {len(emails)} emails from {self.base_url}")
        return emails

    def fetch_campaigns(self) -> List[Dict]:
        """Fetch all campaigns."""
        campaigns = self._paginate_collection('campaigns', 'campaigns')
        logger.info(f"Fetched {len(campaigns)} campaigns from {self.base_url}")
        return campaigns

    def fetch_segments(self) -> List[Dict]:
        """Fetch all segments (the API calls them lists)."""
        segments = self._paginate_collection('segments', 'lists')
        logger.info(f"Fetched {len(segments)} segments from {self.base_url}")
        return segments

    # ========================================
    # Report Methods
    # ========================================

    def iter_report_pages(
        self,
        report_id: str,
        date_from: Optional[str] = None,
        limit: int = None
    ) -> Generator[List[Dict], None, None]:
        """
        Stream report rows page by page using start/limit offsets.

        Args:
            report_id: Mautic report id
            date_from: Optional 'YYYY-MM-DD' lower bound
            limit: Rows per page

        Yields:
            Lists of raw report rows
        """
        limit = limit or self.report_page_limit
        start = 0
        fetched = 0

        while True:
            params = {'start': start, 'limit': limit}
            if date_from:
                params['dateFrom'] = date_from

            response = self._make_request('GET', f'reports/{report_id}', params=params, timeout=self.report_timeout)
            rows = response.get('data') if isinstance(response.get('data'), list) else []
            total = _total(response, 'totalResults', 'total')

            if not rows:
                break

            fetched += len(rows)
            logger.debug(f"Report {report_id}: fetched {fetched}/{total or '?'} rows")
            yield rows

            if total and fetched >= total:
                break
            if len(rows) < limit and not total:
                break

            start += len(rows)

    def fetch_report_page(
        self,
        report_id: str,
        page: int,
        limit: int,
        date_from: str,
        date_to: str
    ) -> Dict:
        """
        Fetch one numbered page of a report for a date window.

        Returns:
            Raw payload; rows are under 'data', count under 'totalResults' or 'total'
        """
        return self._make_request('GET', f'reports/{report_id}', params={
            'page': page,
            'limit': limit,
            'dateFrom': date_from,
            'dateTo': date_to
        }, timeout=self.report_timeout)

    @staticmethod
    def report_total(payload: Dict) -> int:
        """Total row count reported by a report payload."""
        return _total(payload, 'totalResults', 'total')

    # ========================================
    # Utility Methods
    # ========================================

    def test_connection(self) -> bool:
        """Test connection by requesting a single contact."""
        try:
            self._make_request('GET', 'contacts', params={'limit': 1}, timeout=self.request_timeout)
            logger.info(f"Mautic connection test successful for {self.base_url}")
            return True
        except MauticAPIError as e:
            logger.error(f"Mautic connection test failed for {self.base_url}: {e.message}")
            return False
