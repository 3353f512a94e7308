"""
Unit Tests for the Mautic API Client
HTTP calls are intercepted on the client's requests session.
"""

import unittest
from unittest.mock import Mock, patch

import requests

from dashboard_sync.mautic_client import MauticAPI, MauticAPIError, normalize_url

SETTINGS = {'metadata_page_size': 2, 'report_page_limit': 2}


def response(status_code=200, payload=None, text=None):
    mock = Mock(status_code=status_code)
    mock.text = text if text is not None else ('{}' if payload is None else 'json')
    mock.json.return_value = payload if payload is not None else {}
    return mock


class TestNormalizeUrl(unittest.TestCase):
    def test_scheme_and_trailing_slash(self):
        self.assertEqual(normalize_url('mautic.example.com/'), 'https://mautic.example.com')
        self.assertEqual(normalize_url('http://m.example.com'), 'http://m.example.com')


class TestMauticAPI(unittest.TestCase):
    """Test request building, paging and error mapping."""

    def setUp(self):
        self.api = MauticAPI('mautic.example.com', 'api', 'pw', settings=SETTINGS)
        self.request = patch.object(self.api._session, 'request').start()
        self.addCleanup(patch.stopall)

    def test_basic_auth_and_base_path(self):
        self.request.return_value = response(payload={'total': 0, 'emails': []})

        self.api.fetch_emails()

        self.assertEqual(self.api._session.auth, ('api', 'pw'))
        kwargs = self.request.call_args.kwargs
        self.assertEqual(kwargs['url'], 'https://mautic.example.com/api/emails')
        self.assertEqual(kwargs['params']['orderBy'], 'id')
        self.assertEqual(kwargs['params']['orderByDir'], 'ASC')

    def test_collection_paging_until_total(self):
        self.request.side_effect = [
            response(payload={'total': 3, 'lists': {'1': {'id': 1}, '2': {'id': 2}}}),
            response(payload={'total': 3, 'lists': [{'id': 3}]}),
        ]

        segments = self.api.fetch_segments()

        self.assertEqual([s['id'] for s in segments], [1, 2, 3])
        starts = [c.kwargs['params']['start'] for c in self.request.call_args_list]
        self.assertEqual(starts, [0, 2])

    def test_report_pages_stream(self):
        self.request.side_effect = [
            response(payload={'totalResults': 3, 'data': [{'e_id': 1}, {'e_id': 2}]}),
            response(payload={'totalResults': 3, 'data': [{'e_id': 3}]}),
        ]

        pages = list(self.api.iter_report_pages('7', date_from='2025-01-01'))

        self.assertEqual([len(p) for p in pages], [2, 1])
        first = self.request.call_args_list[0].kwargs
        self.assertEqual(first['url'], 'https://mautic.example.com/api/reports/7')
        self.assertEqual(first['params']['dateFrom'], '2025-01-01')

    def test_fetch_report_page_params(self):
        self.request.return_value = response(payload={'total': 10, 'data': []})

        payload = self.api.fetch_report_page('7', 3, 500, '2025-01-01 00:00:00', '2025-01-31 23:59:59')

        params = self.request.call_args.kwargs['params']
        self.assertEqual((params['page'], params['limit']), (3, 500))
        self.assertEqual(params['dateTo'], '2025-01-31 23:59:59')
        self.assertEqual(MauticAPI.report_total(payload), 10)

    def test_bare_list_body_is_empty_payload(self):
        self.request.return_value = response(payload=[])

        self.assertEqual(self.api.fetch_report_page('7', 1, 500, '2025-01-01 00:00:00', '2025-01-31 23:59:59'), {})
        self.assertEqual(list(self.api.iter_report_pages('7')), [])
        self.assertEqual(self.api.fetch_emails(), [])

    def test_auth_failure(self):
        self.request.return_value = response(status_code=401)

        with self.assertRaises(MauticAPIError) as ctx:
            self.api.fetch_campaigns()
        self.assertEqual(ctx.exception.status_code, 401)

    def test_network_error(self):
        self.request.side_effect = requests.exceptions.ConnectionError('refused')

        with self.assertRaises(MauticAPIError):
            self.api.fetch_emails()

    def test_connection_check(self):
        self.request.return_value = response(status_code=500, text='boom')
        self.assertFalse(self.api.test_connection())

        self.request.return_value = response(payload={'contacts': []})
        self.assertTrue(self.api.test_connection())


if __name__ == '__main__':
    unittest.main()
