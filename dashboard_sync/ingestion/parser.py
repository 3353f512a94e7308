"""
Voicemail Record Parser
Turns one dropped JSON file into normalized records grouped by campaign.

Two payload shapes are delivered:
    columnar: {"fields": ["Campaign ID", ...], "data": [[...], ...]}
    legacy:   [{"campaignId": ..., "phoneNumber": ...}, ...] or a single object,
              with camelCase or snake_case keys
The shape is detected once and handed to one transform; both produce
VoicemailRow instances.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from dashboard_sync.utils.helpers import parse_utc_datetime, to_float, to_int, to_str

UNKNOWN_CAMPAIGN_ID = 'unknown'
UNKNOWN_CAMPAIGN_NAME = 'Unknown Campaign'

# Columnar header name -> VoicemailRow attribute
COLUMNAR_FIELDS = {
    'Campaign Name': 'campaign_name',
    'Campaign ID': 'campaign_id',
    'Phone Number': 'phone_number',
    'Carrier': 'carrier',
    'Line Type': 'line_type',
    'Status': 'status',
    'Status Code': 'status_code',
    'Status Reason': 'status_reason',
    'Date': 'date',
    'Callbacks': 'callbacks',
    'SMS Count': 'sms_count',
    'Cost': 'cost',
    'Compliance Fee': 'compliance_fee',
    'TTS Fee': 'tts_fee',
    'First Name': 'first_name',
    'Last Name': 'last_name',
    'Company': 'company',
    'Email': 'email',
    'Record ID': 'record_id',
}

# VoicemailRow attribute -> accepted legacy keys
LEGACY_KEYS = {
    'campaign_name': ('campaignName', 'campaign_name'),
    'campaign_id': ('campaignId', 'campaign_id'),
    'phone_number': ('phoneNumber', 'phone_number'),
    'carrier': ('carrier',),
    'line_type': ('lineType', 'line_type'),
    'status': ('status',),
    'status_code': ('statusCode', 'status_code'),
    'status_reason': ('statusReason', 'status_reason'),
    'date': ('date',),
    'callbacks': ('callbacks',),
    'sms_count': ('smsCount', 'sms_count'),
    'cost': ('cost',),
    'compliance_fee': ('complianceFee', 'compliance_fee'),
    'tts_fee': ('ttsFee', 'tts_fee'),
    'first_name': ('firstName', 'first_name'),
    'last_name': ('lastName', 'last_name'),
    'company': ('company',),
    'email': ('email',),
    'record_id': ('recordId', 'record_id'),
}

INT_FIELDS = {'status_code', 'callbacks', 'sms_count'}
FLOAT_FIELDS = {'cost', 'compliance_fee', 'tts_fee'}


class FileCorruptionError(Exception):
    """Raised when a dropped file cannot be parsed."""

    def __init__(self, message: str, filename: str = None):
        self.message = message
        self.filename = filename
        super().__init__(self.message)


class PayloadShape(Enum):
    COLUMNAR = 'columnar'
    LEGACY = 'legacy'


@dataclass
class VoicemailRow:
    """One normalized voicemail delivery record."""
    campaign_id: str = ''
    campaign_name: str = ''
    phone_number: str = ''
    carrier: str = ''
    line_type: str = ''
    status: str = ''
    status_code: int = 0
    status_reason: str = ''
    date: Optional[datetime] = None
    callbacks: int = 0
    sms_count: int = 0
    cost: float = 0.0
    compliance_fee: float = 0.0
    tts_fee: float = 0.0
    first_name: str = ''
    last_name: str = ''
    company: str = ''
    email: str = ''
    record_id: str = ''

    def to_record(self, campaign_id: str) -> Dict[str, Any]:
        """Column dict for a VoicemailRecord insert."""
        return {
            'campaign_id': campaign_id,
            'campaign_name': self.campaign_name[:255],
            'phone_number': self.phone_number[:20],
            'carrier': self.carrier[:100],
            'line_type': self.line_type[:50],
            'status': (self.status or 'unknown')[:50],
            'status_code': self.status_code,
            'status_reason': self.status_reason or None,
            'date': self.date,
            'callbacks': self.callbacks,
            'sms_count': self.sms_count,
            'cost': self.cost,
            'compliance_fee': self.compliance_fee,
            'tts_fee': self.tts_fee,
            'first_name': self.first_name[:100],
            'last_name': self.last_name[:100],
            'company': self.company[:255],
            'email': self.email[:255],
            'record_id': self.record_id[:100] or None,
        }


@dataclass
class CampaignGroup:
    """Records of one campaign found in one file."""
    campaign_id: str
    campaign_name: str
    rows: List[VoicemailRow] = field(default_factory=list)


def _coerce(attr: str, value: Any) -> Any:
    if attr in INT_FIELDS:
        return to_int(value)
    if attr in FLOAT_FIELDS:
        return to_float(value)
    if attr == 'date':
        return parse_utc_datetime(value if value is None else str(value))
    return to_str(value)


def detect_shape(payload: Any) -> PayloadShape:
    """
    Decide which transform a decoded payload needs.

    Raises:
        FileCorruptionError: If the payload is neither shape
    """
    if isinstance(payload, dict) and isinstance(payload.get('fields'), list) and isinstance(payload.get('data'), list):
        return PayloadShape.COLUMNAR
    if isinstance(payload, (dict, list)):
        return PayloadShape.LEGACY
    raise FileCorruptionError(f"Unsupported payload type: {type(payload).__name__}")


def rows_from_columnar(payload: Dict) -> List[VoicemailRow]:
    """Transform a {fields, data} payload."""
    positions = {}
    for index, name in enumerate(payload['fields']):
        attr = COLUMNAR_FIELDS.get(str(name).strip())
        if attr:
            positions[attr] = index

    rows = []
    for line_no, values in enumerate(payload['data']):
        if not isinstance(values, list):
            raise FileCorruptionError(f"Data row {line_no} is not an array")
        kwargs = {}
        for attr, index in positions.items():
            value = values[index] if index < len(values) else None
            kwargs[attr] = _coerce(attr, value)
        rows.append(VoicemailRow(**kwargs))
    return rows


def rows_from_legacy(payload: Union[Dict, List]) -> List[VoicemailRow]:
    """Transform a legacy object or array-of-objects payload."""
    records = payload if isinstance(payload, list) else [payload]

    rows = []
    for line_no, record in enumerate(records):
        if not isinstance(record, dict):
            raise FileCorruptionError(f"Record {line_no} is not an object")
        kwargs = {}
        for attr, keys in LEGACY_KEYS.items():
            value = next((record[k] for k in keys if record.get(k) not in (None, '')), None)
            kwargs[attr] = _coerce(attr, value)
        rows.append(VoicemailRow(**kwargs))
    return rows


_TRANSFORMS = {
    PayloadShape.COLUMNAR: rows_from_columnar,
    PayloadShape.LEGACY: rows_from_legacy,
}


def parse_payload(content: Union[str, bytes]) -> List[VoicemailRow]:
    """
    Parse raw file content into normalized rows.

    Raises:
        FileCorruptionError: If the content is not valid JSON or has an unknown shape
    """
    try:
        payload = json.loads(content)
    except (ValueError, TypeError) as e:
        raise FileCorruptionError(f"JSON parsing failed: {e}") from e

    shape = detect_shape(payload)
    return _TRANSFORMS[shape](payload)


def parse_file(path: Path) -> List[VoicemailRow]:
    """Parse one staged file."""
    path = Path(path)
    try:
        content = path.read_bytes()
    except OSError as e:
        raise FileCorruptionError(f"Cannot read {path.name}: {e}", path.name) from e

    try:
        return parse_payload(content)
    except FileCorruptionError as e:
        e.filename = path.name
        raise


def group_by_campaign(rows: List[VoicemailRow]) -> List[CampaignGroup]:
    """
    Group rows by campaign id, keeping first-seen order.

    Rows without a campaign id go to the 'unknown' campaign.
    """
    groups: Dict[str, CampaignGroup] = {}
    for row in rows:
        campaign_id = row.campaign_id or UNKNOWN_CAMPAIGN_ID
        group = groups.get(campaign_id)
        if group is None:
            group = CampaignGroup(campaign_id, row.campaign_name or UNKNOWN_CAMPAIGN_NAME)
            groups[campaign_id] = group
        group.rows.append(row)
    return list(groups.values())
