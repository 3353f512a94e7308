"""
Ingestion Module
Voicemail file-drop parsing, client matching and import.
"""

from .matcher import match_client
from .parser import FileCorruptionError, group_by_campaign, parse_file, parse_payload
from .sync import IngestionResult, IngestionSync

__all__ = [
    'match_client',
    'FileCorruptionError',
    'group_by_campaign',
    'parse_file',
    'parse_payload',
    'IngestionResult',
    'IngestionSync'
]
