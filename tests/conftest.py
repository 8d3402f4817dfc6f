"""
Shared pytest fixtures for Sanity R2 Backup tests.

This module provides fixtures for:
- Settings built from a test environment
- Mock S3 bucket (moto) and an injected boto3 client
- Fake HTTP responses and sessions for the export API and webhook
- Temporary export directories and archives
"""

import json
from unittest.mock import MagicMock

import pytest
import boto3
import requests
from moto import mock_aws

from sanity_backup.config import Settings


TEST_ENV = {
    'SOURCE_TOKEN': 'sk-test-token-abc123',
    'SOURCE_PROJECT_ID': 'proj123',
    'SOURCE_DATASET': 'production',
    'R2_ACCOUNT_ID': 'account123',
    'R2_ACCESS_KEY_ID': 'AKIDTESTKEY',
    'R2_SECRET_ACCESS_KEY': 'secret-access-value',
    'R2_BUCKET': 'test-bucket',
    'SLACK_WEBHOOK_URL': 'https://hooks.slack.com/services/T000/B000/XXXX',
}


@pytest.fixture
def test_env():
    """A complete environment mapping; tests copy and modify it."""
    return dict(TEST_ENV)


@pytest.fixture
def settings(test_env):
    """Settings with every required variable set."""
    return Settings.from_env(test_env)


@pytest.fixture
def s3_client():
    """
    Mock S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region and yields a
    boto3 client for injection into S3Storage.
    """
    with mock_aws():
        client = boto3.client(
            's3',
            region_name='us-east-1',
            aws_access_key_id='testing',
            aws_secret_access_key='testing'
        )
        client.create_bucket(Bucket='test-bucket')
        yield client


def _make_response(status_code=200, lines=None, content=b'', text='', json_data=None):
    """
    Build a fake requests response usable as a context manager.
    """
    response = MagicMock()
    response.status_code = status_code
    response.text = text
    response.__enter__.return_value = response
    response.__exit__.return_value = False
    response.iter_lines.return_value = iter(lines or [])
    response.iter_content.return_value = iter([content] if content else [])
    response.json.return_value = json_data
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(f"{status_code} Error")
    else:
        response.raise_for_status.return_value = None
    return response


@pytest.fixture
def make_response():
    """Factory for fake requests responses."""
    return _make_response


@pytest.fixture
def ndjson():
    """Encode documents as the export API streams them (one JSON object per line)."""
    def encode(documents):
        return [json.dumps(doc).encode('utf-8') for doc in documents]
    return encode


@pytest.fixture
def sample_documents():
    """Two documents referencing one image asset (plus a non-asset reference)."""
    return [
        {
            '_id': 'movie-1',
            '_type': 'movie',
            'title': 'Alien',
            'poster': {
                '_type': 'image',
                'asset': {'_type': 'reference', '_ref': 'image-abc123-800x600-jpg'}
            },
            'director': {'_type': 'reference', '_ref': 'person-1'}
        },
        {
            '_id': 'person-1',
            '_type': 'person',
            'name': 'Ridley Scott'
        },
    ]


@pytest.fixture
def export_dir(tmp_path):
    """
    A staged export directory:
    - export/data.ndjson
    - export/assets/abc123-800x600.jpg
    - export/.DS_Store (should be excluded from archives)
    """
    root = tmp_path / 'staging'
    export = root / 'export'
    assets = export / 'assets'
    assets.mkdir(parents=True)
    (export / 'data.ndjson').write_text('{"_id":"a"}\n{"_id":"b"}\n')
    (assets / 'abc123-800x600.jpg').write_bytes(b'\xff\xd8jpeg-bytes')
    (export / '.DS_Store').write_bytes(b'finder')
    return root
