"""Shared fixtures for calendar feed sync tests."""
import os
from datetime import datetime, timezone

import boto3
import pytest
from moto import mock_aws

from security.credential_vault import CredentialVault
from storage.event_store import EventStore
from storage.mapping_store import MappingStore
from storage.source_registry import SourceRegistry

TEST_ENCRYPTION_KEY = '0123456789abcdef' * 4
OTHER_ENCRYPTION_KEY = 'fedcba9876543210' * 4

SOURCES_TABLE = 'test-calendar-sources'
CREDENTIALS_TABLE = 'test-feed-credentials'
EVENTS_TABLE = 'test-calendar-events'
MAPPINGS_TABLE = 'test-calendar-event-mappings'

FEED_URL = 'https://calendar.example.com/feeds/family.ics'
T0 = datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def aws_credentials():
    """Fake AWS credentials so boto3 never reaches a real account."""
    os.environ['AWS_ACCESS_KEY_ID'] = 'testing'
    os.environ['AWS_SECRET_ACCESS_KEY'] = 'testing'
    os.environ['AWS_SECURITY_TOKEN'] = 'testing'
    os.environ['AWS_SESSION_TOKEN'] = 'testing'
    os.environ['AWS_DEFAULT_REGION'] = 'us-east-1'


@pytest.fixture
def dynamodb():
    """Create mock DynamoDB tables for sources, credentials, events and mappings."""
    with mock_aws():
        resource = boto3.resource('dynamodb', region_name='us-east-1')

        for table_name in (SOURCES_TABLE, CREDENTIALS_TABLE):
            resource.create_table(
                TableName=table_name,
                KeySchema=[{'AttributeName': 'source_id', 'KeyType': 'HASH'}],
                AttributeDefinitions=[
                    {'AttributeName': 'source_id', 'AttributeType': 'S'}
                ],
                BillingMode='PAY_PER_REQUEST'
            )

        resource.create_table(
            TableName=EVENTS_TABLE,
            KeySchema=[
                {'AttributeName': 'source_id', 'KeyType': 'HASH'},
                {'AttributeName': 'event_key', 'KeyType': 'RANGE'}
            ],
            AttributeDefinitions=[
                {'AttributeName': 'source_id', 'AttributeType': 'S'},
                {'AttributeName': 'event_key', 'AttributeType': 'S'}
            ],
            BillingMode='PAY_PER_REQUEST'
        )

        resource.create_table(
            TableName=MAPPINGS_TABLE,
            KeySchema=[
                {'AttributeName': 'child_id', 'KeyType': 'HASH'},
                {'AttributeName': 'mapping_id', 'KeyType': 'RANGE'}
            ],
            AttributeDefinitions=[
                {'AttributeName': 'child_id', 'AttributeType': 'S'},
                {'AttributeName': 'mapping_id', 'AttributeType': 'S'}
            ],
            BillingMode='PAY_PER_REQUEST'
        )

        yield resource


@pytest.fixture
def vault():
    return CredentialVault(TEST_ENCRYPTION_KEY)


@pytest.fixture
def registry(dynamodb, vault):
    return SourceRegistry(SOURCES_TABLE, CREDENTIALS_TABLE, vault=vault, dynamodb=dynamodb)


@pytest.fixture
def event_store(dynamodb):
    return EventStore(EVENTS_TABLE, dynamodb=dynamodb)


@pytest.fixture
def mapping_store(dynamodb):
    return MappingStore(MAPPINGS_TABLE, dynamodb=dynamodb)


def build_vevent(
    uid='1',
    summary='Pickup',
    start='20240101T150000Z',
    end='20240101T160000Z',
    location=None,
    extra_lines=()
):
    """Build a VEVENT block as a list of ICS lines."""
    lines = ['BEGIN:VEVENT', f'UID:{uid}', f'SUMMARY:{summary}']
    if start:
        lines.append(start if ':' in start else f'DTSTART:{start}')
    if end:
        lines.append(end if ':' in end else f'DTEND:{end}')
    if location:
        lines.append(f'LOCATION:{location}')
    lines.extend(extra_lines)
    lines.append('END:VEVENT')
    return lines


def build_ics(*vevents, header_lines=()):
    """Build an ICS document from VEVENT line blocks."""
    lines = ['BEGIN:VCALENDAR', 'VERSION:2.0', 'PRODID:-//Test//Feed//EN']
    lines.extend(header_lines)
    for vevent in vevents:
        lines.extend(vevent)
    lines.append('END:VCALENDAR')
    return '\r\n'.join(lines) + '\r\n'
