# conftest.py

from datetime import datetime, timedelta

import pytest
import pytz

from api.models.schemas import MatchResult, MatchStatus, NotificationRecord
from session_state import Session

DONOR_ID = "donor-1"
RECIPIENT_ID = "recipient-1"
BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=pytz.utc)


def build_match(**overrides):
    fields = {
        'match_id': "m-1",
        'donation_id': "d-1",
        'request_id': "r-1",
        'donor_user_id': DONOR_ID,
        'recipient_user_id': RECIPIENT_ID,
        'status': MatchStatus.PENDING,
    }
    fields.update(overrides)
    return MatchResult(**fields)


def build_confirmed_match(confirmed_at=BASE_TIME, **overrides):
    fields = {
        'status': MatchStatus.CONFIRMED,
        'donor_confirmed': True,
        'recipient_confirmed': True,
        'donor_confirmed_at': confirmed_at,
        'recipient_confirmed_at': confirmed_at + timedelta(minutes=5),
        'first_confirmer': "DONOR",
        'first_confirmed_at': confirmed_at,
    }
    fields.update(overrides)
    return build_match(**fields)


def build_notification(notification_id="n-1", is_read=False, minutes_ago=0, **overrides):
    fields = {
        'id': notification_id,
        'user_id': DONOR_ID,
        'type': "MATCH_FOUND",
        'title': "Match found",
        'message': "A compatible match was found",
        'is_read': is_read,
        'created_at': BASE_TIME - timedelta(minutes=minutes_ago),
    }
    fields.update(overrides)
    return NotificationRecord(**fields)


@pytest.fixture
def pending_match():
    return build_match()


@pytest.fixture
def confirmed_match():
    return build_confirmed_match()


@pytest.fixture
def donor_session():
    return Session(user_id=DONOR_ID, credential="donor-token", roles=frozenset({"donor"}))


@pytest.fixture
def recipient_session():
    return Session(user_id=RECIPIENT_ID, credential="recipient-token", roles=frozenset({"recipient"}))


@pytest.fixture
def stranger_session():
    return Session(user_id="someone-else", credential="other-token")
