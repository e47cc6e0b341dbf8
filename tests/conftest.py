from datetime import datetime, timezone

import pytest

from medchain.ai_service import OfflineAssistant
from medchain.app import create_app
from medchain.fixtures import load_fixture
from medchain.models import MedicationRequest, RequestLine, RequestStatus

NOW = datetime(2024, 3, 22, 12, 0, tzinfo=timezone.utc)


def pending_request(req_id, *lines, patient_id='P1', patient_name='John Doe'):
    """lines are (medicine_id, medicine_name, quantity) triples"""
    return MedicationRequest(
        id=req_id,
        patient_id=patient_id,
        patient_name=patient_name,
        items=[RequestLine(medicine_id=m, medicine_name=n, quantity=q) for m, n, q in lines],
        requested_at=NOW.isoformat(),
        status=RequestStatus.PENDING,
    )


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def snapshot():
    return load_fixture(now=NOW)


@pytest.fixture
def assistant():
    return OfflineAssistant(clock=lambda: NOW)


@pytest.fixture
def app(assistant):
    app = create_app(
        {'TESTING': True, 'GEMINI_API_KEY': None, 'LOG_LEVEL': 'WARNING'},
        assistant=assistant,
        clock=lambda: NOW,
    )
    yield app


@pytest.fixture
def client(app):
    return app.test_client()
