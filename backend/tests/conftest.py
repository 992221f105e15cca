"""
Shared fixtures for all tests.

factory-boy factories live here so both unit/ and integration/ can import them.
"""
from datetime import timedelta
from unittest.mock import Mock, patch

import factory
import pytest
from django.test import Client
from django.utils import timezone

from visits.insurance.base import BaseAuthorityClient
from visits.insurance.services import close_shared_sessions
from visits.insurance.token_cache import reset_token_caches
from visits.insurance.types import (
    FacilityConfig,
    Token,
    VerificationOutcome,
    VerificationResult,
    VerifyRequest,
    VisitType,
)
from visits.models import Verification, Visit


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

class VisitFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Visit

    patient_id = factory.Sequence(lambda n: f'PAT-{1000 + n}')
    funding_type = Visit.FUNDING_INSURANCE
    insurer = 'NHIF'
    status = Visit.STATUS_REGISTERED
    created_by = 'user-reception'


class VerificationFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Verification

    visit = factory.SubFactory(VisitFactory)
    card_no = factory.Sequence(lambda n: f'{101000000000 + n}')
    visit_type_id = VisitType.NORMAL.value
    authorization_status = 'ACCEPTED'
    authorization_no = factory.Sequence(lambda n: f'AUTH-{100000 + n}')
    card_status = 'Active'
    verified_by = 'user-reception'
    is_active = True


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

FACILITY = FacilityConfig(
    api_url='https://nhif.test',
    username='facility-user',
    password='facility-pass',
    facility_code='FAC-001',
    timeout=10.0,
    refresh_margin=60,
)


def make_token(access_token='tok-1', expires_in=3600, now=None):
    now = now or timezone.now()
    return Token(
        access_token=access_token,
        token_type='Bearer',
        expires_at=now + timedelta(seconds=expires_in),
        fetched_at=now,
    )


def http_response(status=200, payload=None, json_error=False):
    """requests.Response 的替身，只实现 client 用到的部分。"""
    response = Mock(status_code=status)
    if json_error:
        response.json.side_effect = ValueError('No JSON object could be decoded')
    else:
        response.json.return_value = payload
    return response


def token_response(access_token='tok-1', expires_in=3600):
    return http_response(200, {'access_token': access_token, 'token_type': 'Bearer', 'expires_in': expires_in})


def result(outcome, **kwargs):
    return VerificationResult(outcome=VerificationOutcome(outcome), **kwargs)


def normal_request(card_no='101234567890', **kwargs):
    return VerifyRequest(card_no=card_no, visit_type=VisitType.NORMAL, **kwargs)


class StubAuthorityClient(BaseAuthorityClient):
    """按顺序返回预设结果（异常实例会被抛出）；没有预设时返回 ACCEPTED。"""

    name = 'stub'

    def __init__(self):
        self.results = []
        self.requests = []

    def authorize(self, request):
        self.requests.append(request)
        if self.results:
            item = self.results.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        return VerificationResult(outcome=VerificationOutcome.ACCEPTED, authorization_no='AUTH-STUB')


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _isolated_token_caches():
    """进程级 TokenCache 和 session 注册表在每个测试前后清空。"""
    reset_token_caches()
    close_shared_sessions()
    yield
    reset_token_caches()
    close_shared_sessions()


@pytest.fixture
def authority():
    """替换 services 使用的 authority client。"""
    client = StubAuthorityClient()
    with patch('visits.services.get_authority_client', return_value=client):
        yield client


@pytest.fixture
def audit_sink():
    """替换审计 sink，记录所有 emit 的事件。"""
    sink = Mock()
    with patch('visits.audit.get_audit_sink', return_value=sink):
        yield sink


@pytest.fixture
def api_client():
    """Django test client for integration tests."""
    return Client(HTTP_X_ACTOR_ID='user-reception')


@pytest.fixture
def sample_visit_payload():
    """Minimal valid payload for POST /api/visits/."""
    return {
        'patient_id': 'PAT-0001',
        'funding_type': 'INSURANCE',
        'insurer': 'NHIF',
    }
