"""
Unit tests for exception classes and unified_exception_handler.

不需要数据库，纯 Python 测试：
1. BaseAppException 默认值
2. 各子类的默认 type / code / http_status
3. 构造时覆盖 code / http_status
4. detail 可选
5. unified_exception_handler 把异常转成正确的 JsonResponse
"""
import json
import pytest
from django.test import RequestFactory
from rest_framework.exceptions import ValidationError as DRFValidationError
from rest_framework.response import Response
from rest_framework.views import APIView

from visits.exceptions import (
    AuthFailure,
    BaseAppException,
    BlockError,
    InvalidTransition,
    ServiceUnavailable,
    ValidationError,
)


# -------------------------------------------------------------------
# Exception classes
# -------------------------------------------------------------------

class TestBaseAppException:

    def test_defaults(self):
        exc = BaseAppException('something broke')
        assert exc.message == 'something broke'
        assert exc.type == 'error'
        assert exc.code == 'UNKNOWN_ERROR'
        assert exc.http_status == 500
        assert exc.detail is None

    def test_override_code_and_status(self):
        exc = BaseAppException('bad', code='CUSTOM_CODE', http_status=418)
        assert exc.code == 'CUSTOM_CODE'
        assert exc.http_status == 418

    def test_detail_preserved(self):
        exc = BaseAppException('bad', detail={'key': 'value'})
        assert exc.detail == {'key': 'value'}


class TestSubclassDefaults:

    @pytest.mark.parametrize('cls, type_, code, status', [
        (ValidationError, 'validation_error', 'VALIDATION_ERROR', 400),
        (BlockError, 'block', 'BUSINESS_BLOCK', 409),
        (InvalidTransition, 'invalid_transition', 'INVALID_TRANSITION', 409),
        (AuthFailure, 'auth_failure', 'AUTHORITY_AUTH_FAILED', 502),
        (ServiceUnavailable, 'service_unavailable', 'INSURANCE_SERVICE_UNAVAILABLE', 503),
    ])
    def test_defaults(self, cls, type_, code, status):
        exc = cls('x')
        assert exc.type == type_
        assert exc.code == code
        assert exc.http_status == status
        assert isinstance(exc, BaseAppException)

    def test_custom_code_keeps_status(self):
        exc = ValidationError('referral missing', code='REFERRAL_NO_REQUIRED')
        assert exc.code == 'REFERRAL_NO_REQUIRED'
        assert exc.http_status == 400  # status 没变

    def test_block_error_not_found(self):
        exc = BlockError('not found', code='VISIT_NOT_FOUND', http_status=404)
        assert exc.http_status == 404


# -------------------------------------------------------------------
# unified_exception_handler
# -------------------------------------------------------------------

class _RaisingView(APIView):
    """测试用 APIView，抛出 exc_to_raise。"""

    exc_to_raise = None

    def get(self, request):
        if self.exc_to_raise:
            raise self.exc_to_raise
        return Response({'ok': True})


class TestUnifiedExceptionHandler:

    def _call(self, exc):
        _RaisingView.exc_to_raise = exc
        return _RaisingView.as_view()(RequestFactory().get('/'))

    def test_no_exception_passes_through(self):
        response = self._call(None)
        assert response.status_code == 200

    def test_block_error_returns_409(self):
        response = self._call(BlockError('blocked', code='ALREADY_SELF_PAY', detail={'visit_id': '1'}))

        assert response.status_code == 409
        body = json.loads(response.content)
        assert body['type'] == 'block'
        assert body['code'] == 'ALREADY_SELF_PAY'
        assert body['detail']['visit_id'] == '1'

    def test_validation_error_returns_400(self):
        response = self._call(ValidationError('bad input'))

        assert response.status_code == 400
        body = json.loads(response.content)
        assert body['type'] == 'validation_error'
        assert body['message'] == 'bad input'

    def test_invalid_transition_returns_409(self):
        response = self._call(InvalidTransition(
            'Cannot move visit from COMPLETED to IN_PROGRESS.',
            detail={'current_status': 'COMPLETED'},
        ))

        assert response.status_code == 409
        body = json.loads(response.content)
        assert body['type'] == 'invalid_transition'
        assert body['code'] == 'INVALID_TRANSITION'

    def test_service_unavailable_is_distinct_from_rejection(self):
        response = self._call(ServiceUnavailable('Insurance service unavailable.'))

        assert response.status_code == 503
        body = json.loads(response.content)
        assert body['type'] == 'service_unavailable'
        assert body['code'] == 'INSURANCE_SERVICE_UNAVAILABLE'

    def test_auth_failure_returns_502(self):
        response = self._call(AuthFailure('token rejected', code='TOKEN_REJECTED'))

        assert response.status_code == 502
        assert json.loads(response.content)['code'] == 'TOKEN_REJECTED'

    def test_no_detail_field_when_none(self):
        response = self._call(BlockError('blocked'))

        body = json.loads(response.content)
        assert 'detail' not in body

    def test_drf_validation_error_is_normalised(self):
        response = self._call(DRFValidationError({'card_no': ['This field is required.']}))

        assert response.status_code == 400
        body = json.loads(response.content)
        assert body['type'] == 'validation_error'
        assert body['code'] == 'VALIDATION_ERROR'
        assert 'card_no' in body['detail']

    def test_non_app_exception_not_caught(self):
        """非 BaseAppException 的异常不被 handler 捕获，应正常冒泡。"""
        with pytest.raises(RuntimeError):
            self._call(RuntimeError('unexpected'))
