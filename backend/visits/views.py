from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

from . import services, store
from .exceptions import ServiceUnavailable, ValidationError
from .gating import DEPARTMENTS, can_proceed
from .serializers import (
    serialize_history,
    serialize_verify_result,
    serialize_visit,
)

ACTOR_HEADER = 'HTTP_X_ACTOR_ID'
HISTORY_DEFAULT_LIMIT = 50
HISTORY_MAX_LIMIT = 200


def _actor(request):
    """认证不在本系统范围内：网关把当前用户 id 放进 X-Actor-Id。"""
    return request.META.get(ACTOR_HEADER, '').strip()


def _int_param(request, name, default, minimum=0, maximum=None):
    raw = request.query_params.get(name)
    if raw in (None, ''):
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValidationError(message=f"{name} must be an integer.", detail={'field': name})
    if value < minimum or (maximum is not None and value > maximum):
        raise ValidationError(
            message=f"{name} must be between {minimum} and {maximum}." if maximum is not None
            else f"{name} must be >= {minimum}.",
            detail={'field': name},
        )
    return value


def _visit_detail(visit):
    authorization = services.current_authorization(visit.id)
    return serialize_visit(visit, authorization=authorization, gate=can_proceed(visit))


class VisitCreateView(APIView):
    """POST /api/visits/ - Register a visit"""

    def post(self, request):
        data = request.data
        visit = services.create_visit(
            patient_id=data.get('patient_id'),
            funding_type=data.get('funding_type'),
            insurer=data.get('insurer'),
            department=data.get('department'),
            actor_id=_actor(request),
        )
        return Response(_visit_detail(visit), status=status.HTTP_201_CREATED)


class VisitDetailView(APIView):
    """GET /api/visits/<visit_id>/ - Visit, current authorization and gate decision"""

    def get(self, request, visit_id):
        visit = services.get_visit(visit_id)
        return Response(_visit_detail(visit))


class VisitAdvanceView(APIView):
    """POST /api/visits/<visit_id>/advance/ - First department accepts the patient"""

    def post(self, request, visit_id):
        visit = services.advance_visit(visit_id, _actor(request), department=request.data.get('department'))
        return Response(_visit_detail(visit))


class VisitCompleteView(APIView):
    """POST /api/visits/<visit_id>/complete/"""

    def post(self, request, visit_id):
        visit = services.complete_visit(visit_id, _actor(request))
        return Response(_visit_detail(visit))


class VisitCancelView(APIView):
    """POST /api/visits/<visit_id>/cancel/"""

    def post(self, request, visit_id):
        visit = services.cancel_visit(visit_id, request.data.get('reason'), _actor(request))
        return Response(_visit_detail(visit))


def _verify_response(verification, result, gate):
    # 保险机构不可达：返回 503，detail 带上 gate，前端据此提供重试 / 转现金
    if verification is None:
        raise ServiceUnavailable(
            message=gate.reason,
            detail={
                'outcome': result.outcome.value,
                'error': result.error,
                'gate': gate.to_dict(),
            },
        )
    return Response(serialize_verify_result(verification, result, gate), status=status.HTTP_201_CREATED)


class VisitVerifyView(APIView):
    """POST /api/visits/<visit_id>/verify/ - Verify insurance card and record the outcome"""

    def post(self, request, visit_id):
        verification, result, gate = services.verify_visit(visit_id, request.data, _actor(request))
        return _verify_response(verification, result, gate)


class VisitReverifyView(APIView):
    """POST /api/visits/<visit_id>/reverify/ - Repeat verification with the active card details"""

    def post(self, request, visit_id):
        verification, result, gate = services.reverify_visit(visit_id, _actor(request))
        return _verify_response(verification, result, gate)


class VerificationHistoryView(APIView):
    """GET /api/visits/<visit_id>/verifications/?limit=&offset= - Newest first"""

    def get(self, request, visit_id):
        services.get_visit(visit_id)
        limit = _int_param(request, 'limit', HISTORY_DEFAULT_LIMIT, minimum=1, maximum=HISTORY_MAX_LIMIT)
        offset = _int_param(request, 'offset', 0)

        verifications = store.history(visit_id)
        total = verifications.count()
        page = verifications[offset:offset + limit]
        return Response(serialize_history(page, total, limit, offset))


class VisitGateView(APIView):
    """GET /api/visits/<visit_id>/gate/?department=pharmacy - Can a billable action proceed?"""

    def get(self, request, visit_id):
        department = request.query_params.get('department', '').strip().lower()
        if department and department not in DEPARTMENTS:
            raise ValidationError(
                message=f"Unknown department: {department!r}.",
                code='UNKNOWN_DEPARTMENT',
                detail={'known_departments': list(DEPARTMENTS)},
            )

        visit = services.get_visit(visit_id)
        decision = can_proceed(visit, department=department)
        body = decision.to_dict()
        body['visit_id'] = str(visit.id)
        body['funding_type'] = visit.funding_type
        return Response(body)


class ConvertToCashView(APIView):
    """POST /api/visits/<visit_id>/convert-to-cash/ - Reclassify visit as self-pay"""

    def post(self, request, visit_id):
        visit = services.convert_to_cash(visit_id, request.data.get('reason'), _actor(request))
        return Response(_visit_detail(visit))
