"""
Visit 状态机 + 授权流程 + cash conversion。

状态机：
    REGISTERED ──advance──▶ IN_PROGRESS ──complete──▶ COMPLETED
        │                        │
        └────────cancel──────────┴──────────▶ CANCELLED

REGISTERED 为初始状态，COMPLETED / CANCELLED 为终态。
Visit 只能通过这里的函数修改；授权状态不在 Visit 上重复保存，一律通过
current_authorization() 从 Verification Store 读取。
"""

import logging

from django.db import transaction
from django.utils import timezone

from . import audit, store
from .exceptions import AuthFailure, BlockError, InvalidTransition, ValidationError
from .gating import can_proceed
from .insurance import get_authority_client
from .insurance.base import mask_card_no
from .insurance.types import VerificationOutcome, VerifyRequest, VisitType
from .models import Visit

logger = logging.getLogger(__name__)

# 允许的 transition：source → {target}
TRANSITIONS = {
    Visit.STATUS_REGISTERED: {Visit.STATUS_IN_PROGRESS, Visit.STATUS_CANCELLED},
    Visit.STATUS_IN_PROGRESS: {Visit.STATUS_COMPLETED, Visit.STATUS_CANCELLED},
    Visit.STATUS_COMPLETED: set(),
    Visit.STATUS_CANCELLED: set(),
}


def _require_actor(actor_id):
    if not actor_id or not str(actor_id).strip():
        raise ValidationError(
            message='Acting user is required.',
            code='ACTOR_REQUIRED',
        )
    return str(actor_id).strip()


def get_visit(visit_id):
    """Get visit by ID. Raises BlockError if not found."""
    try:
        return Visit.objects.get(id=visit_id)
    except Visit.DoesNotExist:
        raise BlockError(
            message='Visit not found',
            code='VISIT_NOT_FOUND',
            detail={'visit_id': str(visit_id)},
            http_status=404,
        )


def _locked_visit(visit_id):
    try:
        return Visit.objects.select_for_update().get(id=visit_id)
    except Visit.DoesNotExist:
        raise BlockError(
            message='Visit not found',
            code='VISIT_NOT_FOUND',
            detail={'visit_id': str(visit_id)},
            http_status=404,
        )


def _check_transition(visit, target):
    if target not in TRANSITIONS[visit.status]:
        raise InvalidTransition(
            message=f"Cannot move visit from {visit.status} to {target}.",
            detail={'visit_id': str(visit.id), 'current_status': visit.status, 'target_status': target},
        )


# ── 状态机 ────────────────────────────────────────────────────────────────

def create_visit(patient_id, funding_type, actor_id, insurer=None, department=None):
    """
    新建 visit，初始状态 REGISTERED。

    INSURANCE 必须给出 insurer；SELF_PAY 忽略 insurer。
    """
    actor_id = _require_actor(actor_id)
    patient_id = (str(patient_id) if patient_id is not None else '').strip()
    insurer = (insurer or '').strip()

    errors = []
    if not patient_id:
        errors.append({'field': 'patient_id', 'message': 'Patient reference is required.'})
    if funding_type not in (Visit.FUNDING_SELF_PAY, Visit.FUNDING_INSURANCE):
        errors.append({
            'field': 'funding_type',
            'message': f"Funding type must be {Visit.FUNDING_SELF_PAY} or {Visit.FUNDING_INSURANCE}.",
        })
    elif funding_type == Visit.FUNDING_INSURANCE and not insurer:
        errors.append({'field': 'insurer', 'message': 'Insurer is required for insurance-funded visits.'})
    if errors:
        raise ValidationError(
            message='Request validation failed.',
            detail={'errors': errors},
        )

    with transaction.atomic():
        visit = Visit.objects.create(
            patient_id=patient_id,
            funding_type=funding_type,
            insurer=insurer if funding_type == Visit.FUNDING_INSURANCE else '',
            department=(department or '').strip() or 'OPTOMETRY',
            status=Visit.STATUS_REGISTERED,
            created_by=actor_id,
            updated_by=actor_id,
        )
        audit.emit_event(audit.VISIT_CREATE, visit.id, actor_id, {
            'funding_type': visit.funding_type,
            'insurer': visit.insurer,
            'department': visit.department,
        })

    logger.info("Visit %s registered (%s)", visit.id, visit.funding_type)
    return visit


def advance_visit(visit_id, actor_id, department=None):
    """第一个科室接收病人：REGISTERED → IN_PROGRESS。"""
    actor_id = _require_actor(actor_id)
    with transaction.atomic():
        visit = _locked_visit(visit_id)
        _check_transition(visit, Visit.STATUS_IN_PROGRESS)

        visit.status = Visit.STATUS_IN_PROGRESS
        visit.updated_by = actor_id
        update_fields = ['status', 'updated_by', 'updated_at']
        if department and department.strip():
            visit.department = department.strip()
            update_fields.append('department')
        visit.save(update_fields=update_fields)

        audit.emit_event(audit.VISIT_ADVANCE, visit.id, actor_id, {'department': visit.department})
    return visit


def complete_visit(visit_id, actor_id):
    """IN_PROGRESS → COMPLETED。"""
    actor_id = _require_actor(actor_id)
    with transaction.atomic():
        visit = _locked_visit(visit_id)
        _check_transition(visit, Visit.STATUS_COMPLETED)

        visit.status = Visit.STATUS_COMPLETED
        visit.updated_by = actor_id
        visit.save(update_fields=['status', 'updated_by', 'updated_at'])

        audit.emit_event(audit.VISIT_COMPLETE, visit.id, actor_id)
    return visit


def cancel_visit(visit_id, reason, actor_id):
    """REGISTERED / IN_PROGRESS → CANCELLED，必须给出原因。"""
    actor_id = _require_actor(actor_id)
    reason = (reason or '').strip()
    if not reason:
        raise ValidationError(
            message='A cancellation reason is required.',
            code='REASON_REQUIRED',
        )

    with transaction.atomic():
        visit = _locked_visit(visit_id)
        _check_transition(visit, Visit.STATUS_CANCELLED)

        visit.status = Visit.STATUS_CANCELLED
        visit.cancel_reason = reason
        visit.updated_by = actor_id
        visit.save(update_fields=['status', 'cancel_reason', 'updated_by', 'updated_at'])

        audit.emit_event(audit.VISIT_CANCEL, visit.id, actor_id, {'reason': reason})
    return visit


def current_authorization(visit_id):
    """所有模块读取授权状态的唯一入口，直接委托给 Verification Store。"""
    return store.get_active(visit_id)


# ── 授权流程 ──────────────────────────────────────────────────────────────

def build_verify_request(data):
    """把请求体（dict）转成 VerifyRequest。visit_type 接受编码（1-4）或名称（REFERRAL）。"""
    raw_type = data.get('visit_type_id', data.get('visit_type'))
    try:
        if isinstance(raw_type, str) and not raw_type.strip().isdigit():
            visit_type = VisitType[raw_type.strip().upper()]
        else:
            visit_type = VisitType(int(raw_type))
    except (KeyError, TypeError, ValueError):
        raise ValidationError(
            message=f"Unknown visit type: {raw_type!r}.",
            code='INVALID_VISIT_TYPE',
            detail={'allowed': {v.name: v.value for v in VisitType}},
        )

    return VerifyRequest(
        card_no=str(data.get('card_no') or '').strip(),
        visit_type=visit_type,
        referral_no=str(data.get('referral_no') or '').strip(),
        remarks=str(data.get('remarks') or '').strip(),
    )


def _run_verification(visit_id, request, actor_id, action):
    visit = get_visit(visit_id)

    if not visit.is_insurance:
        raise BlockError(
            message='Visit is self-pay; insurance verification is not applicable.',
            code='NOT_INSURANCE_VISIT',
            detail={'visit_id': str(visit.id)},
        )
    if visit.is_terminal:
        raise InvalidTransition(
            message=f"Cannot verify a {visit.status} visit.",
            detail={'visit_id': str(visit.id), 'current_status': visit.status},
        )

    # client 只做协议适配，落库是下面单独的一步
    try:
        result = get_authority_client().verify(request)
    except AuthFailure as exc:
        logger.error("Authority rejected facility credentials for visit %s: %s", visit.id, exc.code)
        audit.emit_event(audit.NHIF_VERIFY_FAILED, visit.id, actor_id, {
            'card_no': mask_card_no(request.card_no),
            'outcome': 'AUTH_FAILURE',
            'error': exc.code,
        })
        raise

    if result.outcome is VerificationOutcome.SERVICE_UNAVAILABLE:
        logger.warning("Verification unavailable for visit %s: %s", visit.id, result.error)
        audit.emit_event(audit.NHIF_VERIFY_FAILED, visit.id, actor_id, {
            'card_no': mask_card_no(request.card_no),
            'outcome': result.outcome.value,
            'error': result.error,
        })
        return None, result, can_proceed(visit, attempt=result)

    with transaction.atomic():
        verification = store.record(visit.id, request, result, actor_id)
        audit.emit_event(action, visit.id, actor_id, {
            'verification_id': str(verification.id),
            'card_no': mask_card_no(verification.card_no),
            'visit_type_id': verification.visit_type_id,
            'authorization_status': verification.authorization_status,
            'authorization_no': verification.authorization_no,
        })

    return verification, result, can_proceed(visit)


def verify_visit(visit_id, data, actor_id):
    """
    对 visit 做一次保险卡授权，并把结果写入 Verification Store。

    Returns:
        (verification_or_None, VerificationResult, GateDecision)
        SERVICE_UNAVAILABLE 时 verification 为 None：不落库，之前的 active 记录保持不变。

    Raises:
        ValidationError: 本地校验失败（缺 referral_no 等），不发网络请求
        AuthFailure:     token 刷新重试后仍被拒
        InvalidTransition / BlockError: visit 状态不允许
    """
    actor_id = _require_actor(actor_id)
    request = data if isinstance(data, VerifyRequest) else build_verify_request(data)
    return _run_verification(visit_id, request, actor_id, audit.NHIF_VERIFY)


def reverify_visit(visit_id, actor_id):
    """用当前 active verification 的卡信息重新验证（例如 PENDING 之后）。"""
    actor_id = _require_actor(actor_id)
    active = current_authorization(visit_id)
    if active is None:
        get_visit(visit_id)  # 404 优先
        raise ValidationError(
            message='Visit has never been verified; submit card details first.',
            code='NOT_VERIFIED',
            detail={'visit_id': str(visit_id)},
        )

    request = VerifyRequest(
        card_no=active.card_no,
        visit_type=VisitType(active.visit_type_id),
        referral_no=active.referral_no,
        remarks=active.remarks_sent,
    )
    return _run_verification(visit_id, request, actor_id, audit.NHIF_RE_VERIFY)


# ── Cash conversion ───────────────────────────────────────────────────────

def convert_to_cash(visit_id, reason, actor_id):
    """
    把 insurance visit 改为 SELF_PAY，绕过被阻止的授权。

    - 只允许非终态 visit
    - reason 必填
    - 审计写入在事务内完成；审计失败则整个转换回滚
    转换后 can_proceed() 立即放行，不再发起新的验证。
    """
    actor_id = _require_actor(actor_id)
    reason = (reason or '').strip()
    if not reason:
        raise ValidationError(
            message='A reason is required to convert a visit to cash.',
            code='REASON_REQUIRED',
        )

    with transaction.atomic():
        visit = _locked_visit(visit_id)
        if visit.is_terminal:
            raise InvalidTransition(
                message=f"Cannot convert a {visit.status} visit to cash.",
                detail={'visit_id': str(visit.id), 'current_status': visit.status},
            )
        if not visit.is_insurance:
            raise BlockError(
                message='Visit is already self-pay.',
                code='ALREADY_SELF_PAY',
                detail={'visit_id': str(visit.id)},
            )

        active = store.get_active(visit.id)
        previous_insurer = visit.insurer

        visit.funding_type = Visit.FUNDING_SELF_PAY
        visit.cash_conversion_reason = reason
        visit.converted_to_cash_at = timezone.now()
        visit.updated_by = actor_id
        visit.save(update_fields=[
            'funding_type', 'cash_conversion_reason', 'converted_to_cash_at', 'updated_by', 'updated_at',
        ])

        audit.record_event(audit.NHIF_CASH_CONVERSION, visit.id, actor_id, {
            'reason': reason,
            'previous_funding_type': Visit.FUNDING_INSURANCE,
            'previous_insurer': previous_insurer,
            'authorization_status': active.authorization_status if active else None,
        })

    logger.info("Visit %s converted to cash by %s", visit.id, actor_id)
    return visit
