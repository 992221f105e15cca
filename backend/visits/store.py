"""
Verification Store — 授权记录的持久化，维护"每个 visit 最多一条 active verification"。

两道防线：
1. record() 在同一个事务里锁住 visit 行（select_for_update），先 deactivate 再 insert，
   同一 visit 的并发写入（双击 / 重试）被串行化；
2. 数据库层的 partial unique constraint（uniq_active_verification_per_visit），
   任何绕过 record() 的写入也不可能留下两条 active。
"""

import logging

from django.db import IntegrityError, transaction

from .exceptions import BlockError, ValidationError
from .insurance.base import mask_card_no
from .insurance.types import AuthorizationStatus, VerificationResult, VerifyRequest
from .models import Verification, Visit

logger = logging.getLogger(__name__)


def _lock_visit(visit_id):
    try:
        return Visit.objects.select_for_update().get(id=visit_id)
    except Visit.DoesNotExist:
        raise BlockError(
            message='Visit not found',
            code='VISIT_NOT_FOUND',
            detail={'visit_id': str(visit_id)},
            http_status=404,
        )


def _clip(field_name, value):
    """按模型字段的 max_length 截断；保险机构返回的字符串长度不受我们控制。"""
    value = (value or '').strip()
    max_length = Verification._meta.get_field(field_name).max_length
    if len(value) > max_length:
        logger.warning("Truncated %s from %d to %d characters", field_name, len(value), max_length)
        return value[:max_length]
    return value


def record(visit_id, request: VerifyRequest, result: VerificationResult, actor_id: str) -> Verification:
    """
    写入一次授权尝试，并让它成为该 visit 唯一的 active verification。

    SERVICE_UNAVAILABLE 不是授权结果，不落库，之前有效的授权保持 active。
    完整响应保存在 response_payload，定长字段超长时截断。

    Raises:
        ValidationError: outcome 不是授权结果
        BlockError:      visit 不存在（404）/ 并发写入撞上 active 唯一约束（409）
    """
    status = result.status
    if status is None:
        raise ValidationError(
            message='Only authorization outcomes can be recorded.',
            code='OUTCOME_NOT_RECORDABLE',
            detail={'outcome': result.outcome.value},
        )

    try:
        with transaction.atomic():
            visit = _lock_visit(visit_id)

            deactivated = Verification.objects.filter(visit=visit, is_active=True).update(is_active=False)

            verification = Verification.objects.create(
                visit=visit,
                card_no=_clip('card_no', request.card_no),
                visit_type_id=int(request.visit_type),
                referral_no=_clip('referral_no', request.referral_no),
                remarks_sent=request.remarks or '',
                card_status=_clip('card_status', result.card_status),
                authorization_status=status.value,
                authorization_no=(
                    _clip('authorization_no', result.authorization_no)
                    if status is AuthorizationStatus.ACCEPTED else ''
                ),
                member_name=_clip('member_name', result.member_name),
                response_remarks=result.remarks or result.error,
                response_payload=result.raw_payload,
                verified_by=_clip('verified_by', actor_id),
                is_active=True,
            )
    except IntegrityError:
        logger.warning("Concurrent verification write rejected for visit %s", visit_id)
        raise BlockError(
            message='Another verification for this visit was recorded at the same time. Please retry.',
            code='VERIFICATION_CONFLICT',
            detail={'visit_id': str(visit_id)},
        )

    logger.info(
        "Recorded verification %s for visit %s (card %s, %s, superseded=%d)",
        verification.id, visit.id, mask_card_no(verification.card_no), status.value, deactivated,
    )
    return verification


def get_active(visit_id):
    """返回当前 active verification；从未验证过返回 None。"""
    return Verification.objects.filter(visit_id=visit_id, is_active=True).first()


def history(visit_id):
    """该 visit 的全部授权尝试，最新在前。返回 QuerySet：惰性、可重复迭代、可切片分页。"""
    return Verification.objects.filter(visit_id=visit_id).order_by('-verified_at', '-id')
