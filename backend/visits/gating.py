"""
Gating Engine — 科室模块在任何计费/临床操作之前唯一的判断入口。

consultation / lab orders / pharmacy / optical / billing 全部调用 can_proceed()，
不允许在各自模块里重新实现规则，避免药房和收费的判断出现分歧。

决策表（decide）：
  SELF_PAY                 → 放行
  本次调用 SERVICE_UNAVAILABLE → 阻止，"insurance service unavailable"
  没有 active verification → 阻止，"not verified"
  ACCEPTED                 → 放行
  UNKNOWN                  → 放行 + 警告（前端必须显示，但可以继续）
  REJECTED / INVALID / PENDING → 阻止，按结果给出具体原因
"""

import logging
from dataclasses import asdict, dataclass
from typing import Optional

from .insurance.types import VerificationOutcome, VerificationResult
from .models import Visit
from . import store

logger = logging.getLogger(__name__)

DEPARTMENTS = ('consultation', 'lab_orders', 'pharmacy', 'optical', 'billing')

NOT_VERIFIED = 'not verified'

REASONS = {
    VerificationOutcome.UNKNOWN: (
        'Insurance authority returned UNKNOWN for this card. '
        'Services may proceed; the patient should confirm membership at the insurer office.'
    ),
    VerificationOutcome.REJECTED: 'Insurance verification was rejected. Services cannot be provided under insurance.',
    VerificationOutcome.INVALID: 'Insurance card is invalid. Services cannot be provided under insurance.',
    VerificationOutcome.PENDING: 'Insurance verification is pending. Wait for it to complete or re-verify.',
    VerificationOutcome.SERVICE_UNAVAILABLE: (
        'Insurance service unavailable. Retry verification or convert the visit to cash.'
    ),
}


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    reason: str = ''
    warning: bool = False
    outcome: Optional[str] = None

    def to_dict(self):
        return asdict(self)


def decide(funding_type: str, outcome: Optional[VerificationOutcome], remarks: str = '') -> GateDecision:
    """纯决策表，无副作用。outcome 为 None 表示从未验证。"""
    if funding_type == Visit.FUNDING_SELF_PAY:
        return GateDecision(allowed=True)

    if outcome is None:
        return GateDecision(allowed=False, reason=NOT_VERIFIED)

    if outcome is VerificationOutcome.ACCEPTED:
        return GateDecision(allowed=True, outcome=outcome.value)

    if outcome is VerificationOutcome.UNKNOWN:
        return GateDecision(allowed=True, reason=REASONS[outcome], warning=True, outcome=outcome.value)

    # 被拒时保险机构给的 remarks（如 "card inactive"）比通用文案更有用
    if outcome is VerificationOutcome.REJECTED and remarks:
        reason = remarks
    else:
        reason = REASONS[outcome]
    return GateDecision(allowed=False, reason=reason, outcome=outcome.value)


def can_proceed(visit: Visit, attempt: Optional[VerificationResult] = None, department: str = '') -> GateDecision:
    """
    判断该 visit 当前能否继续计费/临床操作。

    Args:
        visit:      Visit 实例
        attempt:    刚刚进行的一次 verify() 结果（可选）。只有 SERVICE_UNAVAILABLE 会影响判断：
                    它不落库，所以只能由调用方带进来
        department: 调用方科室，只用于日志，不改变规则
    """
    if visit.funding_type != Visit.FUNDING_SELF_PAY and attempt is not None \
            and attempt.outcome is VerificationOutcome.SERVICE_UNAVAILABLE:
        decision = decide(visit.funding_type, attempt.outcome)
    else:
        active = store.get_active(visit.id) if visit.funding_type != Visit.FUNDING_SELF_PAY else None
        if active is None:
            decision = decide(visit.funding_type, None)
        else:
            decision = decide(
                visit.funding_type,
                VerificationOutcome(active.authorization_status),
                remarks=active.response_remarks,
            )

    if not decision.allowed:
        logger.info("Gate blocked %s for visit %s: %s",
                    department or 'service', visit.id, decision.outcome or decision.reason)
    return decision
