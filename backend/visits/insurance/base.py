"""
BaseAuthorityClient — 所有保险机构 client 的抽象基类。

每个新保险机构只需：
1. 继承 BaseAuthorityClient
2. 实现 authorize()
3. 在 factory.py 的 _build_registry 注册一行

verify() 是对外统一入口：先做本地校验，通过后才调用 authorize()。
本地校验失败时不会向 TokenCache 要 token，也不会发任何网络请求。
client 只是协议适配器，不落库，持久化由 visits.store 负责。
"""

import re
from abc import ABC, abstractmethod

from ..exceptions import ValidationError
from .types import VerificationOutcome, VerificationResult, VerifyRequest, VisitType

# ── 共用校验正则 ───────────────────────────────────────────────────────────
CARD_NO_RE = re.compile(r"^[A-Za-z0-9-]{6,20}$")
REFERRAL_NO_MAX_LENGTH = 100


def mask_card_no(card_no: str) -> str:
    """日志里只保留卡号后 4 位。"""
    card_no = (card_no or "").strip()
    if len(card_no) <= 4:
        return "*" * len(card_no)
    return "*" * (len(card_no) - 4) + card_no[-4:]


class BaseAuthorityClient(ABC):

    # 子类声明自己对应的 authority 标识符（与 factory 注册键一致）
    name: str = ""

    # ── 必须实现 ───────────────────────────────────────────────────────────

    @abstractmethod
    def authorize(self, request: VerifyRequest) -> VerificationResult:
        """
        调用保险机构，返回标准 VerificationResult。

        传输层失败必须返回 SERVICE_UNAVAILABLE，不能映射成 REJECTED。

        Raises:
            AuthFailure: 强制刷新 token 并重试一次后仍被拒
        """

    # ── 提供默认实现，子类可 override ──────────────────────────────────────

    def validate(self, request: VerifyRequest) -> VerificationResult | None:
        """
        本地校验。

        - 卡号为空、Referral / Follow-up 缺 referral_no、referral_no 过长 → 抛 ValidationError
        - 卡号格式不对 → 返回本地 INVALID 结果（不消耗 token）
        - 通过 → 返回 None
        """
        try:
            visit_type = VisitType(request.visit_type)
        except ValueError:
            raise ValidationError(
                message=f"Unknown visit type: {request.visit_type!r}.",
                code='INVALID_VISIT_TYPE',
                detail={'allowed': [v.value for v in VisitType]},
            )

        if visit_type.requires_referral and not (request.referral_no or "").strip():
            raise ValidationError(
                message='Referral number is required for Referral and Follow-up visits.',
                code='REFERRAL_NO_REQUIRED',
                detail={'visit_type': visit_type.name},
            )

        if len((request.referral_no or "").strip()) > REFERRAL_NO_MAX_LENGTH:
            raise ValidationError(
                message=f"Referral number must be at most {REFERRAL_NO_MAX_LENGTH} characters.",
                code='REFERRAL_NO_TOO_LONG',
                detail={'max_length': REFERRAL_NO_MAX_LENGTH},
            )

        card_no = (request.card_no or "").strip()
        if not card_no:
            raise ValidationError(
                message='Card number is required.',
                code='CARD_NO_REQUIRED',
            )

        if not CARD_NO_RE.match(card_no):
            return VerificationResult(
                outcome=VerificationOutcome.INVALID,
                error='Card number is malformed.',
            )

        return None

    # ── 对外统一入口 ───────────────────────────────────────────────────────

    def verify(self, request: VerifyRequest) -> VerificationResult:
        """validate → authorize，返回 VerificationResult。"""
        local = self.validate(request)
        if local is not None:
            return local
        return self.authorize(request)
