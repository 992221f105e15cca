"""
保险授权层的标准数据结构。

所有 AuthorityClient 实现的 verify() 都返回 VerificationResult。
业务层（store / gating）只认识这里的枚举和 dataclass，永远不碰保险机构的原始 JSON：
原始响应只作为 raw_payload 存档，不参与任何判断。
"""

import enum
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional


class VisitType(enum.IntEnum):
    """保险机构定义的就诊类型编码（VisitTypeID）。"""

    NORMAL = 1
    EMERGENCY = 2
    REFERRAL = 3
    FOLLOW_UP = 4

    @property
    def requires_referral(self) -> bool:
        return self in (VisitType.REFERRAL, VisitType.FOLLOW_UP)


class AuthorizationStatus(str, enum.Enum):
    """可持久化的授权结果，封闭集合。"""

    ACCEPTED = 'ACCEPTED'
    REJECTED = 'REJECTED'
    PENDING = 'PENDING'
    UNKNOWN = 'UNKNOWN'
    INVALID = 'INVALID'


class VerificationOutcome(str, enum.Enum):
    """
    一次 verify() 调用的结果。

    在 AuthorizationStatus 之上多一个 SERVICE_UNAVAILABLE：
    传输层失败不是授权结果，不能落库，也绝不能被当成 REJECTED。
    """

    ACCEPTED = 'ACCEPTED'
    REJECTED = 'REJECTED'
    PENDING = 'PENDING'
    UNKNOWN = 'UNKNOWN'
    INVALID = 'INVALID'
    SERVICE_UNAVAILABLE = 'SERVICE_UNAVAILABLE'

    @property
    def is_recordable(self) -> bool:
        return self is not VerificationOutcome.SERVICE_UNAVAILABLE


@dataclass
class VerifyRequest:
    card_no: str
    visit_type: VisitType
    referral_no: str = ""
    remarks: str = ""


@dataclass
class VerificationResult:
    """
    标准化后的授权结果。

    raw_payload  保存保险机构的原始响应（dict），只用于审计，不参与业务逻辑。
    error        SERVICE_UNAVAILABLE / 本地 INVALID 时的说明文字。
    """

    outcome: VerificationOutcome
    authorization_no: str = ""
    card_status: str = ""
    member_name: str = ""
    remarks: str = ""
    error: str = ""
    raw_payload: Any = field(default=None, repr=False)

    @property
    def status(self) -> Optional[AuthorizationStatus]:
        if not self.outcome.is_recordable:
            return None
        return AuthorizationStatus(self.outcome.value)


@dataclass
class Token:
    access_token: str = field(repr=False)
    token_type: str
    expires_at: datetime
    fetched_at: datetime

    def is_valid(self, now: datetime, margin_seconds: int = 0) -> bool:
        return self.expires_at - timedelta(seconds=margin_seconds) > now

    @property
    def authorization_header(self) -> str:
        return f"{self.token_type} {self.access_token}"


@dataclass(frozen=True)
class FacilityConfig:
    """Facility 配置：只读输入，来自 settings / 环境变量，本系统不持久化凭证。"""

    api_url: str
    username: str
    password: str = field(repr=False)
    facility_code: str
    timeout: float = 10.0
    refresh_margin: int = 60

    @property
    def cache_key(self) -> str:
        return f"{self.api_url.rstrip('/')}|{self.username}"
