"""
具体保险机构 client 实现。

新增保险机构：在此文件添加一个类，然后在 factory.py 注册即可。

已注册：
  nhif — NHIFClient          (真实 HTTP，bearer token)
  mock — MockAuthorityClient (演示 / 本地开发，不联网)
"""

import functools
import logging
import threading
import time
import zlib
from datetime import timedelta
from typing import Any, Optional

import requests
from django.utils import timezone

from ..exceptions import AuthFailure, ServiceUnavailable
from .base import BaseAuthorityClient, mask_card_no
from .token_cache import TokenCache, shared_token_cache
from .types import (
    FacilityConfig,
    Token,
    VerificationOutcome,
    VerificationResult,
    VerifyRequest,
)

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_TTL = 3600

# CardStatus 取值里表示"查无此卡"的几种写法
_NOT_FOUND_CARD_STATUSES = {'NOT_FOUND', 'NOTFOUND', 'UNKNOWN', 'NOT FOUND'}


def _field(data: dict, *names: str) -> str:
    """按顺序取第一个非空字段（保险机构 PascalCase / camelCase 混用）。"""
    for name in names:
        value = data.get(name)
        if value not in (None, ''):
            return str(value).strip()
    return ''


def _card_not_found(data: dict) -> bool:
    return _field(data, 'CardStatus', 'cardStatus').upper() in _NOT_FOUND_CARD_STATUSES


def parse_authority_payload(data: dict) -> VerificationResult:
    """
    把保险机构的 JSON 响应映射到封闭的授权结果集合。

    - 能识别的 AuthorizationStatus → 对应结果
    - 没有状态，但 CardStatus 明确表示查无此卡 → UNKNOWN（软失败，放行 + 警告）
    - 其他缺失或无法识别的状态 → REJECTED（阻止，不能因为看不懂响应就放行）
    - authorization_no 只在 ACCEPTED 时保留
    """
    raw_status = _field(data, 'AuthorizationStatus', 'authorizationStatus').upper()
    card_status = _field(data, 'CardStatus', 'cardStatus')
    error = ''

    try:
        outcome = VerificationOutcome(raw_status)
    except ValueError:
        outcome = None

    if outcome is None or not outcome.is_recordable:
        if not raw_status and _card_not_found(data):
            outcome = VerificationOutcome.UNKNOWN
        else:
            logger.warning("Unrecognised authorization status %r mapped to REJECTED", raw_status)
            outcome = VerificationOutcome.REJECTED
            error = 'Insurance authority returned an unrecognised authorization status.'

    authorization_no = _field(data, 'AuthorizationNo', 'authorizationNo')
    if outcome is not VerificationOutcome.ACCEPTED:
        authorization_no = ''

    return VerificationResult(
        outcome=outcome,
        authorization_no=authorization_no,
        card_status=card_status,
        member_name=_field(data, 'MemberName', 'memberName'),
        remarks=_field(data, 'Remarks', 'remarks'),
        error=error,
        raw_payload=data,
    )


def _unavailable(error: str, payload: Any = None) -> VerificationResult:
    return VerificationResult(
        outcome=VerificationOutcome.SERVICE_UNAVAILABLE,
        error=error,
        raw_payload=payload,
    )


# ── NHIFClient ─────────────────────────────────────────────────────────────
#
# Token:   POST {api_url}/Token         form: username / password / grant_type=password
#          → { "access_token": "...", "token_type": "bearer", "expires_in": 3600 }
# Verify:  GET  {api_url}/AuthorizeCard?CardNo=&VisitTypeID=&ReferralNo=&Remarks=&FacilityCode=
#          → { "AuthorizationStatus": "ACCEPTED", "AuthorizationNo": "...", "CardStatus": "Active",
#              "MemberName": "...", "Remarks": "..." }
#
# 字段名属于保险机构的版本化外部契约，只在本模块里出现。

TOKEN_PATH = "/Token"
VERIFY_PATH = "/AuthorizeCard"


def _url(facility: FacilityConfig, path: str) -> str:
    return f"{facility.api_url.rstrip('/')}{path}"


def request_token(session: requests.Session, facility: FacilityConfig) -> Token:
    """
    用 facility 凭证换 access token。

    不依赖任何 client 实例，进程级 TokenCache 的 fetch 回调就是它。

    Raises:
        AuthFailure:        4xx（凭证被拒）
        ServiceUnavailable: 网络错误 / 5xx / 响应格式错误
    """
    try:
        response = session.post(
            _url(facility, TOKEN_PATH),
            data={
                'username': facility.username,
                'password': facility.password,
                'grant_type': 'password',
            },
            headers={'Accept': 'application/json'},
            timeout=facility.timeout,
        )
    except requests.RequestException as exc:
        logger.warning("Token endpoint unreachable: %s", type(exc).__name__)
        raise ServiceUnavailable(
            message='Insurance authority token endpoint is unreachable.',
            code='TOKEN_ENDPOINT_UNREACHABLE',
            detail={'error': type(exc).__name__},
        )

    if response.status_code >= 500:
        raise ServiceUnavailable(
            message=f'Insurance authority token endpoint failed (HTTP {response.status_code}).',
            code='TOKEN_ENDPOINT_ERROR',
            detail={'http_status': response.status_code},
        )
    if response.status_code != 200:
        logger.error("Token request rejected with HTTP %s", response.status_code)
        raise AuthFailure(
            message='Insurance authority rejected the facility credentials.',
            code='CREDENTIALS_REJECTED',
            detail={'http_status': response.status_code},
        )

    try:
        data = response.json()
    except ValueError:
        data = None
    access_token = data.get('access_token') if isinstance(data, dict) else None
    if not access_token:
        raise ServiceUnavailable(
            message='Insurance authority returned a malformed token response.',
            code='MALFORMED_TOKEN_RESPONSE',
        )

    try:
        expires_in = int(data.get('expires_in') or DEFAULT_TOKEN_TTL)
    except (TypeError, ValueError):
        expires_in = DEFAULT_TOKEN_TTL

    now = timezone.now()
    return Token(
        access_token=access_token,
        token_type=data.get('token_type') or 'Bearer',
        expires_at=now + timedelta(seconds=expires_in),
        fetched_at=now,
    )


# ── 进程级 session 注册表 ─────────────────────────────────────────────────
# 同一 facility 的所有 NHIFClient 共用一个 requests.Session（连接池），
# 和 TokenCache 一样按 FacilityConfig.cache_key 区分。
_sessions: dict[str, requests.Session] = {}
_sessions_lock = threading.Lock()


def shared_session(facility: FacilityConfig) -> requests.Session:
    with _sessions_lock:
        session = _sessions.get(facility.cache_key)
        if session is None:
            session = _sessions[facility.cache_key] = requests.Session()
        return session


def close_shared_sessions() -> None:
    """关闭并清空注册表（配置变更、进程退出或测试隔离时使用）。"""
    with _sessions_lock:
        for session in _sessions.values():
            session.close()
        _sessions.clear()


class NHIFClient(BaseAuthorityClient):
    name = "nhif"

    def __init__(
        self,
        facility: FacilityConfig,
        session: Optional[requests.Session] = None,
        token_cache: Optional[TokenCache] = None,
    ):
        """
        不传 session 时使用 facility 共享的 session 和 TokenCache（生产路径）；
        显式传入 session 时 token 也只经由这个 session 获取，缓存归本实例所有。
        """
        self.facility = facility
        if session is None:
            self.session = shared_session(facility)
            self.token_cache = token_cache or shared_token_cache(
                facility.cache_key,
                functools.partial(request_token, self.session, facility),
                refresh_margin=facility.refresh_margin,
            )
        else:
            self.session = session
            self.token_cache = token_cache or TokenCache(
                fetch=self.fetch_token, refresh_margin=facility.refresh_margin,
            )

    # ── token endpoint ────────────────────────────────────────────────────

    def fetch_token(self) -> Token:
        return request_token(self.session, self.facility)

    # ── verification endpoint ─────────────────────────────────────────────

    def _build_params(self, request: VerifyRequest) -> dict[str, Any]:
        params = {
            'CardNo': request.card_no.strip(),
            'VisitTypeID': int(request.visit_type),
            'FacilityCode': self.facility.facility_code,
        }
        if request.referral_no:
            params['ReferralNo'] = request.referral_no.strip()
        if request.remarks:
            params['Remarks'] = request.remarks
        return params

    def _call(self, params: dict[str, Any], token: Token) -> requests.Response:
        try:
            return self.session.get(
                _url(self.facility, VERIFY_PATH),
                params=params,
                headers={
                    'Authorization': token.authorization_header,
                    'Accept': 'application/json',
                },
                timeout=self.facility.timeout,
            )
        except requests.Timeout:
            raise ServiceUnavailable(
                message='Insurance authority did not respond in time.',
                code='AUTHORITY_TIMEOUT',
            )
        except requests.RequestException as exc:
            raise ServiceUnavailable(
                message='Insurance authority is unreachable.',
                code='AUTHORITY_UNREACHABLE',
                detail={'error': type(exc).__name__},
            )

    def authorize(self, request: VerifyRequest) -> VerificationResult:
        params = self._build_params(request)
        masked = mask_card_no(request.card_no)

        try:
            token = self.token_cache.get_valid_token()
            response = self._call(params, token)

            if response.status_code in (401, 403):
                # token 被保险机构拒绝：丢弃后重新取一次，只重试一次
                logger.warning("Token rejected (HTTP %s) for card %s, refreshing once",
                               response.status_code, masked)
                self.token_cache.invalidate(token)
                token = self.token_cache.get_valid_token()
                response = self._call(params, token)

                if response.status_code in (401, 403):
                    raise AuthFailure(
                        message='Insurance authority rejected the access token after refresh.',
                        code='TOKEN_REJECTED',
                        detail={'http_status': response.status_code},
                    )
        except ServiceUnavailable as exc:
            logger.warning("Verification for card %s unavailable: %s", masked, exc.code)
            return _unavailable(exc.message)

        result = self._parse_response(response)
        logger.info("Verification for card %s → %s", masked, result.outcome.value)
        return result

    def _parse_response(self, response: requests.Response) -> VerificationResult:
        status = response.status_code
        if status >= 500:
            return _unavailable(f'Insurance authority error (HTTP {status}).')

        try:
            data = response.json()
        except ValueError:
            data = None

        if status == 404:
            # 只有结构完整、明确说查无此卡的 404 才是 UNKNOWN；
            # 其余 404（HTML 错误页、路由不存在）多半是 NHIF_API_URL 配错
            if isinstance(data, dict) and (
                _card_not_found(data)
                or _field(data, 'AuthorizationStatus', 'authorizationStatus').upper() == 'UNKNOWN'
            ):
                return VerificationResult(
                    outcome=VerificationOutcome.UNKNOWN,
                    card_status=_field(data, 'CardStatus', 'cardStatus'),
                    remarks=_field(data, 'Remarks', 'remarks'),
                    error='Card not found by insurance authority.',
                    raw_payload=data,
                )
            return _unavailable('Insurance authority endpoint not found (HTTP 404).', data)

        if status >= 400:
            remarks = _field(data, 'Remarks', 'remarks', 'Message', 'message') if isinstance(data, dict) else ''
            return VerificationResult(
                outcome=VerificationOutcome.INVALID,
                remarks=remarks,
                error=f'Insurance authority refused the request (HTTP {status}).',
                raw_payload=data,
            )

        if not isinstance(data, dict):
            return _unavailable('Insurance authority returned a malformed response.')

        return parse_authority_payload(data)


# ── MockAuthorityClient ────────────────────────────────────────────────────
#
# 演示和本地开发用，不联网。结果由卡号决定（crc32，跨进程稳定）：
#   以 0000 结尾   → REJECTED  "Card inactive"
#   以 UNK 开头    → UNKNOWN
#   以 PEND 开头   → PENDING
#   其他           → ACCEPTED  + MOCK-XXXXXX 授权号

class MockAuthorityClient(BaseAuthorityClient):
    name = "mock"

    def __init__(self, latency_ms: int = 0):
        self.latency_ms = latency_ms

    def authorize(self, request: VerifyRequest) -> VerificationResult:
        if self.latency_ms > 0:
            time.sleep(self.latency_ms / 1000.0)

        card_no = request.card_no.strip().upper()
        if card_no.endswith('0000'):
            payload = {'AuthorizationStatus': 'REJECTED', 'CardStatus': 'Inactive', 'Remarks': 'Card inactive'}
        elif card_no.startswith('UNK'):
            payload = {'AuthorizationStatus': 'UNKNOWN', 'CardStatus': 'NOT_FOUND'}
        elif card_no.startswith('PEND'):
            payload = {'AuthorizationStatus': 'PENDING', 'CardStatus': 'Active'}
        else:
            suffix = format(zlib.crc32(card_no.encode('utf-8')) & 0xFFFFFF, '06X')
            payload = {
                'AuthorizationStatus': 'ACCEPTED',
                'AuthorizationNo': f'MOCK-{suffix}',
                'CardStatus': 'Active',
                'MemberName': 'Mock Member',
            }

        payload['adapter'] = self.name
        return parse_authority_payload(payload)
