"""
TokenCache — 保险机构 access token 的进程级缓存。

规则：
- 任何时刻最多持有一个 token；新的成功 fetch 覆盖旧 token。
- 过期前 refresh_margin 秒内视为无效，提前刷新。
- single-flight：token 缺失/过期时并发调用只触发一次 fetch，
  第一个调用者负责 fetch，其余调用者等待它的结果（token 或异常）。
- 不自动重试：重试策略归 AuthorityClient 所有。

只有 TokenCache 能读写 token，调用方永远拿不到可变的全局状态。
"""

import logging
import threading
from typing import Callable, Optional

from django.utils import timezone

from ..exceptions import ServiceUnavailable
from .types import Token

logger = logging.getLogger(__name__)


class _Flight:
    """一次进行中的 fetch，followers 在 done 上等待。"""

    def __init__(self):
        self.done = threading.Event()
        self.token: Optional[Token] = None
        self.error: Optional[Exception] = None


class TokenCache:

    def __init__(
        self,
        fetch: Callable[[], Token],
        refresh_margin: int = 60,
        wait_timeout: float = 30.0,
        clock: Callable = timezone.now,
    ):
        self._fetch = fetch
        self._refresh_margin = refresh_margin
        self._wait_timeout = wait_timeout
        self._clock = clock
        self._lock = threading.Lock()
        self._token: Optional[Token] = None
        self._flight: Optional[_Flight] = None

    def get_valid_token(self) -> Token:
        """
        返回一个未过期的 token，必要时 fetch。

        Raises:
            AuthFailure:        facility 凭证被拒
            ServiceUnavailable: token endpoint 不可达
        """
        with self._lock:
            token = self._token
            if token is not None and token.is_valid(self._clock(), self._refresh_margin):
                return token

            flight = self._flight
            leader = flight is None
            if leader:
                flight = self._flight = _Flight()

        if not leader:
            return self._wait_for(flight)

        try:
            token = self._fetch()
        except Exception as exc:
            flight.error = exc
            raise
        else:
            flight.token = token
            with self._lock:
                self._token = token
            logger.info("Access token refreshed (type=%s, expires_at=%s)",
                        token.token_type, token.expires_at.isoformat())
            return token
        finally:
            with self._lock:
                self._flight = None
            flight.done.set()

    def _wait_for(self, flight: _Flight) -> Token:
        if not flight.done.wait(self._wait_timeout):
            raise ServiceUnavailable(
                message='Timed out waiting for insurance authority token.',
                code='TOKEN_WAIT_TIMEOUT',
            )
        if flight.error is not None:
            raise flight.error
        return flight.token

    def invalidate(self, token: Optional[Token] = None) -> None:
        """
        丢弃缓存的 token。

        传入 token 时只有它仍是当前 token 才丢弃，
        避免一个过时的 401 把别的请求刚刷新的 token 清掉。
        """
        with self._lock:
            if token is None or self._token is token:
                self._token = None

    def peek(self) -> Optional[Token]:
        with self._lock:
            return self._token


# ── 进程级注册表 ──────────────────────────────────────────────────────────
# key: FacilityConfig.cache_key（base URL + username）
_caches: dict[str, TokenCache] = {}
_caches_lock = threading.Lock()


def shared_token_cache(key: str, fetch: Callable[[], Token], refresh_margin: int = 60) -> TokenCache:
    """同一 facility 的所有 client 共享同一个 TokenCache。"""
    with _caches_lock:
        cache = _caches.get(key)
        if cache is None:
            cache = _caches[key] = TokenCache(fetch=fetch, refresh_margin=refresh_margin)
        return cache


def reset_token_caches() -> None:
    """清空注册表（配置变更或测试隔离时使用）。"""
    with _caches_lock:
        _caches.clear()
