"""
审计事件。

每个会修改状态的操作（建 visit / transition / verify / convert-to-cash）都发出一条
{action, visit_id, actor_id, timestamp, metadata} 事件给外部审计模块。
本系统只定义事件形状，不定义审计库的 schema。

Sink 通过 settings.AUDIT_SINK 选择：
  logging — LoggingAuditSink  写到 "visits.audit" logger（默认，测试用）
  celery  — CeleryAuditSink   交给 Celery 异步投递到 AUDIT_WEBHOOK_URL
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Optional

from django.conf import settings
from django.db import transaction
from django.utils import timezone

logger = logging.getLogger(__name__)

# ── Action 常量 ────────────────────────────────────────────────────────────
VISIT_CREATE = 'VISIT_CREATE'
VISIT_ADVANCE = 'VISIT_ADVANCE'
VISIT_COMPLETE = 'VISIT_COMPLETE'
VISIT_CANCEL = 'VISIT_CANCEL'
NHIF_VERIFY = 'NHIF_VERIFY'
NHIF_RE_VERIFY = 'NHIF_RE_VERIFY'
NHIF_VERIFY_FAILED = 'NHIF_VERIFY_FAILED'
NHIF_CASH_CONVERSION = 'NHIF_CASH_CONVERSION'


@dataclass
class AuditEvent:
    action: str
    visit_id: str
    actor_id: str
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=timezone.now)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data['timestamp'] = self.timestamp.isoformat()
        return data


class BaseAuditSink(ABC):

    @abstractmethod
    def emit(self, event: AuditEvent) -> None:
        """
        交出一条审计事件。

        Raises:
            Exception: 交付失败时抛出；convert_to_cash 依赖这一点回滚事务
        """


class LoggingAuditSink(BaseAuditSink):

    audit_logger = logging.getLogger('visits.audit')

    def emit(self, event: AuditEvent) -> None:
        self.audit_logger.info(
            "%s visit=%s actor=%s", event.action, event.visit_id, event.actor_id,
            extra={'audit': event.to_dict()},
        )


class CeleryAuditSink(BaseAuditSink):

    def emit(self, event: AuditEvent) -> None:
        from visits.tasks import deliver_audit_event
        deliver_audit_event.delay(event.to_dict())


def _build_registry() -> dict[str, type[BaseAuditSink]]:
    return {
        'logging': LoggingAuditSink,
        'celery': CeleryAuditSink,
    }


def get_audit_sink() -> BaseAuditSink:
    """
    Raises:
        ValueError: AUDIT_SINK 未知
    """
    name = getattr(settings, 'AUDIT_SINK', 'logging')
    registry = _build_registry()
    sink_cls = registry.get(name)
    if sink_cls is None:
        raise ValueError(
            f"Unknown AUDIT_SINK: {name!r}. Known sinks: {list(registry.keys())}"
        )
    return sink_cls()


def record_event(action: str, visit_id, actor_id: str, metadata: Optional[dict] = None) -> None:
    """
    同步写审计：失败直接抛出。

    用于"审计写成功才算提交"的操作（cash conversion），调用方放在 transaction.atomic() 内。
    """
    event = AuditEvent(action=action, visit_id=str(visit_id), actor_id=actor_id, metadata=metadata or {})
    get_audit_sink().emit(event)


def emit_event(action: str, visit_id, actor_id: str, metadata: Optional[dict] = None) -> None:
    """
    Fire-and-forget：在当前事务提交后交给 sink。

    sink 失败只记录日志，不影响已经提交的业务操作。
    """
    event = AuditEvent(action=action, visit_id=str(visit_id), actor_id=actor_id, metadata=metadata or {})

    def _send():
        try:
            get_audit_sink().emit(event)
        except Exception:
            logger.exception("Audit sink failed for %s visit=%s", event.action, event.visit_id)

    transaction.on_commit(_send)
