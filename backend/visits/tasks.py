import logging

import requests
from celery import shared_task
from django.conf import settings

logger = logging.getLogger(__name__)


@shared_task(
    bind=True,
    max_retries=5,
    default_retry_delay=10,   # 初始重试延迟（秒），指数退避会乘以 2^retry_count
    acks_late=True,           # 任务执行完才 ack，防止 worker 崩溃时事件丢失
    reject_on_worker_lost=True,
)
def deliver_audit_event(self, event: dict):
    """
    把一条审计事件 POST 给外部审计模块（AUDIT_WEBHOOK_URL）。

    重试策略：
      - 最多重试 5 次
      - 指数退避：10s → 20s → 40s → 80s → 160s
      - 4xx 视为事件本身有问题，不重试
      - 超出次数后记 error 日志，事件内容一并写入日志留底
    """
    url = getattr(settings, 'AUDIT_WEBHOOK_URL', '')
    if not url:
        logger.info("[audit] AUDIT_WEBHOOK_URL not set, event logged only: %s", event)
        return

    timeout = float(getattr(settings, 'AUDIT_WEBHOOK_TIMEOUT', 5))

    try:
        response = requests.post(url, json=event, timeout=timeout)
    except requests.RequestException as exc:
        _retry_or_give_up(self, event, exc)
        return

    if response.status_code >= 500:
        _retry_or_give_up(self, event, RuntimeError(f"audit sink HTTP {response.status_code}"))
        return

    if response.status_code >= 400:
        logger.error("[audit] event rejected (HTTP %s), not retrying: action=%s visit=%s",
                     response.status_code, event.get('action'), event.get('visit_id'))
        return

    logger.info("[audit] delivered action=%s visit=%s", event.get('action'), event.get('visit_id'))


def _retry_or_give_up(task, event, exc):
    logger.warning(
        "[audit] delivery failed (attempt %d): action=%s visit=%s error=%s",
        task.request.retries + 1, event.get('action'), event.get('visit_id'), exc,
    )

    if task.request.retries < task.max_retries:
        # 指数退避：countdown = 10 * 2^retries
        countdown = task.default_retry_delay * (2 ** task.request.retries)
        raise task.retry(exc=exc, countdown=countdown)

    logger.error("[audit] giving up after %d retries, event=%s", task.max_retries, event)
