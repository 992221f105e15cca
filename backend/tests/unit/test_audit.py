"""
Unit tests for audit events and the Celery delivery task.

覆盖：
1. AuditEvent 序列化
2. sink 选择（logging / celery / 未知）
3. emit_event 在事务提交后发送，sink 失败不外抛
4. record_event 同步发送，失败外抛
5. deliver_audit_event：成功 / 4xx 不重试 / 5xx 和网络错误指数退避 / 超过次数放弃
"""
from unittest.mock import Mock, patch

import pytest
import requests
from celery.exceptions import Retry
from django.test import override_settings

from visits import audit
from visits.audit import AuditEvent, CeleryAuditSink, LoggingAuditSink, get_audit_sink
from visits.tasks import _retry_or_give_up, deliver_audit_event
from tests.conftest import http_response

EVENT = {
    'action': audit.NHIF_VERIFY,
    'visit_id': 'b6f1c0de-0000-4000-8000-000000000001',
    'actor_id': 'user-reception',
    'metadata': {'authorization_status': 'ACCEPTED'},
    'timestamp': '2026-01-05T08:30:00+03:00',
}


class TestAuditEvent:

    def test_to_dict(self):
        event = AuditEvent(action=audit.VISIT_CREATE, visit_id='v-1', actor_id='u-1', metadata={'a': 1})

        data = event.to_dict()

        assert data['action'] == 'VISIT_CREATE'
        assert data['visit_id'] == 'v-1'
        assert data['actor_id'] == 'u-1'
        assert data['metadata'] == {'a': 1}
        assert isinstance(data['timestamp'], str)


class TestSinks:

    @override_settings(AUDIT_SINK='logging')
    def test_logging_sink_selected(self):
        assert isinstance(get_audit_sink(), LoggingAuditSink)

    @override_settings(AUDIT_SINK='celery')
    def test_celery_sink_selected(self):
        assert isinstance(get_audit_sink(), CeleryAuditSink)

    @override_settings(AUDIT_SINK='kafka')
    def test_unknown_sink(self):
        with pytest.raises(ValueError, match='Unknown AUDIT_SINK'):
            get_audit_sink()

    def test_logging_sink_writes_audit_logger(self):
        event = AuditEvent(action=audit.VISIT_CANCEL, visit_id='v-1', actor_id='u-1')

        with patch.object(LoggingAuditSink, 'audit_logger') as audit_logger:
            LoggingAuditSink().emit(event)

        args, kwargs = audit_logger.info.call_args
        assert args[1:] == ('VISIT_CANCEL', 'v-1', 'u-1')
        assert kwargs['extra']['audit']['action'] == 'VISIT_CANCEL'

    def test_celery_sink_enqueues_task(self):
        event = AuditEvent(action=audit.VISIT_CREATE, visit_id='v-1', actor_id='u-1')

        with patch('visits.tasks.deliver_audit_event.delay') as delay:
            CeleryAuditSink().emit(event)

        delay.assert_called_once_with(event.to_dict())


@pytest.mark.django_db
class TestEmitAndRecord:

    def test_emit_waits_for_commit(self, audit_sink, django_capture_on_commit_callbacks):
        with django_capture_on_commit_callbacks(execute=False) as callbacks:
            audit.emit_event(audit.VISIT_ADVANCE, 'v-1', 'u-1')

        assert len(callbacks) == 1
        audit_sink.emit.assert_not_called()

        callbacks[0]()
        assert audit_sink.emit.call_args.args[0].action == audit.VISIT_ADVANCE

    def test_emit_swallows_sink_failure_and_logs(self, audit_sink, django_capture_on_commit_callbacks):
        audit_sink.emit.side_effect = RuntimeError('sink down')

        with patch('visits.audit.logger') as log:
            with django_capture_on_commit_callbacks(execute=True):
                audit.emit_event(audit.VISIT_ADVANCE, 'v-1', 'u-1')

        log.exception.assert_called_once()

    def test_record_is_synchronous_and_raises(self, audit_sink):
        audit_sink.emit.side_effect = RuntimeError('sink down')

        with pytest.raises(RuntimeError):
            audit.record_event(audit.NHIF_CASH_CONVERSION, 'v-1', 'u-1', {'reason': 'cash'})

        event = audit_sink.emit.call_args.args[0]
        assert event.metadata == {'reason': 'cash'}


class TestDeliverAuditEvent:

    @pytest.fixture(autouse=True)
    def _webhook(self, settings):
        settings.AUDIT_WEBHOOK_URL = 'https://audit.test/events'
        settings.AUDIT_WEBHOOK_TIMEOUT = 5

    def test_posts_event(self):
        with patch('visits.tasks.requests.post', return_value=http_response(201)) as post:
            deliver_audit_event(EVENT)

        post.assert_called_once_with('https://audit.test/events', json=EVENT, timeout=5.0)

    def test_4xx_is_not_retried(self):
        with patch('visits.tasks.requests.post', return_value=http_response(422)), \
                patch.object(deliver_audit_event, 'retry') as retry:
            deliver_audit_event(EVENT)

        retry.assert_not_called()

    def test_5xx_is_retried(self):
        with patch('visits.tasks.requests.post', return_value=http_response(503)), \
                patch.object(deliver_audit_event, 'retry', side_effect=Retry()) as retry:
            with pytest.raises(Retry):
                deliver_audit_event(EVENT)

        assert retry.call_args.kwargs['countdown'] == 10

    def test_network_error_is_retried(self):
        with patch('visits.tasks.requests.post', side_effect=requests.ConnectionError('refused')), \
                patch.object(deliver_audit_event, 'retry', side_effect=Retry()) as retry:
            with pytest.raises(Retry):
                deliver_audit_event(EVENT)

        assert isinstance(retry.call_args.kwargs['exc'], requests.ConnectionError)

    def test_no_url_only_logs(self, settings):
        settings.AUDIT_WEBHOOK_URL = ''

        with patch('visits.tasks.requests.post') as post:
            deliver_audit_event(EVENT)

        post.assert_not_called()


class TestRetryBackoff:

    def _task(self, retries):
        task = Mock(max_retries=5, default_retry_delay=10)
        task.request.retries = retries
        task.retry.return_value = Retry()
        return task

    @pytest.mark.parametrize('retries, countdown', [(0, 10), (1, 20), (2, 40), (4, 160)])
    def test_exponential_countdown(self, retries, countdown):
        task = self._task(retries)

        with pytest.raises(Retry):
            _retry_or_give_up(task, EVENT, RuntimeError('boom'))

        assert task.retry.call_args.kwargs['countdown'] == countdown

    def test_gives_up_after_max_retries(self):
        task = self._task(5)

        with patch('visits.tasks.logger') as log:
            _retry_or_give_up(task, EVENT, RuntimeError('boom'))

        task.retry.assert_not_called()
        log.error.assert_called_once()
