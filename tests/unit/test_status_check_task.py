"""
Unit Tests for the delayed status-check task
"""

import uuid
from unittest.mock import Mock, patch

from foodhub.errors import RetryableGatewayError
from foodhub.tasks.status_check_task import (
    cancel_status_checks,
    check_payment_status,
    schedule_status_checks,
)


class TestCheckPaymentStatus:

    def test_unknown_payment_is_skipped(self, session):
        assert check_payment_status(str(uuid.uuid4())) == 'skipped'

    def test_settled_payment_is_skipped(self, session, sample_payment):
        sample_payment.status = 'completed'
        session.commit()

        with patch('foodhub.services.reconciliation_service.ReconciliationService.reconcile_status_query') as mock_q:
            assert check_payment_status(str(sample_payment.id)) == 'skipped'

        mock_q.assert_not_called()

    def test_pending_payment_is_queried(self, session, sample_payment):
        with patch('foodhub.services.reconciliation_service.ReconciliationService.reconcile_status_query',
                   return_value='completed') as mock_q:
            assert check_payment_status(str(sample_payment.id)) == 'completed'

        mock_q.assert_called_once()

    def test_gateway_error_is_logged_not_raised(self, session, sample_payment):
        with patch('foodhub.services.reconciliation_service.ReconciliationService.reconcile_status_query',
                   side_effect=RetryableGatewayError('timed out')):
            assert check_payment_status(str(sample_payment.id)) == 'error'


class TestScheduling:

    def test_schedule_uses_configured_delays(self, app, sample_payment):
        app.config['MPESA_STATUS_CHECK_DELAYS'] = [30, 90, 300]

        with patch.object(check_payment_status, 'apply_async') as mock_apply:
            mock_apply.side_effect = [Mock(id='t1'), Mock(id='t2'), Mock(id='t3')]
            task_ids = schedule_status_checks(sample_payment)

        assert task_ids == ['t1', 't2', 't3']
        assert [c.kwargs['countdown'] for c in mock_apply.call_args_list] == [30, 90, 300]
        assert mock_apply.call_args.kwargs['args'] == [str(sample_payment.id)]

    def test_cancel_revokes_queued_checks(self, app, sample_payment):
        sample_payment.status_check_task_ids = ['t1', 't2']

        with patch('foodhub.tasks.status_check_task.celery_app') as mock_celery:
            mock_celery.conf.task_always_eager = False
            cancel_status_checks(sample_payment)

        assert mock_celery.control.revoke.call_count == 2

    def test_cancel_tolerates_broker_errors(self, app, sample_payment):
        sample_payment.status_check_task_ids = ['t1']

        with patch('foodhub.tasks.status_check_task.celery_app') as mock_celery:
            mock_celery.conf.task_always_eager = False
            mock_celery.control.revoke.side_effect = ConnectionError('broker down')
            cancel_status_checks(sample_payment)
