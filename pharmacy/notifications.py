"""
通知发送（邮件）。

状态变更和通知完全解耦：
  1. service 层调用 notify()，只是登记一个 on_commit 回调
  2. 事务提交后才投递 Celery 任务 send_notification_email
  3. 投递失败 / 发送失败只记录日志和 email_logs，永远不影响已提交的状态变更
"""
import logging
from functools import partial

from django.db import DatabaseError, transaction
from django.template import Context, Template

from .models import EmailLog

logger = logging.getLogger(__name__)


TEMPLATES = {
    'prescription_approved': (
        'Your prescription has been approved',
        'Your prescription has been approved by the pharmacist.\n\n'
        'Prescription: {{ prescription_number }}\n'
        '{% if medications %}Medication: {{ medications }}\n{% endif %}'
        '\nYou can now view and purchase your prescription in your account.',
    ),
    'refill_approved': (
        'Your refill request has been approved',
        'Your prescription refill has been approved!\n\n'
        'Prescription: {{ prescription_number }}\n'
        'Refills remaining: {{ refills_remaining }}',
    ),
    'refill_rejected': (
        'Your refill request was not approved',
        'Your refill request has been rejected.\n\n'
        'Prescription: {{ prescription_number }}\n'
        'Reason: {{ reason|default:"Not specified" }}\n\n'
        'Please contact your healthcare provider for more information.',
    ),
    'order_created': (
        'Your prescription order {{ order_number }} is ready',
        'An order has been created from your prescription.\n\n'
        'Order: {{ order_number }}\n'
        'Total: {{ total }}\n\n'
        'Please complete payment in your account.',
    ),
}


def render(template_type, data):
    """返回 (subject, text_body)。"""
    try:
        subject_tpl, body_tpl = TEMPLATES[template_type]
    except KeyError:
        raise ValueError(f'Unknown notification template: {template_type!r}')

    context = Context(data or {}, autoescape=False)
    subject = Template(subject_tpl).render(context).strip()
    body = Template(body_tpl).render(context)
    return subject, body


def record_delivery(recipient, subject, template_type, status, failure_reason=None, message_id=None, metadata=None):
    """写 email_logs。写失败只记日志，不向上抛。"""
    try:
        return EmailLog.objects.create(
            recipient_email=recipient,
            subject=subject,
            template_type=template_type,
            status=status,
            failure_reason=failure_reason,
            message_id=message_id,
            metadata=metadata or {},
        )
    except DatabaseError:
        logger.exception('failed to write email log for %s (%s, status=%s)', recipient, template_type, status)
        return None


def dispatch(template_type, recipient, data):
    """投递 Celery 任务；broker 不可用时记为 failed。"""
    from .tasks import send_notification_email

    try:
        send_notification_email.delay(template_type, recipient, data)
    except Exception as exc:
        # broker 异常类型取决于 transport（redis / amqp / ...）
        logger.error('failed to enqueue %s notification for %s: %s', template_type, recipient, exc)
        record_delivery(
            recipient=recipient,
            subject=template_type,
            template_type=template_type,
            status='failed',
            failure_reason=f'enqueue failed: {exc}',
            metadata={'data': data},
        )


def notify(template_type, user, data):
    """
    登记一条通知，在当前事务提交后发送。

    没有事务时（autocommit）on_commit 会立即执行。
    """
    recipient = getattr(user, 'email', '') or ''
    if not recipient:
        logger.info('user_id=%s has no email; skipping %s notification', getattr(user, 'pk', None), template_type)
        return

    transaction.on_commit(partial(dispatch, template_type, recipient, data))
