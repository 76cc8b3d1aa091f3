import logging
import uuid

from celery import shared_task
from django.conf import settings
from django.core.mail import send_mail

logger = logging.getLogger(__name__)


@shared_task(
    bind=True,
    max_retries=3,
    default_retry_delay=10,   # 初始重试延迟（秒），指数退避会乘以 2^retry_count
    acks_late=True,           # 任务执行完才 ack，防止 worker 崩溃时任务丢失
    reject_on_worker_lost=True,
)
def send_notification_email(self, template_type: str, recipient: str, data: dict):
    """
    异步发送通知邮件，并写 email_logs。

    重试策略：
      - 最多重试 3 次
      - 指数退避：10s → 20s → 40s
      - 超出次数后记录 status=failed 和失败原因，不再抛出
    """
    from pharmacy.notifications import record_delivery, render

    logger.info("[Celery][send_notification_email] %s → %s (attempt %d/%d)",
                template_type, recipient, self.request.retries + 1, self.max_retries + 1)

    try:
        subject, body = render(template_type, data)
    except ValueError as exc:
        # 模板不存在，重试也没用
        logger.error("[Celery] %s", exc)
        record_delivery(recipient, template_type, template_type, 'failed', failure_reason=str(exc), metadata={'data': data})
        return

    try:
        send_mail(subject, body, settings.DEFAULT_FROM_EMAIL, [recipient], fail_silently=False)
    except Exception as exc:
        logger.warning(
            "[Celery] %s → %s 发送失败 (attempt %d): %s",
            template_type, recipient, self.request.retries + 1, str(exc)
        )

        if self.request.retries < self.max_retries:
            # 指数退避：countdown = 10 * 2^retries → 10s, 20s, 40s
            countdown = self.default_retry_delay * (2 ** self.request.retries)
            logger.info("[Celery] 将在 %ds 后重试 (第 %d 次)...", countdown, self.request.retries + 1)
            raise self.retry(exc=exc, countdown=countdown)

        logger.error("[Celery] %s → %s 已达最大重试次数，标记为 failed", template_type, recipient)
        record_delivery(
            recipient, subject, template_type, 'failed',
            failure_reason=f"[重试 {self.max_retries} 次后仍失败] {exc}",
            metadata={'data': data},
        )
        return

    message_id = f'msg_{uuid.uuid4().hex}'
    record_delivery(recipient, subject, template_type, 'sent', message_id=message_id, metadata={'data': data})
    logger.info("[Celery] %s → %s 发送成功 message_id=%s", template_type, recipient, message_id)
    return message_id


@shared_task
def cleanup_expired_sessions_task():
    """定时清理过期 session token（CELERY_BEAT_SCHEDULE）。"""
    from pharmacy.auth import cleanup_expired_sessions

    return cleanup_expired_sessions()
