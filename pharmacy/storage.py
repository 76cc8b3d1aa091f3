"""
处方文件上传。

字节流交给 Django default_storage，返回可访问的 URL；数据库里只存 URL。
"""
import logging
import mimetypes
import uuid

from django.conf import settings
from django.core.files.base import ContentFile
from django.core.files.storage import default_storage

from .exceptions import InternalError, ValidationError

logger = logging.getLogger(__name__)

ALLOWED_CONTENT_TYPES = {
    'application/pdf': '.pdf',
    'image/jpeg': '.jpg',
    'image/png': '.png',
    'image/webp': '.webp',
    'image/heic': '.heic',
}


def upload_prescription_file(content: bytes, content_type: str, filename: str = '') -> str:
    """
    Store a prescription file and return its public URL.

    Raises:
        ValidationError: 空文件、类型不支持、超过大小限制
        InternalError:   存储后端失败
    """
    content_type = (content_type or mimetypes.guess_type(filename)[0] or '').lower()

    if not content:
        raise ValidationError('Uploaded file is empty', code='EMPTY_FILE')
    if content_type not in ALLOWED_CONTENT_TYPES:
        raise ValidationError(
            f'Unsupported file type: {content_type or "unknown"}',
            code='UNSUPPORTED_FILE_TYPE',
            detail={'allowed': sorted(ALLOWED_CONTENT_TYPES)},
        )
    if len(content) > settings.PRESCRIPTION_UPLOAD_MAX_BYTES:
        raise ValidationError(
            'Uploaded file is too large',
            code='FILE_TOO_LARGE',
            detail={'max_bytes': settings.PRESCRIPTION_UPLOAD_MAX_BYTES},
        )

    name = f'{settings.PRESCRIPTION_UPLOAD_DIR}/{uuid.uuid4().hex}{ALLOWED_CONTENT_TYPES[content_type]}'
    try:
        stored_name = default_storage.save(name, ContentFile(content))
        url = default_storage.url(stored_name)
    except Exception as exc:
        # 存储后端（本地磁盘 / S3 等）的异常类型不统一
        raise InternalError('Failed to store prescription file', cause=exc) from exc

    logger.info('prescription file stored: %s (%d bytes)', stored_name, len(content))
    return url
