"""
统一异常体系。

所有业务异常继承 BaseAppException，包含：
- type:        错误类型标识（validation_error / unauthorized / forbidden / not_found / block / error）
- code:        业务错误码（INVALID_STATE / REFILLS_EXHAUSTED / PRESCRIPTION_NOT_FOUND / ...）
- message:     人类可读的描述
- detail:      可选的附加信息（dict / list / None）
- http_status: HTTP 状态码

Service 层只需 raise，exception_handler 统一捕获并格式化响应。
"""


class BaseAppException(Exception):
    """所有业务异常的基类。"""

    type = 'error'
    code = 'UNKNOWN_ERROR'
    http_status = 500

    def __init__(self, message, code=None, detail=None, http_status=None):
        self.message = message
        if code is not None:
            self.code = code
        if http_status is not None:
            self.http_status = http_status
        self.detail = detail
        super().__init__(message)


class ValidationError(BaseAppException):
    """输入或状态不满足操作要求，400。"""

    type = 'validation_error'
    code = 'VALIDATION_ERROR'
    http_status = 400


class UnauthorizedError(BaseAppException):
    """无法解析出 principal，401。"""

    type = 'unauthorized'
    code = 'UNAUTHORIZED'
    http_status = 401


class ForbiddenError(BaseAppException):
    """principal 存在，但角色不够，403。"""

    type = 'forbidden'
    code = 'FORBIDDEN'
    http_status = 403


class NotFoundError(BaseAppException):
    """
    记录不存在，或者不属于调用者，404。

    归属不匹配也报 404 而不是 403，避免向调用者确认别人记录的存在。
    """

    type = 'not_found'
    code = 'NOT_FOUND'
    http_status = 404


class BlockError(BaseAppException):
    """业务规则阻止操作。service 层抛出，409。"""

    type = 'block'
    code = 'BUSINESS_BLOCK'
    http_status = 409


class InvalidStateError(BlockError):
    """当前状态不允许这个 transition。"""

    code = 'INVALID_STATE'


class RefillsExhaustedError(BlockError):
    """refill_count 已经到达 refill_limit。"""

    code = 'REFILLS_EXHAUSTED'

    def __init__(self, refills_used, refill_limit, message=None):
        self.refills_used = refills_used
        self.refill_limit = refill_limit
        super().__init__(
            message or 'No refills remaining for this prescription',
            detail={'refillsUsed': refills_used, 'refillLimit': refill_limit},
        )


class ConcurrentUpdateError(BlockError):
    """
    乐观锁冲突：读出来的值在写回之前已经被别的请求改掉了。

    整个操作已回滚，客户端刷新后重试即可。
    """

    code = 'CONCURRENT_UPDATE'


class InternalError(BaseAppException):
    """
    底层存储 / 协作方失败，500。

    cause 保留原始异常用于日志；响应体里只给通用 message，不暴露存储细节。
    """

    type = 'error'
    code = 'INTERNAL_ERROR'
    http_status = 500

    def __init__(self, message='Internal server error', cause=None, code=None, detail=None):
        self.cause = cause
        super().__init__(message, code=code, detail=detail)

    @property
    def reason(self):
        """底层失败信息，给进程内调用方和日志用。"""
        return str(self.cause) if self.cause is not None else self.message
