"""
统一异常体系。

所有业务异常继承 BaseAppException，包含：
- type:        错误类型标识（validation_error / block / invalid_transition / auth_failure / service_unavailable）
- code:        业务错误码（REFERRAL_NO_REQUIRED / VISIT_NOT_FOUND / ...）
- message:     人类可读的描述
- detail:      可选的附加信息（dict / list / None）
- http_status: HTTP 状态码

Service 层只需 raise，exception_handler 统一捕获并格式化响应。
科室模块（consultation / pharmacy / optical / billing）根据 type 渲染提示，
并决定是否提供 cash conversion 入口。
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
    """输入验证失败。在任何网络调用之前抛出，不重试，400。"""

    type = 'validation_error'
    code = 'VALIDATION_ERROR'
    http_status = 400


class BlockError(BaseAppException):
    """业务规则阻止操作。service 层抛出，409（not found 时覆盖为 404）。"""

    type = 'block'
    code = 'BUSINESS_BLOCK'
    http_status = 409


class InvalidTransition(BaseAppException):
    """
    状态机误用：从不允许的状态发起 transition。

    属于调用方的编程/使用错误，永远上报，不静默忽略。
    """

    type = 'invalid_transition'
    code = 'INVALID_TRANSITION'
    http_status = 409


class AuthFailure(BaseAppException):
    """
    保险机构拒绝了 facility 凭证或 access token。

    Token 被拒时 client 已经强制刷新并重试过一次，仍失败才抛出。
    """

    type = 'auth_failure'
    code = 'AUTHORITY_AUTH_FAILED'
    http_status = 502


class ServiceUnavailable(BaseAppException):
    """
    保险机构不可达（timeout / DNS / 连接失败 / 5xx）。

    与 REJECTED 严格区分：前端必须显示 "insurance service unavailable"，
    而不是 "card rejected"，让工作人员选择重试或转现金。
    """

    type = 'service_unavailable'
    code = 'INSURANCE_SERVICE_UNAVAILABLE'
    http_status = 503
