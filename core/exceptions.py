"""
自定义异常映射与全局异常处理器
"""
import traceback
import uuid

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette import status as http_status

from .response import error_response
from core.i18n import get_locale, t
from core.logging_config import get_logger
from domain.common.exceptions import BusinessException
from shared.codes import BusinessCode
from shared.codes.payment_codes import PaymentCode


class UnauthorizedException(BusinessException):
    """未授权异常（内部接口令牌缺失或错误）"""

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(
            code=BusinessCode.UNAUTHORIZED,
            message=message,
            error_type="Unauthorized",
            message_key="auth.unauthorized",
        )


class ForbiddenException(BusinessException):
    """来源不在白名单内"""

    def __init__(self, message: str = "Forbidden", *, details: dict | None = None):
        super().__init__(
            code=BusinessCode.FORBIDDEN,
            message=message,
            error_type="Forbidden",
            details=details,
            message_key="auth.forbidden",
        )


_HTTP_STATUS_BY_CODE = {
    BusinessCode.PARAM_ERROR: http_status.HTTP_400_BAD_REQUEST,
    BusinessCode.PARAM_MISSING: http_status.HTTP_400_BAD_REQUEST,
    BusinessCode.PARAM_TYPE_ERROR: http_status.HTTP_400_BAD_REQUEST,
    BusinessCode.PARAM_VALIDATION_ERROR: http_status.HTTP_422_UNPROCESSABLE_ENTITY,

    BusinessCode.BUSINESS_ERROR: http_status.HTTP_400_BAD_REQUEST,
    BusinessCode.NOT_FOUND: http_status.HTTP_404_NOT_FOUND,
    BusinessCode.CONFLICT: http_status.HTTP_409_CONFLICT,

    BusinessCode.PERMISSION_ERROR: http_status.HTTP_403_FORBIDDEN,
    BusinessCode.UNAUTHORIZED: http_status.HTTP_401_UNAUTHORIZED,
    BusinessCode.FORBIDDEN: http_status.HTTP_403_FORBIDDEN,

    BusinessCode.SYSTEM_ERROR: http_status.HTTP_500_INTERNAL_SERVER_ERROR,
    BusinessCode.DATABASE_ERROR: http_status.HTTP_500_INTERNAL_SERVER_ERROR,
    BusinessCode.NETWORK_ERROR: http_status.HTTP_500_INTERNAL_SERVER_ERROR,
    BusinessCode.SERVICE_UNAVAILABLE: http_status.HTTP_503_SERVICE_UNAVAILABLE,

    BusinessCode.RATE_LIMIT_ERROR: http_status.HTTP_429_TOO_MANY_REQUESTS,
    BusinessCode.TOO_MANY_REQUESTS: http_status.HTTP_429_TOO_MANY_REQUESTS,

    PaymentCode.PROVIDER_ERROR: http_status.HTTP_502_BAD_GATEWAY,
    PaymentCode.PROVIDER_UNAVAILABLE: http_status.HTTP_503_SERVICE_UNAVAILABLE,
    PaymentCode.PROVIDER_NOT_CONFIGURED: http_status.HTTP_503_SERVICE_UNAVAILABLE,
    PaymentCode.TIMEOUT: http_status.HTTP_504_GATEWAY_TIMEOUT,
    PaymentCode.RATE_LIMITED: http_status.HTTP_429_TOO_MANY_REQUESTS,
    PaymentCode.SIGNATURE_ERROR: http_status.HTTP_400_BAD_REQUEST,
    PaymentCode.PROVIDER_REJECTED: http_status.HTTP_400_BAD_REQUEST,

    PaymentCode.PAYMENT_NOT_FOUND: http_status.HTTP_404_NOT_FOUND,
    PaymentCode.ORDER_NOT_FOUND: http_status.HTTP_404_NOT_FOUND,
    PaymentCode.INVALID_PAYMENT_STATE: http_status.HTTP_409_CONFLICT,
    PaymentCode.AMOUNT_MISMATCH: http_status.HTTP_400_BAD_REQUEST,
    PaymentCode.LEDGER_ERROR: http_status.HTTP_500_INTERNAL_SERVER_ERROR,
    PaymentCode.INSUFFICIENT_BALANCE: http_status.HTTP_400_BAD_REQUEST,
    PaymentCode.UNSUPPORTED_PROVIDER: http_status.HTTP_404_NOT_FOUND,
}


def business_code_to_http_status(code: int) -> int:
    """根据业务码映射HTTP状态码（默认400）。

    BusinessCode 与 PaymentCode 取值不重叠，统一按整数查表。
    """
    return _HTTP_STATUS_BY_CODE.get(int(code), http_status.HTTP_400_BAD_REQUEST)


def _request_id(request: Request) -> str:
    return getattr(getattr(request, "state", object()), "request_id", None) or str(uuid.uuid4())


def render_message(exc: BusinessException) -> str:
    """按当前语言渲染异常消息；缺少翻译时退回异常自带的英文消息"""
    key = getattr(exc, "message_key", None)
    if not key:
        return exc.message
    fmt_params = getattr(exc, "format_params", None)
    params = fmt_params if isinstance(fmt_params, dict) else (exc.details or {})
    translated = t(key, **params)
    return exc.message if translated == key else translated


def register_exception_handlers(app: FastAPI):
    """
    注册全局异常处理器

    Args:
        app: FastAPI应用实例
    """
    logger = get_logger(__name__)

    @app.exception_handler(BusinessException)
    async def business_exception_handler(request: Request, exc: BusinessException):
        """处理业务异常"""
        response = error_response(
            code=exc.code,
            message=render_message(exc),
            error_type=exc.error_type,
            details=exc.details,
            field=exc.field,
            request_id=_request_id(request),
            locale=get_locale(),
            message_key=getattr(exc, "message_key", None),
        )
        status_code = business_code_to_http_status(exc.code)
        if status_code >= 500:
            logger.error("business_exception", path=request.url.path, **exc.to_log_fields())
        else:
            logger.info("business_rejection", path=request.url.path, code=int(exc.code), error_type=exc.error_type)
        headers = {"WWW-Authenticate": "Bearer"} if status_code == http_status.HTTP_401_UNAUTHORIZED else None
        return JSONResponse(status_code=status_code, content=response.model_dump(mode='json'), headers=headers)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """处理参数验证异常"""
        errors = exc.errors()
        first_error = errors[0] if errors else {}
        field = ".".join(str(loc) for loc in first_error.get("loc", [])[1:])
        reason = first_error.get('msg', 'unknown')
        message = t("validation.failed", reason=reason)
        if message == "validation.failed":
            message = f"Validation failed: {reason}"
        response = error_response(
            code=BusinessCode.PARAM_VALIDATION_ERROR,
            message=message,
            error_type="ValidationError",
            # ctx may carry exception objects that are not JSON serializable
            details={"errors": [{k: v for k, v in e.items() if k != "ctx"} for e in errors]},
            field=field,
            request_id=_request_id(request),
            locale=get_locale(),
            message_key="validation.failed",
        )
        return JSONResponse(
            status_code=http_status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=response.model_dump(mode='json')
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """处理HTTP异常"""
        code_mapping = {
            401: BusinessCode.UNAUTHORIZED,
            403: BusinessCode.FORBIDDEN,
            404: BusinessCode.NOT_FOUND,
            429: BusinessCode.TOO_MANY_REQUESTS,
            500: BusinessCode.SYSTEM_ERROR,
            503: BusinessCode.SERVICE_UNAVAILABLE
        }
        response = error_response(
            code=code_mapping.get(exc.status_code, BusinessCode.SYSTEM_ERROR),
            message=str(exc.detail),
            error_type="HTTPError",
            details={"status_code": exc.status_code},
            request_id=_request_id(request),
            locale=get_locale(),
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=response.model_dump(mode='json'),
            headers=getattr(exc, "headers", None)
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """处理所有未捕获的异常"""
        request_id = _request_id(request)

        # 在开发环境可以返回详细错误信息
        details = None
        if app.debug:
            details = {
                "exception": str(exc),
                "traceback": traceback.format_exc()
            }

        message = t("error.internal")
        response = error_response(
            code=BusinessCode.SYSTEM_ERROR,
            message="Internal server error" if message == "error.internal" else message,
            error_type="SystemError",
            details=details,
            request_id=request_id,
            locale=get_locale(),
            message_key="error.internal",
        )

        logger.error(
            "unhandled_exception",
            request_id=request_id,
            error=str(exc),
            exc_info=True,
        )

        return JSONResponse(
            status_code=http_status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=response.model_dump(mode='json')
        )
