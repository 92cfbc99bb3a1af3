"""
研究API的错误类型。

所有错误统一渲染为 {"ok": false, "error": ..., "redirectTo"?: ...}。
"""
from typing import Any, Optional

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse


class StudyAPIError(HTTPException):
    """研究API错误基类"""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, error: str, redirect_to: Optional[str] = None, details: Any = None):
        super().__init__(status_code=self.status_code, detail=error)
        self.error = error
        self.redirect_to = redirect_to
        self.details = details


class ValidationFailed(StudyAPIError):
    status_code = status.HTTP_400_BAD_REQUEST


class Unauthorized(StudyAPIError):
    status_code = status.HTTP_401_UNAUTHORIZED


class Forbidden(StudyAPIError):
    status_code = status.HTTP_403_FORBIDDEN


class NotFound(StudyAPIError):
    status_code = status.HTTP_404_NOT_FOUND


class WrongStep(StudyAPIError):
    """当前步骤与接口期望的步骤不一致，始终携带规范路由"""
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, redirect_to: str, error: str = "Wrong step"):
        super().__init__(error, redirect_to=redirect_to)


class AlreadySubmitted(StudyAPIError):
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, error: str = "Survey already submitted.", redirect_to: Optional[str] = None):
        super().__init__(error, redirect_to=redirect_to)


class ServerMisconfigured(StudyAPIError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


def error_body(error: str, redirect_to: Optional[str] = None, details: Any = None) -> dict:
    body: dict = {"ok": False, "error": error}
    if redirect_to is not None:
        body["redirectTo"] = redirect_to
    if details is not None:
        body["details"] = details
    return body


async def study_api_error_handler(request: Request, exc: StudyAPIError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(exc.error, exc.redirect_to, exc.details),
        headers=exc.headers,
    )


def _describe_validation_error(err: dict) -> str:
    location = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
    message = err.get("msg", "Invalid value")
    return f"{location}: {message}" if location else message


async def request_validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """请求体校验失败时返回400，error 中给出第一个违反的约束"""
    errors = exc.errors()
    first = _describe_validation_error(errors[0]) if errors else "Invalid request body."
    details = [_describe_validation_error(err) for err in errors]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=error_body(f"Invalid request body: {first}", details=details),
    )
