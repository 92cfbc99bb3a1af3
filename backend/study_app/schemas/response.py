# backend/study_app/schemas/response.py
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """前端使用驼峰字段名；Python侧使用蛇形字段名"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class OkResponse(CamelModel):
    """标准响应模型

    研究API的成功响应统一包含 ok=true，失败响应由异常处理器渲染。

    Attributes:
        ok: 是否成功
    """
    ok: bool = True


class RedirectResponse(OkResponse):
    redirect_to: str
