"""
配置文件 - 项目配置管理
"""
import json
from typing import Optional

from pydantic import AliasChoices, BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseModel):
    url: str = "sqlite+aiosqlite:///./settlement.db"
    echo: bool = False


class CelerySettings(BaseModel):
    broker_url: str = "memory://"
    result_backend: Optional[str] = None
    # 开发/测试环境下直接在进程内执行任务
    always_eager: Optional[bool] = None


class Settings(BaseSettings):
    """项目配置"""

    # 基础配置
    PROJECT_NAME: str = Field(
        default="Marketplace Payment Settlement",
        validation_alias=AliasChoices("PROJECT_NAME", "APP_NAME"),
    )
    VERSION: str = Field(default="1.0.0", validation_alias=AliasChoices("VERSION", "APP_VERSION"))
    DEBUG: bool = True
    ENVIRONMENT: str = "development"

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    celery: CelerySettings = Field(default_factory=CelerySettings)

    # 内部接口（退款等管理操作）共享令牌；为空时不校验
    INTERNAL_API_TOKEN: Optional[str] = None

    # CORS配置
    CORS_ORIGINS: list = Field(default=["http://localhost:3000", "http://localhost:8000"])

    # 日志/请求体记录配置
    LOG_REQUEST_BODY_ENABLE_BY_DEFAULT: bool = True
    LOG_REQUEST_BODY_MAX_BYTES: int = 2048
    LOG_REQUEST_BODY_ALLOW_MULTIPART: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="allow",
        env_nested_delimiter="__",
    )

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def _parse_cors_origins(cls, v):
        """允许 JSON 字符串或逗号分隔字符串两种格式。"""
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            s = v.strip()
            if s.startswith("[") and s.endswith("]"):
                try:
                    arr = json.loads(s)
                    if isinstance(arr, list):
                        return arr
                except ValueError:
                    pass
            if "," in s:
                return [item.strip() for item in s.split(",") if item.strip()]
            return [s]
        return v

    @property
    def celery_always_eager(self) -> bool:
        if self.celery.always_eager is not None:
            return self.celery.always_eager
        return self.ENVIRONMENT in {"development", "test"}


settings = Settings()
