"""
运行时配置

配置在入口处从环境变量（可由 .env 文件提供）读取一次，
之后作为显式参数传给运行时和工作单元。
"""
import os
from dataclasses import dataclass
from typing import Optional


def _get_float(name: str, default: Optional[float]) -> Optional[float]:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return float(value)


@dataclass(frozen=True)
class RuntimeSettings:
    """运行时设置"""
    max_steps: int = 1000
    default_timeout_seconds: Optional[float] = None
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_reload: bool = False
    log_level: str = "INFO"
    config_store_path: Optional[str] = None

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        """从环境变量构造"""
        return cls(
            max_steps=int(os.getenv("STEPFLOW_MAX_STEPS", "1000")),
            default_timeout_seconds=_get_float("STEPFLOW_DEFAULT_TIMEOUT", None),
            api_host=os.getenv("API_HOST", "0.0.0.0"),
            api_port=int(os.getenv("API_PORT", "8000")),
            api_reload=os.getenv("API_RELOAD", "false").lower() == "true",
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            config_store_path=os.getenv("STEPFLOW_CONFIG_STORE") or None
        )


@dataclass(frozen=True)
class HandlerEnvironment:
    """文档处理工作单元使用的环境值"""
    region: str = "local"
    environment: str = "development"
    primary_bucket: str = ""
    classification_model_endpoint: str = ""
    min_confidence_threshold: float = 0.85
    extraction_method: str = "AWS Textract"
    payment_processor_endpoint: str = ""
    order_management_endpoint: str = ""

    @classmethod
    def from_env(cls) -> "HandlerEnvironment":
        """从环境变量构造"""
        return cls(
            region=os.getenv("AWS_REGION", "local"),
            environment=os.getenv("ENVIRONMENT", "development"),
            primary_bucket=os.getenv("PRIMARY_BUCKET", ""),
            classification_model_endpoint=os.getenv("CLASSIFICATION_MODEL_ENDPOINT", ""),
            min_confidence_threshold=_get_float("MIN_CONFIDENCE_THRESHOLD", 0.85),
            extraction_method=os.getenv("EXTRACTION_METHOD", "AWS Textract"),
            payment_processor_endpoint=os.getenv("PAYMENT_PROCESSOR_ENDPOINT", ""),
            order_management_endpoint=os.getenv("ORDER_MANAGEMENT_ENDPOINT", "")
        )
