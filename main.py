"""
Stepflow API 主入口
"""
import logging
import uvicorn
from dotenv import load_dotenv

# 加载环境变量
load_dotenv()

from stepflow.config import RuntimeSettings

settings = RuntimeSettings.from_env()

# 配置日志
logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


if __name__ == "__main__":
    uvicorn.run(
        "stepflow.api.server:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.api_reload,
        log_level=settings.log_level.lower()
    )
