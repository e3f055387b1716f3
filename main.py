"""
AgentForge API 主入口
"""
import os
import logging
import uvicorn
from dotenv import load_dotenv

# 加载环境变量
load_dotenv()

# 配置日志
logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

# 导入应用
from agentforge.api import app


if __name__ == "__main__":
    host = os.getenv("API_HOST", "0.0.0.0")
    port = int(os.getenv("API_PORT", "8000"))
    reload = os.getenv("API_RELOAD", "false").lower() == "true"

    if reload:
        # 开发模式
        uvicorn.run(
            "agentforge.api:app",
            host=host,
            port=port,
            reload=True,
            log_level="info"
        )
    else:
        # 执行会话保存在进程内存中，只能单 worker 运行
        uvicorn.run(
            app,
            host=host,
            port=port,
            log_level="info"
        )
