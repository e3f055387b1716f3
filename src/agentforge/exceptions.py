"""
AgentForge 运行时异常定义
"""
from typing import Optional, Dict, Any


class AgentForgeError(Exception):
    """运行时基础异常"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典"""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "details": self.details
        }


class ConfigurationError(AgentForgeError):
    """配置异常"""
    pass


class WorkflowParseError(AgentForgeError):
    """工作流文档解析异常"""
    pass


class GraphIntegrityError(AgentForgeError):
    """工作流图结构异常（图不合法或决策无匹配边），致命"""

    def __init__(self, message: str, node_id: Optional[str] = None,
                 errors: Optional[list] = None):
        details: Dict[str, Any] = {}
        if node_id:
            details["node_id"] = node_id
        if errors:
            details["errors"] = list(errors)
        super().__init__(message, details)
        self.node_id = node_id
        self.errors = list(errors or [])


class UpstreamError(AgentForgeError):
    """模型调用失败（不可重试）"""

    def __init__(self, message: str, provider: Optional[str] = None,
                 status_code: Optional[int] = None, cause: Optional[Exception] = None):
        details: Dict[str, Any] = {}
        if provider:
            details["provider"] = provider
        if status_code is not None:
            details["status_code"] = status_code
        if cause:
            details["cause"] = str(cause)
            details["cause_type"] = type(cause).__name__
        super().__init__(message, details)
        self.provider = provider
        self.status_code = status_code
        self.cause = cause


class UpstreamTransientError(UpstreamError):
    """可重试的上游失败（限流、网关错误、超时）"""
    pass


class ParseEmptyResult(AgentForgeError):
    """生成输出中未解析出任何代码产物"""

    def __init__(self, step_kind: str, output_length: int):
        super().__init__(
            f"No code artifacts could be parsed from {step_kind} output ({output_length} chars)",
            {"step_kind": step_kind, "output_length": output_length}
        )


class ValidationFailure(AgentForgeError):
    """产物校验失败（分数过低或存在严重问题）"""

    def __init__(self, score: int, critical_issues: list):
        super().__init__(
            f"Artifact validation failed with score {score} "
            f"and {len(critical_issues)} critical issue(s)",
            {"score": score, "critical_issues": list(critical_issues)}
        )
        self.score = score
        self.critical_issues = list(critical_issues)


class ExecutionNotFoundError(AgentForgeError):
    """执行实例未找到"""

    def __init__(self, execution_id: str):
        super().__init__(
            f"Execution not found: {execution_id}",
            {"execution_id": execution_id}
        )
