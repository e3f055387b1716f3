"""
API 请求和响应模型
"""
from pydantic import BaseModel, Field, ConfigDict, model_validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum


class ExecutionStatusEnum(str, Enum):
    """执行状态枚举（API）"""
    IDLE = "idle"
    RUNNING = "running"
    WAITING_HUMAN = "waiting-human"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"


class TargetEnvironmentEnum(str, Enum):
    """目标运行环境枚举（API）"""
    SANDPACK = "sandpack"
    WEBCONTAINER = "webcontainer"
    NEXTJS = "nextjs"


# 工作流相关模型

class TemplateSummary(BaseModel):
    """模板摘要"""
    id: str = Field(..., description="模板ID")
    name: str = Field(..., description="模板名称")
    description: str = Field("", description="描述")
    node_count: int = Field(..., description="节点数量")


class WorkflowValidateRequest(BaseModel):
    """校验工作流图请求"""
    definition: Dict[str, Any] = Field(..., description="工作流图定义")


class WorkflowValidateResponse(BaseModel):
    """校验工作流图响应"""
    valid: bool = Field(..., description="是否可执行")
    errors: List[str] = Field(default_factory=list, description="错误列表")
    warnings: List[str] = Field(default_factory=list, description="警告列表")
    node_count: int = Field(0, description="节点数量")
    edge_count: int = Field(0, description="边数量")


# 执行相关模型

class ExecutionStartRequest(BaseModel):
    """启动执行请求（模板名与图定义二选一）"""
    input: str = Field(..., min_length=1, description="用户请求")
    template: Optional[str] = Field(None, description="内置模板名称")
    definition: Optional[Dict[str, Any]] = Field(None, description="工作流图定义")
    target: Optional[TargetEnvironmentEnum] = Field(None, description="目标运行环境")
    strict: Optional[bool] = Field(None, description="严格校验模式")

    @model_validator(mode="after")
    def check_source(self):
        if (self.template is None) == (self.definition is None):
            raise ValueError("Exactly one of 'template' or 'definition' must be provided")
        return self


class PendingDecisionInfo(BaseModel):
    """等待中的人工决策"""
    node_id: str = Field(..., description="决策节点ID")
    question: str = Field(..., description="问题")
    options: List[Dict[str, Any]] = Field(default_factory=list, description="选项")


class ExecutionResponse(BaseModel):
    """执行响应"""
    execution_id: str = Field(..., description="执行ID")
    workflow_id: str = Field(..., description="工作流ID")
    workflow_name: str = Field("", description="工作流名称")
    status: ExecutionStatusEnum = Field(..., description="执行状态")
    target: TargetEnvironmentEnum = Field(..., description="目标运行环境")
    current_node_id: Optional[str] = Field(None, description="当前节点ID")
    start_time: Optional[datetime] = Field(None, description="开始时间")
    end_time: Optional[datetime] = Field(None, description="结束时间")
    duration_ms: Optional[int] = Field(None, description="执行时长（毫秒）")
    error_message: Optional[str] = Field(None, description="错误信息")
    created_at: datetime = Field(..., description="创建时间")

    model_config = ConfigDict(from_attributes=True)


class ExecutionDetailResponse(ExecutionResponse):
    """执行详情响应"""
    visited_nodes: List[str] = Field(default_factory=list, description="已访问节点")
    node_outputs: Dict[str, str] = Field(default_factory=dict, description="节点输出")
    pending_decision: Optional[PendingDecisionInfo] = Field(None, description="等待中的决策")
    artifact_paths: List[str] = Field(default_factory=list, description="产物路径")
    node_results: Dict[str, Dict[str, Any]] = Field(default_factory=dict, description="节点执行结果")
    statistics: Dict[str, Any] = Field(default_factory=dict, description="执行统计")


class DecisionRequest(BaseModel):
    """提交人工决策请求"""
    option_id: str = Field(..., min_length=1, description="选项ID")
    node_id: Optional[str] = Field(None, description="决策节点ID（可选，用于校验）")


class ArtifactInfo(BaseModel):
    """代码产物"""
    path: str = Field(..., description="文件路径")
    language: str = Field(..., description="语言")
    content: str = Field(..., description="文件内容")


class EventInfo(BaseModel):
    """执行事件"""
    topic: str = Field(..., description="事件主题")
    timestamp: datetime = Field(..., description="时间戳")
    payload: Dict[str, Any] = Field(default_factory=dict, description="事件数据")


class LogEntry(BaseModel):
    """执行日志"""
    timestamp: str = Field(..., description="时间戳")
    level: str = Field(..., description="日志级别")
    message: str = Field(..., description="日志内容")


# 通用模型

class SuccessResponse(BaseModel):
    """成功响应"""
    success: bool = Field(True, description="是否成功")
    message: str = Field(..., description="消息")
    data: Optional[Dict[str, Any]] = Field(None, description="额外数据")


class HealthCheckResponse(BaseModel):
    """健康检查响应"""
    status: str = Field(..., description="健康状态", examples=["healthy", "unhealthy"])
    version: str = Field(..., description="版本号")
    timestamp: datetime = Field(default_factory=datetime.utcnow, description="时间戳")
    checks: Dict[str, bool] = Field(default_factory=dict, description="各组件检查结果")
    cache: Dict[str, Any] = Field(default_factory=dict, description="响应缓存统计")
