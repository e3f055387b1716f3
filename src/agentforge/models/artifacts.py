"""
步骤、产物与校验报告模型
"""
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, List
from enum import Enum, IntEnum


class StepKind(Enum):
    """智能体步骤类型"""
    PLANNER = "planner"
    CODER = "coder"
    REVIEWER = "reviewer"
    SECURITY = "security"
    EXECUTOR = "executor"

    @property
    def is_generation(self) -> bool:
        """是否为代码生成步骤"""
        return self is StepKind.CODER


class TargetEnvironment(Enum):
    """生成代码的目标运行环境"""
    SANDPACK = "sandpack"
    WEBCONTAINER = "webcontainer"
    NEXTJS = "nextjs"


class Severity(IntEnum):
    """问题严重程度（数值越大越严重）"""
    INFO = 0
    WARNING = 1
    CRITICAL = 2

    @property
    def label(self) -> str:
        return self.name.lower()


class DirectiveLevel(IntEnum):
    """纠错指令强度"""
    FIRM = 1
    STRICT = 2
    FINAL = 3


@dataclass(frozen=True)
class ParsedArtifact:
    """解析出的代码产物"""
    path: str
    content: str
    language: str

    def to_dict(self) -> Dict[str, Any]:
        return {"path": self.path, "content": self.content, "language": self.language}


@dataclass(frozen=True)
class ValidationIssue:
    """校验问题"""
    severity: Severity
    message: str
    rule: str
    artifact_path: Optional[str] = None
    penalty: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "severity": self.severity.label,
            "message": self.message,
            "rule": self.rule,
            "artifact_path": self.artifact_path,
            "penalty": self.penalty
        }


@dataclass
class ValidationReport:
    """校验报告"""
    score: int = 100
    issues: List[ValidationIssue] = field(default_factory=list)
    missing_paths: List[str] = field(default_factory=list)

    @property
    def critical_issues(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity is Severity.CRITICAL]

    @property
    def warnings(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity is Severity.WARNING]

    @property
    def critical_count(self) -> int:
        return len(self.critical_issues)

    @property
    def is_acceptable(self) -> bool:
        """分数不低于50且没有严重问题"""
        return self.score >= 50 and self.critical_count == 0

    def improves_on(self, other: "ValidationReport") -> bool:
        """
        判断本报告是否优于另一份报告

        分数不降低且严重问题不增加，并且至少一项严格更好。
        """
        if self.score < other.score or self.critical_count > other.critical_count:
            return False
        return self.score > other.score or self.critical_count < other.critical_count

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "is_acceptable": self.is_acceptable,
            "issues": [i.to_dict() for i in self.issues],
            "missing_paths": list(self.missing_paths)
        }


@dataclass
class StepRequest:
    """单个节点访问产生的步骤请求"""
    step_kind: StepKind
    input_text: str
    previous_output: Optional[str] = None
    existing_artifacts: List[ParsedArtifact] = field(default_factory=list)
    previous_step_kind: Optional[StepKind] = None


@dataclass
class CorrectionAttempt:
    """一次纠错尝试"""
    attempt_number: int
    preceding_report: ValidationReport
    directive_level: DirectiveLevel
    temperature: float
    resulting_report: Optional[ValidationReport] = None


@dataclass
class StepResult:
    """步骤执行结果"""
    step_kind: StepKind
    content: str
    artifacts: List[ParsedArtifact] = field(default_factory=list)
    report: Optional[ValidationReport] = None
    warnings: List[str] = field(default_factory=list)
    corrections: List[CorrectionAttempt] = field(default_factory=list)
    from_cache: bool = False

    @property
    def has_issues(self) -> bool:
        return bool(self.warnings)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_kind": self.step_kind.value,
            "content": self.content,
            "artifacts": [a.to_dict() for a in self.artifacts],
            "report": self.report.to_dict() if self.report else None,
            "warnings": list(self.warnings),
            "corrections": len(self.corrections),
            "from_cache": self.from_cache
        }
