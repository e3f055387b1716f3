"""
产物校验器

对一批产物按顺序应用相互独立的规则，每条规则有固定的扣分与严重程度。
分数从 100 开始扣减，最低为 0；存在任何严重问题时结果不可接受。
"""
import re
import logging
import posixpath
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from ..exceptions import ConfigurationError
from ..models.artifacts import (
    ParsedArtifact, Severity, TargetEnvironment, ValidationIssue, ValidationReport
)
from .artifact_parser import extension_of


logger = logging.getLogger(__name__)


SCRIPT_EXTENSIONS = ("tsx", "ts", "jsx", "js", "mjs", "cjs")
COMPONENT_EXTENSIONS = ("tsx", "jsx")
ASSET_EXTENSIONS = ("png", "jpg", "jpeg", "gif", "webp", "ico", "woff", "woff2", "ttf", "mp3", "mp4")

_BLOCK_COMMENT_RE = re.compile(r"/\*.*?\*/", re.DOTALL)
_LINE_COMMENT_RE = re.compile(r"(?<![:\"'\\])//[^\n]*")
_IMPORT_RE = re.compile(
    r"^\s*(?:import|export)\s+(?:type\s+)?(?P<clause>[\w*{}\s,$]+?)\s+from\s+[\"'](?P<source>[^\"']+)[\"']",
    re.MULTILINE
)
_SIDE_EFFECT_IMPORT_RE = re.compile(r"^\s*import\s+[\"'](?P<source>[^\"']+)[\"']", re.MULTILINE)


def strip_comments(code: str) -> str:
    """粗略去除注释（保留 URL 中的 //）"""
    return _LINE_COMMENT_RE.sub("", _BLOCK_COMMENT_RE.sub("", code))


def is_script(artifact: ParsedArtifact) -> bool:
    return extension_of(artifact.path) in SCRIPT_EXTENSIONS


@dataclass
class ImportStatement:
    """导入语句"""
    source: str
    default: Optional[str] = None
    named: List[str] = field(default_factory=list)
    namespace: bool = False
    is_reexport: bool = False


def parse_imports(code: str) -> List[ImportStatement]:
    """解析 import / export-from 语句"""
    statements: List[ImportStatement] = []
    for match in _IMPORT_RE.finditer(code):
        clause = match.group("clause").strip()
        statement = ImportStatement(
            source=match.group("source"),
            is_reexport=match.group(0).lstrip().startswith("export")
        )
        if "*" in clause:
            statement.namespace = True
        braces = re.search(r"\{([^}]*)\}", clause)
        if braces:
            for item in braces.group(1).split(","):
                item = item.strip()
                if not item or item.startswith("type "):
                    continue
                statement.named.append(item.split(" as ")[0].strip())
        head = re.sub(r"\{[^}]*\}", "", clause).replace("* as", "").strip(" ,")
        if head and not statement.is_reexport and not statement.namespace:
            default = head.split(",")[0].strip()
            if re.fullmatch(r"[A-Za-z_$][\w$]*", default) and default != "type":
                statement.default = default
        statements.append(statement)
    for match in _SIDE_EFFECT_IMPORT_RE.finditer(code):
        statements.append(ImportStatement(source=match.group("source")))
    return statements


def exported_names(code: str) -> Tuple[bool, List[str], bool]:
    """返回 (是否有默认导出, 命名导出列表, 是否存在 export * 转发)"""
    code = strip_comments(code)
    has_default = bool(re.search(r"\bexport\s+default\b", code)) or bool(
        re.search(r"export\s*\{[^}]*\bas\s+default\b", code)
    )
    names = re.findall(
        r"\bexport\s+(?:declare\s+)?(?:async\s+)?(?:const|let|var|function\*?|class|type|interface|enum)\s+([A-Za-z_$][\w$]*)",
        code
    )
    for block in re.findall(r"\bexport\s*(?:type\s*)?\{([^}]*)\}", code):
        for item in block.split(","):
            item = item.strip()
            if not item:
                continue
            parts = [p.strip() for p in item.split(" as ")]
            name = parts[-1]
            if name != "default":
                names.append(name)
    star = bool(re.search(r"\bexport\s+\*\s+from\b", code))
    return has_default, names, star


@dataclass
class ValidationContext:
    """校验上下文：当前批次、已有产物、目标环境和原始输出"""
    artifacts: List[ParsedArtifact]
    existing: List[ParsedArtifact] = field(default_factory=list)
    target: TargetEnvironment = TargetEnvironment.SANDPACK
    content: str = ""

    def __post_init__(self):
        self.by_path: Dict[str, ParsedArtifact] = {a.path: a for a in self.existing}
        self.by_path.update({a.path: a for a in self.artifacts})

    def resolve(self, importer: str, source: str) -> Tuple[Optional[str], List[str]]:
        """
        解析相对导入

        Returns:
            (命中的路径, 候选基础路径列表)；非本地导入返回 (None, [])
        """
        if source.startswith("."):
            base = posixpath.normpath(posixpath.join(posixpath.dirname(importer), source))
            bases = [base]
        elif source.startswith(("@/", "~/")):
            base = source[2:]
            bases = [base, f"src/{base}"]
        else:
            return None, []

        for base in bases:
            for candidate in self._candidates(base):
                if candidate in self.by_path:
                    return candidate, bases
        return None, bases

    @staticmethod
    def _candidates(base: str) -> List[str]:
        candidates = [base] if extension_of(base) else []
        for ext in ("tsx", "ts", "jsx", "js", "json", "css"):
            candidates.append(f"{base}.{ext}")
        for ext in ("tsx", "ts", "jsx", "js"):
            candidates.append(f"{base}/index.{ext}")
        return candidates


class ValidationRule(ABC):
    """校验规则基类"""

    name: str = ""
    severity: Severity = Severity.WARNING
    penalty: int = 0

    def __init__(self, penalty: Optional[int] = None):
        if penalty is not None:
            self.penalty = penalty

    def applies_to(self, target: TargetEnvironment) -> bool:
        return True

    @abstractmethod
    def check(self, context: ValidationContext) -> Iterable[Tuple[Optional[str], str]]:
        """产出 (产物路径, 问题描述)"""
        pass

    def missing_paths(self, context: ValidationContext) -> List[str]:
        return []


# 结构规则

class EmptyBatchRule(ValidationRule):
    """生成步骤没有产出任何产物"""
    name = "empty-batch"
    severity = Severity.CRITICAL
    penalty = 40

    def check(self, context):
        if not context.artifacts:
            yield None, "No code artifacts were generated; output complete files with file paths"


class InstructionsOnlyRule(ValidationRule):
    """输出只有修改说明而没有任何代码"""
    name = "instructions-only"
    severity = Severity.CRITICAL
    penalty = 50
    patterns = (
        re.compile(r"\byou (?:can|could|should)\b.*\bchange\b", re.IGNORECASE),
        re.compile(r"\badd\b.*\b(?:to|into) (?:the|your)\b", re.IGNORECASE),
        re.compile(r"\bchange line\b", re.IGNORECASE),
        re.compile(r"\breplace\b.*\bwith\b", re.IGNORECASE),
    )

    def check(self, context):
        if context.artifacts or not context.content:
            return
        if any(p.search(context.content) for p in self.patterns):
            yield None, "Response only describes changes instead of providing code"


class DuplicateDefaultExportRule(ValidationRule):
    """单个文件出现多个默认导出"""
    name = "duplicate-default-export"
    severity = Severity.CRITICAL
    penalty = 50

    def check(self, context):
        for artifact in context.artifacts:
            if not is_script(artifact):
                continue
            count = len(re.findall(r"\bexport\s+default\b", strip_comments(artifact.content)))
            if count > 1:
                yield artifact.path, (
                    f"{artifact.path} contains {count} default exports; a module may declare only one "
                    f"`export default`. Move extra components into their own files"
                )


class UnresolvedImportRule(ValidationRule):
    """本地导入指向批次和存储中都不存在的文件"""
    name = "unresolved-import"
    severity = Severity.CRITICAL
    penalty = 30

    def _unresolved(self, context: ValidationContext):
        for artifact in context.artifacts:
            if not is_script(artifact):
                continue
            seen = set()
            for statement in parse_imports(strip_comments(artifact.content)):
                source = statement.source
                if source in seen or extension_of(source) in ASSET_EXTENSIONS:
                    continue
                seen.add(source)
                resolved, bases = context.resolve(artifact.path, source)
                if resolved is None and bases:
                    yield artifact, source, bases[0]

    def check(self, context):
        for artifact, source, base in self._unresolved(context):
            expected = self._expected_path(artifact.path, base)
            yield artifact.path, (
                f"{artifact.path} imports '{source}' but no artifact exists at {expected}"
            )

    def missing_paths(self, context):
        paths = []
        for artifact, _, base in self._unresolved(context):
            expected = self._expected_path(artifact.path, base)
            if expected not in paths:
                paths.append(expected)
        return paths

    @staticmethod
    def _expected_path(importer: str, base: str) -> str:
        if extension_of(base):
            return base
        ext = extension_of(importer)
        return f"{base}.{ext if ext in ('tsx', 'ts', 'jsx', 'js') else 'tsx'}"


class ExportImportMismatchRule(ValidationRule):
    """导入方式与目标文件的导出不一致"""
    name = "export-import-mismatch"
    severity = Severity.CRITICAL
    penalty = 25

    def check(self, context):
        for artifact in context.artifacts:
            if not is_script(artifact):
                continue
            for statement in parse_imports(strip_comments(artifact.content)):
                resolved, _ = context.resolve(artifact.path, statement.source)
                if resolved is None or statement.namespace:
                    continue
                target = context.by_path[resolved]
                if not is_script(target):
                    continue
                has_default, names, star = exported_names(target.content)
                if statement.default and not has_default:
                    hint = " (use a named import)" if statement.default in names else ""
                    yield artifact.path, (
                        f"{artifact.path} default-imports {statement.default} from '{statement.source}' "
                        f"but {resolved} has no default export{hint}"
                    )
                if star:
                    continue
                for name in statement.named:
                    exported = has_default if name == "default" else name in names
                    if not exported:
                        yield artifact.path, (
                            f"{artifact.path} imports {{ {name} }} from '{statement.source}' "
                            f"but {resolved} does not export {name}"
                        )


# 约定规则

_CLIENT_USAGE_RE = re.compile(
    r"\buse(?:State|Effect|Reducer|Ref|Context|Callback|Memo|LayoutEffect|Transition|Router|"
    r"SearchParams|Pathname)\s*[(<]|\bon[A-Z]\w*=\{|\b(?:window|document|localStorage|sessionStorage)\."
)
_USE_CLIENT_RE = re.compile(r"^[\"']use client[\"'];?")


class ClientDirectiveRule(ValidationRule):
    """交互组件缺少 "use client" 指令"""
    name = "missing-client-directive"
    severity = Severity.CRITICAL
    penalty = 30

    def applies_to(self, target):
        return target == TargetEnvironment.NEXTJS

    def check(self, context):
        for artifact in context.artifacts:
            if extension_of(artifact.path) not in COMPONENT_EXTENSIONS or "/api/" in f"/{artifact.path}":
                continue
            if not _CLIENT_USAGE_RE.search(strip_comments(artifact.content)):
                continue
            first_statement = strip_comments(artifact.content).lstrip()
            if not _USE_CLIENT_RE.match(first_statement):
                yield artifact.path, (
                    f"{artifact.path} uses hooks, event handlers or browser APIs but does not start "
                    f"with the \"use client\" directive"
                )


class ForbiddenApiRule(ValidationRule):
    """使用了目标环境不可用的 API"""
    name = "forbidden-api"
    severity = Severity.CRITICAL
    penalty = 30

    def check(self, context):
        for artifact in context.artifacts:
            if not is_script(artifact):
                continue
            code = strip_comments(artifact.content)
            if context.target != TargetEnvironment.NEXTJS:
                for module in sorted(set(re.findall(r"from\s+[\"'](next(?:/[\w/-]+)?)[\"']", code))):
                    yield artifact.path, (
                        f"{artifact.path} imports '{module}', which is not available in the "
                        f"{context.target.value} environment"
                    )
            else:
                if re.search(r"from\s+[\"']react-router(?:-dom)?[\"']", code):
                    yield artifact.path, (
                        f"{artifact.path} imports react-router; use the Next.js App Router instead"
                    )
                if posixpath.basename(artifact.path).startswith("page.") and re.search(
                    r"\bcreateContext\s*\(|\w+Provider\s*=|function\s+\w+Provider\b", code
                ):
                    yield artifact.path, (
                        f"{artifact.path} declares a context provider inside a page; "
                        f"move it to a separate component and wrap it in app/layout.tsx"
                    )


# 代码卫生规则

_INCOMPLETE_RE = re.compile(
    r"(?://|/\*|\{/\*|#)\s*(?:\.\.\.|…|rest of|existing code|remaining|todo\b|implement (?:this|here|later)|"
    r"add (?:more|your|the rest))",
    re.IGNORECASE
)


class IncompleteCodeRule(ValidationRule):
    """占位符或未完成代码标记"""
    name = "incomplete-code"
    severity = Severity.WARNING
    penalty = 20

    def check(self, context):
        for artifact in context.artifacts:
            match = _INCOMPLETE_RE.search(artifact.content)
            if match:
                snippet = artifact.content[match.start():match.end()].strip()
                yield artifact.path, (
                    f"{artifact.path} contains an incomplete-code placeholder ({snippet!r}); "
                    f"output the full implementation"
                )


class TooShortRule(ValidationRule):
    """代码文件过短"""
    name = "too-short"
    severity = Severity.WARNING
    penalty = 20
    min_chars = 50

    def check(self, context):
        for artifact in context.artifacts:
            if is_script(artifact) and len(artifact.content.strip()) < self.min_chars:
                yield artifact.path, (
                    f"{artifact.path} is only {len(artifact.content.strip())} characters long "
                    f"and is probably incomplete"
                )


_MAP_JSX_RE = re.compile(
    r"\.map\(\s*(?:\([^)]*\)|[\w$]+)\s*=>\s*\(?\s*<(?P<tag>[A-Za-z][\w.]*)?(?P<attrs>[^>]*)>"
)


class MissingKeyRule(ValidationRule):
    """列表渲染缺少 key 属性"""
    name = "missing-key"
    severity = Severity.WARNING
    penalty = 10

    def check(self, context):
        for artifact in context.artifacts:
            if extension_of(artifact.path) not in COMPONENT_EXTENSIONS:
                continue
            missing = [
                m for m in _MAP_JSX_RE.finditer(artifact.content)
                if "key=" not in (m.group("attrs") or "")
            ]
            if missing:
                yield artifact.path, (
                    f"{artifact.path} renders {len(missing)} list(s) with .map() without a key prop"
                )


class UncheckedNullableRule(ValidationRule):
    """可能为空的值未经检查就访问属性"""
    name = "unchecked-nullable"
    severity = Severity.WARNING
    penalty = 10

    _NULLABLE_STATE_RE = re.compile(
        r"const\s+\[\s*(?P<name>[A-Za-z_$][\w$]*)\s*,\s*\w+\s*\]\s*=\s*(?:React\.)?useState"
        r"(?:<[^>]*\bnull\b[^>]*>)?\(\s*(?:null|undefined)?\s*\)"
    )
    _FIND_DEREF_RE = re.compile(r"\.find\([^()]*(?:\([^()]*\)[^()]*)*\)\.(?!\?)[A-Za-z_$]")

    def check(self, context):
        for artifact in context.artifacts:
            if not is_script(artifact):
                continue
            code = strip_comments(artifact.content)
            for match in self._NULLABLE_STATE_RE.finditer(code):
                name = re.escape(match.group("name"))
                rest = code[match.end():]
                if not re.search(rf"(?<![\w$?]){name}\.[A-Za-z_$]", rest):
                    continue
                guarded = re.search(
                    rf"{name}\s*&&|{name}\s*\?(?!\.)|!\s*{name}\b|{name}\s*[!=]==?\s*(?:null|undefined)",
                    rest
                )
                if not guarded:
                    yield artifact.path, (
                        f"{artifact.path} accesses properties of '{match.group('name')}' which starts "
                        f"as null without a null check"
                    )
            if self._FIND_DEREF_RE.search(code):
                yield artifact.path, (
                    f"{artifact.path} dereferences the result of .find() without checking for undefined"
                )


class DebugLogRule(ValidationRule):
    """残留的调试输出"""
    name = "debug-log"
    severity = Severity.INFO
    penalty = 2

    def check(self, context):
        for artifact in context.artifacts:
            if not is_script(artifact):
                continue
            count = len(re.findall(r"\bconsole\.(?:log|debug)\s*\(", strip_comments(artifact.content)))
            if count:
                yield artifact.path, f"{artifact.path} contains {count} leftover console.log call(s)"


class DebuggerStatementRule(ValidationRule):
    """残留的 debugger 语句"""
    name = "debugger-statement"
    severity = Severity.WARNING
    penalty = 5

    def check(self, context):
        for artifact in context.artifacts:
            if is_script(artifact) and re.search(r"^\s*debugger\s*;?\s*$",
                                                 strip_comments(artifact.content), re.MULTILINE):
                yield artifact.path, f"{artifact.path} contains a debugger statement"


_SECRET_PATTERNS = [
    ("OpenAI-style API key", re.compile(r"\bsk-(?:proj-|ant-)?[A-Za-z0-9_-]{20,}")),
    ("AWS access key", re.compile(r"\bAKIA[0-9A-Z]{16}\b")),
    ("private key", re.compile(r"-----BEGIN (?:RSA |EC |OPENSSH )?PRIVATE KEY-----")),
    ("hard-coded credential", re.compile(
        r"(?i)\b(?:api[_-]?key|secret|password|passwd|access[_-]?token|auth[_-]?token)\b[\"']?\s*[:=]\s*"
        r"[\"'](?!\s*$)(?!your|<|\$\{|process\.env)[^\"'\s]{8,}[\"']"
    )),
]


class EmbeddedSecretRule(ValidationRule):
    """代码中嵌入了密钥"""
    name = "embedded-secret"
    severity = Severity.CRITICAL
    penalty = 40

    def check(self, context):
        for artifact in context.artifacts:
            for label, pattern in _SECRET_PATTERNS:
                if pattern.search(artifact.content):
                    yield artifact.path, (
                        f"{artifact.path} embeds a {label}; read secrets from environment variables"
                    )
                    break


class DynamicEvaluationRule(ValidationRule):
    """动态代码执行"""
    name = "dynamic-evaluation"
    severity = Severity.CRITICAL
    penalty = 30

    def check(self, context):
        for artifact in context.artifacts:
            if not is_script(artifact):
                continue
            code = strip_comments(artifact.content)
            if re.search(r"(?<![\w.])eval\s*\(|\bnew\s+Function\s*\(|\bset(?:Timeout|Interval)\s*\(\s*[\"'`]", code):
                yield artifact.path, f"{artifact.path} evaluates dynamically constructed code"


class UnsafeMarkupRule(ValidationRule):
    """未经处理的 HTML 注入"""
    name = "unsafe-markup"
    severity = Severity.WARNING
    penalty = 15

    def check(self, context):
        for artifact in context.artifacts:
            if not is_script(artifact):
                continue
            code = strip_comments(artifact.content)
            if re.search(r"dangerouslySetInnerHTML|\.innerHTML\s*=|\bdocument\.write\s*\(", code):
                yield artifact.path, (
                    f"{artifact.path} injects raw HTML (dangerouslySetInnerHTML/innerHTML); "
                    f"sanitize or render as text"
                )


class ComponentSprawlRule(ValidationRule):
    """单文件组件过多"""
    name = "component-sprawl"
    severity = Severity.WARNING
    penalty = 15
    max_components = 3

    def check(self, context):
        for artifact in context.artifacts:
            if extension_of(artifact.path) not in COMPONENT_EXTENSIONS:
                continue
            code = strip_comments(artifact.content)
            names = set(re.findall(r"\bfunction\s+([A-Z]\w*)\s*\(", code))
            names.update(re.findall(r"\bconst\s+([A-Z]\w*)\s*(?::\s*[\w.<>]+\s*)?=\s*(?:\([^)]*\)|\w+)\s*=>", code))
            if len(names) > self.max_components:
                yield artifact.path, (
                    f"{artifact.path} defines {len(names)} components; split them into separate files"
                )


DEFAULT_RULES = (
    EmptyBatchRule,
    InstructionsOnlyRule,
    DuplicateDefaultExportRule,
    UnresolvedImportRule,
    ExportImportMismatchRule,
    ClientDirectiveRule,
    ForbiddenApiRule,
    IncompleteCodeRule,
    TooShortRule,
    MissingKeyRule,
    UncheckedNullableRule,
    DebugLogRule,
    DebuggerStatementRule,
    EmbeddedSecretRule,
    DynamicEvaluationRule,
    UnsafeMarkupRule,
    ComponentSprawlRule,
)


class ArtifactValidator:
    """产物校验器"""

    def __init__(
        self,
        target: TargetEnvironment = TargetEnvironment.SANDPACK,
        rules: Optional[List[ValidationRule]] = None,
        penalties: Optional[Dict[str, int]] = None
    ):
        self.target = target
        penalties = penalties or {}
        if rules is None:
            rules = [rule_cls(penalties.get(rule_cls.name)) for rule_cls in DEFAULT_RULES]
        self.rules = rules
        self._check_severity_order()

    def _check_severity_order(self):
        """扣分必须保持 critical > warning > info 的顺序"""
        by_severity: Dict[Severity, List[int]] = {s: [] for s in Severity}
        for rule in self.rules:
            by_severity[rule.severity].append(rule.penalty)
        levels = [by_severity[s] for s in (Severity.INFO, Severity.WARNING, Severity.CRITICAL)]
        for lower, higher in zip(levels, levels[1:]):
            if lower and higher and max(lower) >= min(higher):
                raise ConfigurationError(
                    "Rule penalties must preserve severity ordering (critical > warning > info)",
                    {"penalties": {r.name: r.penalty for r in self.rules}}
                )

    def validate(
        self,
        artifacts: List[ParsedArtifact],
        existing: Optional[List[ParsedArtifact]] = None,
        content: Optional[str] = None
    ) -> ValidationReport:
        """校验产物批次（content 为模型原始输出，供只看文本的规则使用）"""
        context = ValidationContext(artifacts=list(artifacts), existing=list(existing or []),
                                    target=self.target, content=content or "")
        report = ValidationReport()
        total_penalty = 0

        for rule in self.rules:
            if not rule.applies_to(self.target):
                continue
            for path, message in rule.check(context):
                report.issues.append(ValidationIssue(
                    severity=rule.severity,
                    message=message,
                    rule=rule.name,
                    artifact_path=path,
                    penalty=rule.penalty
                ))
                total_penalty += rule.penalty
            for missing in rule.missing_paths(context):
                if missing not in report.missing_paths:
                    report.missing_paths.append(missing)

        report.score = max(0, 100 - total_penalty)
        logger.info(
            f"Validated {len(context.artifacts)} artifact(s): score={report.score}, "
            f"critical={report.critical_count}, issues={len(report.issues)}"
        )
        return report
