"""
上下文窗口优先级选择
"""
import re
import logging
import posixpath
from dataclasses import dataclass, field
from typing import List

from ..models.artifacts import ParsedArtifact


logger = logging.getLogger(__name__)


TRUNCATION_MARKER = "\n/* ... truncated {omitted} chars ... */"

# 优先级权重
PRIORITY_REQUESTED = 100
PRIORITY_ENTRY = 80
PRIORITY_SHARED_STATE = 60
PRIORITY_NORMAL = 40
PRIORITY_CONFIG = 20
LARGE_FILE_PENALTY = 25

ENTRY_FILES = frozenset({
    "App.tsx", "App.jsx", "App.ts", "App.js",
    "main.tsx", "main.jsx", "main.ts", "main.js",
    "index.tsx", "index.jsx", "index.html",
    "layout.tsx", "layout.jsx", "page.tsx", "page.jsx",
    "_app.tsx", "_app.jsx",
})
_SHARED_STATE_RE = re.compile(r"(?:context|store|provider|state|slice|reducer)|^use[A-Z]", re.IGNORECASE)
_CONFIG_RE = re.compile(
    r"^(?:package(?:-lock)?\.json|tsconfig[\w.]*\.json|\.eslintrc.*|\.prettierrc.*|.*\.config\.[cm]?[jt]s|"
    r".*\.(?:json|lock|ya?ml|toml|env))$"
)


@dataclass
class SelectedArtifact:
    """被选入上下文的产物"""
    path: str
    content: str
    language: str
    priority: int
    truncated: bool = False


@dataclass
class ContextSelection:
    """上下文选择结果"""
    selected: List[SelectedArtifact] = field(default_factory=list)
    total_chars: int = 0
    dropped: List[str] = field(default_factory=list)

    def render(self) -> str:
        """渲染为提示词片段：每个文件一个标题加代码块，被丢弃的文件只列出名称"""
        parts = []
        for item in self.selected:
            parts.append(f"### {item.path}\n```{item.language}\n{item.content}\n```")
        if self.dropped:
            parts.append("Other existing files (content omitted): " + ", ".join(self.dropped))
        return "\n\n".join(parts)


class ContextPrioritizer:
    """按优先级贪心选择已有产物，使总字符数不超过预算"""

    def __init__(self, large_file_chars: int = 20000, min_truncated_chars: int = 200):
        self.large_file_chars = large_file_chars
        self.min_truncated_chars = min_truncated_chars

    def priority(self, artifact: ParsedArtifact, request_text: str) -> int:
        """计算产物优先级"""
        name = posixpath.basename(artifact.path)
        request = (request_text or "").lower()

        if artifact.path.lower() in request or (len(name) > 3 and name.lower() in request):
            score = PRIORITY_REQUESTED
        elif name in ENTRY_FILES:
            score = PRIORITY_ENTRY
        elif _CONFIG_RE.match(name):
            score = PRIORITY_CONFIG
        elif _SHARED_STATE_RE.search(posixpath.splitext(name)[0]) or "/context/" in f"/{artifact.path}" \
                or "/store/" in f"/{artifact.path}":
            score = PRIORITY_SHARED_STATE
        else:
            score = PRIORITY_NORMAL

        if len(artifact.content) > self.large_file_chars:
            score -= LARGE_FILE_PENALTY
        return score

    def select(self, artifacts: List[ParsedArtifact], request_text: str, max_chars: int) -> ContextSelection:
        """
        选择上下文

        Args:
            artifacts: 已有产物
            request_text: 当前请求文本（被点名的文件优先级最高）
            max_chars: 选中内容的字符上限

        Returns:
            ContextSelection: 选中内容总长不超过 max_chars；
            未被完整选中的产物要么以截断标记出现在 selected 中，要么出现在 dropped 中
        """
        selection = ContextSelection()
        ranked = sorted(
            ((self.priority(a, request_text), a) for a in artifacts),
            key=lambda item: (-item[0], item[1].path)
        )

        remaining = max(0, max_chars)
        budget_exhausted = False
        for score, artifact in ranked:
            if budget_exhausted:
                selection.dropped.append(artifact.path)
                continue

            size = len(artifact.content)
            if size <= remaining:
                selection.selected.append(SelectedArtifact(
                    path=artifact.path, content=artifact.content,
                    language=artifact.language, priority=score
                ))
                remaining -= size
                continue

            truncated = self._truncate(artifact.content, remaining)
            if truncated is None:
                selection.dropped.append(artifact.path)
                continue

            selection.selected.append(SelectedArtifact(
                path=artifact.path, content=truncated,
                language=artifact.language, priority=score, truncated=True
            ))
            remaining -= len(truncated)
            budget_exhausted = True

        selection.total_chars = sum(len(item.content) for item in selection.selected)
        if selection.dropped:
            logger.debug(
                f"Context budget {max_chars} chars: selected {len(selection.selected)}, "
                f"dropped {len(selection.dropped)}"
            )
        return selection

    def _truncate(self, content: str, budget: int):
        """截断到预算内（含截断标记），预算过小时返回 None"""
        if budget < self.min_truncated_chars:
            return None
        # 标记长度依赖省略的字符数，按最长可能值预留
        marker_room = len(TRUNCATION_MARKER.format(omitted=len(content)))
        keep = budget - marker_room
        if keep <= 0:
            return None
        cut = content.rfind("\n", 0, keep)
        if cut <= keep // 2:
            cut = keep
        head = content[:cut]
        return head + TRUNCATION_MARKER.format(omitted=len(content) - len(head))
