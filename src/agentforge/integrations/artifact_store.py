"""
产物存储

外部项目存储的接入契约：按路径接受或替换，不要求事务。
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Iterable, Optional

from ..models.artifacts import ParsedArtifact


logger = logging.getLogger(__name__)


@dataclass
class MergeSummary:
    """合并结果"""
    created: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.created or self.updated)


class ArtifactStore(ABC):
    """产物存储接口"""

    @abstractmethod
    def get(self, path: str) -> Optional[ParsedArtifact]:
        """按路径获取产物"""
        pass

    @abstractmethod
    def put(self, artifact: ParsedArtifact):
        """写入产物（同路径覆盖）"""
        pass

    @abstractmethod
    def list(self) -> List[ParsedArtifact]:
        """列出全部产物"""
        pass

    def paths(self) -> List[str]:
        return [a.path for a in self.list()]

    def merge(self, artifacts: Iterable[ParsedArtifact]) -> MergeSummary:
        """幂等合并：内容未变的路径不做任何写入，后写入者覆盖同路径"""
        summary = MergeSummary()
        for artifact in artifacts:
            existing = self.get(artifact.path)
            if existing is None:
                self.put(artifact)
                summary.created.append(artifact.path)
            elif existing.content == artifact.content and existing.language == artifact.language:
                summary.unchanged.append(artifact.path)
            else:
                self.put(artifact)
                summary.updated.append(artifact.path)

        if summary.changed:
            logger.info(
                f"Merged artifacts: {len(summary.created)} created, "
                f"{len(summary.updated)} updated, {len(summary.unchanged)} unchanged"
            )
        return summary


class InMemoryArtifactStore(ArtifactStore):
    """内存产物存储"""

    def __init__(self, artifacts: Optional[Iterable[ParsedArtifact]] = None):
        self._artifacts: Dict[str, ParsedArtifact] = {}
        for artifact in artifacts or []:
            self._artifacts[artifact.path] = artifact

    def get(self, path: str) -> Optional[ParsedArtifact]:
        return self._artifacts.get(path)

    def put(self, artifact: ParsedArtifact):
        self._artifacts[artifact.path] = artifact

    def list(self) -> List[ParsedArtifact]:
        return [self._artifacts[p] for p in sorted(self._artifacts)]
