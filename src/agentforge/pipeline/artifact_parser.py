"""
代码产物解析器

把生成步骤的自由文本输出转换为 (path, content, language) 产物列表。
解析是纯函数：相同输入总是得到相同输出，不产生副作用。

路径解析优先级：
    1. 代码内的显式路径标记（``// filepath: src/App.tsx``）或围栏信息串中的路径
    2. 代码块前一行强调的文件名（``**App.tsx**`` / ```App.tsx```）
    3. 内容特征推断的约定路径（package.json、tsconfig.json 等）
    4. 按内容类型编号的兜底路径（``generated/file-1.tsx``）
"""
import re
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional, Tuple, Callable, Dict

from ..exceptions import ParseEmptyResult
from ..models.artifacts import ParsedArtifact, StepKind, TargetEnvironment


logger = logging.getLogger(__name__)


EXTENSION_LANGUAGE: Dict[str, str] = {
    "tsx": "tsx",
    "ts": "typescript",
    "jsx": "jsx",
    "js": "javascript",
    "mjs": "javascript",
    "cjs": "javascript",
    "json": "json",
    "css": "css",
    "scss": "scss",
    "html": "html",
    "md": "markdown",
    "py": "python",
    "yaml": "yaml",
    "yml": "yaml",
    "sh": "bash",
    "svg": "svg",
    "sql": "sql",
    "toml": "toml",
}

# 声明语言 -> 扩展名
LANGUAGE_EXTENSION: Dict[str, str] = {
    "tsx": "tsx",
    "typescript": "ts",
    "ts": "ts",
    "jsx": "jsx",
    "javascript": "js",
    "js": "js",
    "json": "json",
    "css": "css",
    "scss": "scss",
    "html": "html",
    "python": "py",
    "py": "py",
    "yaml": "yaml",
    "yml": "yaml",
    "bash": "sh",
    "sh": "sh",
    "shell": "sh",
    "markdown": "md",
    "md": "md",
    "svg": "svg",
    "sql": "sql",
    "toml": "toml",
}

PROSE_LANGUAGES = frozenset({"markdown", "md", "text", "txt", "plaintext"})
HASH_COMMENT_LANGUAGES = frozenset({"python", "py", "bash", "sh", "shell", "yaml", "yml", "toml"})

PATH_TOKEN = r"[\w@.\-/\\\[\]()+]*[\w\]\)]\.[A-Za-z][A-Za-z0-9]{0,9}"

_FENCE_OPEN_RE = re.compile(r"^\s{0,3}(?P<fence>`{3,}|~{3,})\s*(?P<info>[^`]*)$")
_MARKER_RE = re.compile(
    r"^\s*(?://+|#+|/\*+|<!--|\{/\*|--)\s*"
    r"(?P<keyword>(?:file\s*path|file\s*name|filepath|filename|file|path)\s*[:=]?\s*)?"
    r"(?P<path>" + PATH_TOKEN + r")"
    r"\s*(?:\*+/\s*\}?|-->)?\s*$",
    re.IGNORECASE
)
_INFO_PATH_RE = re.compile(
    r"(?:(?:file\s*path|filepath|filename|file|path|title)\s*[:=]\s*)?[\"']?(?P<path>" + PATH_TOKEN + r")[\"']?",
    re.IGNORECASE
)
_EMPHASIS_RES = [
    re.compile(r"\*\*\s*(?:file\s*:?\s*)?`?(?P<path>" + PATH_TOKEN + r")`?\s*:?\s*\*\*", re.IGNORECASE),
    re.compile(r"__(?P<path>" + PATH_TOKEN + r")__"),
    re.compile(r"`(?P<path>" + PATH_TOKEN + r")`"),
    re.compile(r"^#{1,6}\s+(?:\d+\.\s*)?(?:file\s*:\s*)?(?P<path>" + PATH_TOKEN + r")\s*:?\s*$", re.IGNORECASE),
    re.compile(r"^(?:file|filename|path)\s*:\s*(?P<path>" + PATH_TOKEN + r")\s*$", re.IGNORECASE),
]
_HEADING_RE = re.compile(r"^\s{0,3}#{1,6}\s+\S", re.MULTILINE)
_STRUCTURAL_RE = re.compile(
    r"[{}();=<>\[\]]|^\s*(?:import|export|from|def|class|function|const|let|var|return|@\w+)\b",
    re.MULTILINE
)
_CODE_MARKER_RE = re.compile(
    r"```|^\s*(?:import|export)\s|\bfunction\s+\w+\s*\(|\bconst\s+\w+\s*=|=>|<div\b|filepath\s*:",
    re.MULTILINE | re.IGNORECASE
)
_UNIT_START_RE = re.compile(r"^\s*(?:import\s|export\s|[\"']use client[\"'])", re.MULTILINE)


@dataclass
class FencedRegion:
    """围栏代码区域"""
    language: str
    body: str
    info_path: Optional[str] = None
    preceding_line: str = ""
    terminated: bool = True


@dataclass
class _PathAllocator:
    """单次解析内的路径分配（推断路径不覆盖已占用的路径）"""
    taken: List[str] = field(default_factory=list)
    fallback_count: int = 0

    def next_fallback(self, extension: str) -> str:
        while True:
            self.fallback_count += 1
            path = f"generated/file-{self.fallback_count}.{extension}"
            if path not in self.taken:
                return path


def normalize_path(raw: str) -> Optional[str]:
    """规范化路径：统一分隔符，去除引号、强调符号和前导斜杠；拒绝越界路径"""
    path = raw.strip().strip("`*\"'").strip()
    path = path.replace("\\", "/")
    path = re.sub(r"/{2,}", "/", path)
    while path.startswith("./"):
        path = path[2:]
    path = path.lstrip("/")
    path = path.rstrip(":,;")
    if not path or any(part == ".." for part in path.split("/")):
        return None
    if not re.fullmatch(PATH_TOKEN, path):
        return None
    return path


def extension_of(path: str) -> str:
    name = path.rsplit("/", 1)[-1]
    return name.rsplit(".", 1)[-1].lower() if "." in name else ""


def language_for(path: str, declared: str = "") -> str:
    """按扩展名确定语言，未知扩展名时使用声明语言"""
    return EXTENSION_LANGUAGE.get(extension_of(path), declared or "text")


def sniff_extension(content: str, declared: str = "") -> str:
    """根据声明语言或内容推断扩展名"""
    declared = declared.lower()
    if declared in LANGUAGE_EXTENSION:
        return LANGUAGE_EXTENSION[declared]
    stripped = content.lstrip()
    if stripped.startswith(("{", "[")) and '":' in stripped:
        return "json"
    if stripped.lower().startswith(("<!doctype", "<html")):
        return "html"
    if re.search(r"<[A-Z]\w*|<div\b|className=", content):
        return "tsx"
    if re.search(r"^\s*(?:import|export)\s", content, re.MULTILINE):
        return "ts"
    if re.search(r"^[.#]?[\w-]+\s*\{[^}]*:[^}]*\}", content, re.MULTILINE):
        return "css"
    return "txt"


def _pascal_to_kebab(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "-", name).lower()


class ArtifactParser(ABC):
    """产物解析接口（可替换为结构化输出契约）"""

    @abstractmethod
    def parse(self, text: str) -> List[ParsedArtifact]:
        """解析文本为产物列表"""
        pass

    def looks_like_code(self, text: str) -> bool:
        """文本是否包含代码特征"""
        return bool(_CODE_MARKER_RE.search(text or ""))

    def parse_strict(self, text: str, step_kind: StepKind = StepKind.CODER) -> List[ParsedArtifact]:
        """解析文本，未得到任何产物时抛出 ParseEmptyResult"""
        artifacts = self.parse(text)
        if not artifacts:
            raise ParseEmptyResult(step_kind.value, len(text or ""))
        return artifacts


class CodeArtifactParser(ArtifactParser):
    """基于围栏代码块与启发式规则的产物解析器"""

    def __init__(self, target: TargetEnvironment = TargetEnvironment.SANDPACK):
        self.target = target
        self._signature_rules = self._build_signature_rules()

    def parse(self, text: str) -> List[ParsedArtifact]:
        text = (text or "").replace("\r\n", "\n").replace("\r", "\n")
        regions = self.scan_fences(text)

        if regions:
            artifacts = self._from_regions(regions)
        else:
            artifacts = self._from_unfenced(text)

        logger.debug(f"Parsed {len(artifacts)} artifact(s) from {len(text)} chars")
        return artifacts

    # 围栏扫描

    def scan_fences(self, text: str) -> List[FencedRegion]:
        """按行扫描围栏代码区域；末尾未闭合的围栏同样接受"""
        regions: List[FencedRegion] = []
        lines = text.split("\n")
        preceding: List[str] = []
        i = 0
        while i < len(lines):
            match = _FENCE_OPEN_RE.match(lines[i])
            if not match:
                preceding.append(lines[i])
                i += 1
                continue

            fence = match.group("fence")
            language, info_path = self._parse_info(match.group("info"))
            body: List[str] = []
            terminated = False
            i += 1
            while i < len(lines):
                stripped = lines[i].strip()
                if stripped.startswith(fence[0] * len(fence)) and stripped.strip(fence[0]) == "":
                    terminated = True
                    i += 1
                    break
                body.append(lines[i])
                i += 1

            regions.append(FencedRegion(
                language=language,
                body="\n".join(body),
                info_path=info_path,
                preceding_line=self._last_nonblank(preceding),
                terminated=terminated
            ))
            preceding = []
        return regions

    @staticmethod
    def _parse_info(info: str) -> Tuple[str, Optional[str]]:
        """解析围栏信息串，返回 (语言, 路径)"""
        tokens = info.strip().split()
        if not tokens:
            return "", None

        language = ""
        first = tokens[0]
        if re.fullmatch(r"[A-Za-z][\w+#-]*", first) and "." not in first:
            language = first.lower()
            rest = tokens[1:]
        else:
            rest = tokens

        for token in rest:
            match = _INFO_PATH_RE.fullmatch(token)
            if match:
                path = normalize_path(match.group("path"))
                if path:
                    return language or EXTENSION_LANGUAGE.get(extension_of(path), ""), path
        return language, None

    @staticmethod
    def _last_nonblank(lines: List[str]) -> str:
        for line in reversed(lines):
            if line.strip():
                return line.strip()
        return ""

    # 路径解析

    def _from_regions(self, regions: List[FencedRegion]) -> List[ParsedArtifact]:
        allocator = _PathAllocator()
        results: Dict[str, ParsedArtifact] = {}
        order: List[str] = []

        for region in regions:
            content, marker_path = self.extract_marker(region.body)
            explicit = marker_path or region.info_path or self._emphasized_path(region.preceding_line)
            content = content.strip("\n")

            if not content.strip():
                continue
            if not region.terminated:
                logger.debug(f"Accepting unterminated code fence ({len(content)} chars)")
            if self.is_prose(content, region.language, explicit):
                logger.debug(f"Rejected prose block (language={region.language or 'none'})")
                continue

            if explicit:
                path = explicit
            else:
                path = self.infer_path(content, region.language)
                if path is None or path in allocator.taken:
                    path = allocator.next_fallback(sniff_extension(content, region.language))

            artifact = ParsedArtifact(
                path=path,
                content=content.rstrip() + "\n",
                language=language_for(path, region.language)
            )
            if path not in results:
                order.append(path)
                allocator.taken.append(path)
            results[path] = artifact

        return [results[p] for p in order]

    @staticmethod
    def extract_marker(body: str) -> Tuple[str, Optional[str]]:
        """在前几行非空行中寻找显式路径标记，返回 (去掉标记行后的内容, 路径)"""
        lines = body.split("\n")
        checked = 0
        for index, line in enumerate(lines):
            if not line.strip():
                continue
            if checked >= 3:
                break
            checked += 1
            if re.match(r"^\s*[\"']use (client|server)[\"']", line):
                continue
            match = _MARKER_RE.match(line)
            if not match:
                continue
            path = normalize_path(match.group("path"))
            if not path:
                continue
            if not match.group("keyword") and "/" not in path and extension_of(path) not in EXTENSION_LANGUAGE:
                continue
            remaining = lines[:index] + lines[index + 1:]
            return "\n".join(remaining), path
        return body, None

    @staticmethod
    def _emphasized_path(line: str) -> Optional[str]:
        if not line or len(line) > 160:
            return None
        for pattern in _EMPHASIS_RES:
            matches = list(pattern.finditer(line))
            if matches:
                path = normalize_path(matches[-1].group("path"))
                if path:
                    return path
        return None

    def infer_path(self, content: str, language: str = "") -> Optional[str]:
        """按内容特征推断约定路径"""
        for predicate, resolver in self._signature_rules:
            if predicate(content, language.lower()):
                path = resolver(content, language.lower())
                if path:
                    return path
        return None

    # 内容特征规则

    def _source_root(self) -> str:
        return "src/" if self.target == TargetEnvironment.WEBCONTAINER else ""

    def _component_ext(self, language: str) -> str:
        return "jsx" if language in ("jsx", "javascript", "js") else "tsx"

    def _build_signature_rules(self) -> List[Tuple[Callable[[str, str], bool], Callable[[str, str], Optional[str]]]]:
        root = self._source_root()
        nextjs = self.target == TargetEnvironment.NEXTJS

        def is_json(content: str, language: str) -> bool:
            return language == "json" or content.lstrip().startswith("{")

        def styles_path(content: str, language: str) -> str:
            if nextjs:
                return "app/globals.css"
            return "src/index.css" if root else "styles.css"

        def app_path(content: str, language: str) -> str:
            if nextjs:
                return "app/page.tsx"
            return f"{root}App.{self._component_ext(language)}"

        def component_path(content: str, language: str) -> Optional[str]:
            match = re.search(
                r"export\s+(?:default\s+)?(?:function|const|class)\s+([A-Z]\w*)", content
            )
            if not match:
                return None
            name = match.group(1)
            if nextjs and name.endswith("Page") and len(name) > len("Page"):
                return f"app/{_pascal_to_kebab(name[:-len('Page')])}/page.tsx"
            return f"{root}components/{name}.{self._component_ext(language)}"

        def hook_path(content: str, language: str) -> Optional[str]:
            match = re.search(r"export\s+(?:default\s+)?(?:function|const)\s+(use[A-Z]\w*)", content)
            if not match:
                return None
            ext = "tsx" if re.search(r"<[A-Za-z]", content) else "ts"
            if language in ("javascript", "js", "jsx"):
                ext = "js"
            return f"{root}hooks/{match.group(1)}.{ext}"

        def context_path(content: str, language: str) -> Optional[str]:
            match = re.search(r"(?:const|let)\s+(\w+Context)\s*=\s*(?:React\.)?createContext", content)
            if not match:
                return None
            return f"{root}context/{match.group(1)}.{self._component_ext(language)}"

        return [
            (lambda c, l: is_json(c, l) and '"compilerOptions"' in c,
             lambda c, l: "tsconfig.json"),
            (lambda c, l: is_json(c, l) and ('"dependencies"' in c or '"devDependencies"' in c
                                             or ('"name"' in c and '"version"' in c)),
             lambda c, l: "package.json"),
            (lambda c, l: "module.exports" in c and "content:" in c,
             lambda c, l: "tailwind.config.js"),
            (lambda c, l: "const nextConfig" in c or "NextConfig" in c,
             lambda c, l: "next.config.js"),
            (lambda c, l: "defineConfig(" in c and "plugins" in c,
             lambda c, l: "vite.config.ts"),
            (lambda c, l: "@tailwind" in c or (l in ("css", "scss") and "@import" in c),
             styles_path),
            (lambda c, l: c.lstrip().lower().startswith(("<!doctype html", "<html")),
             lambda c, l: "index.html"),
            (lambda c, l: nextjs and re.search(r"export\s+default\s+function\s+(?:RootLayout|Layout)\b", c) is not None,
             lambda c, l: "app/layout.tsx"),
            (lambda c, l: re.search(r"export\s+default\s+function\s+App\b", c) is not None,
             app_path),
            (lambda c, l: nextjs and re.search(r"export\s+default\s+function\s+(?:Home|Page)\b", c) is not None,
             lambda c, l: "app/page.tsx"),
            (lambda c, l: "createContext" in c,
             context_path),
            (lambda c, l: re.search(r"export\s+(?:default\s+)?(?:function|const)\s+use[A-Z]", c) is not None,
             hook_path),
            (lambda c, l: re.search(r"export\s+(?:default\s+)?(?:function|const|class)\s+[A-Z]", c) is not None,
             component_path),
        ]

    # 文本与代码判定

    @staticmethod
    def is_prose(content: str, language: str, explicit_path: Optional[str] = None) -> bool:
        """判断候选内容是否为说明文字而非代码"""
        language = (language or "").lower()
        if explicit_path and extension_of(explicit_path) in ("md", "txt"):
            return False
        if language in PROSE_LANGUAGES and not explicit_path:
            return True
        if language not in HASH_COMMENT_LANGUAGES and _HEADING_RE.search(content):
            return True
        return not _STRUCTURAL_RE.search(content)

    # 无围栏兜底

    def _from_unfenced(self, text: str) -> List[ParsedArtifact]:
        artifacts = self._split_marker_segments(text)
        if artifacts:
            return artifacts

        match = _UNIT_START_RE.search(text)
        if not match:
            return []
        unit = trim_to_balanced(text[match.start():]).strip()
        if len(unit) <= 50 or self.is_prose(unit, ""):
            return []

        language = sniff_extension(unit)
        path = self.infer_path(unit, language)
        if path is None:
            path = "app/page.tsx" if self.target == TargetEnvironment.NEXTJS else f"{self._source_root()}App.tsx"
        return [ParsedArtifact(path=path, content=unit + "\n", language=language_for(path, language))]

    def _split_marker_segments(self, text: str) -> List[ParsedArtifact]:
        """按 ``// filepath:`` 标记切分无围栏文本"""
        segments: List[Tuple[str, List[str]]] = []
        for line in text.split("\n"):
            match = _MARKER_RE.match(line)
            if match and match.group("keyword"):
                path = normalize_path(match.group("path"))
                if path:
                    segments.append((path, []))
                    continue
            if segments:
                segments[-1][1].append(line)

        results: Dict[str, ParsedArtifact] = {}
        for path, body_lines in segments:
            content = "\n".join(body_lines).strip("\n")
            if len(content.strip()) <= 20 or self.is_prose(content, "", path):
                continue
            results[path] = ParsedArtifact(
                path=path,
                content=content.rstrip() + "\n",
                language=language_for(path)
            )
        return list(results.values())


_STRING_OPENERS = "=(,:[{?+!&|;"


def trim_to_balanced(code: str) -> str:
    """截断到最后一个使花括号深度回到零的右花括号"""
    depth = 0
    last_close = -1
    in_string: Optional[str] = None
    previous = ""
    i = 0
    length = len(code)
    while i < length:
        ch = code[i]
        if in_string:
            if ch == "\\":
                i += 2
                continue
            if ch == in_string or (ch == "\n" and in_string != "`"):
                in_string = None
        elif code.startswith("//", i):
            newline = code.find("\n", i)
            i = length if newline == -1 else newline
            continue
        elif code.startswith("/*", i):
            end = code.find("*/", i + 2)
            i = length if end == -1 else end + 2
            continue
        elif ch == "`" or (ch in "'\"" and (previous == "" or previous in _STRING_OPENERS)):
            in_string = ch
        elif ch == "{":
            depth += 1
        elif ch == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                last_close = i
        if not ch.isspace():
            previous = ch
        i += 1
    return code[:last_close + 1] if last_close >= 0 else code
