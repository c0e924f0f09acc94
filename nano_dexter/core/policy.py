"""
策略引擎 - 沙箱的核心

所有路径、命令与资源限额的判定都在这里完成。判定是纯函数：
返回 ValidationResult，从不抛出异常，调用方根据 allowed 分支。
"""
import json
import logging
import os
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional, Pattern, Sequence, Tuple, Union

from pydantic import BaseModel, ConfigDict, PositiveFloat, PositiveInt, ValidationError
from pydantic.alias_generators import to_camel

from .errors import ConfigError, PolicyViolation

logger = logging.getLogger(__name__)

REDACTION_MARKER = "[REDACTED]"

Operation = Literal["read", "write", "create", "delete"]


# ============================================
# 策略文档
# ============================================

class _PolicyModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )


class ShellCommandPolicy(_PolicyModel):
    """Shell命令白名单/黑名单"""
    allowed: Tuple[str, ...] = ()
    blocked: Tuple[str, ...] = ()
    require_confirmation: Tuple[str, ...] = ()


class PolicyLimits(_PolicyModel):
    """单次Run的资源限额"""
    max_steps_per_run: PositiveInt = 100
    max_files_per_run: PositiveInt = 50
    max_diff_lines_per_run: PositiveInt = 5000
    max_runtime_minutes: PositiveFloat = 30


class Policy(_PolicyModel):
    """
    策略文档（policy.json）

    一次Run内只读：加载一次，之后不再修改。
    """
    allowed_paths: Tuple[str, ...] = ()
    allowed_operations: Tuple[Operation, ...] = ("read", "write", "create", "delete")
    blocked_paths: Tuple[str, ...] = ()
    blocked_patterns: Tuple[str, ...] = ()
    max_file_size: PositiveInt = 10 * 1024 * 1024
    shell_commands: ShellCommandPolicy = ShellCommandPolicy()
    require_confirmation: Tuple[str, ...] = ()
    limits: PolicyLimits = PolicyLimits()

    @classmethod
    def load(cls, path: Union[str, Path]) -> "Policy":
        """从JSON文件加载策略；文件不存在时返回默认策略"""
        path = Path(path)
        if not path.exists():
            logger.info("No policy file at %s, using default policy", path)
            return create_default_policy()
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return cls.model_validate(data)
        except (json.JSONDecodeError, ValidationError) as e:
            raise ConfigError(f"Invalid policy file {path}: {e}") from e

    def save(self, path: Union[str, Path]) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.model_dump_json(by_alias=True, indent=2), encoding="utf-8")


def create_default_policy() -> Policy:
    """默认策略"""
    return Policy(
        allowed_paths=(
            "src/**", "tests/**", "README.md", "pyproject.toml", "setup.py",
            "package.json", ".nano_dexter/**",
        ),
        blocked_paths=(".env", ".env.*", "node_modules/**", ".git/**", "dist/**", "build/**"),
        blocked_patterns=(
            "*.pem", "*.key", "*.cert", "*secret*", "*password*",
            "*credential*", "*token*", "id_rsa*",
        ),
        allowed_operations=("read", "write", "create", "delete"),
        max_file_size=10 * 1024 * 1024,
        require_confirmation=("delete", "overwrite_large_file"),
        shell_commands=ShellCommandPolicy(
            allowed=("python", "python3", "pytest", "pip", "npm", "npx", "node", "git", "echo", "cat", "ls"),
            blocked=("rm -rf /", "sudo", "format", "del /f /s /q", "mkfs"),
        ),
        limits=PolicyLimits(
            max_steps_per_run=100,
            max_files_per_run=50,
            max_diff_lines_per_run=5000,
            max_runtime_minutes=30,
        ),
    )


# ============================================
# 判定结果
# ============================================

class ViolationKind(str, Enum):
    """拒绝原因分类"""
    PATH_TRAVERSAL = "path_traversal"
    INVALID_PATH = "invalid_path"
    BLOCKED = "blocked"
    OPERATION_NOT_ALLOWED = "operation_not_allowed"
    NOT_IN_ALLOWED_PATHS = "not_in_allowed_paths"
    SIZE_EXCEEDED = "size_exceeded"
    COMMAND_METACHARACTER = "command_metacharacter"
    COMMAND_BLOCKED = "command_blocked"
    COMMAND_NOT_ALLOWED = "command_not_allowed"
    LIMIT_EXCEEDED = "limit_exceeded"


@dataclass(frozen=True)
class ValidationResult:
    """策略判定结果"""
    allowed: bool
    reason: Optional[str] = None
    kind: Optional[ViolationKind] = None

    @classmethod
    def ok(cls) -> "ValidationResult":
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: str, kind: ViolationKind) -> "ValidationResult":
        return cls(allowed=False, reason=reason, kind=kind)


@dataclass(frozen=True)
class DiffStats:
    """单次写入/补丁的变更统计"""
    files_changed: int = 0
    lines_added: int = 0
    lines_removed: int = 0


@dataclass(frozen=True)
class RuntimeStats:
    """每一步重新计算的运行统计"""
    start_time: float
    steps_executed: int = 0
    files_touched: Sequence[str] = field(default_factory=tuple)


# ============================================
# Glob 匹配
# ============================================

_WILDCARD_CHARS = set("*?[")


@lru_cache(maxsize=512)
def glob_to_regex(pattern: str) -> Pattern:
    """
    把glob转换成正则

    * 不跨越 /，** 匹配任意深度（含零层），? 匹配单个非 / 字符。
    以 . 开头的文件名与普通文件名同等对待。
    """
    i, n = 0, len(pattern)
    out = []
    while i < n:
        c = pattern[i]
        if c == "*":
            if pattern.startswith("**", i):
                i += 2
                if i < n and pattern[i] == "/":
                    i += 1
                    out.append("(?:.*/)?")
                else:
                    out.append(".*")
                continue
            out.append("[^/]*")
        elif c == "?":
            out.append("[^/]")
        elif c == "[":
            end = pattern.find("]", i + 1)
            if end == -1:
                out.append(re.escape(c))
            else:
                body = pattern[i + 1:end]
                if body.startswith("!"):
                    body = "^" + body[1:]
                bracket = "[" + body.replace("\\", "\\\\") + "]"
                try:
                    re.compile(bracket)
                except re.error:
                    # 非法字符类（如 [z-a]）按字面量匹配
                    bracket = re.escape(pattern[i:end + 1])
                out.append(bracket)
                i = end + 1
                continue
        else:
            out.append(re.escape(c))
        i += 1
    return re.compile("^" + "".join(out) + "$")


def match_glob(path: str, pattern: str) -> bool:
    return glob_to_regex(pattern).match(path) is not None


def _literal_prefix(pattern: str) -> Tuple[str, ...]:
    """glob中第一个通配段之前的目录段"""
    prefix = []
    for part in pattern.split("/"):
        if _WILDCARD_CHARS & set(part):
            break
        prefix.append(part)
    return tuple(prefix)


# ============================================
# 密钥脱敏
# ============================================

_SECRET_PATTERNS = [
    re.compile(r"""password\s*[:=]\s*['"]?[^'"\s]+['"]?""", re.IGNORECASE),
    re.compile(r"""api[_-]?key\s*[:=]\s*['"]?[^'"\s]+['"]?""", re.IGNORECASE),
    re.compile(r"""secret\s*[:=]\s*['"]?[^'"\s]+['"]?""", re.IGNORECASE),
    re.compile(r"""token\s*[:=]\s*['"]?[^'"\s]+['"]?""", re.IGNORECASE),
    re.compile(r"bearer\s+[a-zA-Z0-9._-]+", re.IGNORECASE),
    re.compile(r"-----BEGIN [A-Z ]+ KEY-----[\s\S]*?-----END [A-Z ]+ KEY-----"),
]


def redact_secrets(text: str) -> str:
    """把口令、API key、token、PEM私钥替换为脱敏标记"""
    for pattern in _SECRET_PATTERNS:
        text = pattern.sub(REDACTION_MARKER, text)
    return text



def safe_path_component(value: str, label: str = "id") -> str:
    """任务/Run id 会拼进状态目录路径，只允许单个路径段"""
    if not value or value in (".", "..") or any(sep in value for sep in ("/", "\\", "\x00")):
        raise PolicyViolation(f"Invalid {label}: {value!r}", ViolationKind.PATH_TRAVERSAL)
    return value


# (子串, 描述)，按顺序检查，先于白名单/黑名单
_SHELL_METACHARACTERS = [
    ("`", "backtick command substitution (`...`)"),
    ("$(", "command substitution $(...)"),
    ("${", "parameter expansion ${...}"),
    ("\n", "newline command separator"),
    ("\r", "newline command separator"),
    (";", "semicolon command separator ';'"),
    ("|", "pipe '|'"),
    ("&", "background/chaining operator '&'"),
    (">", "output redirection '>'"),
    ("<", "input redirection '<'"),
]


class PolicyEngine:
    """策略引擎"""

    def __init__(self, project_root: Union[str, Path], policy: Policy):
        self.project_root = os.path.realpath(str(project_root))
        self.policy = policy

    # ============================================
    # 路径校验
    # ============================================

    def _normalize_path(self, input_path: str) -> Optional[str]:
        """解析为项目内的相对路径（/ 分隔，根目录为空串）；逃出根目录时返回None"""
        if "\x00" in input_path:
            raise ValueError("embedded null byte")
        candidate = input_path if os.path.isabs(input_path) else os.path.join(self.project_root, input_path)
        resolved = os.path.realpath(candidate)
        root_prefix = self.project_root.rstrip(os.sep) + os.sep
        if resolved != self.project_root and not resolved.startswith(root_prefix):
            return None
        relative = os.path.relpath(resolved, self.project_root)
        if relative == ".":
            return ""
        return relative.replace(os.sep, "/")

    @staticmethod
    def _matches_pattern(relative_path: str, patterns: Sequence[str]) -> bool:
        """路径或它的任一祖先目录命中某个glob"""
        parts = relative_path.split("/")
        for pattern in patterns:
            for i in range(1, len(parts) + 1):
                if match_glob("/".join(parts[:i]), pattern):
                    return True
        return False

    def _matches_blocked_pattern(self, relative_path: str) -> bool:
        file_name = relative_path.rsplit("/", 1)[-1]
        for pattern in self.policy.blocked_patterns:
            if match_glob(file_name, pattern) or match_glob(relative_path, pattern):
                return True
        return False

    def _could_contain_allowed(self, relative_dir: str) -> bool:
        """目录下是否可能存在命中白名单的文件"""
        if not relative_dir:
            return True
        dir_parts = tuple(relative_dir.split("/"))
        for pattern in self.policy.allowed_paths:
            prefix = _literal_prefix(pattern)
            k = min(len(prefix), len(dir_parts))
            if prefix[:k] == dir_parts[:k]:
                return True
        return False

    def validate_path(self, input_path: str) -> ValidationResult:
        """任何操作前的基础路径校验"""
        try:
            relative_path = self._normalize_path(input_path)
        except ValueError as e:
            # 例如路径中含 NUL 字节
            return ValidationResult.deny(f"Invalid path {input_path!r}: {e}", ViolationKind.INVALID_PATH)
        if relative_path is None:
            return ValidationResult.deny(
                f'Path traversal detected: "{input_path}" escapes project root',
                ViolationKind.PATH_TRAVERSAL,
            )

        # 密钥类文件优先级最高
        if relative_path and self._matches_blocked_pattern(relative_path):
            return ValidationResult.deny(
                f'Path matches blocked pattern: "{relative_path}"',
                ViolationKind.BLOCKED,
            )

        if relative_path and self._matches_pattern(relative_path, self.policy.blocked_paths):
            return ValidationResult.deny(
                f'Path is blocked by policy: "{relative_path}"',
                ViolationKind.BLOCKED,
            )

        return ValidationResult.ok()

    def validate_read(self, input_path: str, is_directory: bool = False) -> ValidationResult:
        """读操作校验；is_directory 用于目录遍历时的下探判定"""
        base = self.validate_path(input_path)
        if not base.allowed:
            return base

        if "read" not in self.policy.allowed_operations:
            return ValidationResult.deny(
                "Read operations are not allowed by policy",
                ViolationKind.OPERATION_NOT_ALLOWED,
            )

        relative_path = self._normalize_path(input_path)
        if self.policy.allowed_paths:
            if is_directory:
                permitted = self._could_contain_allowed(relative_path)
            else:
                permitted = self._matches_pattern(relative_path, self.policy.allowed_paths)
            if not permitted:
                return ValidationResult.deny(
                    f'Path not in allowed paths: "{relative_path}"',
                    ViolationKind.NOT_IN_ALLOWED_PATHS,
                )

        return ValidationResult.ok()

    def validate_write(self, input_path: str, size: Optional[int] = None) -> ValidationResult:
        """写操作校验，size 为 UTF-8 字节数"""
        base = self.validate_path(input_path)
        if not base.allowed:
            return base

        if "write" not in self.policy.allowed_operations:
            return ValidationResult.deny(
                "Write operations are not allowed by policy",
                ViolationKind.OPERATION_NOT_ALLOWED,
            )

        relative_path = self._normalize_path(input_path)
        if self.policy.allowed_paths and not self._matches_pattern(relative_path, self.policy.allowed_paths):
            return ValidationResult.deny(
                f'Path not in allowed paths for write: "{relative_path}"',
                ViolationKind.NOT_IN_ALLOWED_PATHS,
            )

        if size is not None and size > self.policy.max_file_size:
            return ValidationResult.deny(
                f"File size ({size} bytes) exceeds limit ({self.policy.max_file_size} bytes)",
                ViolationKind.SIZE_EXCEEDED,
            )

        return ValidationResult.ok()

    # ============================================
    # 命令校验
    # ============================================

    def validate_command(self, cmd: str) -> ValidationResult:
        """
        校验Shell命令

        元字符检查独立于白名单，并且先执行：
        `npm install && rm -rf /` 即使前缀合法也会被拒绝。
        """
        trimmed = cmd.strip()
        if not trimmed:
            return ValidationResult.deny("Empty command", ViolationKind.COMMAND_NOT_ALLOWED)

        for token, description in _SHELL_METACHARACTERS:
            if token in trimmed:
                return ValidationResult.deny(
                    f"Shell metacharacter not allowed: {description}",
                    ViolationKind.COMMAND_METACHARACTER,
                )

        lower_cmd = trimmed.lower()
        for blocked in self.policy.shell_commands.blocked:
            if blocked.lower() in lower_cmd:
                return ValidationResult.deny(
                    f'Command contains blocked pattern: "{blocked}"',
                    ViolationKind.COMMAND_BLOCKED,
                )

        first_word = trimmed.split()[0]
        program = re.split(r"[\\/]", first_word)[-1]
        allowed = self.policy.shell_commands.allowed
        if first_word not in allowed and program not in allowed:
            return ValidationResult.deny(
                f'Command "{first_word}" is not in the allowed list: [{", ".join(allowed)}]',
                ViolationKind.COMMAND_NOT_ALLOWED,
            )

        return ValidationResult.ok()

    # ============================================
    # 限额
    # ============================================

    def enforce_diff_limits(self, stats: DiffStats) -> ValidationResult:
        limits = self.policy.limits

        if stats.files_changed > limits.max_files_per_run:
            return ValidationResult.deny(
                f"Files changed ({stats.files_changed}) exceeds limit ({limits.max_files_per_run})",
                ViolationKind.LIMIT_EXCEEDED,
            )

        total = stats.lines_added + stats.lines_removed
        if total > limits.max_diff_lines_per_run:
            return ValidationResult.deny(
                f"Diff lines ({total}) exceeds limit ({limits.max_diff_lines_per_run})",
                ViolationKind.LIMIT_EXCEEDED,
            )

        return ValidationResult.ok()

    def enforce_runtime_limits(self, stats: RuntimeStats, now: Optional[float] = None) -> ValidationResult:
        """运行时长、步数、触及文件数；每一步检查一次"""
        limits = self.policy.limits
        now = time.time() if now is None else now

        runtime_minutes = (now - stats.start_time) / 60
        if runtime_minutes > limits.max_runtime_minutes:
            return ValidationResult.deny(
                f"Runtime ({runtime_minutes:.1f} min) exceeds limit ({limits.max_runtime_minutes} min)",
                ViolationKind.LIMIT_EXCEEDED,
            )

        if stats.steps_executed > limits.max_steps_per_run:
            return ValidationResult.deny(
                f"Steps executed ({stats.steps_executed}) exceeds limit ({limits.max_steps_per_run})",
                ViolationKind.LIMIT_EXCEEDED,
            )

        files_touched = len(set(stats.files_touched))
        if files_touched > limits.max_files_per_run:
            return ValidationResult.deny(
                f"Files modified ({files_touched}) exceeds limit ({limits.max_files_per_run})",
                ViolationKind.LIMIT_EXCEEDED,
            )

        return ValidationResult.ok()

    def enforce_limits(self, diff_stats: DiffStats, runtime_stats: RuntimeStats) -> ValidationResult:
        diff_check = self.enforce_diff_limits(diff_stats)
        if not diff_check.allowed:
            return diff_check
        return self.enforce_runtime_limits(runtime_stats)

    # ============================================
    # 工具方法
    # ============================================

    def get_absolute_path(self, relative_path: str) -> str:
        return os.path.normpath(os.path.join(self.project_root, relative_path))

    def get_relative_path(self, absolute_path: str) -> str:
        return os.path.relpath(os.path.realpath(absolute_path), self.project_root).replace(os.sep, "/")

    def is_within_project(self, input_path: str) -> bool:
        try:
            return self._normalize_path(input_path) is not None
        except ValueError:
            return False

    @property
    def limits(self) -> PolicyLimits:
        return self.policy.limits

    def requires_confirmation(self, operation: str) -> bool:
        return operation in self.policy.require_confirmation

    def redact_secrets(self, text: str) -> str:
        return redact_secrets(text)
