"""
沙箱文件操作 - 列表/读取/写入/补丁/搜索

每个操作先经过 PolicyEngine 校验，再触碰文件系统。
写入使用 <path>.tmp + 原子 rename，最终路径上不会出现半写文件。
"""
import logging
import os
import re
import shutil
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from ..core.errors import FileOpError, IsDirectoryError, NotFoundError, PolicyViolation
from ..core.policy import DiffStats, PolicyEngine, ValidationResult, match_glob
from .patch import apply_unified_diff, create_diff, diff_line_counts

logger = logging.getLogger(__name__)

# 遍历时直接跳过的目录
PRUNED_DIRECTORIES = {"node_modules", ".git", "dist", "release", "build", "__pycache__", ".venv"}

SEARCH_CANDIDATE_LIMIT = 500
SEARCH_CONTENT_LIMIT = 200


@dataclass
class SearchMatch:
    path: str
    line: int
    content: str
    match: str

    def to_dict(self) -> Dict:
        return {"path": self.path, "line": self.line, "content": self.content, "match": self.match}


@dataclass
class FileStat:
    exists: bool
    is_file: bool = False
    is_directory: bool = False
    size: int = 0
    mtime: datetime = datetime.fromtimestamp(0)


class SandboxedFileOps:
    """受策略约束的文件操作"""

    def __init__(self, engine: PolicyEngine):
        self.engine = engine
        self.project_root = engine.project_root
        self._touched: Dict[str, None] = {}  # 保持插入顺序
        self._lines_added = 0
        self._lines_removed = 0

    # ============================================
    # 会话状态
    # ============================================

    def get_touched_files(self) -> List[str]:
        return list(self._touched)

    def clear_touched_files(self) -> None:
        self._touched.clear()

    def reset_session(self) -> None:
        self._touched.clear()
        self._lines_added = 0
        self._lines_removed = 0

    @property
    def diff_stats(self) -> DiffStats:
        """本会话累计的变更统计"""
        return DiffStats(
            files_changed=len(self._touched),
            lines_added=self._lines_added,
            lines_removed=self._lines_removed,
        )

    # ============================================
    # 内部方法
    # ============================================

    def _full_path(self, path: str) -> str:
        return path if os.path.isabs(path) else os.path.join(self.project_root, path)

    def _require(self, result: ValidationResult, operation: str, path: str) -> None:
        if not result.allowed:
            logger.warning("Policy denied %s of %s: %s", operation, path, result.reason)
            raise PolicyViolation(result.reason or "Denied by policy", result.kind)

    def _check_diff_budget(self, relative_path: str, added: int, removed: int) -> None:
        files = set(self._touched)
        files.add(relative_path)
        prospective = DiffStats(
            files_changed=len(files),
            lines_added=self._lines_added + added,
            lines_removed=self._lines_removed + removed,
        )
        self._require(self.engine.enforce_diff_limits(prospective), "write", relative_path)

    def _record_change(self, relative_path: str, added: int, removed: int) -> None:
        self._touched[relative_path] = None
        self._lines_added += added
        self._lines_removed += removed

    @staticmethod
    def _backup(full_path: str) -> None:
        shutil.copyfile(full_path, full_path + ".bak")

    @staticmethod
    def _atomic_write(full_path: str, content: str) -> None:
        os.makedirs(os.path.dirname(full_path), exist_ok=True)
        temp_path = full_path + ".tmp"
        try:
            with open(temp_path, "w", encoding="utf-8", newline="") as f:
                f.write(content)
            os.replace(temp_path, full_path)
        except BaseException:
            if os.path.exists(temp_path):
                os.remove(temp_path)
            raise

    @staticmethod
    def _read_text(full_path: str) -> str:
        with open(full_path, "r", encoding="utf-8", errors="replace", newline="") as f:
            return f.read()

    # ============================================
    # 列表
    # ============================================

    def list_files(self, glob: str, max_results: int = 100) -> List[str]:
        """
        从项目根目录递归遍历，返回命中 glob 的相对路径

        每个目录下探前重新做读校验；结果为遍历顺序，达到 max_results 即停止。
        """
        results: List[str] = []

        def walk(directory: str, relative_dir: str) -> None:
            if len(results) >= max_results:
                return
            if not self.engine.validate_read(directory, is_directory=True).allowed:
                return
            try:
                with os.scandir(directory) as it:
                    entries = sorted(it, key=lambda e: e.name)
            except OSError as e:
                logger.debug("Cannot list %s: %s", directory, e)
                return

            for entry in entries:
                if len(results) >= max_results:
                    break
                relative_path = f"{relative_dir}/{entry.name}" if relative_dir else entry.name
                if entry.is_dir(follow_symlinks=False):
                    if entry.name in PRUNED_DIRECTORIES:
                        continue
                    walk(entry.path, relative_path)
                elif entry.is_file():
                    if match_glob(relative_path, glob) and self.engine.validate_read(entry.path).allowed:
                        results.append(relative_path)

        walk(self.project_root, "")
        return results

    # ============================================
    # 读取
    # ============================================

    def read_file(self, path: str) -> str:
        full_path = self._full_path(path)
        self._require(self.engine.validate_read(full_path), "read", path)

        if not os.path.exists(full_path):
            raise NotFoundError(f"File not found: {path}")
        if os.path.isdir(full_path):
            raise IsDirectoryError(f"Path is a directory: {path}")

        return self._read_text(full_path)

    def stat(self, path: str) -> FileStat:
        full_path = self._full_path(path)
        self._require(self.engine.validate_read(full_path), "stat", path)

        if not os.path.exists(full_path):
            return FileStat(exists=False)

        st = os.stat(full_path)
        return FileStat(
            exists=True,
            is_file=os.path.isfile(full_path),
            is_directory=os.path.isdir(full_path),
            size=st.st_size,
            mtime=datetime.fromtimestamp(st.st_mtime),
        )

    # ============================================
    # 写入
    # ============================================

    def write_file(self, path: str, content: str, create_backup: bool = True) -> DiffStats:
        """原子写入文件，返回本次写入的变更统计"""
        full_path = self._full_path(path)
        size = len(content.encode("utf-8"))
        self._require(self.engine.validate_write(full_path, size), "write", path)

        if os.path.isdir(full_path):
            raise IsDirectoryError(f"Path is a directory: {path}")

        exists = os.path.exists(full_path)
        old_content = self._read_text(full_path) if exists else ""
        added, removed = diff_line_counts(old_content, content)

        relative_path = self.engine.get_relative_path(full_path)
        self._check_diff_budget(relative_path, added, removed)

        if create_backup and exists:
            self._backup(full_path)
        self._atomic_write(full_path, content)
        self._record_change(relative_path, added, removed)

        logger.info("Wrote %s (%d bytes, +%d/-%d)", relative_path, size, added, removed)
        return DiffStats(files_changed=1, lines_added=added, lines_removed=removed)

    def apply_patch(self, path: str, unified_diff: str) -> DiffStats:
        """应用 unified diff；任何 hunk 无法应用时抛出 PatchRejected，文件保持不变"""
        full_path = self._full_path(path)
        self._require(self.engine.validate_write(full_path), "patch", path)

        if os.path.isdir(full_path):
            raise IsDirectoryError(f"Path is a directory: {path}")

        exists = os.path.exists(full_path)
        current = self._read_text(full_path) if exists else ""
        new_content, added, removed = apply_unified_diff(current, unified_diff)

        size = len(new_content.encode("utf-8"))
        self._require(self.engine.validate_write(full_path, size), "patch", path)

        relative_path = self.engine.get_relative_path(full_path)
        self._check_diff_budget(relative_path, added, removed)

        if exists:
            self._backup(full_path)
        self._atomic_write(full_path, new_content)
        self._record_change(relative_path, added, removed)

        logger.info("Patched %s (+%d/-%d)", relative_path, added, removed)
        return DiffStats(files_changed=1, lines_added=added, lines_removed=removed)

    # ============================================
    # 搜索
    # ============================================

    def search(
        self,
        query: str,
        glob: Optional[str] = None,
        max_results: int = 50,
        case_sensitive: bool = False,
    ) -> List[SearchMatch]:
        """正则搜索，最多扫描 500 个候选文件"""
        try:
            regex = re.compile(query, 0 if case_sensitive else re.IGNORECASE)
        except re.error as e:
            raise FileOpError(f"Invalid search pattern: {e}") from e

        results: List[SearchMatch] = []
        candidates = self.list_files(glob or "**/*", max_results=SEARCH_CANDIDATE_LIMIT)

        for relative_path in candidates:
            if len(results) >= max_results:
                break
            try:
                content = self.read_file(relative_path)
            except (FileOpError, PolicyViolation, OSError) as e:
                logger.debug("Skipping %s during search: %s", relative_path, e)
                continue

            for number, line in enumerate(content.split("\n"), start=1):
                if len(results) >= max_results:
                    break
                found = regex.search(line)
                if found:
                    results.append(SearchMatch(
                        path=relative_path,
                        line=number,
                        content=line.strip()[:SEARCH_CONTENT_LIMIT],
                        match=found.group(0),
                    ))

        return results

    def create_diff(self, old_content: str, new_content: str, filename: str) -> str:
        return create_diff(old_content, new_content, filename)
