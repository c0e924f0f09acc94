"""
Unified diff 解析与应用

hunk 按顺序应用于不断演化的内容；上下文/删除行必须逐字匹配，
允许在期望行号附近偏移查找。任何 hunk 无法干净应用即 PatchRejected。
"""
import difflib
import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from ..core.errors import PatchRejected

HUNK_HEADER = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")
NO_NEWLINE_MARKER = "\\ No newline at end of file"


@dataclass
class Hunk:
    old_start: int
    old_lines: int
    new_start: int
    new_lines: int
    lines: List[str] = field(default_factory=list)  # 带 ' ' / '-' / '+' 前缀
    no_newline_at_end: bool = False

    @property
    def header(self) -> str:
        return f"@@ -{self.old_start},{self.old_lines} +{self.new_start},{self.new_lines} @@"

    def old_sequence(self) -> List[str]:
        return [line[1:] for line in self.lines if line[0] in " -"]

    def new_sequence(self) -> List[str]:
        return [line[1:] for line in self.lines if line[0] in " +"]


@dataclass
class FilePatch:
    old_file: Optional[str] = None
    new_file: Optional[str] = None
    hunks: List[Hunk] = field(default_factory=list)


def parse_unified_diff(text: str) -> List[FilePatch]:
    """解析 unified diff 文本"""
    patches: List[FilePatch] = []
    current: Optional[FilePatch] = None
    lines = [_strip_cr(line) for line in _split_lines(text)]
    i = 0

    while i < len(lines):
        line = lines[i]

        if line.startswith("--- "):
            if current is None or current.hunks or current.old_file is not None:
                current = FilePatch()
                patches.append(current)
            current.old_file = line[4:].split("\t")[0].strip()
            i += 1
            continue

        if line.startswith("+++ "):
            if current is None:
                current = FilePatch()
                patches.append(current)
            current.new_file = line[4:].split("\t")[0].strip()
            i += 1
            continue

        match = HUNK_HEADER.match(line)
        if not match:
            # diff --git / index / 说明文字
            i += 1
            continue

        if current is None:
            current = FilePatch()
            patches.append(current)

        hunk = Hunk(
            old_start=int(match.group(1)),
            old_lines=int(match.group(2)) if match.group(2) is not None else 1,
            new_start=int(match.group(3)),
            new_lines=int(match.group(4)) if match.group(4) is not None else 1,
        )
        i += 1

        old_seen = new_seen = 0
        while i < len(lines) and (old_seen < hunk.old_lines or new_seen < hunk.new_lines):
            body = lines[i]
            if body.startswith(NO_NEWLINE_MARKER):
                i += 1
                continue
            if body == "":
                # 编辑器去掉了空上下文行的前导空格
                body = " "
            prefix = body[0]
            if prefix == " ":
                old_seen += 1
                new_seen += 1
            elif prefix == "-":
                old_seen += 1
            elif prefix == "+":
                new_seen += 1
            else:
                break
            hunk.lines.append(body)
            i += 1

        if old_seen != hunk.old_lines or new_seen != hunk.new_lines:
            raise PatchRejected(
                f"Malformed hunk {hunk.header}: expected {hunk.old_lines} old/{hunk.new_lines} new lines, "
                f"found {old_seen}/{new_seen}"
            )

        if i < len(lines) and lines[i].startswith(NO_NEWLINE_MARKER):
            last = hunk.lines[-1] if hunk.lines else " "
            if last[0] in " +":
                hunk.no_newline_at_end = True
            i += 1

        current.hunks.append(hunk)

    return patches


def _split_lines(text: str) -> List[str]:
    """只按 \\n 切分；\\r 留在行内，\\x0c 等字符不视为换行"""
    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return lines


def _strip_cr(line: str) -> str:
    return line[:-1] if line.endswith("\r") else line


def _split_keepends(text: str) -> List[str]:
    lines = [line + "\n" for line in text.split("\n")]
    lines[-1] = lines[-1][:-1]
    return lines if lines[-1] else lines[:-1]


def _find_hunk_position(lines: List[str], old_seq: List[str], expected: int) -> Optional[int]:
    """从期望位置向两侧查找上下文匹配的位置"""
    max_start = len(lines) - len(old_seq)
    if max_start < 0:
        return None
    expected = min(max(expected, 0), max_start)
    for distance in range(max_start + 1):
        for pos in (expected - distance, expected + distance):
            if 0 <= pos <= max_start and lines[pos:pos + len(old_seq)] == old_seq:
                return pos
    return None


def apply_hunks(content: str, hunks: List[Hunk]) -> str:
    """逐个应用 hunk；未触及的行原样保留（含各自的 CRLF 行尾）"""
    lines = _split_lines(content)
    keys = [_strip_cr(line) for line in lines]
    file_cr = "\r" if lines and lines[0].endswith("\r") else ""
    trailing_newline = content.endswith("\n") or content == ""
    delta = 0

    for index, hunk in enumerate(hunks, start=1):
        old_seq = hunk.old_sequence()
        expected = max(hunk.old_start - 1, 0) + delta
        if hunk.old_lines == 0:
            # 纯插入：old_start 指的是插入点之前的那一行
            expected = hunk.old_start + delta

        pos = _find_hunk_position(keys, old_seq, expected)
        if pos is None:
            raise PatchRejected(f"Hunk {index} ({hunk.header}) does not apply cleanly")

        original = lines[pos:pos + len(old_seq)]
        cr = "\r" if any(line.endswith("\r") for line in original) else file_cr
        replacement: List[str] = []
        k = 0
        for line in hunk.lines:
            if line[0] == " ":
                replacement.append(original[k])
                k += 1
            elif line[0] == "-":
                k += 1
            else:
                replacement.append(line[1:] + cr)

        lines[pos:pos + len(old_seq)] = replacement
        keys[pos:pos + len(old_seq)] = [_strip_cr(line) for line in replacement]
        delta += len(replacement) - len(old_seq)
        if hunk.no_newline_at_end:
            trailing_newline = False

    if not lines:
        return ""
    return "\n".join(lines) + ("\n" if trailing_newline else "")


def count_changes(patches: List[FilePatch]) -> Tuple[int, int]:
    """按 diff 自身的 +/- 标记统计增删行数（不含 +++/--- 头）"""
    added = removed = 0
    for patch in patches:
        for hunk in patch.hunks:
            for line in hunk.lines:
                if line[0] == "+":
                    added += 1
                elif line[0] == "-":
                    removed += 1
    return added, removed


def apply_unified_diff(content: str, unified_diff: str) -> Tuple[str, int, int]:
    """
    把 unified diff 应用到 content

    Returns:
        (新内容, 新增行数, 删除行数)
    """
    patches = parse_unified_diff(unified_diff)
    if not any(p.hunks for p in patches):
        raise PatchRejected("Invalid patch: no hunks found")

    new_content = content
    for patch in patches:
        new_content = apply_hunks(new_content, patch.hunks)

    added, removed = count_changes(patches)
    return new_content, added, removed


def create_diff(old_content: str, new_content: str, filename: str) -> str:
    """生成两个字符串之间的 unified diff"""
    return "".join(difflib.unified_diff(
        _split_keepends(old_content),
        _split_keepends(new_content),
        fromfile=f"a/{filename}",
        tofile=f"b/{filename}",
    ))


def diff_line_counts(old_content: str, new_content: str) -> Tuple[int, int]:
    """两段内容之间的增删行数"""
    added = removed = 0
    in_hunk = False
    for line in difflib.unified_diff(_split_lines(old_content), _split_lines(new_content), lineterm=""):
        if line.startswith("@@"):
            in_hunk = True
            continue
        if not in_hunk:
            continue
        if line.startswith("+"):
            added += 1
        elif line.startswith("-"):
            removed += 1
    return added, removed
