"""
测试用例 - unified diff 解析与应用
"""
import pytest

from nano_dexter.core.errors import PatchRejected
from nano_dexter.tools.patch import (
    apply_unified_diff,
    create_diff,
    diff_line_counts,
    parse_unified_diff,
)

ORIGINAL = "alpha\nbeta\ngamma\ndelta\nepsilon\n"


class TestParse:
    """测试解析"""

    def test_headers_and_hunks(self):
        diff = (
            "diff --git a/src/x.py b/src/x.py\n"
            "--- a/src/x.py\t2024-01-01\n"
            "+++ b/src/x.py\n"
            "@@ -1,2 +1,2 @@\n"
            " alpha\n"
            "-beta\n"
            "+BETA\n"
            "@@ -5 +5,2 @@\n"
            " epsilon\n"
            "+zeta\n"
        )
        patches = parse_unified_diff(diff)
        assert len(patches) == 1
        assert patches[0].old_file == "a/src/x.py"
        assert patches[0].new_file == "b/src/x.py"
        assert len(patches[0].hunks) == 2
        assert patches[0].hunks[1].old_lines == 1
        assert patches[0].hunks[1].new_lines == 2

    def test_malformed_hunk_counts(self):
        diff = "@@ -1,3 +1,3 @@\n alpha\n-beta\n"
        with pytest.raises(PatchRejected, match="Malformed hunk"):
            parse_unified_diff(diff)


class TestApply:
    """测试应用补丁"""

    def test_simple_replacement(self):
        diff = "--- a/f\n+++ b/f\n@@ -2,3 +2,3 @@\n beta\n-gamma\n+GAMMA\n delta\n"
        new, added, removed = apply_unified_diff(ORIGINAL, diff)
        assert new == "alpha\nbeta\nGAMMA\ndelta\nepsilon\n"
        assert (added, removed) == (1, 1)

    def test_offset_tolerated(self):
        """行号不准时在附近查找上下文"""
        diff = "@@ -40,2 +40,3 @@\n delta\n+inserted\n epsilon\n"
        new, added, removed = apply_unified_diff(ORIGINAL, diff)
        assert new == "alpha\nbeta\ngamma\ndelta\ninserted\nepsilon\n"
        assert (added, removed) == (1, 0)

    def test_context_mismatch_rejected(self):
        diff = "@@ -1,2 +1,2 @@\n alpha\n-BETA-NOT-HERE\n+beta2\n"
        with pytest.raises(PatchRejected, match="does not apply cleanly"):
            apply_unified_diff(ORIGINAL, diff)

    def test_later_hunk_failure_rejects_whole_patch(self):
        diff = (
            "@@ -1,1 +1,1 @@\n-alpha\n+ALPHA\n"
            "@@ -5,1 +5,1 @@\n-missing\n+gone\n"
        )
        with pytest.raises(PatchRejected, match="Hunk 2"):
            apply_unified_diff(ORIGINAL, diff)

    def test_no_hunks(self):
        with pytest.raises(PatchRejected, match="no hunks found"):
            apply_unified_diff(ORIGINAL, "just some text\n")

    def test_pure_insertion(self):
        diff = "@@ -2,0 +3,1 @@\n+between\n"
        new, _, _ = apply_unified_diff(ORIGINAL, diff)
        assert new.splitlines()[:4] == ["alpha", "beta", "between", "gamma"]

    def test_new_file(self):
        diff = "--- /dev/null\n+++ b/src/new.py\n@@ -0,0 +1,2 @@\n+x = 1\n+y = 2\n"
        new, added, removed = apply_unified_diff("", diff)
        assert new == "x = 1\ny = 2\n"
        assert (added, removed) == (2, 0)

    def test_no_newline_marker(self):
        diff = "@@ -5 +5 @@\n-epsilon\n+EPSILON\n\\ No newline at end of file\n"
        new, _, _ = apply_unified_diff(ORIGINAL, diff)
        assert new.endswith("EPSILON")

    def test_blank_context_line_without_space(self):
        """编辑器去掉空上下文行的前导空格时仍能应用"""
        content = "one\n\nthree\n"
        diff = "@@ -1,3 +1,3 @@\n one\n\n-three\n+THREE\n"
        new, _, _ = apply_unified_diff(content, diff)
        assert new == "one\n\nTHREE\n"

    def test_generated_diff_applies(self):
        updated = "alpha\nbeta\ngamma2\ndelta\nepsilon\nzeta\n"
        diff = create_diff(ORIGINAL, updated, "src/letters.txt")
        assert diff.startswith("--- a/src/letters.txt")
        new, added, removed = apply_unified_diff(ORIGINAL, diff)
        assert new == updated
        assert (added, removed) == (2, 1)

    def test_crlf_line_endings_preserved(self):
        content = "a = 1\r\nb = 2\r\nc = 3\r\n"
        diff = "@@ -1,2 +1,2 @@\n-a = 1\n+a = 9\n b = 2\n"
        new, added, removed = apply_unified_diff(content, diff)
        assert new == "a = 9\r\nb = 2\r\nc = 3\r\n"
        assert (added, removed) == (1, 1)

    def test_only_newline_splits_lines(self):
        """\\x0c、\\u2028 等字符留在行内，不拆行"""
        content = "head\nform = '\x0c'\nsep = '\u2028'\ntail\n"
        diff = "@@ -4 +4 @@\n-tail\n+TAIL\n"
        new, _, _ = apply_unified_diff(content, diff)
        assert new == "head\nform = '\x0c'\nsep = '\u2028'\nTAIL\n"
        assert diff_line_counts(content, new) == (1, 1)


class TestLineCounts:

    def test_counts_ignore_headers(self):
        assert diff_line_counts(ORIGINAL, ORIGINAL) == (0, 0)
        assert diff_line_counts("", "a\nb\n") == (2, 0)
        assert diff_line_counts("a\nb\n", "a\n") == (0, 1)
