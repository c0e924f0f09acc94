"""
测试辅助函数
"""
import os
import sys

import pytest

from nano_dexter.core.policy import Policy, PolicyLimits, ShellCommandPolicy

posix_only = pytest.mark.skipif(os.name == "nt", reason="需要 /bin/sh 和进程组")

PYTHON = sys.executable


def make_policy(**overrides) -> Policy:
    """测试用策略：src/** 与 README.md 可读写，密钥类文件被屏蔽"""
    values = dict(
        allowed_paths=("src/**", "README.md"),
        blocked_paths=("node_modules/**", ".git/**"),
        blocked_patterns=("*secret*", "*.pem"),
        shell_commands=ShellCommandPolicy(
            allowed=("echo", "ls", "npm", "python", "python3", os.path.basename(PYTHON)),
            blocked=("rm -rf /", "sudo"),
        ),
        limits=PolicyLimits(),
    )
    values.update(overrides)
    return Policy(**values)
