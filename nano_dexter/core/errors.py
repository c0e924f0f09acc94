"""
异常体系

工具级错误（策略拒绝、文件不存在、补丁冲突）在工具层被转换成字符串回填给模型；
只有循环级错误才会终止一次 Run。
"""
from typing import Optional


class NanoDexterError(Exception):
    """所有异常的基类"""


class ConfigError(NanoDexterError):
    """配置或策略文档无效"""


class PolicyViolation(NanoDexterError):
    """路径、命令或限额被策略拒绝"""

    def __init__(self, reason: str, kind: Optional[str] = None):
        super().__init__(reason)
        self.reason = reason
        self.kind = kind


class FileOpError(NanoDexterError):
    """文件操作失败"""


class NotFoundError(FileOpError):
    pass


class IsDirectoryError(FileOpError):
    pass


class PatchRejected(FileOpError):
    """补丁无法干净地应用"""


class ProviderError(NanoDexterError):
    """模型提供方调用失败"""


class TaskNotRunnableError(NanoDexterError):
    """任务不满足执行前置条件（不存在、仅限人工、没有验收标准）"""


class OperationCancelled(NanoDexterError):
    """协作式取消被触发"""

    def __init__(self, reason: str = "Cancelled"):
        super().__init__(reason)
        self.reason = reason
