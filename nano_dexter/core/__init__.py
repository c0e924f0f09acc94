"""Core components"""
from .errors import (
    NanoDexterError, ConfigError, PolicyViolation, FileOpError, NotFoundError,
    IsDirectoryError, PatchRejected, ProviderError, TaskNotRunnableError, OperationCancelled,
)
from .policy import (
    Policy, PolicyEngine, ValidationResult, ViolationKind, DiffStats, RuntimeStats,
    create_default_policy, redact_secrets,
)
from .types import *
