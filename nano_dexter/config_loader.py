"""
配置加载器 - 支持YAML配置文件
"""
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .core.errors import ConfigError

API_KEY_ENV = {
    "openai": "OPENAI_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
}


def load_config(config_path: str = "config.yaml") -> Dict[str, Any]:
    """加载配置文件"""
    config = get_default_config()

    if os.path.exists(config_path):
        with open(config_path, "r", encoding="utf-8") as f:
            try:
                user_config = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid config file {config_path}: {e}") from e
        if user_config:
            if not isinstance(user_config, dict):
                raise ConfigError(f"Config file {config_path} must contain a mapping")
            # 合并配置
            config = deep_merge(config, user_config)

    # 从环境变量读取API密钥
    provider = config["llm"]["provider"]
    if not config["llm"].get("api_key") and provider in API_KEY_ENV:
        config["llm"]["api_key"] = os.getenv(API_KEY_ENV[provider])

    # 展开路径中的 ~
    for key, path in config["paths"].items():
        if path:
            config["paths"][key] = os.path.expanduser(path)

    return config


def get_default_config() -> Dict[str, Any]:
    """获取默认配置"""
    return {
        "llm": {
            "provider": "openai",
            "api_key": None,
            "openai": {
                "model": "gpt-4o-mini",
                "base_url": None
            },
            "gemini": {
                "model": "gemini-2.0-flash",
                "base_url": "https://generativelanguage.googleapis.com/v1beta/openai/"
            },
            "anthropic": {
                "model": "claude-sonnet-4-5",
                "max_tokens": 4096
            }
        },
        "agent": {
            "max_steps": None,
            "temperature": 0.2,
            "command_timeout_sec": 120,
            "kill_grace_sec": 5,
            "system_prompt": None
        },
        "paths": {
            "state_dir": ".nano_dexter",
            "policy_file": None,
            "tasks_file": None
        },
        "logging": {
            "level": "INFO"
        }
    }


def resolve_paths(config: Dict[str, Any], project_root: str) -> Dict[str, Path]:
    """把配置中的相对路径解析到项目根目录下"""
    root = Path(project_root)
    state_dir = Path(config["paths"]["state_dir"])
    if not state_dir.is_absolute():
        state_dir = root / state_dir

    policy_file: Optional[str] = config["paths"].get("policy_file")
    policy_path = Path(policy_file) if policy_file else state_dir / "policy.json"
    if not policy_path.is_absolute():
        policy_path = root / policy_path

    paths = {"state_dir": state_dir, "policy_file": policy_path}
    tasks_file = config["paths"].get("tasks_file")
    if tasks_file:
        tasks_path = Path(tasks_file)
        paths["tasks_file"] = tasks_path if tasks_path.is_absolute() else root / tasks_path
    return paths


def deep_merge(base: Dict, update: Dict) -> Dict:
    """深度合并两个字典"""
    result = base.copy()
    for key, value in update.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def save_config(config: Dict[str, Any], config_path: str = "config.yaml") -> None:
    """保存配置到文件"""
    with open(config_path, "w", encoding="utf-8") as f:
        yaml.dump(config, f, default_flow_style=False, allow_unicode=True)
