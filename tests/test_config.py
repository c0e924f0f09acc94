"""
测试用例 - 配置加载、任务存储、Provider 工厂与命令行
"""
import json

import pytest
import yaml

from nano_dexter.config_loader import deep_merge, get_default_config, load_config, resolve_paths, save_config
from nano_dexter.core.errors import ConfigError
from nano_dexter.core.llm_client import AnthropicProvider, MockProvider, OpenAIProvider, create_provider
from nano_dexter.core.policy import Policy
from nano_dexter.core.task_store import InMemoryTaskStore
from nano_dexter.core.types import Comment, FinishReason, Message
from nano_dexter.main import main

from .helpers import posix_only


class TestConfigLoader:
    """测试配置加载"""

    def test_defaults_when_missing(self, tmp_path, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        config = load_config(str(tmp_path / "absent.yaml"))
        assert config["llm"]["provider"] == "openai"
        assert config["llm"]["api_key"] is None
        assert config["agent"]["command_timeout_sec"] == 120
        assert config["paths"]["state_dir"] == ".nano_dexter"

    def test_user_config_is_merged(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({
            "llm": {"provider": "anthropic", "api_key": "k-1", "anthropic": {"model": "claude-x"}},
            "agent": {"max_steps": 12},
        }), encoding="utf-8")

        config = load_config(str(path))
        assert config["llm"]["provider"] == "anthropic"
        assert config["llm"]["anthropic"] == {"model": "claude-x", "max_tokens": 4096}
        assert config["agent"]["max_steps"] == 12
        assert config["agent"]["kill_grace_sec"] == 5

    def test_api_key_from_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv("GEMINI_API_KEY", "g-key")
        path = tmp_path / "config.yaml"
        path.write_text("llm:\n  provider: gemini\n", encoding="utf-8")
        assert load_config(str(path))["llm"]["api_key"] == "g-key"

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("llm: [unclosed", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_config(str(path))

        path.write_text("- just\n- a list\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="mapping"):
            load_config(str(path))

    def test_resolve_paths(self, tmp_path):
        config = get_default_config()
        paths = resolve_paths(config, str(tmp_path))
        assert paths["state_dir"] == tmp_path / ".nano_dexter"
        assert paths["policy_file"] == tmp_path / ".nano_dexter" / "policy.json"
        assert "tasks_file" not in paths

        config["paths"]["tasks_file"] = "tasks.yaml"
        config["paths"]["policy_file"] = "/etc/dexter/policy.json"
        paths = resolve_paths(config, str(tmp_path))
        assert paths["tasks_file"] == tmp_path / "tasks.yaml"
        assert str(paths["policy_file"]) == "/etc/dexter/policy.json"

    def test_deep_merge_and_save(self, tmp_path):
        merged = deep_merge({"a": {"b": 1, "c": 2}}, {"a": {"c": 3}, "d": 4})
        assert merged == {"a": {"b": 1, "c": 3}, "d": 4}

        path = tmp_path / "saved.yaml"
        save_config(merged, str(path))
        assert yaml.safe_load(path.read_text(encoding="utf-8")) == merged


class TestProviderFactory:

    def test_mock(self):
        assert isinstance(create_provider(get_default_config(), use_mock=True), MockProvider)

    def test_openai_without_key_is_not_ready(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        monkeypatch.delenv("GEMINI_API_KEY", raising=False)
        provider = create_provider(get_default_config())
        assert isinstance(provider, OpenAIProvider)
        assert not provider.is_ready()

    @pytest.mark.asyncio
    async def test_openai_without_key_reports_error_response(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        monkeypatch.delenv("GEMINI_API_KEY", raising=False)
        provider = create_provider(get_default_config())
        response = await provider.complete([Message(role="user", content="hi")])
        assert response.finish_reason == FinishReason.ERROR
        assert "No API key" in response.error

    def test_gemini_uses_compatible_endpoint(self):
        config = get_default_config()
        config["llm"].update(provider="gemini", api_key="g")
        provider = create_provider(config)
        assert provider.name == "gemini"
        assert "generativelanguage" in provider.base_url

    def test_anthropic(self):
        config = get_default_config()
        config["llm"].update(provider="anthropic", api_key="a")
        provider = create_provider(config)
        assert isinstance(provider, AnthropicProvider)
        assert provider.is_ready()

    def test_unknown(self):
        config = get_default_config()
        config["llm"]["provider"] = "carrier-pigeon"
        with pytest.raises(ConfigError, match="Unknown LLM provider"):
            create_provider(config)


class TestTaskStore:
    """测试任务存储"""

    def test_from_yaml(self, tmp_path):
        path = tmp_path / "tasks.yaml"
        path.write_text(yaml.safe_dump({"tasks": [
            {"id": "T-1", "title": "One", "acceptanceCriteria": ["works"]},
            {"id": "T-2", "title": "Two", "humanOnly": True},
        ]}), encoding="utf-8")

        store = InMemoryTaskStore.from_file(path)
        assert [t.id for t in store.list_tasks()] == ["T-1", "T-2"]
        assert store.get_task("T-1").acceptance_criteria == ["works"]
        assert store.get_task("T-2").human_only

    def test_from_json_list(self, tmp_path):
        path = tmp_path / "tasks.json"
        path.write_text(json.dumps([{"id": "T-3", "acceptance_criteria": ["ok"]}]), encoding="utf-8")
        task = InMemoryTaskStore.from_file(path).get_task("T-3")
        assert task.title == "T-3"
        assert task.acceptance_criteria == ["ok"]

    def test_invalid_files(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            InMemoryTaskStore.from_file(tmp_path / "missing.yaml")

        path = tmp_path / "tasks.yaml"
        path.write_text("tasks:\n  - title: no id\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="Invalid task entry"):
            InMemoryTaskStore.from_file(path)

    def test_comments_and_status(self, tmp_path):
        path = tmp_path / "tasks.yaml"
        path.write_text("- id: T-1\n  acceptanceCriteria: [a]\n", encoding="utf-8")
        store = InMemoryTaskStore.from_file(path)
        store.add_comment("T-1", Comment(kind="agent", author="dexter", content="hi"))
        store.set_status("T-1", "done")
        store.set_status("T-unknown", "done")
        task = store.get_task("T-1")
        assert task.status == "done"
        assert task.comments[0].content == "hi"


class TestCommandLine:
    """测试命令行入口"""

    @pytest.fixture(autouse=True)
    def _setup(self, project, tmp_path):
        self.root = project
        self.config = str(tmp_path / "no-config.yaml")
        self.args = ["-c", self.config, "-p", str(project)]

    def test_check_command(self):
        assert main(self.args + ["check-command", "python3 -m pytest"]) == 0
        assert main(self.args + ["check-command", "npm install && rm -rf /"]) == 1

    def test_check_path(self):
        assert main(self.args + ["check-path", "src/app.py"]) == 0
        assert main(self.args + ["check-path", "--write", "config/x.json"]) == 1
        assert main(self.args + ["check-path", "../outside"]) == 1

    def test_init_policy(self):
        policy_file = self.root / ".nano_dexter" / "policy.json"
        assert main(self.args + ["init-policy"]) == 0
        assert Policy.load(policy_file).allowed_paths[0] == "src/**"
        assert main(self.args + ["init-policy"]) == 1
        assert main(self.args + ["init-policy", "--force"]) == 0

    def test_run_without_tasks_file(self):
        assert main(self.args + ["run", "T-1", "--mock"]) == 2

    def test_tail_missing_log_is_an_error(self):
        assert main(self.args + ["tail", "T-1", "run-missing"]) == 2

    def test_unsafe_ids_are_an_error(self):
        assert main(self.args + ["tail", "../..", "run-1"]) == 2
        assert main(self.args + ["runs", "../T-1"]) == 2

    @posix_only
    def test_mock_run_and_list(self, tmp_path):
        tasks = tmp_path / "tasks.yaml"
        tasks.write_text(yaml.safe_dump([
            {"id": "T-1", "title": "Explore", "acceptanceCriteria": ["files listed"]},
        ]), encoding="utf-8")

        assert main(self.args + ["run", "T-1", "--tasks", str(tasks), "--mock"]) == 0
        assert main(self.args + ["runs", "T-1"]) == 0
        records = list((self.root / ".nano_dexter" / "agent-runs" / "T-1").glob("*.json"))
        assert len(records) == 1
