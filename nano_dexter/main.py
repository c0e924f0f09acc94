"""
Nano Dexter 主入口 - 支持配置文件
"""
import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from .config_loader import load_config, resolve_paths
from .core.agent_loop import AgentConfig, AgentOrchestrator
from .core.errors import NanoDexterError
from .core.llm_client import create_provider
from .core.policy import Policy, PolicyEngine, create_default_policy
from .core.recorder import RunRecorder
from .core.task_store import InMemoryTaskStore
from .core.types import EventType
from .tools.runner import ProcessRunner

console = Console()
logger = logging.getLogger(__name__)


class NanoDexterApp:
    """Nano Dexter 应用程序"""

    def __init__(self, config_path: str = "config.yaml", project_root: str = "."):
        self.config = load_config(config_path)
        self.project_root = str(Path(project_root).resolve())
        self.paths = resolve_paths(self.config, self.project_root)
        self.orchestrator: Optional[AgentOrchestrator] = None

    def load_policy(self) -> Policy:
        return Policy.load(self.paths["policy_file"])

    def engine(self) -> PolicyEngine:
        return PolicyEngine(self.project_root, self.load_policy())

    # ============================================
    # run
    # ============================================

    async def _on_message(self, event):
        content = event.data.get("content")
        if content:
            console.print(f"[cyan]assistant:[/cyan] {escape(content)}")

    async def _on_tool_call(self, event):
        console.print(f"[dim]🔧 Calling: {event.data['name']}[/dim]")

    async def _on_tool_result(self, event):
        output = event.data.get("output", "")
        first_line = output.splitlines()[0] if output else ""
        style = "red" if output.startswith("Error") else "dim"
        console.print(f"[{style}]   → {escape(first_line)}[/{style}]")

    async def _on_step(self, event):
        console.rule(f"[bold]Step {event.data['step']}[/bold]", style="dim")

    async def run_task(self, task_id: str, tasks_file: Optional[str], use_mock: bool, max_steps: Optional[int]) -> int:
        tasks_path = tasks_file or self.paths.get("tasks_file")
        if not tasks_path:
            console.print("[red]Error: no tasks file given (use --tasks or paths.tasks_file)[/red]")
            return 2
        store = InMemoryTaskStore.from_file(tasks_path)

        provider = create_provider(self.config, use_mock=use_mock)
        if not provider.is_ready():
            console.print("[red]Error: API key not found![/red]")
            console.print("\nPlease set OPENAI_API_KEY, GEMINI_API_KEY or ANTHROPIC_API_KEY, or add api_key to config.yaml")
            return 2

        agent_settings = self.config["agent"]
        agent_config = AgentConfig(
            max_steps=agent_settings.get("max_steps"),
            command_timeout_sec=agent_settings["command_timeout_sec"],
            kill_grace_sec=agent_settings["kill_grace_sec"],
        )
        if agent_settings.get("system_prompt"):
            agent_config.system_prompt = agent_settings["system_prompt"]

        self.orchestrator = AgentOrchestrator(
            project_root=self.project_root,
            policy=self.load_policy(),
            provider=provider,
            task_store=store,
            state_dir=self.paths["state_dir"],
            config=agent_config,
        )
        self.orchestrator.event_bus.on(EventType.STEP, self._on_step)
        self.orchestrator.event_bus.on(EventType.MESSAGE, self._on_message)
        self.orchestrator.event_bus.on(EventType.TOOL_CALL, self._on_tool_call)
        self.orchestrator.event_bus.on(EventType.TOOL_RESULT, self._on_tool_result)

        # Ctrl-C：协作式取消，而不是直接中断事件循环
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, self.orchestrator.cancel)
        except NotImplementedError:
            logger.debug("Signal handlers not supported on this platform")

        try:
            result = await self.orchestrator.execute(task_id, max_steps=max_steps)
        finally:
            try:
                loop.remove_signal_handler(signal.SIGINT)
            except NotImplementedError:
                pass

        run = result.run
        style = {"complete": "green", "blocked": "yellow", "cancelled": "yellow"}.get(run.status.value, "red")
        body = f"Run ID: {run.id}\nStatus: {run.status.value}\nSteps: {run.steps}\nFiles modified: {len(run.files_modified)}"
        if result.error:
            body += f"\nReason: {escape(result.error)}"
        console.print(Panel(body, title=f"Task {task_id}", border_style=style))
        for comment in result.task.comments[-1:]:
            console.print(Panel(escape(comment.content), title=f"Comment ({comment.kind})", border_style="dim"))
        return 0 if result.success else 1

    # ============================================
    # 其他子命令
    # ============================================

    def check_path(self, path: str, write: bool) -> int:
        engine = self.engine()
        result = engine.validate_write(path) if write else engine.validate_read(path)
        if result.allowed:
            console.print(f"[green]✓ allowed[/green] {escape(path)}")
            return 0
        console.print(f"[red]✗ denied[/red] {escape(path)}: {escape(result.reason)}")
        return 1

    def check_command(self, cmd: str) -> int:
        result = self.engine().validate_command(cmd)
        if result.allowed:
            console.print(f"[green]✓ allowed[/green] {escape(cmd)}")
            return 0
        console.print(f"[red]✗ denied[/red] {escape(cmd)}: {escape(result.reason)}")
        return 1

    def tail(self, task_id: str, run_id: str, lines: int) -> int:
        runner = ProcessRunner(self.engine(), self.paths["state_dir"])
        console.print(runner.tail_run_log(task_id, run_id, lines), end="", markup=False, highlight=False)
        return 0

    def list_runs(self, task_id: str) -> int:
        recorder = RunRecorder(self.paths["state_dir"])
        runs = recorder.list_runs(task_id)
        if not runs:
            console.print(f"[yellow]No runs recorded for {task_id}[/yellow]")
            return 0

        table = Table(title=f"Runs for {task_id}")
        table.add_column("Run ID")
        table.add_column("Status")
        table.add_column("Started")
        table.add_column("Steps", justify="right")
        table.add_column("Files", justify="right")
        table.add_column("Error")
        for run in runs:
            table.add_row(
                run.id, run.status.value, run.started_at, str(run.steps),
                str(len(run.files_modified)), escape(run.error or ""),
            )
        console.print(table)
        return 0

    def init_policy(self, force: bool) -> int:
        policy_path = self.paths["policy_file"]
        if policy_path.exists() and not force:
            console.print(f"[yellow]Policy already exists at {policy_path} (use --force to overwrite)[/yellow]")
            return 1
        create_default_policy().save(policy_path)
        console.print(f"[green]✓ Wrote default policy to {policy_path}[/green]")
        return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="nano-dexter", description="Nano Dexter - policy-bounded repository agent")
    parser.add_argument("-c", "--config", default="config.yaml", help="Config file path")
    parser.add_argument("-p", "--project", default=".", help="Project root")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Execute a task with the agent")
    run_parser.add_argument("task_id")
    run_parser.add_argument("--tasks", help="YAML/JSON tasks file")
    run_parser.add_argument("--mock", action="store_true", help="Use the offline mock provider")
    run_parser.add_argument("--max-steps", type=int, help="Override the step limit for this run")

    path_parser = subparsers.add_parser("check-path", help="Check a path against the policy")
    path_parser.add_argument("path")
    path_parser.add_argument("--write", action="store_true", help="Check write access instead of read")

    command_parser = subparsers.add_parser("check-command", help="Check a shell command against the policy")
    command_parser.add_argument("cmd")

    tail_parser = subparsers.add_parser("tail", help="Show the end of a command log")
    tail_parser.add_argument("task_id")
    tail_parser.add_argument("run_id")
    tail_parser.add_argument("-n", "--lines", type=int, default=50)

    runs_parser = subparsers.add_parser("runs", help="List recorded runs for a task")
    runs_parser.add_argument("task_id")

    init_parser = subparsers.add_parser("init-policy", help="Write the default policy file")
    init_parser.add_argument("--force", action="store_true")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """主入口"""
    args = build_parser().parse_args(argv)

    try:
        app = NanoDexterApp(config_path=args.config, project_root=args.project)
        logging.basicConfig(
            level=str(app.config["logging"]["level"]).upper(),
            format="%(message)s",
            handlers=[RichHandler(console=console, show_path=False)],
        )

        if args.command == "run":
            return asyncio.run(app.run_task(args.task_id, args.tasks, args.mock, args.max_steps))
        if args.command == "check-path":
            return app.check_path(args.path, args.write)
        if args.command == "check-command":
            return app.check_command(args.cmd)
        if args.command == "tail":
            return app.tail(args.task_id, args.run_id, args.lines)
        if args.command == "runs":
            return app.list_runs(args.task_id)
        if args.command == "init-policy":
            return app.init_policy(args.force)
    except NanoDexterError as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        return 2

    return 0


if __name__ == "__main__":
    sys.exit(main())
