"""Role-aware entry point for running the tool-calling loop."""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable

from ..config import READ_ONLY_TOOLS, ModelProfile, RunMode, Settings
from ..models.llm_client import ChatModelClient
from ..models.providers import build_client
from ..policy.engine import PolicyConfig
from ..tools.dispatch import RunLogProvider, ToolDispatcher
from ..tools.static_analysis import PythonStaticAnalyzer
from .loop import LoopResult, ToolCallingLoop

LOGGER = logging.getLogger(__name__)

ClientFactory = Callable[[ModelProfile], ChatModelClient]


class AgentRunner:
    """Build the per-request policy, dispatcher and model, then run the loop.

    Plan mode only ever exposes read-only tools and has no change budget,
    whatever the role configuration says.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        client_factory: ClientFactory | None = None,
        analyzer: PythonStaticAnalyzer | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self._client_factory = client_factory or (lambda profile: build_client(profile, settings.models))
        self.analyzer = analyzer or PythonStaticAnalyzer(
            settings.static_command,
            required=settings.static_required,
            timeout=settings.command_timeout,
        )
        self._sleep = sleep

    def policy_for(self, role: str, mode: RunMode, project_root: Path) -> PolicyConfig:
        role_cfg = self.settings.role(role)
        tools = frozenset(role_cfg.allowed_tools)
        if mode == "plan":
            return PolicyConfig(
                project_root=Path(project_root).resolve(),
                allowed_paths=tuple(role_cfg.allowed_paths),
                read_only_paths=tuple(role_cfg.allowed_paths),
                max_files_changed=0,
                max_total_changed_lines=0,
                allowed_tools=tools & READ_ONLY_TOOLS,
            )
        return PolicyConfig(
            project_root=Path(project_root).resolve(),
            allowed_paths=tuple(role_cfg.allowed_paths),
            read_only_paths=tuple(role_cfg.read_only_paths),
            max_files_changed=role_cfg.max_files_changed,
            max_total_changed_lines=role_cfg.max_total_changed_lines,
            allowed_tools=tools,
        )

    def dispatcher_for(
        self,
        role: str,
        mode: RunMode,
        project_root: Path,
        *,
        run_log: RunLogProvider | None = None,
    ) -> ToolDispatcher:
        return ToolDispatcher(
            self.policy_for(role, mode, project_root),
            analyzer=self.analyzer,
            commands=self.settings.commands,
            command_timeout=self.settings.command_timeout,
            run_log=run_log,
            blocked_segments=[self.settings.store.workspace],
        )

    def _loop(self, role: str, mode: RunMode) -> ToolCallingLoop:
        profile = self.settings.models.resolve(role, mode)
        return ToolCallingLoop(
            self._client_factory(profile),
            profile=profile,
            usd_to_eur=self.settings.models.usd_to_eur,
            max_retries=self.settings.execution.max_retries,
            initial_backoff=self.settings.execution.initial_backoff,
            sleep=self._sleep,
        )

    def run(
        self,
        role: str,
        message: str,
        project_root: Path,
        mode: RunMode = "execute",
        *,
        run_log: RunLogProvider | None = None,
        system_prompt: str | None = None,
    ) -> LoopResult:
        role_cfg = self.settings.role(role)
        dispatcher = self.dispatcher_for(role, mode, project_root, run_log=run_log)
        LOGGER.info("Running %s agent in %s mode on %s", role, mode, project_root)
        return self._loop(role, mode).run(
            system_prompt if system_prompt is not None else role_cfg.system_prompt,
            message,
            dispatcher,
            self.settings.execution.max_rounds(mode),
        )

    def one_shot(self, role: str, system_prompt: str, message: str, project_root: Path) -> LoopResult:
        """Single plan-mode completion with no tools offered."""

        policy = PolicyConfig(project_root=Path(project_root).resolve())
        dispatcher = ToolDispatcher(policy, analyzer=self.analyzer)
        return self._loop(role, "plan").run(system_prompt, message, dispatcher, 1)


__all__ = ["AgentRunner", "ClientFactory"]
