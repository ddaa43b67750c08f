from __future__ import annotations

import argparse
from dataclasses import replace
import logging
from pathlib import Path
import time
from typing import Protocol, Sequence

from mergemend.agent_adapter import AgentAdapter
from mergemend.classifier import AttentionClassifier
from mergemend.codex_adapter import CodexAdapter
from mergemend.config import AgentConfig, AppConfig, ServerConfig, load_config
from mergemend.gemini_adapter import GeminiAdapter
from mergemend.github_gateway import GitHubGateway
from mergemend.gitlab_gateway import GitLabGateway
from mergemend.models import BatchResult
from mergemend.observability import configure_logging, log_event
from mergemend.processor import PipelineWatcher, RemediationProcessor, ReviewProcessor
from mergemend.provider import ProviderGateway
from mergemend.push_router import ForkCoordinator, PushRouter
from mergemend.selector import ActionSelector
from mergemend.triage_tui import TriageApp, TriageRow, triage_rows
from mergemend.workflow import WorkflowEngine
from mergemend.workspace import WorkspaceManager
from mergemend.workspace_lock import workspace_lock


LOGGER = logging.getLogger("mergemend.cli")


class Flow(Protocol):
    server: ServerConfig
    flow: str

    def process(self) -> BatchResult: ...


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mergemend")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser(
        "run", help="Poll every configured server and remediate requests that need attention"
    )
    _add_common(run_parser)
    run_parser.add_argument("--once", action="store_true", help="Run a single cycle and exit")

    triage_parser = subparsers.add_parser(
        "triage", help="Show what the next cycle would do, without changing anything"
    )
    _add_common(triage_parser)

    return parser


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=Path, default=Path("mergemend.toml"))
    parser.add_argument(
        "--server",
        dest="servers",
        action="append",
        metavar="ID",
        help="Limit to this configured server id; repeat for several (default: all)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        nargs="?",
        const="high",
        choices=("low", "high"),
        default=None,
        help="Log to stderr: 'low' keeps milestones only, 'high' (the default with -v) everything",
    )


def select_servers(config: AppConfig, server_ids: Sequence[str] | None) -> AppConfig:
    if not server_ids:
        return config
    chosen = tuple(config.server(server_id) for server_id in dict.fromkeys(server_ids))
    return replace(config, servers=chosen)


def main(argv: Sequence[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    config = select_servers(load_config(args.config), args.servers)
    configure_logging(args.verbose, log_dir=config.runtime.log_dir)

    if args.command == "run":
        _cmd_run(config, once=bool(args.once))
        return
    if args.command == "triage":
        _cmd_triage(config)
        return

    raise RuntimeError(f"Unknown command: {args.command}")


def build_gateway(server: ServerConfig) -> ProviderGateway:
    if server.provider == "gitlab":
        return GitLabGateway(server)
    return GitHubGateway(server)


def build_agent(config: AgentConfig) -> AgentAdapter:
    if config.kind == "codex":
        return CodexAdapter(config)
    return GeminiAdapter(config)


def build_flows(
    config: AppConfig,
    server: ServerConfig,
    *,
    gateway: ProviderGateway,
    agent: AgentAdapter,
    workspace: WorkspaceManager,
) -> tuple[Flow, ...]:
    runtime = config.runtime
    engine = WorkflowEngine(
        gateway=gateway,
        workspace=workspace,
        agent=agent,
        workspace_dir=runtime.workspace_dir,
    )
    flows: list[Flow] = [
        RemediationProcessor(
            server=server,
            gateway=gateway,
            classifier=AttentionClassifier(
                gateway=gateway,
                server=server,
                default_target_branch=runtime.default_target_branch,
            ),
            selector=ActionSelector(gateway=gateway),
            engine=engine,
            router=PushRouter(
                gateway=gateway,
                workspace=workspace,
                forks=ForkCoordinator(
                    gateway,
                    delay_seconds=runtime.fork_wait_delay_seconds,
                    timeout_seconds=runtime.fork_wait_timeout_seconds,
                ),
            ),
        )
    ]
    if runtime.enable_reviews:
        flows.append(
            ReviewProcessor(
                server=server,
                gateway=gateway,
                engine=engine,
                default_target_branch=runtime.default_target_branch,
            )
        )
    if runtime.enable_pipeline_watch:
        flows.append(PipelineWatcher(server=server, gateway=gateway))
    return tuple(flows)


def run_cycle(flows: Sequence[Flow]) -> list[BatchResult]:
    """Run every flow in order; one flow blowing up never stops the rest."""
    results: list[BatchResult] = []
    for flow in flows:
        try:
            results.append(flow.process())
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "flow_crashed",
                level=logging.ERROR,
                server=flow.server.server_id,
                flow=flow.flow,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            results.append(
                BatchResult(server_id=flow.server.server_id, flow=flow.flow, error=str(exc))
            )
    return results


def _cmd_run(config: AppConfig, *, once: bool) -> None:
    workspace = WorkspaceManager()
    agent = build_agent(config.agent)
    flows: list[Flow] = []
    for server in config.servers:
        flows.extend(
            build_flows(
                config,
                server,
                gateway=build_gateway(server),
                agent=agent,
                workspace=workspace,
            )
        )

    with workspace_lock(workspace_dir=config.runtime.workspace_dir, command="run"):
        while True:
            for result in run_cycle(flows):
                print(result.summary())
            if once:
                return
            time.sleep(config.runtime.poll_interval_seconds)


def _cmd_triage(config: AppConfig) -> None:
    pairs = [(server, build_gateway(server)) for server in config.servers]

    def load_rows() -> tuple[TriageRow, ...]:
        rows: list[TriageRow] = []
        for server, gateway in pairs:
            classifier = AttentionClassifier(
                gateway=gateway,
                server=server,
                default_target_branch=config.runtime.default_target_branch,
            )
            rows.extend(triage_rows(server=server, gateway=gateway, classifier=classifier))
        return tuple(rows)

    TriageApp(load_rows=load_rows).run()
