from __future__ import annotations

import argparse
from dataclasses import asdict, dataclass
from datetime import timedelta
import json
from pathlib import Path

from reviewloop.agent_client import CodingAgentClient, CursorAgentClient
from reviewloop.agent_poller import AgentStatusPoller
from reviewloop.config import AppConfig, load_config
from reviewloop.github_gateway import GitHubGateway, parse_pull_request_url
from reviewloop.models import AgentRecord, ReviewLoop, utc_now_iso
from reviewloop.notifications import LoggingNotificationSink, NotificationOutbox
from reviewloop.observability import configure_logging
from reviewloop.review_loop import GitHubFactory, ReviewLoopEngine
from reviewloop.state import StateStore
from reviewloop.webhook import (
    DELIVERY_HEADER,
    EVENT_HEADER,
    SIGNATURE_HEADER,
    WebhookReceiver,
    compute_signature,
)


@dataclass(frozen=True)
class Runtime:
    config: AppConfig
    store: StateStore
    outbox: NotificationOutbox
    agent_client: CodingAgentClient | None
    engine: ReviewLoopEngine


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="reviewloop")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init", help="Initialize the state DB")
    _add_common_arguments(init_parser)

    webhook_parser = subparsers.add_parser(
        "webhook", help="Replay a stored GitHub webhook payload through the receiver"
    )
    _add_common_arguments(webhook_parser)
    webhook_parser.add_argument("--event", required=True, help="GitHub event name, e.g. pull_request")
    webhook_parser.add_argument("--delivery", default="", help="Delivery ID used for deduplication")
    webhook_parser.add_argument("--payload", type=Path, required=True, help="Path to the JSON body")

    track_parser = subparsers.add_parser(
        "track", help="Record a coding agent run so its pull request can enter review"
    )
    _add_common_arguments(track_parser)
    track_parser.add_argument("--agent-id", required=True)
    track_parser.add_argument("--repository", required=True, help="owner/name")
    track_parser.add_argument("--pr-url", default="")
    track_parser.add_argument("--branch", default="")
    track_parser.add_argument("--workflow-id", help="Link an approval workflow to this run")

    cancel_parser = subparsers.add_parser("cancel", help="Stop a tracked coding agent run")
    _add_common_arguments(cancel_parser)
    cancel_parser.add_argument("--agent-id", required=True)

    bootstrap_parser = subparsers.add_parser(
        "bootstrap", help="Start the review loop for a PR whose agent run has finished"
    )
    _add_common_arguments(bootstrap_parser)
    bootstrap_parser.add_argument("--pr-url", required=True)

    loops_parser = subparsers.add_parser("loops", help="List review loops")
    _add_common_arguments(loops_parser)
    loops_parser.add_argument(
        "--active", action="store_true", help="Hide loops that reached a terminal phase"
    )
    loops_parser.add_argument("--json", action="store_true", help="Print loops as JSON")

    show_parser = subparsers.add_parser("show", help="Print one review loop as JSON")
    _add_common_arguments(show_parser)
    show_parser.add_argument("--pr-url", required=True)

    sweep_parser = subparsers.add_parser(
        "sweep", help="Refresh running agents and start loops that are missing"
    )
    _add_common_arguments(sweep_parser)

    return parser


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=Path, default=Path("reviewloop.toml"))
    parser.add_argument(
        "-v",
        "--verbose",
        nargs="?",
        const="low",
        choices=("low", "high"),
        help="Enable runtime logging to stderr (low: lifecycle events only)",
    )


def main() -> None:
    args = build_parser().parse_args()
    config = load_config(args.config)
    config.runtime.base_dir.mkdir(parents=True, exist_ok=True)
    configure_logging(args.verbose, state_dir=config.runtime.base_dir)

    if args.command == "init":
        _cmd_init(config)
        return

    runtime = _build_runtime(config)
    if args.command == "webhook":
        _cmd_webhook(runtime, event=str(args.event), delivery=str(args.delivery), payload=args.payload)
        return
    if args.command == "track":
        _cmd_track(
            runtime,
            agent_id=str(args.agent_id),
            repository=str(args.repository),
            pr_url=str(args.pr_url),
            branch=str(args.branch),
            workflow_id=args.workflow_id,
        )
        return
    if args.command == "cancel":
        _cmd_cancel(runtime, agent_id=str(args.agent_id))
        return
    if args.command == "bootstrap":
        _cmd_bootstrap(runtime, pr_url=str(args.pr_url))
        return
    if args.command == "loops":
        _cmd_loops(runtime.store, active_only=bool(args.active), as_json=bool(args.json))
        return
    if args.command == "show":
        _cmd_show(runtime.store, pr_url=str(args.pr_url))
        return
    if args.command == "sweep":
        _cmd_sweep(runtime)
        return

    raise RuntimeError(f"Unknown command: {args.command}")


def _gateway_factory(config: AppConfig) -> GitHubFactory:
    """One gateway per repository so its ETag cache survives across events."""
    gateways: dict[tuple[str, str], GitHubGateway] = {}

    def factory(owner: str, name: str) -> GitHubGateway:
        key = (owner.lower(), name.lower())
        gateway = gateways.get(key)
        if gateway is None:
            gateway = GitHubGateway(
                owner,
                name,
                read_timeout_seconds=config.github.read_timeout_seconds,
                write_timeout_seconds=config.github.request_timeout_seconds,
            )
            gateways[key] = gateway
        return gateway

    return factory


def _build_runtime(config: AppConfig) -> Runtime:
    store = StateStore(config.runtime.state_db_path)
    outbox = NotificationOutbox(LoggingNotificationSink())
    api_key = config.agent.api_key()
    agent_client: CodingAgentClient | None = None
    if api_key:
        agent_client = CursorAgentClient(
            api_key=api_key,
            base_url=config.agent.base_url,
            timeout_seconds=config.agent.timeout_seconds,
        )

    engine = ReviewLoopEngine(
        store=store,
        github_factory=_gateway_factory(config),
        agent_client=agent_client,
        outbox=outbox,
        config=config.review_loop,
    )
    return Runtime(
        config=config, store=store, outbox=outbox, agent_client=agent_client, engine=engine
    )


def _cmd_init(config: AppConfig) -> None:
    state = StateStore(config.runtime.state_db_path)
    _ = state
    print(f"Initialized reviewloop base dir: {config.runtime.base_dir}")
    print(f"State DB: {config.runtime.state_db_path}")


def _cmd_webhook(runtime: Runtime, *, event: str, delivery: str, payload: Path) -> None:
    body = payload.read_bytes()
    secret = runtime.config.github.webhook_secret()
    receiver = WebhookReceiver(
        runtime.engine,
        runtime.store,
        secret=secret,
        delivery_ttl=timedelta(seconds=runtime.config.runtime.delivery_ttl_seconds),
    )
    headers = {EVENT_HEADER: event, DELIVERY_HEADER: delivery}
    if secret is not None:
        headers[SIGNATURE_HEADER] = compute_signature(secret, body)
    response = receiver.handle(headers, body)
    print(f"status={response.status_code} body={response.body or '<empty>'}")
    if not response.ok:
        raise SystemExit(1)


def _cmd_track(
    runtime: Runtime,
    *,
    agent_id: str,
    repository: str,
    pr_url: str,
    branch: str,
    workflow_id: str | None,
) -> None:
    if repository.count("/") != 1:
        raise RuntimeError("--repository must be in owner/name form")
    if pr_url:
        parse_pull_request_url(pr_url)
    record = AgentRecord(
        id=agent_id,
        agent_id=agent_id,
        status="RUNNING",
        repository=repository,
        pr_url=pr_url,
        branch_name=branch,
        updated_at=utc_now_iso(),
    )
    existing = runtime.store.get_agent_record(agent_id)
    if existing is not None:
        record = existing
    else:
        runtime.store.upsert_agent_record(record)
    if workflow_id:
        runtime.store.link_workflow(agent_record_id=record.id, workflow_id=workflow_id)
    if runtime.agent_client is not None:
        record = _poller(runtime).refresh(record)
    print(f"agent_record_id={record.id} status={record.status} pr_url={record.pr_url or '<none>'}")


def _cmd_cancel(runtime: Runtime, *, agent_id: str) -> None:
    record = _poller(runtime).cancel(agent_id)
    print(f"agent_record_id={record.id} status={record.status}")


def _cmd_bootstrap(runtime: Runtime, *, pr_url: str) -> None:
    loop = runtime.engine.ensure_review_loop(pr_url)
    if loop is None:
        print(f"No review loop started for {pr_url}.")
        return
    print(_loop_line(loop))


def _cmd_loops(state: StateStore, *, active_only: bool, as_json: bool) -> None:
    loops = state.list_review_loops(include_terminal=not active_only)
    if as_json:
        print(json.dumps([_loop_summary(loop) for loop in loops], indent=2))
        return
    if not loops:
        print("No review loops.")
        return
    for loop in loops:
        print(_loop_line(loop))


def _cmd_show(state: StateStore, *, pr_url: str) -> None:
    loop = state.get_review_loop_by_pr_url(pr_url)
    if loop is None:
        raise RuntimeError(f"No review loop for {pr_url}")
    print(json.dumps(asdict(loop), indent=2))


def _cmd_sweep(runtime: Runtime) -> None:
    result = _poller(runtime).sweep()
    print(
        f"refreshed={result.refreshed} started={len(result.started)} failed={len(result.failed)}"
    )


def _poller(runtime: Runtime) -> AgentStatusPoller:
    if runtime.agent_client is None:
        raise RuntimeError(
            f"Coding agent API key is not configured (set {runtime.config.agent.api_key_env})"
        )
    return AgentStatusPoller(runtime.store, runtime.agent_client, runtime.engine, runtime.outbox)


def _loop_summary(loop: ReviewLoop) -> dict[str, object]:
    return {
        "id": loop.id,
        "pr_url": loop.pr_url,
        "phase": loop.phase,
        "iteration": loop.iteration,
        "open_findings": sum(1 for finding in loop.findings if finding.status == "open"),
        "updated_at": loop.updated_at,
    }


def _loop_line(loop: ReviewLoop) -> str:
    summary = _loop_summary(loop)
    return " ".join(f"{key}={value}" for key, value in summary.items())
