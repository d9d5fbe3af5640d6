"""
Training Engine - CLI.

============================================================
RESPONSIBILITY
============================================================
Command-line interface for the training orchestrator and the
model registry.

- Provides argparse-based subcommands
- Loads configuration from environment, CLI flags override
- Prints results as JSON on stdout, logs go to stderr

With the sql store backend, jobs, models and audit entries
persist across invocations. The memory backend only lives
for one command.

============================================================
USAGE
============================================================
python -m training_engine.cli submit '{"modelType": "rl_agent", ...}'
python -m training_engine.cli submit @request.json --no-wait
python -m training_engine.cli jobs --status completed
python -m training_engine.cli deploy model_1a2b3c4d5e6f --approve
python -m training_engine.cli rollback model_new model_old --approve
python -m training_engine.cli audit --subject model_1a2b3c4d5e6f

============================================================
"""

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Optional

from audit.log import AuditEventType
from core.exceptions import ConfigurationError, OrchestrationError, ValidationError
from model_registry.types import ModelFilter, ModelStatus, ShadowTestResults

from .bootstrap import TrainingSystem, build_system
from .config import LogFormat, OrchestratorConfig, StoreBackend
from .store import JobFilter
from .types import JobStatus, ModelType


logger = logging.getLogger(__name__)

DEFAULT_ACTOR = "cli"


# ============================================================
# LOGGING SETUP
# ============================================================

def setup_logging(level: str = "INFO", log_format: str = "text") -> None:
    """
    Set up structured logging on stderr.

    Args:
        level: Log level
        log_format: Output format (json or text)
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    if log_format == "json":
        formatter = logging.Formatter(
            json.dumps({
                "timestamp": "%(asctime)s",
                "level": "%(levelname)s",
                "logger": "%(name)s",
                "message": "%(message)s",
            })
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
        )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = [handler]


# ============================================================
# CLI ARGUMENT PARSER
# ============================================================

def _add_actor(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--actor",
        type=str,
        default=DEFAULT_ACTOR,
        help=f"Who performs the operation, recorded in the audit log (default: {DEFAULT_ACTOR})",
    )


def _add_approve(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--approve",
        action="store_true",
        help="Explicit approval, required for this operation",
    )


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="training-engine",
        description="Training job orchestrator and model registry",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s submit @request.json                 # Train and wait for the model
  %(prog)s jobs --status completed --limit 5
  %(prog)s deploy model_1a2b3c4d5e6f --approve
  %(prog)s --store sql --database-url sqlite:///training.db models
        """,
    )

    # --------------------------------------------------------
    # Global Options
    # --------------------------------------------------------
    global_group = parser.add_argument_group("Global Options")

    global_group.add_argument(
        "--store",
        type=str,
        choices=[b.value for b in StoreBackend],
        help="Store backend (default: STORE_BACKEND or memory)",
    )

    global_group.add_argument(
        "--database-url",
        type=str,
        metavar="URL",
        help="SQLAlchemy URL for the sql backend (default: DATABASE_URL)",
    )

    global_group.add_argument(
        "--step-delay",
        type=float,
        metavar="SECONDS",
        help="Delay between simulated stage updates",
    )

    global_group.add_argument(
        "--steps-per-stage",
        type=int,
        metavar="N",
        help="Updates emitted by each simulated stage",
    )

    global_group.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: LOG_LEVEL or INFO)",
    )

    global_group.add_argument(
        "--log-format",
        type=str,
        choices=[f.value for f in LogFormat],
        help="Logging format (default: LOG_FORMAT or text)",
    )

    parser.add_argument(
        "--version", "-v",
        action="version",
        version="%(prog)s 1.0.0",
    )

    commands = parser.add_subparsers(dest="command", metavar="COMMAND")
    commands.required = True

    # --------------------------------------------------------
    # Jobs
    # --------------------------------------------------------
    submit = commands.add_parser("submit", help="Submit a training job")
    submit.add_argument(
        "payload",
        help="Submission as a JSON object, or @PATH to read it from a file",
    )
    submit.add_argument(
        "--no-wait",
        action="store_true",
        help="Return right after queueing instead of waiting for the job to finish",
    )
    submit.add_argument(
        "--timeout",
        type=float,
        metavar="SECONDS",
        help="Give up waiting after this long",
    )
    _add_actor(submit)

    jobs = commands.add_parser("jobs", help="List training jobs, newest first")
    jobs.add_argument(
        "--status",
        action="append",
        choices=[s.value for s in JobStatus],
        help="Only jobs with this status (repeatable)",
    )
    jobs.add_argument("--model-type", choices=[t.value for t in ModelType])
    jobs.add_argument("--limit", type=int)

    status = commands.add_parser("status", help="Show one training job")
    status.add_argument("job_id")

    cancel = commands.add_parser("cancel", help="Cancel a running training job")
    cancel.add_argument("job_id")
    _add_actor(cancel)

    commands.add_parser(
        "recover",
        help="Fail jobs left active by an orchestrator that is no longer running",
    )

    watch = commands.add_parser("watch", help="Stream job snapshots")
    watch.add_argument("--interval", type=float, metavar="SECONDS")
    watch.add_argument("--count", type=int, default=1, help="Number of snapshots (default: 1)")
    watch.add_argument("--active", action="store_true", help="Only non-terminal jobs")

    # --------------------------------------------------------
    # Models
    # --------------------------------------------------------
    models = commands.add_parser("models", help="List registered models, newest first")
    models.add_argument(
        "--status",
        action="append",
        choices=[s.value for s in ModelStatus],
        help="Only models with this status (repeatable)",
    )
    models.add_argument("--model-type", choices=[t.value for t in ModelType])
    models.add_argument("--name")
    models.add_argument("--limit", type=int)

    for name, help_text in (
        ("deploy", "Deploy a trained model"),
        ("promote", "Promote a trained model (same as deploy)"),
    ):
        command = commands.add_parser(name, help=help_text)
        command.add_argument("model_id")
        _add_approve(command)
        _add_actor(command)

    rollback = commands.add_parser("rollback", help="Roll back from the deployed model")
    rollback.add_argument("from_model_id")
    rollback.add_argument("to_model_id")
    _add_approve(rollback)
    _add_actor(rollback)

    shadow_start = commands.add_parser("shadow-start", help="Start a shadow test")
    shadow_start.add_argument("model_id")
    _add_actor(shadow_start)

    shadow_stop = commands.add_parser("shadow-stop", help="Stop a shadow test")
    shadow_stop.add_argument("model_id")
    shadow_stop.add_argument("--performance", type=float, help="Shadow performance score")
    shadow_stop.add_argument("--trades", type=int, help="Trades taken in shadow")
    shadow_stop.add_argument("--pnl", type=float, help="Shadow profit and loss")
    _add_actor(shadow_stop)

    shadow_tests = commands.add_parser("shadow-tests", help="List shadow tests, newest first")
    shadow_tests.add_argument("--model-id")

    # --------------------------------------------------------
    # Audit
    # --------------------------------------------------------
    audit = commands.add_parser("audit", help="Query the audit log")
    audit.add_argument("--subject", help="Only entries naming this job or model id")
    audit.add_argument(
        "--event-type",
        choices=[e.value for e in AuditEventType],
        help="Only entries of this event type",
    )
    audit.add_argument("--limit", type=int, help="Only the most recent N entries")

    return parser


# ============================================================
# CLI CONFIGURATION BUILDER
# ============================================================

def build_config(args: argparse.Namespace) -> OrchestratorConfig:
    """
    Build orchestrator configuration: environment first, flags override.

    Raises:
        ConfigurationError: invalid configuration
    """
    config = OrchestratorConfig.from_env()
    overrides: Dict[str, Any] = {}

    if args.store:
        overrides["store_backend"] = StoreBackend(args.store)
    if args.database_url:
        overrides["database_url"] = args.database_url
    if args.step_delay is not None:
        overrides["step_delay_seconds"] = args.step_delay
    if args.steps_per_stage is not None:
        overrides["steps_per_stage"] = args.steps_per_stage
    if args.log_level:
        overrides["log_level"] = args.log_level
    if args.log_format:
        overrides["log_format"] = LogFormat(args.log_format)

    config = replace(config, **overrides)
    config.ensure_valid()
    return config


def load_payload(raw: str) -> Dict[str, Any]:
    """
    Parse a submission given inline or as @PATH.

    Raises:
        ValidationError: unreadable file or invalid JSON
    """
    source = "payload"
    try:
        if raw.startswith("@"):
            source = raw[1:]
            raw = Path(source).read_text(encoding="utf-8")
        payload = json.loads(raw)
    except OSError as e:
        raise ValidationError(
            f"Cannot read submission file: {e}",
            field_errors={"payload": [str(e)]},
        ) from e
    except json.JSONDecodeError as e:
        raise ValidationError(
            f"Submission in {source} is not valid JSON: {e}",
            field_errors={"payload": [f"invalid JSON: {e.msg}"]},
        ) from e
    return payload


def _emit(result: Any) -> None:
    print(json.dumps(result, indent=2, default=str))


def _fail(error: OrchestrationError) -> int:
    logger.error(error.to_log_format())
    print(json.dumps({"error": error.to_dict()}, indent=2, default=str), file=sys.stderr)
    return 1


# ============================================================
# COMMANDS
# ============================================================

async def run_command(args: argparse.Namespace, system: TrainingSystem) -> Any:
    """
    Execute one command against a wired system.

    Returns:
        JSON-serializable result
    """
    orchestrator = system.orchestrator
    registry = system.registry

    if args.command == "submit":
        job = await orchestrator.submit(load_payload(args.payload), actor=args.actor)
        if not args.no_wait:
            job = await orchestrator.wait_for(job.job_id, timeout=args.timeout)
        return job.to_dict()

    if args.command == "jobs":
        job_filter = JobFilter(
            statuses=frozenset(JobStatus(s) for s in args.status) if args.status else None,
            model_type=ModelType(args.model_type) if args.model_type else None,
            limit=args.limit,
        )
        return [job.to_dict() for job in orchestrator.list_jobs(job_filter)]

    if args.command == "status":
        return orchestrator.get_status(args.job_id).to_dict()

    if args.command == "cancel":
        return (await orchestrator.cancel(args.job_id, actor=args.actor)).to_dict()

    if args.command == "recover":
        return {"recovered": await orchestrator.start()}

    if args.command == "watch":
        job_filter = JobFilter.active() if args.active else None
        snapshots = []
        async for batch in orchestrator.stream_snapshots(
            interval_seconds=args.interval,
            job_filter=job_filter,
            max_snapshots=args.count,
        ):
            snapshots.append([
                {
                    "job_id": s.job_id,
                    "status": s.status.value,
                    "current_stage": s.current_stage,
                    "progress": s.progress,
                    "model_id": s.model_id,
                    "at": s.at.isoformat(),
                }
                for s in batch
            ])
        return snapshots

    if args.command == "models":
        model_filter = ModelFilter(
            statuses=frozenset(ModelStatus(s) for s in args.status) if args.status else None,
            model_type=ModelType(args.model_type) if args.model_type else None,
            name=args.name,
            limit=args.limit,
        )
        return [model.to_dict() for model in registry.list_models(model_filter)]

    if args.command == "deploy":
        return (await registry.deploy(args.model_id, args.approve, actor=args.actor)).to_dict()

    if args.command == "promote":
        return (await registry.promote(args.model_id, args.approve, actor=args.actor)).to_dict()

    if args.command == "rollback":
        result = await registry.rollback(
            args.from_model_id, args.to_model_id, args.approve, actor=args.actor
        )
        return {"from": result.from_model.to_dict(), "to": result.to_model.to_dict()}

    if args.command == "shadow-start":
        return (await registry.start_shadow(args.model_id, actor=args.actor)).to_dict()

    if args.command == "shadow-stop":
        results = None
        if args.performance is not None or args.trades is not None or args.pnl is not None:
            results = ShadowTestResults(
                performance=args.performance or 0.0,
                trades=args.trades or 0,
                pnl=args.pnl or 0.0,
            )
        model = await registry.stop_shadow(args.model_id, actor=args.actor, results=results)
        return model.to_dict()

    if args.command == "shadow-tests":
        return [test.to_dict() for test in registry.get_shadow_tests(args.model_id)]

    if args.command == "audit":
        event_type = AuditEventType(args.event_type) if args.event_type else None
        entries = system.audit_log.entries(
            subject_id=args.subject,
            event_type=event_type,
            limit=args.limit,
        )
        return [entry.to_dict() for entry in entries]

    raise ValueError(f"Unknown command: {args.command}")


# ============================================================
# MAIN ENTRY POINT
# ============================================================

async def async_main(args: argparse.Namespace, config: OrchestratorConfig) -> int:
    """
    Async main entry point.

    Returns:
        Exit code
    """
    try:
        system = build_system(config)
    except OrchestrationError as e:
        return _fail(e)

    try:
        result = await run_command(args, system)
        _emit(result)
        return 0

    except OrchestrationError as e:
        return _fail(e)
    except asyncio.TimeoutError:
        print(json.dumps({"error": {"code": "TIMEOUT", "message": "Timed out waiting"}}), file=sys.stderr)
        return 1
    finally:
        await system.orchestrator.stop()


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

    Args:
        argv: Command line arguments (default: sys.argv[1:])

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    try:
        config = build_config(args)
    except (ConfigurationError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    setup_logging(config.log_level, config.log_format.value)

    try:
        return asyncio.run(async_main(args, config))
    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        return 130


# ============================================================
# MODULE EXECUTION
# ============================================================

if __name__ == "__main__":
    sys.exit(main())
