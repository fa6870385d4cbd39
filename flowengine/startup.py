"""Startup script for the workflow engine with command line interface."""

import argparse
import json
import sys
from typing import List, Optional

from .config import (
    EngineConfig,
    get_development_config,
    get_production_config,
    get_testing_config,
    load_config,
)
from .core.builtin_executors import build_default_registry
from .core.execution_engine import run_workflow
from .core.exceptions import WorkflowEngineError
from .core.logging import get_logger, setup_logging
from .models.core import BackoffStrategy, ExecutionStatusEnum, Graph


logger = get_logger(__name__)

APP_IMPORT_STRING = "flowengine.main:app"

PRESETS = {
    "development": get_development_config,
    "production": get_production_config,
    "testing": get_testing_config,
}


def create_argument_parser() -> argparse.ArgumentParser:
    """Create command line argument parser."""
    parser = argparse.ArgumentParser(
        prog="flowengine",
        description="Workflow execution engine for visual workflow graphs"
    )
    parser.add_argument("--env", choices=sorted(PRESETS), help="Environment configuration preset")
    parser.add_argument("--config", help="Path to a .env configuration file")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API server")
    serve_parser.add_argument("--host", help="Host to bind the server to")
    serve_parser.add_argument("--port", type=int, help="Port to bind the server to")
    serve_parser.add_argument(
        "--reload", action="store_true",
        help="Enable auto-reload for development (serves flowengine.main:app, configured from the environment)"
    )

    run_parser = subparsers.add_parser("run", help="Execute a graph JSON file and print its record")
    run_parser.add_argument("graph_file", help="Path to a graph JSON file ('-' for stdin)")
    run_parser.add_argument("--parallel", action="store_true", help="Execute sibling nodes concurrently")
    run_parser.add_argument("--max-retries", type=int, help="Default retry budget per node")
    run_parser.add_argument(
        "--backoff", choices=[strategy.value for strategy in BackoffStrategy], help="Retry backoff strategy"
    )
    run_parser.add_argument("--node-timeout", type=float, help="Per-node timeout in seconds")

    subparsers.add_parser("validate", help="Validate a graph JSON file").add_argument(
        "graph_file", help="Path to a graph JSON file ('-' for stdin)"
    )

    return parser


def with_overrides(config: EngineConfig, **updates) -> EngineConfig:
    """Copy of ``config`` with ``updates`` applied and validated."""
    if not updates:
        return config
    return EngineConfig.model_validate({**config.model_dump(), **updates})


def resolve_config(args: argparse.Namespace) -> EngineConfig:
    if args.env:
        config = PRESETS[args.env]()
    else:
        config = load_config(args.config)
    if args.log_level:
        config = with_overrides(config, log_level=args.log_level)
    return config


def read_graph(path: str) -> Graph:
    if path == "-":
        return Graph.model_validate(json.load(sys.stdin))
    with open(path, encoding="utf-8") as handle:
        return Graph.model_validate(json.load(handle))


def run_command(args: argparse.Namespace, config: EngineConfig) -> int:
    graph = read_graph(args.graph_file)
    updates = {"parallel": args.parallel or config.parallel}
    if args.max_retries is not None:
        updates["default_max_retries"] = args.max_retries
    if args.backoff:
        updates["backoff_strategy"] = BackoffStrategy(args.backoff)
    if args.node_timeout is not None:
        updates["node_timeout"] = args.node_timeout
    options = config.to_run_options().model_copy(update=updates)

    registry = build_default_registry()
    try:
        record = run_workflow(graph, registry, options)
    finally:
        registry.shutdown()

    print(record.model_dump_json(indent=2))
    return 0 if record.status == ExecutionStatusEnum.COMPLETED else 1


def validate_command(args: argparse.Namespace) -> int:
    from .core.graph_validation import validate_graph

    result = validate_graph(read_graph(args.graph_file))
    print(result.model_dump_json(indent=2))
    return 0 if result.is_valid else 1


def serve_command(args: argparse.Namespace, config: EngineConfig) -> int:
    import uvicorn
    from .factory import create_app

    updates = {}
    if args.host:
        updates["host"] = args.host
    if args.port:
        updates["port"] = args.port
    if args.reload:
        updates["reload"] = True
    config = with_overrides(config, **updates)

    uvicorn_config = config.get_uvicorn_config()
    if uvicorn_config.pop("reload"):
        # The reloader re-imports the app in a fresh process.
        uvicorn.run(APP_IMPORT_STRING, reload=True, **uvicorn_config)
    else:
        uvicorn.run(create_app(config), **uvicorn_config)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = create_argument_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 2

    try:
        config = resolve_config(args)
        setup_logging(
            level=config.log_level.value,
            log_file=config.log_file,
            log_format=config.log_format,
            structured=config.structured_logging,
            max_size=config.log_max_size,
            backup_count=config.log_backup_count,
            stream=sys.stderr,
        )

        if args.command == "serve":
            return serve_command(args, config)
        if args.command == "run":
            return run_command(args, config)
        return validate_command(args)
    except (OSError, ValueError, WorkflowEngineError) as e:
        logger.error(f"{args.command} failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
