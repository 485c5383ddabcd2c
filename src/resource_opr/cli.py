"""CLI handlers for resource verb commands.

Usage:
    converge resource plan -f <declarations> [--json-output] [--verbose]
    converge resource apply -f <declarations> [--json-output] [--verbose]
    converge resource destroy [--yes] [--json-output]
    converge resource validate -f <declarations>
    converge resource show [ADDRESS]
    converge resource refresh [--json-output]
    converge resource taint ADDRESS
    converge resource untaint ADDRESS
    converge resource unlock [--force]
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from config import ConfigError, EngineConfig, load_config
from declarations import load_declarations
from resource_opr.errors import StateConflictError, ValidationError
from resource_opr.executor import Executor, RetryPolicy
from resource_opr.graph import ResourceGraph
from resource_opr.planner import DELETE, NOOP, Plan, Planner
from resource_opr.providers import BUILTIN_KINDS, ProviderRegistry
from resource_opr.rest_adapter import build_registry
from resource_opr.state import APPLIED, TAINTED, StateStore

logger = logging.getLogger(__name__)

# Exit codes
EXIT_SUCCESS = 0
EXIT_VALIDATION_ERROR = 1  # Invalid declarations or config
EXIT_RUN_FAILED = 2  # Failed, blocked or cancelled resources
EXIT_STATE_CONFLICT = 3  # Lock held, stale plan, out-of-band change

_SYMBOLS = {'create': '+', 'update': '~', 'delete': '-', 'noop': ' '}


def _common_parser(verb: str, declarations: bool = False) -> argparse.ArgumentParser:
    """Build argument parser with common options for all verbs."""
    parser = argparse.ArgumentParser(
        prog=f'converge resource {verb}',
        description=f'{verb.capitalize()} declared resources',
    )
    parser.add_argument(
        '--config', '-c',
        help='Path to converge.yaml (default: $CONVERGE_CONFIG or ./converge.yaml)',
    )
    parser.add_argument(
        '--state',
        help='Override the state file path from config',
    )
    if declarations:
        parser.add_argument(
            '--file', '-f',
            help='Path to declarations file (YAML or JSON)',
        )
        parser.add_argument(
            '--declarations-json',
            help='Inline declarations JSON',
        )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging',
    )
    parser.add_argument(
        '--json-output',
        action='store_true',
        help='Output structured JSON to stdout (logs to stderr)',
    )
    return parser


def _setup_logging(verbose: bool, json_output: bool) -> None:
    """Configure logging based on flags."""
    if json_output:
        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
        ))
        root_logger.addHandler(stderr_handler)

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


def _load_config(args) -> EngineConfig:
    """Load engine config, applying --state.

    Raises:
        SystemExit: On configuration errors
    """
    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        sys.exit(EXIT_VALIDATION_ERROR)
    if args.state:
        config.state_file = Path(args.state)
    return config


def _load_registry(config: EngineConfig) -> ProviderRegistry:
    """Bind provider adapters from config.

    Raises:
        SystemExit: If the provider is not configured
    """
    try:
        return build_registry(config)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(EXIT_VALIDATION_ERROR)


def _load_graph(args, kinds) -> ResourceGraph:
    """Load declarations and build the validated graph.

    Raises:
        SystemExit: On validation errors
    """
    if not args.file and not args.declarations_json:
        print("Error: specify declarations with -f or --declarations-json", file=sys.stderr)
        sys.exit(EXIT_VALIDATION_ERROR)

    try:
        declarations = load_declarations(file_path=args.file, json_str=args.declarations_json)
        return ResourceGraph.build(declarations.resources, known_kinds=kinds)
    except ValidationError as e:
        print(f"Validation error: {e}", file=sys.stderr)
        sys.exit(EXIT_VALIDATION_ERROR)


def _make_executor(config: EngineConfig, registry: ProviderRegistry) -> Executor:
    return Executor(
        registry,
        max_workers=config.max_workers,
        retry=RetryPolicy(
            attempts=config.retry.attempts,
            base_delay=config.retry.base_delay,
            max_delay=config.retry.max_delay,
        ),
        run_timeout=config.run_timeout,
    )


def _open_store(config: EngineConfig) -> StateStore:
    try:
        return StateStore(config.state_file)
    except StateConflictError as e:
        print(f"State error: {e}", file=sys.stderr)
        sys.exit(EXIT_STATE_CONFLICT)


def _print_plan(plan: Plan) -> None:
    """Print a plan for humans."""
    summary = plan.summary()
    print(
        f"Plan: {summary['create']} to create, {summary['update']} to update, "
        f"{summary['replace']} to replace, {summary['delete']} to delete, "
        f"{summary['noop']} unchanged"
    )
    for action in plan.actions:
        if action.type == NOOP:
            continue
        line = f"  {_SYMBOLS[action.type]} {action.type:<7} {action.address}"
        if action.replacing:
            line += " (replace)"
        if action.changed and action.type != DELETE:
            line += f" [{', '.join(sorted(action.changed))}]"
        if action.reason:
            line += f" - {action.reason}"
        print(line)


def _add_report_arg(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--report-file',
        type=Path,
        help='Also write the execution report as JSON to this path',
    )


def _emit_report(report, args) -> None:
    if args.report_file:
        report.write_json(args.report_file)
    if args.json_output:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        print(report.format_summary())


def plan_main(argv: list) -> int:
    """Handle 'resource plan' verb."""
    parser = _common_parser('plan', declarations=True)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    config = _load_config(args)
    registry = _load_registry(config)
    graph = _load_graph(args, registry.kinds)
    store = _open_store(config)

    try:
        with store.run_lock():
            plan = Planner(registry.immutable_attributes).plan(graph, store.snapshot())
    except StateConflictError as e:
        print(f"State conflict: {e}", file=sys.stderr)
        return EXIT_STATE_CONFLICT

    if args.json_output:
        print(json.dumps(plan.to_dict(), indent=2))
    elif plan.is_noop:
        print("No changes. Infrastructure matches declarations.")
    else:
        _print_plan(plan)
    return EXIT_SUCCESS


def apply_main(argv: list) -> int:
    """Handle 'resource apply' verb."""
    parser = _common_parser('apply', declarations=True)
    _add_report_arg(parser)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    config = _load_config(args)
    registry = _load_registry(config)
    graph = _load_graph(args, registry.kinds)
    store = _open_store(config)

    plan = Planner(registry.immutable_attributes).plan(graph, store.snapshot())
    if not args.json_output:
        _print_plan(plan)

    logger.info(f"Applying {len(plan.changes())} change(s) to {config.state_file}")
    executor = _make_executor(config, registry)
    try:
        report = executor.apply(plan, store)
    except StateConflictError as e:
        print(f"State conflict: {e}", file=sys.stderr)
        return EXIT_STATE_CONFLICT

    _emit_report(report, args)
    return EXIT_SUCCESS if report.success else EXIT_RUN_FAILED


def destroy_main(argv: list) -> int:
    """Handle 'resource destroy' verb."""
    parser = _common_parser('destroy')
    _add_report_arg(parser)
    parser.add_argument(
        '--yes', '-y',
        action='store_true',
        help='Skip confirmation prompt',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    config = _load_config(args)
    registry = _load_registry(config)
    store = _open_store(config)

    # Confirmation for destructive operation
    if not args.yes:
        print(f"\nWARNING: This will destroy all {len(store.snapshot())} resource(s) "
              f"tracked in {config.state_file}.")
        print("This action cannot be undone.")
        response = input("Continue? [y/N] ").strip().lower()
        if response != 'y':
            print("Aborted.")
            return EXIT_VALIDATION_ERROR

    executor = _make_executor(config, registry)
    try:
        report = executor.destroy(store)
    except StateConflictError as e:
        print(f"State conflict: {e}", file=sys.stderr)
        return EXIT_STATE_CONFLICT

    _emit_report(report, args)
    return EXIT_SUCCESS if report.success else EXIT_RUN_FAILED


def validate_main(argv: list) -> int:
    """Handle 'resource validate' verb.

    Checks declaration structure, kinds, references and cycles without
    reading state or contacting the provider.
    """
    parser = _common_parser('validate', declarations=True)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    graph = _load_graph(args, BUILTIN_KINDS)
    if args.json_output:
        print(json.dumps({
            'valid': True,
            'resources': len(graph),
            'levels': graph.levels(),
            'order': [r.address for r in graph.topological_order()],
        }, indent=2))
    else:
        print(f"Declarations valid: {len(graph)} resource(s), {graph.max_level + 1} level(s)")
    return EXIT_SUCCESS


def show_main(argv: list) -> int:
    """Handle 'resource show' verb."""
    parser = _common_parser('show')
    parser.add_argument('address', nargs='?', help='Show a single resource (Kind.name)')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    config = _load_config(args)
    snapshot = _open_store(config).snapshot()

    if args.address:
        entry = snapshot.get(args.address)
        if entry is None:
            print(f"Error: No state for '{args.address}'", file=sys.stderr)
            return EXIT_VALIDATION_ERROR
        print(json.dumps(entry.to_dict(), indent=2))
        return EXIT_SUCCESS

    if args.json_output:
        print(json.dumps({
            'serial': snapshot.serial,
            'order': list(snapshot.order),
            'resources': {a: e.to_dict() for a, e in snapshot.entries.items()},
        }, indent=2))
    elif not snapshot.entries:
        print("No resources in state.")
    else:
        for address, entry in snapshot.entries.items():
            line = f"  {address:<40} {entry.status:<8} {entry.resource_id or '-'}"
            if entry.error:
                line += f"  ({entry.error})"
            print(line)
    return EXIT_SUCCESS


def refresh_main(argv: list) -> int:
    """Handle 'resource refresh' verb."""
    parser = _common_parser('refresh')
    _add_report_arg(parser)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    config = _load_config(args)
    registry = _load_registry(config)
    store = _open_store(config)

    try:
        report = _make_executor(config, registry).refresh(store)
    except StateConflictError as e:
        print(f"State conflict: {e}", file=sys.stderr)
        return EXIT_STATE_CONFLICT

    _emit_report(report, args)
    return EXIT_SUCCESS if report.success else EXIT_RUN_FAILED


def _set_status(argv: list, verb: str, status: str) -> int:
    parser = _common_parser(verb)
    parser.add_argument('address', help='Resource address (Kind.name)')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    config = _load_config(args)
    store = _open_store(config)
    try:
        with store.run_lock():
            store.mark(args.address, status)
    except KeyError:
        print(f"Error: No state for '{args.address}'", file=sys.stderr)
        return EXIT_VALIDATION_ERROR
    except StateConflictError as e:
        print(f"State conflict: {e}", file=sys.stderr)
        return EXIT_STATE_CONFLICT

    logger.info(f"Marked {args.address} as {status}")
    if args.json_output:
        print(json.dumps({'address': args.address, 'status': status}))
    return EXIT_SUCCESS


def taint_main(argv: list) -> int:
    """Handle 'resource taint' verb: force replacement on next apply."""
    return _set_status(argv, 'taint', TAINTED)


def untaint_main(argv: list) -> int:
    """Handle 'resource untaint' verb."""
    return _set_status(argv, 'untaint', APPLIED)


def unlock_main(argv: list) -> int:
    """Handle 'resource unlock' verb: remove a lock left by a crashed run."""
    parser = _common_parser('unlock')
    parser.add_argument(
        '--force',
        action='store_true',
        help='Remove the lock even if its owner may still be running',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    config = _load_config(args)
    store = _open_store(config)
    try:
        removed = store.force_unlock(force=args.force)
    except StateConflictError as e:
        print(f"State conflict: {e}", file=sys.stderr)
        return EXIT_STATE_CONFLICT
    if args.json_output:
        print(json.dumps({'unlocked': removed}))
    else:
        print(f"Removed lock {store.lock_path}" if removed else "State is not locked.")
    return EXIT_SUCCESS
