"""CLI handlers for reconciliation verbs (plan, apply, destroy, validate, state).

Usage:
    iac-reconciler plan -M <manifest> [--var name=value] [--refresh] [--json-output]
    iac-reconciler apply -M <manifest> [--concurrency N] [--deadline S] [--dry-run]
    iac-reconciler destroy [--yes] [--dry-run]
    iac-reconciler validate -M <manifest>
    iac-reconciler state list|show <id>

Exit codes: 0 success, 1 resource failures, 2 configuration error,
3 internal error.
"""

import argparse
import json
import logging
import signal
import sys
import threading
from typing import Optional

from common import parse_var_assignments
from config import WorkspaceConfig, load_workspace_config
from manifest import load_manifest
from providers.registry import ProviderRegistry
from reconciler.errors import ConfigurationError, InternalError
from reconciler.executor import ApplyResult, Executor
from reconciler.graph import DependencyGraph
from reconciler.planner import ActionType, Plan, Planner
from reconciler.refresh import refresh_snapshot
from reconciler.state import FileStateStore

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILED = 1
EXIT_CONFIG_ERROR = 2
EXIT_INTERNAL_ERROR = 3

_ACTION_SYMBOLS = {
    ActionType.CREATE: '+',
    ActionType.UPDATE: '~',
    ActionType.DELETE: '-',
    ActionType.NOOP: '=',
    ActionType.SKIP: ' ',
}


def _common_parser(verb: str, description: str, manifest: bool = True) -> argparse.ArgumentParser:
    """Build argument parser with options shared by all verbs."""
    parser = argparse.ArgumentParser(prog=f'iac-reconciler {verb}', description=description)
    parser.add_argument(
        '--workspace', '-W',
        help='Workspace directory (default: $RECONCILER_WORKSPACE or cwd)',
    )
    if manifest:
        parser.add_argument(
            '--manifest', '-M',
            help='Manifest name from <workspace>/manifests/',
        )
        parser.add_argument(
            '--manifest-file',
            help='Path to manifest file',
        )
        parser.add_argument(
            '--manifest-json',
            help='Inline manifest JSON',
        )
        parser.add_argument(
            '--var',
            action='append',
            default=[],
            metavar='NAME=VALUE',
            help='Override a manifest variable (repeatable)',
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


def _add_execution_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--concurrency', '-j',
        type=int,
        help='Maximum provider calls in flight (default: engine.concurrency)',
    )
    parser.add_argument(
        '--deadline',
        type=float,
        help='Stop dispatching new resources after this many seconds',
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Preview operations without executing',
    )


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


def _load_config(args) -> WorkspaceConfig:
    config = load_workspace_config(args.workspace)
    if getattr(args, 'concurrency', None) is not None:
        config.engine.concurrency = args.concurrency
    if getattr(args, 'deadline', None) is not None:
        config.engine.deadline = args.deadline
    if config.engine.concurrency < 1:
        raise ConfigurationError(f"--concurrency must be >= 1, got {config.engine.concurrency}")
    if config.engine.deadline is not None and config.engine.deadline < 0:
        raise ConfigurationError(f"--deadline must not be negative, got {config.engine.deadline}")
    return config


def _load_graph(args, config: WorkspaceConfig) -> DependencyGraph:
    """Load the manifest named by args and build its dependency graph."""
    if not args.manifest and not args.manifest_file and not args.manifest_json:
        raise ConfigurationError("specify a manifest with -M, --manifest-file, or --manifest-json")
    try:
        overrides = parse_var_assignments(args.var)
    except ValueError as e:
        raise ConfigurationError(f"Invalid --var: {e}")

    manifest = load_manifest(
        name=args.manifest,
        file_path=args.manifest_file,
        json_str=args.manifest_json,
        workspace_dir=config.workspace_dir,
    )
    if overrides:
        manifest = manifest.with_variables(overrides)
    return DependencyGraph(manifest)


def _compute_plan(args, config: WorkspaceConfig, registry: ProviderRegistry,
                  store: FileStateStore) -> Plan:
    graph = _load_graph(args, config)
    snapshot = store.snapshot()
    if getattr(args, 'refresh', False):
        snapshot = refresh_snapshot(snapshot, registry)
    return Planner(graph, snapshot).plan()


def _print_plan(plan: Plan, title: str) -> None:
    print(title)
    if not plan.actions:
        print("  (nothing recorded)")
    for action in plan.actions:
        symbol = _ACTION_SYMBOLS[action.action]
        line = f"  {symbol} {action.action.value:<7} {action.node_id} ({action.resource_kind})"
        if action.reason:
            line += f"  # {action.reason}"
        print(line)
    counts = plan.summary()
    print(
        f"\nPlan: {counts['create']} to create, {counts['update']} to update, "
        f"{counts['delete']} to delete, {counts['noop']} unchanged, {counts['skip']} skipped"
    )


def _print_result(verb: str, result: ApplyResult) -> None:
    print(f"\n{verb.capitalize()} {'complete' if result.success else 'finished with failures'}:")
    for name in ('applied', 'deleted', 'unchanged', 'skipped', 'failed', 'blocked', 'cancelled'):
        ids = getattr(result, name)
        if ids:
            print(f"  {name:<10} {', '.join(ids)}")
    for node_id, error in result.errors.items():
        print(f"  ✗ {node_id}: {error}", file=sys.stderr)


def _emit_json(verb: str, plan: Plan, result: Optional[ApplyResult]) -> None:
    """Emit structured JSON output."""
    output: dict = {'verb': verb, 'plan': plan.to_dict()}
    if result is not None:
        output['result'] = result.to_dict()
    print(json.dumps(output, indent=2))


def _execute(verb: str, args, config: WorkspaceConfig, registry: ProviderRegistry,
             store: FileStateStore, plan: Plan) -> int:
    """Run the executor with Ctrl-C wired to the abort signal."""
    abort = threading.Event()

    def _on_interrupt(signum, frame):
        if abort.is_set():
            raise KeyboardInterrupt
        logger.warning("Interrupt received: finishing in-flight resources, no new dispatch")
        abort.set()

    previous = None
    if threading.current_thread() is threading.main_thread():
        previous = signal.signal(signal.SIGINT, _on_interrupt)
    try:
        executor = Executor(
            plan=plan,
            registry=registry,
            store=store,
            settings=config.engine,
            abort=abort,
            dry_run=args.dry_run,
        )
        result = executor.run()
    finally:
        if previous is not None:
            signal.signal(signal.SIGINT, previous)

    if args.dry_run:
        return EXIT_SUCCESS
    if args.json_output:
        _emit_json(verb, plan, result)
    else:
        _print_result(verb, result)
    return EXIT_SUCCESS if result.success else EXIT_FAILED


def _run_guarded(handler, args) -> int:
    """Map engine exceptions to exit codes."""
    try:
        rc: int = handler(args)
        return rc
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    except InternalError as e:
        logger.critical(f"Internal error (engine defect): {e}")
        print(f"Internal error: {e}", file=sys.stderr)
        return EXIT_INTERNAL_ERROR


def _plan(args) -> int:
    config = _load_config(args)
    registry = ProviderRegistry.from_settings(config.provider)
    store = FileStateStore(config.state_dir)
    plan = _compute_plan(args, config, registry, store)
    if args.json_output:
        _emit_json('plan', plan, None)
    else:
        _print_plan(plan, f"Plan for stack '{config.stack}':")
    return EXIT_SUCCESS


def plan_main(argv: list) -> int:
    """Handle 'plan' verb."""
    parser = _common_parser('plan', 'Show the actions needed to reconcile the manifest')
    parser.add_argument(
        '--refresh',
        action='store_true',
        help='Read recorded resources from providers before planning',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)
    return _run_guarded(_plan, args)


def _apply(args) -> int:
    config = _load_config(args)
    registry = ProviderRegistry.from_settings(config.provider)
    store = FileStateStore(config.state_dir)
    plan = _compute_plan(args, config, registry, store)

    logger.info(f"Applying manifest '{plan.graph.manifest.name}' to stack '{config.stack}'")
    return _execute('apply', args, config, registry, store, plan)


def apply_main(argv: list) -> int:
    """Handle 'apply' verb."""
    parser = _common_parser('apply', 'Reconcile infrastructure with the manifest')
    _add_execution_options(parser)
    parser.add_argument(
        '--refresh',
        action='store_true',
        help='Read recorded resources from providers before planning',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)
    return _run_guarded(_apply, args)


def _destroy(args) -> int:
    config = _load_config(args)
    registry = ProviderRegistry.from_settings(config.provider)
    store = FileStateStore(config.state_dir)
    plan = Planner(None, store.snapshot()).destroy_plan()

    if not plan.actions:
        print(f"Nothing recorded for stack '{config.stack}'")
        return EXIT_SUCCESS

    if not args.dry_run and not args.yes:
        _print_plan(plan, f"Destroy plan for stack '{config.stack}':")
        print(f"\nWARNING: This will delete all {len(plan.actions)} recorded resource(s).")
        print("This action cannot be undone.")
        response = input("Continue? [y/N] ").strip().lower()
        if response != 'y':
            print("Aborted.")
            return EXIT_FAILED

    logger.info(f"Destroying stack '{config.stack}'")
    return _execute('destroy', args, config, registry, store, plan)


def destroy_main(argv: list) -> int:
    """Handle 'destroy' verb."""
    parser = _common_parser('destroy', 'Delete every recorded resource', manifest=False)
    _add_execution_options(parser)
    parser.add_argument(
        '--yes', '-y',
        action='store_true',
        help='Skip confirmation prompt',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)
    return _run_guarded(_destroy, args)


def _validate(args) -> int:
    config = _load_config(args)
    registry = ProviderRegistry.from_settings(config.provider)
    graph = _load_graph(args, config)

    errors = []
    for node_id, dep in graph.dangling_dependencies():
        errors.append(f"Resource '{node_id}' depends on skipped resource '{dep}'")
    active_kinds = [n.kind for n in graph.nodes if not n.is_skipped]
    for kind in registry.missing_kinds(active_kinds):
        errors.append(f"No provider adapter configured for kind '{kind}'")

    if errors:
        print(f"Manifest '{graph.manifest.name}' has {len(errors)} validation error(s):", file=sys.stderr)
        for error in errors:
            print(f"  ✗ {error}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    count = len(graph)
    print(f"Manifest '{graph.manifest.name}' is valid ({count} resource{'s' if count != 1 else ''}, "
          f"{len(graph.skipped())} skipped)")
    return EXIT_SUCCESS


def validate_main(argv: list) -> int:
    """Handle 'validate' verb.

    Checks manifest structure, references, cycles, conditions and that
    every active resource kind has a provider adapter.
    """
    parser = _common_parser('validate', 'Validate manifest structure and provider coverage')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)
    return _run_guarded(_validate, args)


def _state(args) -> int:
    config = _load_config(args)
    store = FileStateStore(config.state_dir)

    if args.action == 'list':
        records = store.snapshot()
        if args.json_output:
            print(json.dumps([r.to_dict() for r in records.values()], indent=2))
            return EXIT_SUCCESS
        if not records:
            print(f"No resources recorded for stack '{config.stack}'")
        for record in records.values():
            print(f"{record.id:<24} {record.kind:<16} v{record.version:<4} {record.provider_id or '-'}")
        return EXIT_SUCCESS

    if not args.id:
        raise ConfigurationError("state show requires a resource id")
    record = store.get(args.id)
    if record is None:
        print(f"Error: no state recorded for '{args.id}'", file=sys.stderr)
        return EXIT_FAILED
    print(json.dumps(record.to_dict(), indent=2))
    return EXIT_SUCCESS


def state_main(argv: list) -> int:
    """Handle 'state' verb (list, show)."""
    parser = _common_parser('state', 'Inspect recorded state', manifest=False)
    parser.add_argument('action', choices=['list', 'show'])
    parser.add_argument('id', nargs='?')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)
    return _run_guarded(_state, args)
