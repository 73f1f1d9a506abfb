# caseflow/core/cli.py
"""
CLI for running a caseflow host and operating on its records.

Module path resolution follows Celery's approach:
1. User provides dotted module path: `caseflow serve app.configs.caseflow:app`
2. User is responsible for PYTHONPATH / running from correct directory
3. Convenience: if cwd has pyproject.toml, we add cwd to sys.path
"""

import argparse
import asyncio
import importlib
import logging
import os
import signal
import sys
from typing import Any, Awaitable, Callable

from caseflow.core.app import Caseflow
from caseflow.core.errors import CaseflowError, ConfigurationError, ErrorCode, ValidationReport
from caseflow.core.logging import get_logger, set_default_level
from caseflow.core.utils.imports import (
    import_file_path,
    setup_sys_path_from_cwd,
    split_locator,
)

_LOGLEVELS = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']


def _resolve_module_argument(args: argparse.Namespace) -> str:
    """Return module path from --module or positional, error if missing."""
    module_path = getattr(args, 'module', None) or getattr(args, 'module_pos', None)
    if not module_path:
        raise ConfigurationError(
            message='module path is required',
            code=ErrorCode.CLI_INVALID_ARGS,
            notes=['no --module flag or positional module argument provided'],
            help_text=(
                'provide module path in one of these formats:\n'
                '  caseflow serve app.configs.caseflow:app  (recommended)\n'
                '  caseflow serve app/configs/caseflow.py:app  (file path)\n'
                '  caseflow serve app.configs.caseflow  (auto-discover app variable)'
            ),
        )
    return module_path


def _is_file_path(path: str) -> bool:
    return path.endswith('.py') or os.path.sep in path or '/' in path


def discover_app(module_locator: str) -> tuple[Caseflow, str]:
    """
    Import a module and find its Caseflow instance.

    Returns:
        (app_instance, variable_name)
    """
    logger = get_logger('cli')

    project_root = setup_sys_path_from_cwd()
    if project_root:
        logger.info(f'Added project root to sys.path: {project_root}')

    module_path, attr_name = split_locator(module_locator)

    if _is_file_path(module_path):
        if not module_path.endswith('.py'):
            module_path += '.py'
        file_path = os.path.realpath(module_path)
        if not os.path.exists(file_path):
            raise ConfigurationError(
                message=f'module file not found: {module_path}',
                code=ErrorCode.CLI_INVALID_LOCATOR,
                notes=[f'resolved to {file_path}'],
                help_text='check the path, or use a dotted module path instead',
            )
        module = import_file_path(file_path)
    else:
        try:
            module = importlib.import_module(module_path)
        except ModuleNotFoundError as e:
            raise ConfigurationError(
                message=f'module not found: {module_path}',
                code=ErrorCode.CLI_INVALID_LOCATOR,
                notes=[str(e), f'sys.path: {sys.path[:5]}...'],
                help_text=(
                    'ensure you are running from the correct directory\n'
                    'or set PYTHONPATH to include your project root'
                ),
            )
    module_name = module.__name__

    if attr_name:
        obj = getattr(module, attr_name, None)
        if not isinstance(obj, Caseflow):
            raise ConfigurationError(
                message=f"'{attr_name}' in module '{module_name}' is not a Caseflow instance",
                code=ErrorCode.CLI_INVALID_LOCATOR,
                notes=[f'got {type(obj).__name__}'],
            )
        app, var_name = obj, attr_name
    else:
        found = [
            (obj, name)
            for name, obj in vars(module).items()
            if not name.startswith('_') and isinstance(obj, Caseflow)
        ]
        if len(found) != 1:
            raise ConfigurationError(
                message=(
                    f'no Caseflow instance found in {module_name}'
                    if not found
                    else f'multiple Caseflow instances found in {module_name}'
                ),
                code=ErrorCode.CLI_INVALID_LOCATOR,
                notes=[f'candidates: {[name for _, name in found]}'] if found else [],
                help_text='specify the variable name: module.path:variable',
            )
        app, var_name = found[0]

    logger.info(f"Discovered caseflow '{var_name}' from {module_name}")
    return app, var_name


def setup_logging(loglevel: str) -> None:
    """Configure logging level globally."""
    level = getattr(logging, loglevel.upper(), logging.INFO)
    set_default_level(level)
    logging.getLogger('caseflow').setLevel(level)


def _load(args: argparse.Namespace) -> Caseflow:
    logger = get_logger('cli')
    setup_logging(args.loglevel)
    try:
        app, _var_name = discover_app(_resolve_module_argument(args))
        app.import_modules()
    except CaseflowError as e:
        logger.error(str(e))
        sys.exit(1)
    except Exception as e:
        logger.error(f'Failed to discover app: {e}')
        sys.exit(1)
    return app


def _run(app: Caseflow, op: Callable[[Caseflow], Awaitable[Any]]) -> Any:
    """Run one operation against a started app, then stop it."""

    async def runner() -> Any:
        await app.start()
        try:
            return await op(app)
        finally:
            await app.stop()

    try:
        return asyncio.run(runner())
    except CaseflowError as e:
        print(e.format_rust_style(), file=sys.stderr)
        sys.exit(1)


def check_command(args: argparse.Namespace) -> None:
    """Validate app configuration without starting services."""
    app = _load(args)
    errors = app.check(live=args.live)
    if errors:
        report = ValidationReport('check')
        for error in errors:
            report.add(error)
        print(report.format_rust_style(), file=sys.stderr)
        sys.exit(1)
    print(
        f'ok: all validations passed\n'
        f'  {len(app.definitions.processes)} process(es), '
        f'{len(app.definitions.jobs)} job(s) registered'
    )


def serve_command(args: argparse.Namespace) -> None:
    """Run this host: orphan sweep, then events, commands and heartbeats."""
    logger = get_logger('cli')
    app = _load(args)
    app.config.log_config(logger)

    async def run_service() -> None:
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()

        def signal_handler() -> None:
            logger.info('Received interrupt signal, stopping...')
            stop.set()

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, signal_handler)
            except NotImplementedError:
                pass

        await app.run_forever(
            stop,
            services=args.services or (),
            max_threads=args.max_threads,
        )

    try:
        asyncio.run(run_service())
    except KeyboardInterrupt:
        logger.info('Interrupted by user')
    except CaseflowError as e:
        print(e.format_rust_style(), file=sys.stderr)
        sys.exit(1)


def sweep_command(args: argparse.Namespace) -> None:
    app = _load(args)

    async def op(app: Caseflow) -> int:
        return await app.termination.sweep_orphans()

    print(f'{_run(app, op)} orphaned task(s) terminated')


def terminate_command(args: argparse.Namespace) -> None:
    app = _load(args)

    async def op(app: Caseflow) -> bool:
        record = await app.find_record(args.record)
        return record is not None and await app.terminate(record)

    if _run(app, op):
        print(f'termination requested: {args.record}')
    else:
        print(f'not running: {args.record}', file=sys.stderr)
        sys.exit(1)


def restart_command(args: argparse.Namespace) -> None:
    app = _load(args)
    names = _run(app, lambda app: app.restart(args.record))
    print(f'restarted {len(names)} partition(s): {", ".join(names)}')


def events_command(args: argparse.Namespace) -> None:
    app = _load(args)
    print(f'{_run(app, lambda app: app.process_events())} event(s) processed')


def commands_command(args: argparse.Namespace) -> None:
    app = _load(args)
    print(f'{_run(app, lambda app: app.process_commands())} command(s) processed')


def partitions_command(args: argparse.Namespace) -> None:
    app = _load(args)
    count = _run(app, lambda app: app.suggested_partition_count(args.job))
    print(f'{args.job}: {count} partition(s) suggested')


def _add_common(parser: argparse.ArgumentParser, default_level: str = 'INFO') -> None:
    parser.add_argument(
        '-m',
        '--module',
        dest='module',
        help='Module path (e.g., app.configs.caseflow:app)',
    )
    parser.add_argument(
        'module_pos',
        nargs='?',
        help='Module path (e.g., app.configs.caseflow:app)',
    )
    parser.add_argument(
        '--loglevel',
        choices=_LOGLEVELS,
        default=default_level,
        type=str.upper,
        help=f'Logging level (default: {default_level})',
    )


def main() -> None:
    """Main CLI entry point."""
    try:
        parser = argparse.ArgumentParser(
            prog='caseflow',
            description='caseflow - case workflow and task result management',
            formatter_class=argparse.RawDescriptionHelpFormatter,
            epilog="""
Examples:
  # Run a host
  caseflow serve app.configs.caseflow:app --services reports --max-threads 4

  # Validate configuration without starting services
  caseflow check app.configs.caseflow:app --live

  # Operate on records
  caseflow terminate app.configs.caseflow:app --record "Nightly - 3"
  caseflow restart app.configs.caseflow:app --record "Nightly - 3"
""",
        )
        subparsers = parser.add_subparsers(dest='command', help='Available commands')

        serve_parser = subparsers.add_parser('serve', help='Run a caseflow host')
        _add_common(serve_parser)
        serve_parser.add_argument(
            '--services',
            nargs='*',
            default=[],
            help='Capabilities this host provides (default: none)',
        )
        serve_parser.add_argument(
            '--max-threads',
            type=int,
            default=0,
            help='Partition threads this host accepts, 0=uncapped (default: 0)',
        )

        check_parser = subparsers.add_parser(
            'check', help='Validate app configuration without starting services'
        )
        _add_common(check_parser, default_level='WARNING')
        check_parser.add_argument(
            '--live',
            action='store_true',
            default=False,
            help='Also check repository connectivity',
        )

        sweep_parser = subparsers.add_parser(
            'sweep', help='Terminate records this host left running'
        )
        _add_common(sweep_parser)

        for name, help_text in (
            ('terminate', 'Terminate a running record'),
            ('restart', 'Restart failed partitions of a record'),
        ):
            record_parser = subparsers.add_parser(name, help=help_text)
            _add_common(record_parser)
            record_parser.add_argument(
                '--record', required=True, help='Record name or id'
            )

        events_parser = subparsers.add_parser('events', help='Process due timed events once')
        _add_common(events_parser)

        commands_parser = subparsers.add_parser(
            'commands', help='Process pending commands for this host once'
        )
        _add_common(commands_parser)

        partitions_parser = subparsers.add_parser(
            'partitions', help='Suggest a partition count for a job'
        )
        _add_common(partitions_parser)
        partitions_parser.add_argument('--job', required=True, help='Job name')

        args = parser.parse_args()

        match args.command:
            case 'serve':
                serve_command(args)
            case 'check':
                check_command(args)
            case 'sweep':
                sweep_command(args)
            case 'terminate':
                terminate_command(args)
            case 'restart':
                restart_command(args)
            case 'events':
                events_command(args)
            case 'commands':
                commands_command(args)
            case 'partitions':
                partitions_command(args)
            case _:
                parser.print_help()
                sys.exit(1)
    except KeyboardInterrupt:
        print('\nInterrupted by user')
        sys.exit(0)


if __name__ == '__main__':
    main()
