# chronokey/core/cli.py
"""
CLI for the chronokey scheduler process and its developer tools.

Config resolution follows the dotted-path convention:
1. User provides a module path: `chronokey run app.settings:chronokey_config`
2. User is responsible for PYTHONPATH / running from the correct directory
3. Convenience: if cwd has pyproject.toml, cwd is added to sys.path
"""

import argparse
import asyncio
import importlib
import json
import logging
import os
import signal
import sys
from datetime import datetime, timezone

from chronokey.core.errors import ChronokeyError, ConfigurationError, ErrorCode
from chronokey.core.logging import get_logger
from chronokey.core.models.app import AppConfig
from chronokey.core.scheduler.parser import DateExpressionParser, is_recurring
from chronokey.core.scheduler.service import Scheduler


def _parse_locator(locator: str) -> tuple[str, str | None]:
    """
    Split a locator into (module_path, attribute_name).

    - "app.settings:config" -> ("app.settings", "config")
    - "app.settings" -> ("app.settings", None)
    """
    if ':' in locator:
        module_part, attr = locator.rsplit(':', 1)
        return (module_part, attr or None)
    return (locator, None)


def _setup_sys_path_from_cwd() -> str | None:
    """Add cwd to sys.path when it holds a pyproject.toml (cwd only, no parents)."""
    cwd = os.getcwd()
    if os.path.exists(os.path.join(cwd, 'pyproject.toml')) and cwd not in sys.path:
        sys.path.insert(0, cwd)
        return cwd
    return None


def discover_config(locator: str) -> tuple[AppConfig, str]:
    """
    Import a module and find the AppConfig to run with.

    Returns:
        (config, variable_name)

    Raises:
        ConfigurationError: module missing, attribute missing, or ambiguous
    """
    logger = get_logger('cli')

    project_root = _setup_sys_path_from_cwd()
    if project_root:
        logger.info(f'Added project root to sys.path: {project_root}')

    module_path, attr_name = _parse_locator(locator)
    try:
        module = importlib.import_module(module_path)
    except ModuleNotFoundError as e:
        raise ConfigurationError(
            message=f'module not found: {module_path}',
            code=ErrorCode.CLI_INVALID_ARGS,
            notes=[str(e), f'sys.path: {sys.path[:5]}...'],
            help_text=(
                'ensure you are running from the correct directory\n'
                'or set PYTHONPATH to include your project root'
            ),
        ) from e

    if attr_name:
        obj = getattr(module, attr_name, None)
        if not isinstance(obj, AppConfig):
            raise ConfigurationError(
                message=f"'{attr_name}' in '{module_path}' is not an AppConfig",
                code=ErrorCode.CLI_INVALID_ARGS,
                notes=[f'got {type(obj).__name__}'],
                help_text='point the locator at an AppConfig instance',
            )
        return obj, attr_name

    found = [
        (getattr(module, name), name)
        for name in dir(module)
        if not name.startswith('_') and isinstance(getattr(module, name), AppConfig)
    ]
    if len(found) != 1:
        raise ConfigurationError(
            message=(
                f'no AppConfig found in {module_path}'
                if not found
                else f'multiple AppConfig instances in {module_path}'
            ),
            code=ErrorCode.CLI_INVALID_ARGS,
            notes=[f'candidates: {[name for _, name in found]}'] if found else [],
            help_text='specify the variable name: module.path:variable',
        )
    return found[0]


def setup_logging(loglevel: str) -> None:
    """Configure logging level globally."""
    from chronokey.core.logging import set_default_level

    level = getattr(logging, loglevel.upper(), logging.INFO)
    set_default_level(level)

    root_logger = logging.getLogger('chronokey')
    root_logger.setLevel(level)

    for name in logging.Logger.manager.loggerDict:
        if isinstance(name, str) and name.startswith('chronokey.'):
            lgr = logging.getLogger(name)
            lgr.setLevel(level)
            for handler in lgr.handlers:
                handler.setLevel(level)


def run_command(args: argparse.Namespace) -> None:
    """Run the scheduler until SIGINT/SIGTERM."""
    logger = get_logger('cli')
    setup_logging(args.loglevel)

    try:
        config, var_name = discover_config(args.config)
    except ChronokeyError as e:
        logger.error(str(e))
        sys.exit(1)
    logger.info(f"Using AppConfig '{var_name}'")

    async def run_scheduler() -> None:
        scheduler = Scheduler(config)
        loop = asyncio.get_running_loop()

        def signal_handler() -> None:
            logger.info('Received interrupt signal, stopping scheduler...')
            scheduler.request_stop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, signal_handler)
            except NotImplementedError:
                pass

        await scheduler.run_forever()

    try:
        asyncio.run(run_scheduler())
    except KeyboardInterrupt:
        logger.info('Scheduler interrupted by user')
    except Exception as e:
        logger.error(f'Scheduler failed: {e}', exc_info=True)
        sys.exit(1)


def check_command(args: argparse.Namespace) -> None:
    """Validate configuration; with --live also connect to Redis and the queue."""
    logger = get_logger('cli')
    setup_logging(args.loglevel)

    try:
        config, var_name = discover_config(args.config)
    except ChronokeyError as e:
        print(e.format_rust_style(), file=sys.stderr)
        sys.exit(1)

    if args.live:

        async def probe() -> None:
            scheduler = Scheduler(config)
            try:
                await scheduler.start()
            finally:
                await scheduler.stop()

        try:
            asyncio.run(probe())
        except Exception as e:
            logger.error(f'Live check failed: {e}')
            sys.exit(1)

    print(f"ok: '{var_name}' is valid\n{config.format_summary()}")
    sys.exit(0)


def parse_command(args: argparse.Namespace) -> None:
    """Show what a schedule expression resolves to."""
    try:
        reference = (
            datetime.fromisoformat(args.reference)
            if args.reference
            else datetime.now(timezone.utc)
        )
    except ValueError:
        print(f'invalid --reference: {args.reference!r}', file=sys.stderr)
        sys.exit(2)
    if reference.tzinfo is None:
        reference = reference.replace(tzinfo=timezone.utc)

    try:
        parser = DateExpressionParser(args.timezone)
        fire_at = parser.parse(args.expression, reference_time=reference)
        output: dict[str, object] = {
            'expression': args.expression,
            'reference': reference.isoformat(),
            'fire_at': fire_at.isoformat(),
        }
        if is_recurring(args.expression):
            pattern = parser.parse_recurrence(args.expression)
            output['pattern'] = pattern.model_dump(mode='json')
    except ChronokeyError as e:
        print(e.format_rust_style(), file=sys.stderr)
        sys.exit(1)

    print(json.dumps(output, indent=2))


def _add_loglevel(parser: argparse.ArgumentParser, default: str) -> None:
    parser.add_argument(
        '--loglevel',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
        default=default,
        type=str.upper,
        help=f'Logging level (default: {default})',
    )


def main() -> None:
    """Main CLI entry point."""
    try:
        parser = argparse.ArgumentParser(
            prog='chronokey',
            description='chronokey - Redis TTL job scheduler',
            formatter_class=argparse.RawDescriptionHelpFormatter,
            epilog="""
Examples:
  chronokey run app.settings:chronokey_config
  chronokey check app.settings:chronokey_config --live
  chronokey parse "every monday at 9am" --timezone Europe/Berlin
""",
        )
        subparsers = parser.add_subparsers(dest='command', help='Available commands')

        run_parser = subparsers.add_parser('run', help='Run the scheduler process')
        run_parser.add_argument('config', help='Locator, e.g. app.settings:config')
        _add_loglevel(run_parser, 'INFO')

        check_parser = subparsers.add_parser(
            'check', help='Validate configuration without serving firings'
        )
        check_parser.add_argument('config', help='Locator, e.g. app.settings:config')
        check_parser.add_argument(
            '--live',
            action='store_true',
            default=False,
            help='Also connect to Redis and the job queue',
        )
        _add_loglevel(check_parser, 'WARNING')

        parse_parser = subparsers.add_parser(
            'parse', help='Resolve a schedule expression and print the result'
        )
        parse_parser.add_argument('expression', help='e.g. "in 10 minutes"')
        parse_parser.add_argument(
            '--timezone', default='UTC', help='Timezone for day words and clock times'
        )
        parse_parser.add_argument(
            '--reference', default=None, help='ISO-8601 reference time (default: now)'
        )

        args = parser.parse_args()

        match args.command:
            case 'run':
                run_command(args)
            case 'check':
                check_command(args)
            case 'parse':
                parse_command(args)
            case _:
                parser.print_help()
                sys.exit(1)
    except KeyboardInterrupt:
        print('\nInterrupted by user')
        sys.exit(0)


if __name__ == '__main__':
    main()
