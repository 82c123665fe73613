"""
Lua Studio command line - the terminal pane without the editor.

Usage:
    lua-studio run script.lua                 # Run a file
    lua-studio run script.lua --timeout 2     # Custom deadline in seconds
    lua-studio run a.lua b.lua --reuse        # Globals carry over between files
    lua-studio demo                           # Run the starter project's main.lua
    lua-studio --config studio.yaml run x.lua # Settings from YAML

Exit status is 0 when every run completed, 1 otherwise.
"""

import argparse
import sys
from pathlib import Path
from typing import List, Optional

from luastudio.config import load_config
from luastudio.editor import EditorState, RunController, Terminal
from luastudio.logging import configure_logging, get_logger
from luastudio.lua.runner import LuaRunner
from luastudio.messages import MessageKind, OutputMessage
from luastudio.workspace import Workspace, WorkspaceError

log = get_logger('cli')

# Prefixes used when the terminal has no colors
_PREFIX = {
    MessageKind.INFO: '',
    MessageKind.ERROR: '! ',
    MessageKind.SUCCESS: '✓ ',
    MessageKind.INPUT: '$ ',
}


def _echo(message: OutputMessage) -> None:
    stream = sys.stderr if message.kind is MessageKind.ERROR else sys.stdout
    print(f"{_PREFIX[message.kind]}{message.text}", file=stream, flush=True)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='lua-studio',
        description='Run Lua scripts in the Lua Studio sandbox',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('--config', '-c', type=Path, help='YAML settings file')
    parser.add_argument('--timeout', '-t', type=float, help='Execution deadline in seconds')
    parser.add_argument('--reuse', action='store_true', help='Keep globals between completed runs')
    parser.add_argument(
        '--log-level',
        default='WARNING',
        choices=['TRACE', 'DEBUG', 'INFO', 'WARNING', 'ERROR', 'OFF'],
        help='Log level for sandbox diagnostics (default: WARNING)',
    )

    sub = parser.add_subparsers(dest='command', required=True)

    run = sub.add_parser('run', help='Run one or more Lua files in order')
    run.add_argument('files', nargs='+', type=Path)

    sub.add_parser('demo', help="Run the starter project's src/main.lua")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = _build_parser().parse_args(argv)
    configure_logging(level=args.log_level)

    overrides = {}
    if args.timeout is not None:
        overrides['timeout'] = args.timeout
    if args.reuse:
        overrides['reuse_environment'] = True

    try:
        config = load_config(args.config, **overrides)
    except (OSError, ValueError) as e:
        print(f"lua-studio: invalid configuration: {e}", file=sys.stderr)
        return 2
    log.debug("Effective config: %s", config.model_dump())

    workspace = Workspace.scaffold() if args.command == 'demo' else Workspace('CLI')
    if args.command == 'run':
        for path in args.files:
            try:
                source = path.read_text(encoding='utf-8')
            except OSError as e:
                print(f"lua-studio: cannot read {path}: {e}", file=sys.stderr)
                return 2
            try:
                workspace.create_file('/', path.name, source)
            except WorkspaceError as e:
                print(f"lua-studio: {e}", file=sys.stderr)
                return 2
        targets = [f'/{path.name}' for path in args.files]
    else:
        targets = ['/src/main.lua']

    editor = EditorState(workspace)
    terminal = Terminal(echo=_echo)
    ok = True
    with LuaRunner(config) as runner:
        controller = RunController(runner, editor, terminal)
        for target in targets:
            editor.select(target)
            result = controller.run_active()
            ok = ok and result is not None and result.succeeded
    workspace.close()
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
