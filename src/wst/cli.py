from __future__ import annotations

import argparse
import sys
from pathlib import Path

from wsc import commands
from wsc.config import configure_logging
from wsc.errors import RenderFailure, StorageSyncError

from .version import __version__

WST_HELP = f"""wst {__version__} - Wiki Storage Tools

Lossless editing surfaces for wiki storage-format pages, with diagram sync.

USAGE:
    wst <COMMAND> [OPTIONS]

COMMANDS:
    parse         Show the segment structure of a page as JSON
    diagrams      List diagram macros with their ids
    surface       Render a page for the rich, plain or preview surface
    commit        Merge an edited surface back into the page
    set-diagram   Replace the source of one diagram by id
    replace       Swap a selected span for a new fragment
    check         Verify the page round-trips byte-for-byte
    format        Pretty-print storage markup
    snapshot      Save the page as a version snapshot (JSON)
    restore       Recover page text from a snapshot

EXAMPLES:
    wst surface page.xml --mode plain -o page.edit
    wst commit page.xml page.edit --mode plain -o page.xml
    wst set-diagram page.xml diagram-0 --code 'graph TD;A-->C'

Use 'wst <command> --help' for more information.
"""

SURFACE_MODES = ("rich", "plain", "preview")


def _handle_common_errors(fn):
    try:
        return fn()
    except RenderFailure as exc:
        print(f"render failed: {exc}", file=sys.stderr)
        return 2
    except StorageSyncError as exc:
        print(f"{exc.kind}: {exc}", file=sys.stderr)
        return 1
    except (FileNotFoundError, ValueError, KeyError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2
    except Exception as exc:  # pragma: no cover - explicit user-facing fallback path.
        print(f"error: {exc}", file=sys.stderr)
        return 1


def _parser(prog_name: str, description: str, with_output: bool = True):
    parser = argparse.ArgumentParser(prog=prog_name, description=description)
    parser.add_argument("input", type=Path, help="Storage-format page (XHTML)")
    if with_output:
        parser.add_argument("-o", "--output", type=Path, help="Output file (default: stdout)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log recovered errors to stderr")
    return parser


def _build_surface_parser(prog_name: str):
    parser = _parser(prog_name, "surface - Render a page for an editing surface")
    parser.add_argument("--mode", choices=SURFACE_MODES, default="rich", help="Target surface (default: rich)")
    parser.add_argument("--render", action="store_true", help="Render diagrams with the mermaid CLI (preview)")
    return parser


def _build_commit_parser(prog_name: str):
    parser = _parser(prog_name, "commit - Merge an edited surface back into the page")
    parser.add_argument("surface", type=Path, help="Edited surface file")
    parser.add_argument("--mode", choices=SURFACE_MODES, default="rich", help="Surface the edit came from")
    return parser


def _build_set_diagram_parser(prog_name: str):
    parser = _parser(prog_name, "set-diagram - Replace the source of one diagram")
    parser.add_argument("diagram_id", help="Diagram id, e.g. diagram-0")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--code", help="New diagram source")
    source.add_argument("--code-file", type=Path, help="File holding the new diagram source")
    return parser


def _build_replace_parser(prog_name: str):
    parser = _parser(prog_name, "replace - Swap a selected span for a new fragment")
    parser.add_argument("--select", required=True, dest="select_text", help="Text to select")
    parser.add_argument("--with", required=True, dest="fragment", help="Replacement HTML fragment")
    parser.add_argument("--occurrence", type=int, default=0, help="Which match to select (0-based)")
    parser.add_argument("--mode", choices=("rich", "preview"), default="preview", help="Surface to edit")
    return parser


def _build_snapshot_parser(prog_name: str):
    parser = _parser(prog_name, "snapshot - Save the page as a version snapshot")
    parser.add_argument("--title", help="Snapshot title (default: file name)")
    return parser


def main_surface(argv=None, prog_name=None):
    args = _build_surface_parser(prog_name or "wst surface").parse_args(argv)
    _setup_logging(args)
    return _handle_common_errors(lambda: commands.run_surface(args.input, args.mode, args.output, render=args.render))


def main_commit(argv=None, prog_name=None):
    args = _build_commit_parser(prog_name or "wst commit").parse_args(argv)
    _setup_logging(args)
    return _handle_common_errors(lambda: commands.run_commit(args.input, args.surface, args.mode, args.output))


def main_set_diagram(argv=None, prog_name=None):
    args = _build_set_diagram_parser(prog_name or "wst set-diagram").parse_args(argv)
    _setup_logging(args)

    def run():
        code = args.code if args.code is not None else commands.read_text(args.code_file)
        return commands.run_set_diagram(args.input, args.diagram_id, code, args.output)

    return _handle_common_errors(run)


def main_replace(argv=None, prog_name=None):
    args = _build_replace_parser(prog_name or "wst replace").parse_args(argv)
    _setup_logging(args)
    return _handle_common_errors(
        lambda: commands.run_replace(
            args.input,
            args.select_text,
            args.fragment,
            mode=args.mode,
            occurrence=args.occurrence,
            output_path=args.output,
        )
    )


def main_snapshot(argv=None, prog_name=None):
    args = _build_snapshot_parser(prog_name or "wst snapshot").parse_args(argv)
    _setup_logging(args)
    return _handle_common_errors(lambda: commands.run_snapshot(args.input, args.title, args.output))


def _setup_logging(args) -> None:
    if getattr(args, "verbose", False):
        configure_logging("INFO")
    else:
        configure_logging()


SIMPLE_COMMANDS = {
    "parse": ("parse - Show the segment structure of a page", True, commands.run_parse),
    "diagrams": ("diagrams - List diagram macros", True, commands.run_diagrams),
    "check": ("check - Verify the page round-trips unchanged", False, commands.run_check),
    "format": ("format - Pretty-print storage markup", True, commands.run_format),
    "restore": ("restore - Recover page text from a snapshot", True, commands.run_restore),
}


def _main_simple(subcmd: str, argv):
    description, with_output, runner = SIMPLE_COMMANDS[subcmd]
    args = _parser(f"wst {subcmd}", description, with_output=with_output).parse_args(argv)
    _setup_logging(args)
    if with_output:
        return _handle_common_errors(lambda: runner(args.input, args.output))
    return _handle_common_errors(lambda: runner(args.input))


COMMANDS = {
    "surface": main_surface,
    "commit": main_commit,
    "set-diagram": main_set_diagram,
    "replace": main_replace,
    "snapshot": main_snapshot,
}


def main(argv=None):
    args_list = list(sys.argv[1:] if argv is None else argv)
    if not args_list or args_list[0] in {"-h", "--help"}:
        print(WST_HELP)
        return 0

    if args_list[0] in {"-V", "--version"}:
        print(f"wst {__version__}")
        return 0

    subcmd = args_list[0]
    rest = args_list[1:]
    if subcmd in COMMANDS:
        return COMMANDS[subcmd](rest, prog_name=f"wst {subcmd}")
    if subcmd in SIMPLE_COMMANDS:
        return _main_simple(subcmd, rest)

    print(f"error: unknown command '{subcmd}'. Use 'wst --help' to list commands.", file=sys.stderr)
    return 2
