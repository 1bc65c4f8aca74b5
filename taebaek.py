"""Taebaek compiler entry point."""

from __future__ import annotations
import argparse
import sys
from typing import List, Optional

from extensions import EXTENSION_ENTRY_POINT, ExtensionLoader, split_search_paths
from interpreter import (
    DEFAULT_ENCODING,
    DEFAULT_MAX_DEPTH,
    DEFAULT_MAX_STEPS,
    InterpreterConfig,
    compile_source,
    read_source,
)


BANNER = "welcome to Taebaek compiler!"


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Taebaek template compiler")
    parser.add_argument("program", nargs="?", default="source.tb", help="Source file path or literal source with -source")
    parser.add_argument("-o", "--output", default="output.bin", help="Destination file for the produced text")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat program argument as literal source text")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Record an env snapshot for every step")
    parser.add_argument("--report-json", action="store_true", help="Emit a JSON run report on stderr")
    parser.add_argument("--ext-path", action="append", default=[], help="Extension search directories joined with os.pathsep (repeatable; TAEBAEK_EXT_PATH is appended)")
    parser.add_argument("--entry-point", default=EXTENSION_ENTRY_POINT, help="Symbol invoked in every imported extension")
    parser.add_argument("--isolate-extensions", action="store_true", help="Run each extension in a child process")
    parser.add_argument("--extension-timeout", type=float, default=None, help="Seconds an isolated extension may run")
    parser.add_argument("--max-steps", type=int, default=DEFAULT_MAX_STEPS, help="Statement budget per run (0 disables)")
    parser.add_argument("--max-depth", type=int, default=DEFAULT_MAX_DEPTH, help="Maximum loop nesting")
    parser.add_argument("--encoding", default=DEFAULT_ENCODING, help="Single-byte codec for source and output")
    args = parser.parse_args(argv)

    loader = ExtensionLoader(
        search_paths=split_search_paths(args.ext_path),
        entry_point=args.entry_point,
        isolate=args.isolate_extensions,
        timeout=args.extension_timeout,
    )
    config = InterpreterConfig(max_steps=args.max_steps, max_depth=args.max_depth, encoding=args.encoding)

    if args.source_mode:
        source_text = args.program
        filename = "<string>"
    else:
        filename = args.program
        try:
            source_text = read_source(filename, config.encoding)
        except (OSError, UnicodeError, LookupError) as exc:
            print(f"Failed to read {filename}: {exc}", file=sys.stderr)
            return 1

    if source_text.strip():
        print(BANNER)
    try:
        report = compile_source(
            source_text, filename, args.output, verbose=args.verbose, config=config, loader=loader
        )
    except (OSError, UnicodeError, LookupError) as exc:
        print(f"Failed to write {args.output}: {exc}", file=sys.stderr)
        return 1
    if args.report_json:
        print(report.to_json(), file=sys.stderr)
    if not report.ok:
        print("Compilation stopped.")
        return 1
    print("Compilation finished.")
    return 0


if __name__ == "__main__":
    raise SystemExit(run_cli())
