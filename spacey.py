"""spacey entry point: decode and run a Whitespace program."""

from __future__ import annotations
import argparse
import sys
import time
from typing import List, Optional

from extensions import WSExtensionError, load_runtime_services
from interpreter import DEFAULT_HEAP_SIZE, Interpreter, TracebackFormatter, VmConfig, WSRuntimeError, load_program
from lexer import SourceType, WSParseError


def _status(quiet: bool, text: str) -> None:
    if not quiet:
        print(text, file=sys.stderr)


def _elapsed(start: int, end: int) -> str:
    ns = end - start
    return f"{ns // 1_000_000} ms ({ns} ns)"


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="spacey", description="a lightweight whitespace interpreter")
    parser.add_argument("-f", "--file", required=True, help="source file to interpret")
    parser.add_argument("-t", "--source-type", required=True, help="type of source file (whitespace, ws or stl)")
    parser.add_argument(
        "-s",
        "--heap-size",
        type=int,
        default=DEFAULT_HEAP_SIZE,
        help="the size of the heap address space (each heap address stores one 32-bit integer)",
    )
    parser.add_argument("-i", "--raw", action="store_true", help="prints raw, parsed representation of instructions")
    parser.add_argument("-d", "--debug", action="store_true", help="prints debug information before each executed instruction")
    parser.add_argument("-m", "--debug-heap", action="store_true", help="prints a heap dump before each executed instruction")
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="suppresses all output other than what the whitespace program is producing",
    )
    parser.add_argument("-n", "--no-output", action="store_true", help="suppresses the output of the whitespace program")
    parser.add_argument("--ext", action="append", default=[], metavar="PATH", help="load an observer extension (repeatable)")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    return parser


def run_cli(argv: Optional[List[str]] = None) -> int:
    args = build_arg_parser().parse_args(argv)
    quiet = args.quiet

    try:
        config = VmConfig(
            file_name=args.file,
            source_type=SourceType.from_name(args.source_type),
            heap_size=args.heap_size,
            raw=args.raw,
            debug=args.debug,
            debug_heap=args.debug_heap,
            suppress_output=args.no_output,
        )
    except ValueError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 1

    _status(quiet, "initializing, loading and parsing the provided source, creating the virtual machine...")
    start = time.perf_counter_ns()
    try:
        if config.raw:
            for index, instr in enumerate(load_program(config)):
                print(f"{index}\t{instr.family.value}\t{instr}")
            return 0
        services = load_runtime_services(args.ext, debug=config.debug, debug_heap=config.debug_heap)
        interpreter = Interpreter.from_config(config, services=services)
    except OSError as exc:
        print(f"Failed to read {config.file_name}: {exc}", file=sys.stderr)
        return 1
    except WSParseError as error:
        print(f"ParseError: {error}", file=sys.stderr)
        return 1
    except WSExtensionError as error:
        print(f"ExtensionError: {error}", file=sys.stderr)
        return 1
    end = time.perf_counter_ns()
    _status(quiet, f"initialized in {_elapsed(start, end)}")

    _status(quiet, "starting to execute whitespace routine...\n\n")
    start = time.perf_counter_ns()
    try:
        interpreter.run()
    except WSRuntimeError as error:
        formatter = TracebackFormatter(interpreter)
        print(formatter.format_text(error, verbose=config.debug), file=sys.stderr)
        if args.traceback_json:
            print(formatter.to_json(error), file=sys.stderr)
        return 1
    except ZeroDivisionError as exc:
        print(f"ArithmeticError: {exc}", file=sys.stderr)
        return 1
    end = time.perf_counter_ns()
    _status(quiet, f"\n\nexecuted {interpreter.instruction_count} instructions")
    _status(quiet, f"\n\nroutine took {_elapsed(start, end)}")
    return 0


def main() -> None:
    raise SystemExit(run_cli())


if __name__ == "__main__":
    main()
