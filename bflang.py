"""BF-Lang entry point and REPL wiring."""

from __future__ import annotations
import argparse
import os
import sys
from typing import BinaryIO, Callable, List, Optional, TextIO

from bitmap import is_bitmap_path, read_bitmap, write_bitmap
from extensions import BFExtensionError, RuntimeServices, load_runtime_services
from interpreter import DEFAULT_MAX_CALL_DEPTH, DEFAULT_TAPE_SIZE, BFRuntimeError, Interpreter, TracebackFormatter
from lexer import BFParseError, Token, UnbalancedLoopError
from translate import rewrite, to_c


FILE_ERROR_EXIT_CODE = 3


def _byte_reader(stream: BinaryIO) -> Callable[[], int]:
    def _read() -> int:
        data = stream.read(1)
        return data[0] if data else -1

    return _read


def _char_writer(stream: TextIO) -> Callable[[int], None]:
    def _write(value: int) -> None:
        stream.write(chr(value))
        stream.flush()

    return _write


def _stem(path: str) -> str:
    root, _ext = os.path.splitext(path)
    return root or path


def _report_parse_error(error: BFParseError) -> int:
    print(f"{error.kind}: {error.describe()}", file=sys.stderr)
    return error.exit_code


def run_repl(verbose: bool, services: Optional[RuntimeServices], tape_size: int) -> int:
    print("\x1b[38;2;153;221;255mBF-Lang\033[0m REPL. Enter instructions, blank line to run buffer.") # "BF-Lang" in light blue
    had_output = False

    def _output_sink(value: int) -> None:
        nonlocal had_output
        had_output = True
        print(chr(value), end="")

    interpreter = Interpreter(filename="<repl>", verbose=verbose, services=services, output_sink=_output_sink, tape_size=tape_size)
    buffer: List[str] = []

    while True:
        prompt = "\x1b[38;2;153;221;255m>>>\033[0m " if not buffer else "\x1b[38;2;153;221;255m..>\033[0m " # light blue
        if had_output:
            # Ensure prompt starts on a fresh line if the program printed anything
            print()
            had_output = False
        try:
            line = input(prompt)
        except EOFError:
            print()
            break

        if line.strip() == "" and not buffer:
            continue
        if line.strip() != "":
            buffer.append(line)
            source_text = "\n".join(buffer)
        else:
            source_text = "\n".join(buffer)
            buffer.clear()

        try:
            interpreter.execute_text(source_text, "<repl>")
        except UnbalancedLoopError as error:
            if error.unmatched == "open" and buffer:
                # Keep reading until the loop closes or a blank line forces it.
                continue
            _report_parse_error(error)
        except BFParseError as error:
            _report_parse_error(error)
        except BFRuntimeError as error:
            formatter = TracebackFormatter(interpreter)
            print(formatter.format_text(error, verbose=interpreter.verbose), file=sys.stderr)
        else:
            if had_output:
                print()
                had_output = False
            print(f"C{interpreter.tape.pointer}: {interpreter.tape.get()}")
        buffer.clear()

    return 0


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="BF-Lang reference interpreter")
    parser.add_argument("program", nargs="?", help="Source file path (.bmp for bitmaps) or literal source with -source")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat program argument as literal source text")
    parser.add_argument("-i", "--input", help="Read IN bytes from this file instead of stdin")
    parser.add_argument("-o", "--output", help="Write OUT bytes (or translation output) to this file")
    parser.add_argument("--check", action="store_true", help="Only check that loops are balanced")
    parser.add_argument("--rewrite", action="store_true", help="Print the program in short form")
    parser.add_argument("--translate", action="store_true", help="Encode the program as a bitmap")
    parser.add_argument("--to-c", dest="to_c", action="store_true", help="Emit a C translation")
    parser.add_argument("--trace", action="store_true", help="Log every executed step to <program>.log")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Emit tape snapshots in traces and tracebacks")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    parser.add_argument("--tape-size", type=int, default=DEFAULT_TAPE_SIZE, help="Number of tape cells")
    parser.add_argument("--max-depth", type=int, default=DEFAULT_MAX_CALL_DEPTH, help="Maximum function call depth")
    parser.add_argument("--ext", action="append", default=[], help="Extension module (.py) or pointer file (.bfx)")
    args = parser.parse_args(argv)
    if args.tape_size <= 0:
        parser.error("--tape-size must be positive")
    if args.max_depth <= 0:
        parser.error("--max-depth must be positive")

    services: Optional[RuntimeServices] = None
    if args.ext:
        try:
            services = load_runtime_services(args.ext)
        except BFExtensionError as exc:
            print(f"ExtensionError: {exc}", file=sys.stderr)
            return 1

    if args.program is None:
        if args.source_mode:
            print("-source requires a program string", file=sys.stderr)
            return 1
        return run_repl(verbose=args.verbose, services=services, tape_size=args.tape_size)

    source_text = ""
    tokens: Optional[List[Token]] = None
    if args.source_mode:
        source_text = args.program
        filename = "<string>"
    else:
        filename = args.program
        try:
            if is_bitmap_path(filename):
                with open(filename, "rb") as handle:
                    tokens = read_bitmap(handle)
            else:
                with open(filename, "r", encoding="utf-8") as handle:
                    source_text = handle.read()
        except OSError as exc:
            print(f"Failed to read {filename}: {exc}", file=sys.stderr)
            return FILE_ERROR_EXIT_CODE
        except BFParseError as error:
            return _report_parse_error(error)

    input_handle: Optional[BinaryIO] = None
    output_handle: Optional[TextIO] = None
    trace_handle: Optional[TextIO] = None
    try:
        if args.input:
            input_handle = open(args.input, "rb")
        if args.output and not (args.translate or args.to_c):
            output_handle = open(args.output, "w", encoding="latin-1")
        if args.trace and not args.source_mode:
            trace_handle = open(_stem(filename) + ".log", "w", encoding="utf-8")

        trace_sink: Optional[Callable[[str], None]] = None
        if args.trace:
            trace_stream = trace_handle if trace_handle is not None else sys.stderr
            trace_sink = lambda line: print(line, file=trace_stream)

        interpreter = Interpreter(
            source=source_text,
            filename=filename,
            verbose=args.verbose,
            tokens=tokens,
            services=services,
            input_provider=_byte_reader(input_handle) if input_handle is not None else None,
            output_sink=_char_writer(output_handle) if output_handle is not None else None,
            trace_sink=trace_sink,
            tape_size=args.tape_size,
            max_call_depth=args.max_depth,
        )
        return _dispatch(args, interpreter)
    except OSError as exc:
        print(f"File error: {exc}", file=sys.stderr)
        return FILE_ERROR_EXIT_CODE
    except BFParseError as error:
        return _report_parse_error(error)
    except BFRuntimeError as error:
        formatter = TracebackFormatter(interpreter)
        print(formatter.format_text(error, verbose=args.verbose), file=sys.stderr)
        if args.traceback_json:
            print(formatter.to_json(error), file=sys.stderr)
        return error.exit_code
    finally:
        for handle in (input_handle, output_handle, trace_handle):
            if handle is not None:
                handle.close()


def _dispatch(args: argparse.Namespace, interpreter: Interpreter) -> int:
    if args.check or args.rewrite or args.translate:
        if args.check:
            interpreter.check()
        if args.rewrite or args.translate:
            program = interpreter.parse()
            if args.rewrite:
                print(rewrite(program), end="" if program.calls() else "\n")
            if args.translate:
                if args.output:
                    write_bitmap(program.instructions, args.output)
                else:
                    write_bitmap(program.instructions, sys.stdout.buffer)
        return 0

    if args.to_c:
        program = interpreter.parse()
        text = to_c(
            program,
            interpreter.compile_call,
            tape_size=interpreter.tape_size,
            max_depth=interpreter.max_expansion_depth,
        )
        if args.output:
            with open(args.output, "w", encoding="utf-8") as handle:
                handle.write(text)
        else:
            print(text, end="")
        return 0

    interpreter.run()
    print()
    print(interpreter.tape.dump())
    print()
    print(interpreter.metrics.report())
    return 0


if __name__ == "__main__":
    raise SystemExit(run_cli())
