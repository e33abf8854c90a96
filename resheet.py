import asyncio
import logging
import shlex
import sys

import httpx

from resheet.resheet_config import load_config
from resheet.resheet_datatypes import Pending
from resheet.resheet_http import RemoteError
from resheet.resheet_multiple import entry_name
from resheet.resheet_printer import Printer
from resheet.resheet_runtime import SheetFormatError, SheetRunner

# A basic awaitable input prompt.
async def ainput(prompt: str) -> str:
    loop = asyncio.get_running_loop()
    sys.stdout.write(prompt)
    sys.stdout.flush()
    return await loop.run_in_executor(None, sys.stdin.readline)

def format_line(line, printer: Printer) -> str:
    value = printer.pformat(line.result)
    if line.visibility == 'result':
        return value
    return f"{entry_name(line)} = {value}"

def print_line(line, printer: Printer, prefix: str = ""):
    text = prefix + format_line(line, printer)
    if isinstance(line.result, BaseException):
        print(text, file=sys.stderr)
    else:
        print(text)

def print_lines(runner: SheetRunner, printer: Printer):
    for line in runner.lines:
        print_line(line, printer)

async def run_sheet_file(file_path: str):
    """Load a sheet document (a path or an http(s) URL), wait for its asynchronous cells, print every line and exit."""
    config = load_config()
    logging.basicConfig(level=config.log_level)
    runner = SheetRunner(config=config)
    printer = Printer()
    try:
        if _is_url(file_path):
            await runner.load_url(file_path)
        else:
            runner.load_file(file_path)
    except FileNotFoundError:
        print(f"Error: file not found: {file_path}", file=sys.stderr)
        raise SystemExit(1)
    except (SheetFormatError, RemoteError, httpx.HTTPError) as e:
        print(f"Error: {e}", file=sys.stderr)
        raise SystemExit(1)
    await runner.wait_settled()
    print_lines(runner, printer)

def _parse_id(text: str) -> int:
    return int(text.lstrip('$'))

def _is_url(target: str) -> bool:
    return target.startswith(("http://", "https://"))

async def run_command(runner: SheetRunner, printer: Printer, line: str):
    """Applies one `:command` typed at the prompt."""
    command, _, rest = line[1:].partition(' ')
    rest = rest.strip()
    match command:
        case 'let':
            name, _, code = rest.partition(' ')
            line_id = runner.add_line(code.strip(), name=name)
            print_line(runner.line(line_id), printer)
        case 'edit':
            ident, _, code = rest.partition(' ')
            runner.set_code(_parse_id(ident), code.strip())
            print_line(runner.line(_parse_id(ident)), printer)
        case 'mv':
            ident, name = rest.split()
            runner.rename(_parse_id(ident), name)
        case 'rm':
            runner.delete(*(_parse_id(ident) for ident in rest.split()))
        case 'dup':
            runner.duplicate(_parse_id(rest))
        case 'ls':
            for sheet_line in runner.lines:
                print(f"[{sheet_line.id}] {format_line(sheet_line, printer)}")
        case 'save':
            target = shlex.split(rest)[0]
            if _is_url(target):
                await runner.save_url(target)
            else:
                runner.save_file(target)
            print(f"Saved {len(runner.lines)} lines.")
        case 'load':
            target = shlex.split(rest)[0]
            if _is_url(target):
                await runner.load_url(target)
            else:
                runner.load_file(target)
            print_lines(runner, printer)
        case _:
            print(f"Unknown command: :{command}", file=sys.stderr)

async def main():
    """Run a sheet file when provided, otherwise start the interactive REPL."""
    if len(sys.argv) > 1:
        arg = sys.argv[1]
        if not arg.startswith("-"):
            await run_sheet_file(arg)
            return

    print("resheet REPL v0.1")
    print("Type 'exit' or press Ctrl+D to quit.")

    # Setup
    config = load_config()
    logging.basicConfig(level=config.log_level)
    runner = SheetRunner(config=config)
    printer = Printer()
    # Ids of lines whose asynchronous results have not been printed yet
    waiting = set()

    def on_update(state):
        for sheet_line in state.lines:
            if sheet_line.id in waiting and sheet_line.result is not Pending:
                waiting.discard(sheet_line.id)
                print_line(sheet_line, printer, prefix="\n")

    runner.subscribe(on_update)

    # REPL Loop
    while True:
        try:
            raw = await ainput(">> ")
            if raw == "":
                raise EOFError
            line = raw.strip()

            if not line:
                continue
            if line == "exit":
                break

            if line.startswith(':'):
                await run_command(runner, printer, line)
            else:
                line_id = runner.add_line(line)
                print_line(runner.line(line_id), printer)
            waiting.update(runner.pending_ids())

        except EOFError:
            print("\nExiting.")
            break
        except Exception as e:
            # Catch command errors and print them nicely
            print(f"Error: {e}", file=sys.stderr)

    runner.cancel_pending()

if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nExiting.")
