import sys
import shlex
import logging
from typing import List, Optional

# Console logger for anything printed before setup_logging() runs.
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)-8s - [console] - %(message)s',
    stream=sys.stdout
)
log = logging.getLogger("console")

import procwarden.local.console as console
from procwarden.log.setup import setup_logging
from procwarden.local.console.process import process_manager

PROMPT = "procwarden> "


def run_one_shot(argv: List[str]) -> None:
    """Runs a single command given on the command line, e.g. `procwarden start eco.yaml`."""
    command, args = argv[0].lower(), argv[1:]
    if "--verbose" in args:
        console.toggle_verbose_logging()
        args.remove("--verbose")
    console.execute_command(command, args)


def split_command_line(line: str) -> Optional[List[str]]:
    """Splits a typed line shell-style. Returns None for blank or unparsable input."""
    try:
        parts = shlex.split(line)
    except ValueError as e:
        print(f"Could not parse command: {e}")
        return None
    return parts or None


def interactive_loop() -> None:
    """Reads commands until 'exit', Ctrl+C or end of input."""
    print("--- procwarden Management Console ---")
    print("Type 'help' for a list of commands.")

    state = "running" if process_manager.is_running() else "stopped"
    log.debug(f"Console startup - supervisor is {state}.")
    print(f"Supervisor is currently {state}.")

    while True:
        try:
            parts = split_command_line(input(PROMPT))
        except (KeyboardInterrupt, EOFError):
            print()
            break
        if parts is None:
            continue

        command, args = parts[0].lower(), parts[1:]
        log.debug(f"Received command: {command}, args: {args}")
        try:
            if console.execute_command(command, args):
                break
        except KeyboardInterrupt:
            print("\nInterrupted.")
        except Exception as e:
            log.error(f"An unexpected error occurred in the console: {e}", exc_info=True)

    print("Exiting procwarden console. See you next time!")


def main() -> None:
    """The main entry point for the console application."""
    # The daemon configures its own logging when it starts.
    setup_logging(logging.INFO)

    if len(sys.argv) > 1:
        run_one_shot(sys.argv[1:])
    else:
        interactive_loop()


if __name__ == "__main__":
    main()
