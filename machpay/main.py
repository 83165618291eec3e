import sys
import logging
import threading

from machpay.local.console.handler import Console
from machpay.local.console.process import execute_command
from machpay.log import setup_logging

log = logging.getLogger("console")

CONSOLE_LOCK = threading.Lock()


def main() -> None:
    """The main entry point for the machpay console application."""
    setup_logging(logging.WARNING)
    console = Console()

    # Non-interactive mode for one-off commands
    if len(sys.argv) > 1:
        command, args = sys.argv[1].lower(), sys.argv[2:]
        if "--verbose" in args:
            args.remove("--verbose")
            console.toggle_verbose_logging([])

        execute_command(console, command, args)
        sys.exit(console.exit_code)

    # Interactive mode
    print("--- MachPay Gateway Console ---")
    print("Type 'help' for a list of commands.")

    with CONSOLE_LOCK:
        status = "running" if console.manager.is_running() else "stopped"
        log.debug(f"Console startup - gateway is currently {status}.")
    print(f"Gateway is currently {status}.")

    while True:
        try:
            # The input prompt must be outside the lock to not block background threads
            command_line_str = input("> ")
            with CONSOLE_LOCK:
                command_line = command_line_str.strip().split()
                if not command_line:
                    continue

                command, args = command_line[0].lower(), command_line[1:]
                if execute_command(console, command, args):
                    break

        except (KeyboardInterrupt, EOFError):
            with CONSOLE_LOCK:
                print()
                log.info("Exiting console due to interrupt.")
                break
        except Exception as e:
            with CONSOLE_LOCK:
                log.error(f"An unexpected error occurred in the console: {e}", exc_info=True)


if __name__ == "__main__":
    main()
