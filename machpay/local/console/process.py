import logging
from typing import List

from machpay.local.errors import GatewayError
from machpay.local.console.handler import Console

log = logging.getLogger(__name__)


def execute_command(console: Console, command: str, args: List[str]) -> bool:
    """
    Executes a single command from the user.

    Lifecycle failures are reported on the console and recorded in
    `console.exit_code`; they never end the interactive session.

    :param console: The console holding the installer and process manager.
    :param command: The main command string (e.g., 'serve', 'config').
    :param args: A list of arguments for the command.
    :return bool: True if the console should exit, False otherwise.
    """
    log.debug(f"Executing command: {command}, args: {args}")
    if command in ("exit", "quit"):
        return True

    command_map = {
        "install": console.install,
        "update": console.update,
        "version": console.version,
        "serve": console.serve,
        "start": lambda a: console.serve(["--detach"] + a),
        "stop": console.stop,
        "kill": console.kill,
        "restart": console.restart,
        "status": console.status,
        "logs": console.logs,
        "config": console.handle_config_command,
        "verbose": console.toggle_verbose_logging,
        "help": console.print_help,
    }

    handler = command_map.get(command)
    if handler is None:
        console.fail(f"Unknown command: '{command}'. Type 'help' for a list of commands.")
        return False

    try:
        handler(args)
    except GatewayError as e:
        log.debug(f"Command '{command}' failed: {e}", exc_info=True)
        console.fail(str(e))
    return False
