import sys
import time
import signal
import logging
import threading
from contextlib import contextmanager
from typing import Iterator, List, Optional, TextIO, Tuple

import machpay.settings as default_settings
from machpay.local.config import GatewayConfig
from machpay.local.credentials import CredentialStore
from machpay.local.errors import (
    GatewayError,
    HealthCheckError,
    LogNotFoundError,
    NotInstalledError,
    NotRunningError,
    VersionParseError,
)
from machpay.local.external import GatewayInstaller
from machpay.local.supervisor import ProcessManager
from machpay.local.console.progress import Spinner, StepProgress

log = logging.getLogger(__name__)


@contextmanager
def cancel_on_interrupt() -> Iterator[threading.Event]:
    """
    Yields an event that is set when the user presses Ctrl+C.

    Outside the main thread signal handlers cannot be installed, so the
    event is only set by the caller there.
    """
    cancel = threading.Event()
    if threading.current_thread() is not threading.main_thread():
        yield cancel
        return

    previous = signal.signal(signal.SIGINT, lambda signum, frame: cancel.set())
    try:
        yield cancel
    finally:
        signal.signal(signal.SIGINT, previous)


class Console:
    """
    Command handlers for the machpay CLI.

    Holds the collaborators every command needs. Tests construct it with
    their own installer and manager pointing at temporary directories.
    """

    def __init__(
        self,
        config: Optional[GatewayConfig] = None,
        installer: Optional[GatewayInstaller] = None,
        manager: Optional[ProcessManager] = None,
        credentials: Optional[CredentialStore] = None,
        out: Optional[TextIO] = None,
    ) -> None:
        self.config = config or GatewayConfig()
        self.installer = installer or GatewayInstaller()
        self.manager = manager or ProcessManager(
            self.installer.binary_path,
            port=self.config.port,
            upstream=self.config.upstream_url,
            debug=self.config.debug,
        )
        self.credentials = credentials or CredentialStore()
        self.out = out or sys.stdout
        self.verbose = False
        self.exit_code = 0

    def say(self, message: str = "") -> None:
        self.out.write(message + "\n")
        self.out.flush()

    def fail(self, message: str) -> None:
        self.exit_code = 1
        self.say(f"Error: {message}")

    #* --- Install / Update ---
    def install(self, args: List[str]) -> None:
        """Installs the requested version, or the latest release."""
        version = args[0] if args else ""
        if not version:
            with Spinner(self.out, "Fetching latest release...") as spinner:
                release = self.installer.get_latest_release()
                spinner.message = f"Latest release: {release.tag_name}"
            version = release.tag_name

        self.say(f"Installing machpay-gateway {version}...")
        result = self.installer.download(version, self.out)
        if not result.verified:
            self.say("  Warning: installed without checksum verification.")
        self.say(f"Gateway {result.version} installed.")

    def ensure_installed(self) -> None:
        if self.installer.is_installed():
            return
        self.say("Gateway is not installed. Installing the latest release...")
        self.install([])

    def update(self, args: List[str]) -> None:
        """Upgrades the gateway if the latest release differs from the installed one."""
        steps = StepProgress(self.out, 3)
        steps.step("Checking for updates")
        needs_update, latest = self.installer.needs_update()
        if not needs_update:
            self.say(f"Gateway is up to date ({latest}).")
            return

        was_running = self.manager.is_running()
        steps.step("Stopping gateway" if was_running else "Gateway not running")
        if was_running:
            self.manager.stop()

        steps.step(f"Installing {latest or 'latest release'}")
        self.install([latest] if latest else [])

        if was_running:
            pid = self.manager.start()
            self.say(f"Gateway restarted (PID {pid}).")
        steps.complete()

    def version(self, args: List[str]) -> None:
        try:
            self.say(f"machpay-gateway {self.installer.installed_version()}")
        except NotInstalledError:
            self.say("Gateway is not installed. Run 'install' first.")
        except VersionParseError as e:
            self.fail(str(e))

    #* --- Serve / Stop ---
    def _apply_serve_args(self, args: List[str]) -> bool:
        """Applies serve flags to the manager. Returns True when --detach was given."""
        detach = False
        it = iter(args)
        for arg in it:
            if arg in ("-d", "--detach"):
                detach = True
            elif arg == "--debug":
                self.manager.set_debug(True)
            elif arg == "--port":
                self.manager.set_port(int(next(it)))
            elif arg == "--upstream":
                self.manager.set_upstream(next(it))
            else:
                raise ValueError(f"unknown serve option '{arg}'")
        return detach

    def serve(self, args: List[str]) -> None:
        """Starts the gateway in the foreground, or detached with --detach."""
        try:
            detach = self._apply_serve_args(args)
        except (ValueError, StopIteration) as e:
            self.fail(f"invalid serve arguments: {str(e) or 'missing value'}")
            return

        self.ensure_installed()
        if not self.credentials.is_authenticated():
            self.say("Warning: not logged in. Run 'machpay login' to receive payments.")

        if detach:
            pid = self.manager.start()
            self.say(f"Gateway started in background (PID {pid}).")
            spinner = Spinner(self.out, f"Waiting for gateway on port {self.manager.port}...").start()
            try:
                self.manager.wait_for_healthy(default_settings.DEFAULT_HEALTHY_WAIT)
            except GatewayError:
                spinner.stop_with_message(False, f"Gateway not healthy yet. Check logs at {self.manager.log_file}")
                raise
            spinner.stop_with_message(True, f"Gateway healthy on port {self.manager.port}")
            return

        self.say(f"Starting gateway on port {self.manager.port} (Ctrl+C to stop)...")
        with cancel_on_interrupt() as cancel:
            self.manager.start_foreground(cancel, sys.stdout, sys.stderr)
        self.say("Gateway stopped.")

    def stop(self, args: List[str]) -> None:
        try:
            self.manager.stop()
            self.say("Gateway stopped.")
        except NotRunningError:
            self.say("Gateway is not running.")

    def kill(self, args: List[str]) -> None:
        try:
            self.manager.kill()
            self.say("Gateway killed.")
        except NotRunningError:
            self.say("Gateway is not running.")

    def restart(self, args: List[str]) -> None:
        self.ensure_installed()
        pid = self.manager.restart()
        self.say(f"Gateway restarted (PID {pid}).")

    #* --- Status ---
    def _installed_label(self) -> str:
        try:
            return self.installer.installed_version()
        except NotInstalledError:
            return "not installed"
        except GatewayError as e:
            log.debug(f"Could not read gateway version: {e}")
            return "installed (unknown version)"

    def status(self, args: List[str]) -> None:
        """Prints install, process and health status."""
        self.say("\n--- Gateway Status ---")
        self.say(f"  Version      : {self._installed_label()}")
        self.say(f"  Auth         : {'logged in' if self.credentials.is_authenticated() else 'not logged in'}")

        try:
            info = self.manager.process_info()
        except NotRunningError:
            self.say("  Process      : STOPPED")
            try:
                stale_pid = self.manager.get_pid()
                self.say(f"\nWARNING: stale PID file references PID {stale_pid}.")
                self.say("Run 'stop' to clean it up before starting again.")
            except NotRunningError:
                pass
            self.say("-" * 22 + "\n")
            return

        uptime = time.strftime('%H:%M:%S', time.gmtime(info["uptime"]))
        self.say(f"  Process      : {info['status'].upper()} (PID {info['pid']})")
        self.say(f"  Resources    : CPU {info['cpu']:.1f}% | MEM {info['memory_mb']:.1f} MB | up {uptime}")
        try:
            self.manager.health_check()
            health = "healthy"
        except HealthCheckError as e:
            health = f"unhealthy ({e})"
        self.say(f"  Health       : {health} on port {self.manager.port}")
        self.say(f"  Logs         : {self.manager.log_file}")
        self.say("-" * 22 + "\n")

    #* --- Logs ---
    def logs(self, args: List[str]) -> None:
        """Prints the gateway log; -f follows it, --clear truncates it."""
        try:
            if "--clear" in args:
                self.manager.clear_logs()
                self.say("Gateway log cleared.")
                return
            follow = "-f" in args or "--follow" in args
            if not follow:
                self.manager.tail_logs(follow=False, writer=self.out)
                return
            with cancel_on_interrupt() as cancel:
                self.manager.tail_logs(cancel, True, self.out)
        except LogNotFoundError:
            self.say("No gateway log yet. Start the gateway with 'serve --detach' first.")

    #* --- Config ---
    def handle_config_command(self, args: List[str]) -> None:
        sub_command = args[0].lower() if args else "show"
        if sub_command == "show":
            self.say(f"\n--- Configuration ({self.config.path}) ---")
            for key, value in self.config.as_dict().items():
                self.say(f"  {key} = {value}")
            self.say()
        elif sub_command == "set" and len(args) >= 3:
            key, value = args[1].lower(), " ".join(args[2:])
            try:
                self.config.set(key, value)
            except KeyError as e:
                self.fail(str(e.args[0]))
                return
            except (TypeError, ValueError) as e:
                self.fail(f"could not convert '{value}' for '{key}': {e}")
                return
            self.say(f"'{key}' set to '{getattr(self.config, key)}'. Restart the gateway to apply it.")
        else:
            self.say("Usage: config show | config set <key> <value>")
            self.say(f"Keys: {', '.join(sorted(default_settings.MODIFIABLE_SETTINGS))}")

    def toggle_verbose_logging(self, args: List[str]) -> None:
        """Toggles verbose (DEBUG level) logging for the console handler."""
        self.verbose = not self.verbose
        new_level = logging.DEBUG if self.verbose else logging.WARNING
        for handler in logging.getLogger().handlers:
            if type(handler) is logging.StreamHandler:
                handler.setLevel(new_level)
        self.say(f"Verbose console logging is now {'ON' if self.verbose else 'OFF'}.")

    def print_help(self, args: List[str]) -> None:
        self.say("\nAvailable commands:")
        for name, description in HELP_LINES:
            self.say(f"  {name:<34} - {description}")
        self.say()


HELP_LINES: Tuple[Tuple[str, str], ...] = (
    ("install [version]", "Download and install the gateway (latest by default)."),
    ("update", "Upgrade the gateway, restarting it if it was running."),
    ("version", "Show the installed gateway version."),
    ("serve [-d] [--port N] [--upstream URL]", "Run the gateway (foreground, or detached with -d)."),
    ("stop", "Stop the gateway gracefully."),
    ("kill", "Force-kill the gateway."),
    ("restart", "Restart the gateway in the background."),
    ("status", "Show install, process and health status."),
    ("logs [-f] [--clear]", "Print, follow or clear the gateway log."),
    ("config [show|set KEY VALUE]", "Show or change saved settings."),
    ("verbose", "Toggle detailed DEBUG log output in the console."),
    ("exit", "Exit the management console."),
)
