#!/usr/bin/env python3
"""
VPS Init - Configuration Hardening Utility

Applies the configuration edits of a fresh VPS setup without ever duplicating
a setting, so it can be re-run at any time:

  • SSH hardening: port, root login, password/pubkey authentication
  • BBR congestion control in /etc/sysctl.conf
  • Swappiness in /etc/sysctl.conf
  • Arbitrary KEY=VALUE directives for sshd- or sysctl-style files

Every edited file is backed up once to <file>.bak before the first change and is
replaced atomically. Services are not restarted; the commands to apply the new
settings are printed instead.

Usage:
  sudo vps-init ssh --port 2222
  sudo vps-init bbr
  sudo vps-init --dry-run patch /etc/ssh/sshd_config X11Forwarding=no
"""

import datetime
import gzip
import logging
import os
import platform
import re
import shutil
import signal
import sys
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

import click
import pyfiglet
from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table
from rich.theme import Theme

from config_patcher import (
    DIALECTS,
    SSHD,
    SYSCTL,
    ConfigPatchError,
    Directive,
    PatchAction,
    PatchResult,
    apply_directives,
    parse_directive,
    read_directive,
)


# ------------------------------
# Configuration
# ------------------------------
class AppConfig:
    """Global application configuration."""

    VERSION: str = "1.0.0"
    APP_NAME: str = "VPS Init"
    LOGGER_NAME: str = "vps_init"

    LOG_FILE: str = "/var/log/vps-init.log"
    MAX_LOG_SIZE: int = 10 * 1024 * 1024  # 10MB
    LOG_FORMAT: str = "[%(asctime)s] [%(levelname)s] %(message)s"
    LOG_DATE_FORMAT: str = "%Y-%m-%d %H:%M:%S"

    SSHD_CONFIG: str = "/etc/ssh/sshd_config"
    SYSCTL_CONF: str = "/etc/sysctl.conf"

    DEFAULT_SSH_PORT: int = 22
    DEFAULT_SWAPPINESS: int = 10
    BBR_MIN_KERNEL: Tuple[int, int] = (4, 9)


theme = Theme(
    {
        "info": "#88C0D0",
        "warning": "#EBCB8B",
        "danger": "#BF616A",
        "success": "#A3BE8C",
        "primary": "#5E81AC",
        "frost1": "#8FBCBB",
        "frost2": "#88C0D0",
        "frost3": "#81A1C1",
        "frost4": "#5E81AC",
    }
)
console = Console(theme=theme)
logger = logging.getLogger(AppConfig.LOGGER_NAME)

ACTION_STYLES = {
    PatchAction.INSERTED: "success",
    PatchAction.REPLACED: "warning",
    PatchAction.UNCHANGED: "frost3",
}


# ------------------------------
# Logging Setup
# ------------------------------
def rotate_log(log_file: str, max_size: int = AppConfig.MAX_LOG_SIZE) -> Optional[str]:
    """Gzip the log file away once it grows past max_size."""
    if not os.path.exists(log_file) or os.path.getsize(log_file) <= max_size:
        return None
    ts = datetime.datetime.now().strftime("%Y%m%d%H%M%S")
    rotated = f"{log_file}.{ts}.gz"
    with open(log_file, "rb") as fin, gzip.open(rotated, "wb") as fout:
        shutil.copyfileobj(fin, fout)
    open(log_file, "w").close()
    return rotated


def setup_logging(log_file: Optional[str] = AppConfig.LOG_FILE, debug: bool = False) -> logging.Logger:
    """Configure logging to the console (Rich) and to a timestamped log file."""
    log = logging.getLogger(AppConfig.LOGGER_NAME)
    for handler in list(log.handlers):
        log.removeHandler(handler)
        handler.close()
    log.setLevel(logging.DEBUG)
    log.propagate = False

    console_handler = RichHandler(console=console, rich_tracebacks=True, show_path=False)
    console_handler.setLevel(logging.DEBUG if debug else logging.INFO)
    log.addHandler(console_handler)

    if log_file:
        try:
            os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
            rotated = rotate_log(log_file)
            fh = logging.FileHandler(log_file)
            fh.setLevel(logging.DEBUG)
            fh.setFormatter(logging.Formatter(AppConfig.LOG_FORMAT, AppConfig.LOG_DATE_FORMAT))
            log.addHandler(fh)
            if rotated:
                log.info(f"Rotated previous log to {rotated}")
        except OSError as e:
            log.warning(f"File logging disabled ({log_file}): {e}")
    return log


# ------------------------------
# Console Helpers
# ------------------------------
def print_banner() -> None:
    term_width, _ = shutil.get_terminal_size((80, 24))
    font = "slant" if term_width >= 80 else "small"
    fig = pyfiglet.Figlet(font=font, width=max(term_width - 10, 40))
    console.print(fig.renderText(AppConfig.APP_NAME), style="frost2")


def print_success(text: str) -> None:
    console.print(f"[success]✓ {text}[/success]")


def print_warning(text: str) -> None:
    console.print(f"[warning]⚠ {text}[/warning]")


def print_error(text: str) -> None:
    console.print(f"[danger]✗ {text}[/danger]")


def print_step(text: str) -> None:
    console.print(f"[info]• {text}[/info]")


def render_results(result: PatchResult) -> Table:
    table = Table(
        title=escape(str(result.path)),
        box=box.ROUNDED,
        header_style="bold frost2",
        title_style="primary",
    )
    table.add_column("Key", style="frost1")
    table.add_column("Value")
    table.add_column("Action")
    table.add_column("Line", justify="right")
    for r in result.results:
        style = ACTION_STYLES.get(r.action, "")
        table.add_row(escape(r.key), escape(r.value), f"[{style}]{r.action.value}[/{style}]", str(r.line_number))
    return table


# ------------------------------
# Directive Sets
# ------------------------------
def ssh_hardening_directives(port: int = AppConfig.DEFAULT_SSH_PORT) -> List[Directive]:
    """Key-only root login, no passwords, custom port."""
    return [
        Directive("Port", str(port)),
        Directive("PermitRootLogin", "prohibit-password"),
        Directive("PasswordAuthentication", "no"),
        Directive("PubkeyAuthentication", "yes"),
        Directive("ChallengeResponseAuthentication", "no"),
    ]


BBR_DIRECTIVES: List[Directive] = [
    Directive("net.core.default_qdisc", "fq"),
    Directive("net.ipv4.tcp_congestion_control", "bbr"),
]


def swappiness_directives(value: int = AppConfig.DEFAULT_SWAPPINESS) -> List[Directive]:
    return [Directive("vm.swappiness", str(value))]


def kernel_version(release: str) -> Optional[Tuple[int, int]]:
    match = re.match(r"(\d+)\.(\d+)", release)
    if not match:
        return None
    return int(match.group(1)), int(match.group(2))


def kernel_supports_bbr(release: str) -> bool:
    version = kernel_version(release)
    return version is not None and version >= AppConfig.BBR_MIN_KERNEL


# ------------------------------
# Patch Runner
# ------------------------------
@dataclass
class RunOptions:
    dry_run: bool = False
    backup: bool = True
    quiet: bool = False


def check_root(path: str) -> bool:
    """Warn, without exiting, when a system file is about to be edited without root."""
    if not str(os.path.abspath(path)).startswith("/etc/") or os.geteuid() == 0:
        return True
    logger.warning(f"Not running as root; editing {path} will likely fail.")
    print_warning("Not running as root. Run with: sudo vps-init ...")
    return False


def run_patch(opts: RunOptions, path: str, directives: List[Directive], dialect=SSHD) -> PatchResult:
    """Apply directives, report the results, and exit 1 on any patch error."""
    check_root(path)
    print_step(f"Patching {escape(str(path))} ({dialect.name})")
    try:
        result = apply_directives(
            path, directives, dialect=dialect, backup=opts.backup, dry_run=opts.dry_run
        )
    except ConfigPatchError as e:
        logger.error(f"{type(e).__name__}: {e}")
        print_error(escape(str(e)))
        sys.exit(1)

    console.print(render_results(result))
    if result.backup_path:
        print_step(f"Original saved to {result.backup_path}")
    if opts.dry_run and result.changed:
        print_warning(f"Dry run, nothing written. {result.summary()}")
    elif result.written:
        print_success(result.summary())
    else:
        print_success(f"Already up to date: {escape(str(path))}")
    return result


# ------------------------------
# Signal Handling
# ------------------------------
def signal_handler(signum: int, frame: Optional[Any]) -> None:
    logger.error(f"Interrupted by {signal.Signals(signum).name}.")
    sys.exit(130 if signum == signal.SIGINT else 128 + signum)


# ------------------------------
# Main CLI Entry Point with Click
# ------------------------------
@click.group()
@click.version_option(version=AppConfig.VERSION, prog_name="vps-init")
@click.option("--dry-run", is_flag=True, help="Show what would change without writing.")
@click.option("--no-backup", is_flag=True, help="Do not save <file>.bak before the first change.")
@click.option(
    "--log-file",
    default=AppConfig.LOG_FILE,
    show_default=True,
    help="Log file (empty string disables file logging).",
)
@click.option("--debug", is_flag=True, help="Enable debug logging on the console.")
@click.option("--quiet", "-q", is_flag=True, help="Skip the banner.")
@click.pass_context
def cli(ctx: click.Context, dry_run: bool, no_backup: bool, log_file: str, debug: bool, quiet: bool) -> None:
    """
    VPS Init - idempotent configuration hardening.

    Patches sshd_config and sysctl.conf in place: existing or commented-out
    settings are rewritten, missing ones appended, nothing is ever duplicated.
    """
    setup_logging(log_file or None, debug=debug)
    if not quiet:
        print_banner()
    ctx.obj = RunOptions(dry_run=dry_run, backup=not no_backup, quiet=quiet)
    logger.debug(f"Options: {ctx.obj}")


@cli.command()
@click.option(
    "--port",
    type=click.IntRange(1, 65535),
    default=AppConfig.DEFAULT_SSH_PORT,
    show_default=True,
    help="SSH port to listen on.",
)
@click.option("--config", "config_path", default=AppConfig.SSHD_CONFIG, show_default=True)
@click.pass_obj
def ssh(opts: RunOptions, port: int, config_path: str) -> None:
    """Harden the SSH daemon configuration."""
    logger.info(f"Configuring SSH security options (port {port})")
    result = run_patch(opts, config_path, ssh_hardening_directives(port), SSHD)
    if result.changed and not opts.dry_run:
        print_warning("Make sure an SSH public key is installed before logging out.")
        print_warning(f"Make sure the firewall allows port {port}/tcp.")
        print_step("Apply with: systemctl restart sshd")


@cli.command()
@click.option("--config", "config_path", default=AppConfig.SYSCTL_CONF, show_default=True)
@click.option("--force", is_flag=True, help="Skip the kernel version check.")
@click.pass_obj
def bbr(opts: RunOptions, config_path: str, force: bool) -> None:
    """Enable BBR congestion control."""
    release = platform.release()
    if not force and platform.system() == "Linux" and not kernel_supports_bbr(release):
        major, minor = AppConfig.BBR_MIN_KERNEL
        logger.error(f"Kernel {release} is too old for BBR (needs {major}.{minor}+)")
        print_error(f"Kernel {release} does not support BBR; {major}.{minor} or newer is required.")
        sys.exit(1)
    logger.info("Enabling BBR congestion control")
    result = run_patch(opts, config_path, BBR_DIRECTIVES, SYSCTL)
    if result.changed and not opts.dry_run:
        print_step("Apply with: sysctl -p")


@cli.command()
@click.option(
    "--value",
    type=click.IntRange(0, 200),
    default=AppConfig.DEFAULT_SWAPPINESS,
    show_default=True,
)
@click.option("--config", "config_path", default=AppConfig.SYSCTL_CONF, show_default=True)
@click.pass_obj
def swappiness(opts: RunOptions, value: int, config_path: str) -> None:
    """Persist vm.swappiness."""
    result = run_patch(opts, config_path, swappiness_directives(value), SYSCTL)
    if result.changed and not opts.dry_run:
        print_step(f"Apply with: sysctl vm.swappiness={value}")


@cli.command()
@click.argument("path", type=click.Path(dir_okay=False))
@click.argument("directives", nargs=-1, required=True)
@click.option(
    "--dialect",
    type=click.Choice(sorted(DIALECTS)),
    default=SSHD.name,
    show_default=True,
    help="sshd: 'key value' lines, sysctl: 'key=value' lines.",
)
@click.pass_obj
def patch(opts: RunOptions, path: str, directives: Tuple[str, ...], dialect: str) -> None:
    """Apply KEY=VALUE directives to PATH."""
    chosen = DIALECTS[dialect]
    try:
        parsed = [parse_directive(text, chosen) for text in directives]
    except ConfigPatchError as e:
        logger.error(str(e))
        print_error(escape(str(e)))
        sys.exit(1)
    run_patch(opts, path, parsed, chosen)


@cli.command()
@click.argument("path", type=click.Path(dir_okay=False))
@click.argument("key")
@click.option(
    "--dialect",
    type=click.Choice(sorted(DIALECTS)),
    default=SSHD.name,
    show_default=True,
)
def show(path: str, key: str, dialect: str) -> None:
    """Print the active value of KEY in PATH."""
    try:
        value = read_directive(path, key, DIALECTS[dialect])
    except ConfigPatchError as e:
        logger.error(str(e))
        print_error(escape(str(e)))
        sys.exit(1)
    if value is None:
        print_warning(f"{key} is not set in {path}")
        sys.exit(1)
    click.echo(value)


def main() -> None:
    for s in (signal.SIGINT, signal.SIGTERM):
        signal.signal(s, signal_handler)
    cli(prog_name="vps-init")


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        print_warning("Operation cancelled by user.")
        sys.exit(130)
    except Exception as e:
        print_error(f"Unexpected error: {e}")
        sys.exit(1)
