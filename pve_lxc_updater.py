#!/usr/bin/env python3

"""
Proxmox VE LXC Updater
Usage: ./pve_lxc_updater.py [--dry-run]

Updates the packages of every LXC container on this node:
- Confirmation prompt and interactive exclusion checklist (whiptail)
- Stopped containers are started, updated and shut down again
- OS-specific update commands dispatched through 'pct exec'
- Reboot-required detection per container
- Per-container logs plus a run summary under /var/log/pve-lxc-updater
- Dry-run mode that only shows what would happen
"""

import os
import re
import shutil
import socket
import subprocess
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple

# Defaults, overridable through the environment
DEFAULT_LOG_DIR = "/var/log/pve-lxc-updater"
SUMMARY_LOG_NAME = "pve-lxc-updater.log"
DEFAULT_SHUTDOWN_TIMEOUT = 60
DEFAULT_START_DELAY = 5

REBOOT_REQUIRED_FILE = "/var/run/reboot-required"

BACKTITLE = "Proxmox VE Helper Scripts"
DIALOG_HEIGHT = 16
DIALOG_LIST_HEIGHT = 8
DIALOG_WIDTH_PADDING = 23
MENU_ITEM_OFFSET = 2

BL = "\033[36m"
RD = "\033[01;31m"
GN = "\033[1;92m"
CL = "\033[m"

BANNER = r"""   __  __          __      __          __   _  ________
  / / / /___  ____/ /___ _/ /____     / /  | |/ / ____/
 / / / / __ \/ __  / __ `/ __/ _ \   / /   |   / /
/ /_/ / /_/ / /_/ / /_/ / /_/  __/  / /___/   / /___
\____/ .___/\__,_/\__,_/\__/\___/  /_____/_/|_\____/
    /_/"""

# Prints "<pct_used> <usedGiB>G <totalGiB>G <freeGiB>G" without awk so it
# works with BusyBox as well as coreutils.
DISK_INFO_SCRIPT = r'''
set -- $(df -P / | tail -n 1)
pct=${5%%%}
used_k=$3 total_k=$2 free_k=$4
g=1048576
used_g=$(( used_k / g ))
total_g=$(( total_k / g ))
free_g=$(( free_k / g ))
printf "%s %dG %dG %dG\n" "$pct" "$used_g" "$total_g" "$free_g"
'''


class LXCUpdaterError(Exception):
    """Base error for the updater."""


class PctCommandError(LXCUpdaterError):
    """A checked pct command exited with a non-zero status."""
    def __init__(self, command: List[str], returncode: int, output: str = ""):
        self.command = command
        self.returncode = returncode
        self.output = output
        message = f"'{' '.join(command)}' failed with exit status {returncode}"
        if output:
            message += f": {output.strip()}"
        super().__init__(message)


class UpdateError(LXCUpdaterError):
    """A step of a container's update sequence failed."""


class OSType(Enum):
    """Distribution families understood by the updater ('ostype' in the CT config)."""
    ALPINE = "alpine"
    ARCHLINUX = "archlinux"
    FEDORA = "fedora"
    ROCKY = "rocky"
    CENTOS = "centos"
    ALMA = "alma"
    UBUNTU = "ubuntu"
    DEBIAN = "debian"
    DEVUAN = "devuan"
    OPENSUSE = "opensuse"

    @classmethod
    def from_tag(cls, tag: Optional[str]) -> Optional["OSType"]:
        """Return the matching OSType, or None for an unknown tag."""
        try:
            return cls(tag)
        except ValueError:
            return None


_DNF_UPDATE = "dnf -y update && dnf -y upgrade"
_APT_UPDATE = ("export DEBIAN_FRONTEND=noninteractive; apt-get update; "
               "apt-get -yq dist-upgrade; apt-get -yq autoremove; apt-get -yq autoclean")

UPDATE_COMMANDS: Dict[OSType, str] = {
    OSType.ALPINE: "apk -U upgrade",
    OSType.ARCHLINUX: "pacman -Syyu --noconfirm",
    OSType.FEDORA: _DNF_UPDATE,
    OSType.ROCKY: _DNF_UPDATE,
    OSType.CENTOS: _DNF_UPDATE,
    OSType.ALMA: _DNF_UPDATE,
    OSType.UBUNTU: _APT_UPDATE,
    OSType.DEBIAN: _APT_UPDATE,
    OSType.DEVUAN: _APT_UPDATE,
    OSType.OPENSUSE: "zypper -n ref && zypper -n dup",
}


@dataclass
class Container:
    """A row of 'pct list'."""
    ctid: int
    name: Optional[str] = None

    @property
    def display_name(self) -> str:
        """Container name, or ct<id> when it has none."""
        return self.name or f"ct{self.ctid}"


@dataclass
class DiskInfo:
    """Root filesystem usage inside a container."""
    percent_used: str
    used: str
    total: str
    free: str


@dataclass
class RunResult:
    """Outcome of one or more processed containers."""
    updated: List[int] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)
    needs_reboot: List[Tuple[int, str]] = field(default_factory=list)

    def merge(self, other: "RunResult") -> "RunResult":
        """Append another result's entries to this one."""
        self.updated.extend(other.updated)
        self.skipped.extend(other.skipped)
        self.failed.extend(other.failed)
        self.needs_reboot.extend(other.needs_reboot)
        return self


def _env_int(name: str, default: int) -> int:
    """Read a non-negative integer setting from the environment."""
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        value = -1
    if value < 0:
        print(f"WARNING: ignoring invalid {name}={raw!r}, using {default}")
        return default
    return value


class ProxmoxLXCUpdater:
    """Updates LXC containers on the local Proxmox node through pct."""

    def __init__(self, dry_run: bool = False):
        self.dry_run = dry_run
        self.log_dir = os.getenv("PVE_LXC_LOG_DIR") or DEFAULT_LOG_DIR
        self.summary_log = os.path.join(self.log_dir, SUMMARY_LOG_NAME)
        self.shutdown_timeout = _env_int("PVE_LXC_SHUTDOWN_TIMEOUT", DEFAULT_SHUTDOWN_TIMEOUT)
        self.start_delay = _env_int("PVE_LXC_START_DELAY", DEFAULT_START_DELAY)
        # Per-container log that status lines are duplicated into
        self._tee_log: Optional[str] = None

    def display_usage(self):
        """Display usage information."""
        usage_text = f"""
Usage: {os.path.basename(sys.argv[0])} [--dry-run]

Options:
  --dry-run   Show what would happen but do not make changes.

Notes:
  - Logs are written to {self.log_dir}/<ctid>.log
  - Summary written to {self.summary_log}
  - Requires root and Proxmox 'pct' & 'whiptail' available.

Environment:
  PVE_LXC_LOG_DIR            Log directory (default: {DEFAULT_LOG_DIR})
  PVE_LXC_SHUTDOWN_TIMEOUT   Seconds to wait for a graceful shutdown (default: {DEFAULT_SHUTDOWN_TIMEOUT})
  PVE_LXC_START_DELAY        Seconds to wait after starting a container (default: {DEFAULT_START_DELAY})
"""
        print(usage_text)

    def header_info(self):
        """Clear the terminal and print the banner."""
        if sys.stdout.isatty():
            print("\033[H\033[2J", end="")
        print(BANNER)

    # ---------- Output and log files ----------

    @staticmethod
    def timestamp() -> str:
        """Current local time as YYYY-MM-DD HH:MM:SS."""
        return datetime.now().strftime("%Y-%m-%d %H:%M:%S")

    def _append(self, path: str, text: str):
        """Append text to a log file."""
        with open(path, "a", encoding="utf-8") as f:
            f.write(text)

    def _emit(self, color: str, level: str, message: str):
        """Print a colored status line and copy it to the container log."""
        print(f"{color}[{level}]{CL} {message}")
        if self._tee_log:
            self._append(self._tee_log, f"[{self.timestamp()}] [{level}] {message}\n")

    def log_inf(self, message: str):
        """Print an informational line."""
        self._emit(BL, "Info", message)

    def log_err(self, message: str):
        """Print an error line."""
        self._emit(RD, "Error", message)

    def log_ok(self, message: str):
        """Print a success line."""
        self._emit(GN, "OK", message)

    def write_summary(self, line: str):
        """Append a timestamped line to the run summary log."""
        self._append(self.summary_log, f"[{self.timestamp()}] {line}\n")

    def _tee_line(self, line: str):
        """Echo one line of command output and keep it in the container log."""
        if not line.endswith("\n"):
            line += "\n"
        sys.stdout.write(line)
        sys.stdout.flush()
        if self._tee_log:
            self._append(self._tee_log, line)

    def init_logging(self):
        """Create the log directory and summary log with owner-only permissions."""
        try:
            os.makedirs(self.log_dir, exist_ok=True)
            os.chmod(self.log_dir, 0o700)
            if not os.path.exists(self.summary_log):
                open(self.summary_log, "a", encoding="utf-8").close()
            os.chmod(self.summary_log, 0o600)
            self._append(
                self.summary_log,
                f"\n[{self.timestamp()}] ====== Start run (dry_run={str(self.dry_run).lower()}) ======\n",
            )
        except OSError as e:
            raise LXCUpdaterError(f"Log location {self.log_dir} is not writable: {e}") from e

    # ---------- pct ----------

    def run_pct_command(self, args: List[str], check: bool = True,
                        timeout: Optional[int] = None) -> subprocess.CompletedProcess:
        """Run a pct command and return the result.

        With check=True a non-zero exit status raises PctCommandError; with
        check=False the caller inspects the returncode. Output that is not
        valid UTF-8 is decoded with replacement characters.
        """
        command = ["pct"] + args
        try:
            result = subprocess.run(command, capture_output=True, text=True, errors="replace",
                                    timeout=timeout)
        except FileNotFoundError:
            raise LXCUpdaterError("'pct' command not found. Make sure you're running this on a Proxmox server.")

        if check and result.returncode != 0:
            raise PctCommandError(command, result.returncode, result.stdout or result.stderr or "")
        return result

    def stream_pct_command(self, args: List[str]) -> int:
        """Run a pct command, echoing its combined output line by line as it arrives.

        Each line also goes to the current container log. Returns the exit status.
        """
        command = ["pct"] + args
        try:
            process = subprocess.Popen(command, stdout=subprocess.PIPE, stderr=subprocess.STDOUT,
                                       text=True, errors="replace")
        except FileNotFoundError:
            raise LXCUpdaterError("'pct' command not found. Make sure you're running this on a Proxmox server.")

        with process:
            for line in process.stdout:
                self._tee_line(line)
        return process.wait()

    def get_containers(self) -> List[Container]:
        """List containers from 'pct list' in listing order."""
        result = self.run_pct_command(["list"])
        containers = []
        for line in result.stdout.strip().split("\n")[1:]:  # Skip header
            parts = line.split()
            if not parts or not re.match(r"^[0-9]+$", parts[0]):
                continue
            # VMID Status [Lock] Name
            name = parts[-1] if len(parts) >= 3 else None
            containers.append(Container(int(parts[0]), name))
        return containers

    def get_container_status(self, ctid: int) -> str:
        """Return 'running', 'stopped', another status string, or '' if unknown."""
        result = self.run_pct_command(["status", str(ctid)], check=False)
        if result.returncode != 0:
            return ""
        for line in result.stdout.split("\n"):
            if line.strip().startswith("status:"):
                return line.split(":", 1)[1].strip()
        return ""

    def get_container_config(self, ctid: int) -> Dict[str, str]:
        """Get the current container configuration as a dict."""
        result = self.run_pct_command(["config", str(ctid)], check=False)
        config = {}
        if result.returncode != 0:
            return config
        for line in result.stdout.strip().split("\n"):
            if line.startswith("#") or ":" not in line:
                continue
            key, value = line.split(":", 1)
            config[key.strip()] = value.strip()
        return config

    @staticmethod
    def is_template(config: Dict[str, str]) -> bool:
        """A template carries a non-zero 'template' key in its config."""
        return config.get("template", "0") not in ("", "0")

    def get_hostname(self, ctid: int) -> str:
        """Hostname reported inside the container, or ct<id> when it cannot be read."""
        result = self.run_pct_command(["exec", str(ctid), "--", "hostname"], check=False)
        hostname = result.stdout.strip() if result.returncode == 0 else ""
        return hostname or f"ct{ctid}"

    def get_disk_info(self, ctid: int) -> Optional[DiskInfo]:
        """Read root filesystem usage; None when the container does not report it."""
        result = self.run_pct_command(["exec", str(ctid), "--", "sh", "-uc", DISK_INFO_SCRIPT],
                                      check=False)
        if result.returncode != 0:
            return None
        fields = result.stdout.split()
        if len(fields) != 4:
            return None
        return DiskInfo(*fields)

    def needs_reboot(self, ctid: int) -> bool:
        """Check for the reboot-required marker inside the container."""
        result = self.run_pct_command(["exec", str(ctid), "--", "test", "-e", REBOOT_REQUIRED_FILE],
                                      check=False)
        return result.returncode == 0

    def exec_mutating(self, ctid: int, command: str):
        """Run a state-changing shell command inside a container."""
        if self.dry_run:
            self.log_inf(f"[DRY-RUN] pct exec {ctid} -- {command}")
            return
        returncode = self.stream_pct_command(["exec", str(ctid), "--", "sh", "-c", command])
        if returncode != 0:
            raise UpdateError(f"Update command for CT {ctid} exited with status {returncode}")

    def start_container(self, ctid: int):
        """Start a stopped container and wait for it to settle."""
        if self.dry_run:
            self.log_inf(f"[DRY-RUN] Starting CT {ctid}")
            self.log_inf(f"[DRY-RUN] Would wait {self.start_delay}s for {ctid} to start")
            return
        self.log_inf(f"Starting CT {ctid}")
        self.run_pct_command(["start", str(ctid)])
        self.log_inf(f"Waiting {self.start_delay}s for {ctid} to start")
        time.sleep(self.start_delay)

    def shutdown_container(self, ctid: int):
        """Shut down gracefully within the timeout, otherwise force a stop."""
        if self.dry_run:
            self.log_inf(f"[DRY-RUN] Would shut down {ctid}")
            return
        self.log_inf(f"Shutting down {ctid} (timeout {self.shutdown_timeout}s)")
        try:
            self.run_pct_command(["shutdown", str(ctid)], timeout=self.shutdown_timeout)
            return
        except (subprocess.TimeoutExpired, PctCommandError):
            self.log_err(f"Graceful shutdown timed out for {ctid}, forcing stop")

        # Best effort: a failed stop does not fail the run
        result = self.run_pct_command(["stop", str(ctid)], check=False)
        if result.returncode != 0:
            self.log_err(f"Forced stop of {ctid} failed: {(result.stderr or result.stdout).strip()}")

    # ---------- Interactive prompts ----------

    def confirm_update(self) -> bool:
        """Ask for confirmation; False when the operator declines or cancels."""
        result = subprocess.run([
            "whiptail", "--backtitle", BACKTITLE, "--title", "Proxmox VE LXC Updater",
            "--yesno", "This will update LXC containers. Proceed?", "10", "58",
        ])
        return result.returncode == 0

    def build_exclude_menu(self, containers: List[Container]) -> Tuple[List[str], int]:
        """Build the checklist items and the dialog width."""
        items = []
        max_length = 0
        for container in containers:
            item = container.display_name
            max_length = max(max_length, len(item) + MENU_ITEM_OFFSET)
            items.extend([str(container.ctid), item, "OFF"])
        return items, max_length + DIALOG_WIDTH_PADDING

    @staticmethod
    def parse_selection(raw: str) -> Set[int]:
        """Turn whiptail checklist output ('"101" "105"') into a set of ids."""
        selected = set()
        for token in raw.replace('"', "").split():
            if re.match(r"^[0-9]+$", token):
                selected.add(int(token))
        return selected

    def select_excluded(self, containers: List[Container], node: str) -> Optional[Set[int]]:
        """Show the exclusion checklist. Returns None when cancelled."""
        items, width = self.build_exclude_menu(containers)
        # whiptail draws on the terminal and reports the selection on stderr
        result = subprocess.run([
            "whiptail", "--backtitle", BACKTITLE, "--title", f"Containers on {node}",
            "--checklist", "\nSelect containers to skip from updates:\n",
            str(DIALOG_HEIGHT), str(width), str(DIALOG_LIST_HEIGHT),
        ] + items, stderr=subprocess.PIPE, text=True, errors="replace")
        if result.returncode != 0:
            return None
        return self.parse_selection(result.stderr or "")

    # ---------- Update flow ----------

    def update_container(self, ctid: int, config: Dict[str, str]) -> RunResult:
        """Run the update sequence for one running (or dry-run started) container."""
        result = RunResult()
        log_path = os.path.join(self.log_dir, f"{ctid}.log")
        try:
            open(log_path, "w", encoding="utf-8").close()
            os.chmod(log_path, 0o600)
            self._tee_log = log_path
            self._append(log_path, f"\n[{self.timestamp()}] ===== Updating CT {ctid} =====\n")

            os_tag = config.get("ostype")
            hostname = self.get_hostname(ctid)

            disk = self.get_disk_info(ctid)
            if disk:
                self.log_inf(f"Updating {ctid} : {hostname} - Root Disk: {disk.percent_used}% full "
                             f"[{disk.used}/{disk.total} used, {disk.free} free]")
            else:
                self.log_inf(f"Updating {ctid} : {hostname} - [No disk info]")

            os_type = OSType.from_tag(os_tag)
            if os_type is None:
                raise UpdateError(f"Unknown ostype for CT {ctid}: '{os_tag or ''}'. Skipping.")
            self.exec_mutating(ctid, UPDATE_COMMANDS[os_type])

            if self.needs_reboot(ctid):
                result.needs_reboot.append((ctid, hostname))

            self._append(log_path, f"[{self.timestamp()}] ===== Completed CT {ctid} =====\n")
            result.updated.append(ctid)
        except (LXCUpdaterError, OSError) as e:
            self.log_err(str(e))
            raise
        finally:
            self._tee_log = None
        return result

    def _update_and_record(self, ctid: int, config: Dict[str, str]) -> RunResult:
        """Run the update sequence, turning a failure into a failed entry."""
        try:
            return self.update_container(ctid, config)
        except (LXCUpdaterError, OSError) as e:
            self.write_summary(f"Failed CT {ctid}: {e}")
            return RunResult(failed=[ctid])

    def process_container(self, container: Container, excluded: Set[int]) -> RunResult:
        """Classify one container and update it if applicable."""
        ctid = container.ctid
        if ctid in excluded:
            self.log_inf(f"Skipping {ctid} (excluded)")
            self.write_summary(f"Skipped CT {ctid} (excluded)")
            return RunResult(skipped=[ctid])

        status = self.get_container_status(ctid)
        config = self.get_container_config(ctid)

        if self.is_template(config):
            self.log_inf(f"Skipping template {ctid}")
            self.write_summary(f"Skipped CT {ctid} (template)")
            return RunResult(skipped=[ctid])

        if status == "stopped":
            try:
                self.start_container(ctid)
            except LXCUpdaterError as e:
                self.log_err(f"Could not start {ctid}: {e}")
                self.write_summary(f"Failed CT {ctid}: {e}")
                return RunResult(failed=[ctid])
            try:
                return self._update_and_record(ctid, config)
            finally:
                self.shutdown_container(ctid)

        if status == "running":
            return self._update_and_record(ctid, config)

        self.log_inf(f"Skipping {ctid} (unknown status: {status or 'n/a'})")
        self.write_summary(f"Skipped CT {ctid} (unknown status: {status or 'n/a'})")
        return RunResult(skipped=[ctid])

    def run(self, containers: List[Container], excluded: Set[int]) -> RunResult:
        """Process containers one at a time in listing order."""
        result = RunResult()
        for container in containers:
            result.merge(self.process_container(container, excluded))
        return result

    def report_summary(self, result: RunResult) -> int:
        """Print and persist the summary; return the process exit status."""
        self.header_info()
        self.log_ok("All update attempts completed.")

        self._append(self.summary_log, f"\n[{self.timestamp()}] ===== Summary =====\n")
        if result.needs_reboot:
            lines = [f"{ctid} ({hostname})" for ctid, hostname in result.needs_reboot]
            print(f"{RD}Containers requiring reboot:{CL}")
            print("\n".join(lines))
            self._append(self.summary_log, "Containers requiring reboot:\n" + "\n".join(lines) + "\n")

        if result.failed:
            lines = [str(ctid) for ctid in result.failed]
            print(f"{RD}Containers with update errors:{CL}")
            print("\n".join(lines))
            self._append(self.summary_log, "Containers with errors:\n" + "\n".join(lines) + "\n")
            return 1

        if not result.needs_reboot:
            self.log_ok("All containers updated successfully.")
        self._append(self.summary_log, "All containers updated successfully.\n")
        return 0


def check_environment() -> Optional[str]:
    """Return an error message if the host cannot run the updater."""
    if os.geteuid() != 0:
        return "This script must be run as root."
    for tool in ("pct", "whiptail"):
        if shutil.which(tool) is None:
            return f"ERROR: '{tool}' command not found. Make sure you're running this on a Proxmox server."
    return None


def main(argv: Optional[List[str]] = None) -> int:
    """Parse arguments, run the prompts and update every selected container."""
    args = sys.argv[1:] if argv is None else argv
    updater = ProxmoxLXCUpdater()

    if args and args[0] == "--dry-run":
        updater.dry_run = True
    elif args and args[0].startswith("-"):
        updater.display_usage()
        return 2

    error = check_environment()
    if error:
        print(error, file=sys.stderr)
        return 1

    updater.header_info()
    print("Loading...")

    if not updater.confirm_update():
        print("Cancelled.")
        return 0

    try:
        containers = updater.get_containers()
    except LXCUpdaterError as e:
        print(f"ERROR: Cannot list containers: {e}", file=sys.stderr)
        return 1

    excluded = updater.select_excluded(containers, socket.gethostname())
    if excluded is None:
        print("Cancelled.")
        return 0

    # Only after the prompts: they need the terminal to themselves
    try:
        updater.init_logging()
    except LXCUpdaterError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    updater.header_info()
    if updater.dry_run:
        updater.log_inf("Dry-run mode is ON. No changes will be made.")

    result = updater.run(containers, excluded)
    return updater.report_summary(result)


if __name__ == "__main__":
    sys.exit(main())
