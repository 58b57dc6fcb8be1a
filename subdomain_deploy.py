#!/usr/bin/env python3
"""
Subdomain Deploy
----------------

Provisions a static or git-backed website on a Debian-family VPS behind nginx:

  * preflight checks of the host (root, network, disk, ports, daemons)
  * interactive (or answer-file driven) collection of deployment details
  * document root creation, optional git clone (public or private)
  * nginx server block generation, activation and reload
  * optional Let's Encrypt certificate via certbot
  * HTTP/HTTPS verification and a final report

Run as root:  sudo subdomain-deploy [--answers answers.json]
"""

import atexit
import grp
import json
import logging
import os
import platform
import pwd
import re
import shutil
import signal
import socket
import subprocess
import sys
import tempfile
import warnings
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import (
    Any,
    Callable,
    Dict,
    Iterator,
    List,
    Mapping,
    NamedTuple,
    Optional,
    Sequence,
    Set,
    Tuple,
)
from urllib.parse import quote, urlsplit, urlunsplit

import click
import pyfiglet
import requests
from prompt_toolkit import prompt as pt_prompt
from prompt_toolkit.auto_suggest import AutoSuggestFromHistory
from prompt_toolkit.completion import WordCompleter
from prompt_toolkit.history import FileHistory, History, InMemoryHistory
from prompt_toolkit.styles import Style as PtStyle
from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text
from rich.traceback import install as install_rich_traceback
from urllib3.exceptions import InsecureRequestWarning

install_rich_traceback(show_locals=False)

# ----------------------------------------------------------------
# Configuration & Constants
# ----------------------------------------------------------------
APP_NAME: str = "Subdomain Deploy"
VERSION: str = "1.0.0"
OPERATION_TIMEOUT: int = 30
TEMP_PREFIX: str = "subdomain_deploy_"
DEFAULT_LOG_FILE: str = "/var/log/subdomain_deploy.log"

PACKAGE_MANAGERS: Tuple[str, ...] = ("apt-get", "dnf", "yum", "pacman")
INSTALL_COMMANDS: Dict[str, str] = {
    "apt-get": "apt-get install -y",
    "dnf": "dnf install -y",
    "yum": "yum install -y",
    "pacman": "pacman -S --noconfirm",
}
BACKUP_CATEGORIES: Tuple[str, ...] = ("site-config", "project", "certificate")

SUBDOMAIN_PATTERN = re.compile(r"^[a-zA-Z0-9]([a-zA-Z0-9.-]*[a-zA-Z0-9])?$")
EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
URL_SCHEME_PATTERN = re.compile(r"^https?://", re.IGNORECASE)
CREDENTIAL_PATTERN = re.compile(r"(https?://[^:/@\s]+):[^@\s]+@")
BACKUP_NAME_PATTERN = re.compile(
    r"^(?P<category>site-config|project|certificate)-(?P<stamp>\d{8}-\d{6}-\d{6})$"
)
SS_PROCESS_PATTERN = re.compile(r'users:\(\("([^"]+)"')

YES_ANSWERS = ("y", "yes")
NO_ANSWERS = ("n", "no")


class NordColors:
    POLAR_NIGHT_1: str = "#2E3440"
    POLAR_NIGHT_4: str = "#4C566A"
    SNOW_STORM_1: str = "#D8DEE9"
    SNOW_STORM_2: str = "#E5E9F0"
    FROST_1: str = "#8FBCBB"
    FROST_2: str = "#88C0D0"
    FROST_3: str = "#81A1C1"
    FROST_4: str = "#5E81AC"
    RED: str = "#BF616A"
    ORANGE: str = "#D08770"
    YELLOW: str = "#EBCB8B"
    GREEN: str = "#A3BE8C"

    @classmethod
    def get_frost_gradient(cls, steps: int = 4) -> List[str]:
        frosts = [cls.FROST_1, cls.FROST_2, cls.FROST_3, cls.FROST_4]
        return frosts[:steps]


console: Console = Console()
logger = logging.getLogger("subdomain_deploy")


@dataclass
class Config:
    LOG_FILE: Path = Path(DEFAULT_LOG_FILE)
    WEB_ROOT: Path = Path("/var/www")
    NGINX_SITES_AVAILABLE: Path = Path("/etc/nginx/sites-available")
    NGINX_SITES_ENABLED: Path = Path("/etc/nginx/sites-enabled")
    NGINX_LOG_DIR: Path = Path("/var/log/nginx")
    LETSENCRYPT_DIR: Path = Path("/etc/letsencrypt")
    BACKUP_ROOT: Path = Path("/var/backups")
    MAX_BACKUPS: int = 10
    WEB_GROUP: str = "www-data"
    REQUIRED_PACKAGES: Tuple[str, ...] = ("git", "nginx", "curl")
    KNOWN_GIT_HOSTS: Tuple[str, ...] = ("github.com", "gitlab.com", "bitbucket.org")
    CONFLICTING_SERVERS: Tuple[str, ...] = ("apache2", "httpd", "lighttpd")
    MIN_FREE_DISK_KB: int = 1048576
    LOW_MEMORY_MB: int = 512
    PROBE_TIMEOUT: int = 10
    MIN_TOKEN_LENGTH: int = 10
    PLACEHOLDER_GIT_USER: str = "oauth2"
    CONNECTIVITY_HOST: str = "google.com"
    PUBLIC_IP_URL: str = "https://api.ipify.org"

    def to_dict(self) -> Dict[str, Any]:
        return {key: str(value) for key, value in asdict(self).items()}


# ----------------------------------------------------------------
# Errors
# ----------------------------------------------------------------
class ErrorKind(Enum):
    """Closed set of failure classes, each with its exit code and remediation hints."""

    GENERIC = (
        1,
        "Deployment failed",
        ("Review the log file for the failing command.",),
    )
    INPUT = (
        2,
        "Invalid input",
        (
            "Re-run the script and check the values you entered.",
            "Subdomains look like app.example.com; repository URLs start with https://.",
        ),
    )
    ENVIRONMENT = (
        1,
        "Environment not ready",
        (
            "Run the script as root: sudo subdomain-deploy",
            "Check network connectivity and the package manager (apt-get update).",
            "Free up disk space if the disk check failed.",
        ),
    )
    NETWORK = (
        1,
        "Repository unreachable",
        (
            "Verify the repository URL and that the repository exists.",
            "For private repositories check the username and that the token has read access.",
            "Test access manually: git ls-remote <url>",
        ),
    )
    DIRECTORY = (
        5,
        "Directory error",
        (
            "Check permissions on the web root and the backup directory.",
            "Make sure the document root path is not a regular file.",
        ),
    )
    WEBSERVER_CONFIG = (
        3,
        "Web server configuration invalid",
        (
            "Inspect the generated configuration: nginx -t",
            "Remove conflicting server blocks from /etc/nginx/sites-enabled.",
        ),
    )
    WEBSERVER_RELOAD = (
        3,
        "Web server reload failed",
        (
            "Check the service: systemctl status nginx",
            "Read recent errors: journalctl -u nginx --no-pager -n 50",
        ),
    )
    CERTIFICATE = (
        4,
        "Certificate not issued",
        (
            "Point the subdomain's DNS A record at this server and wait for propagation.",
            "Make sure ports 80 and 443 are open in the firewall.",
            "Retry later: certbot --nginx -d <subdomain>",
        ),
    )

    def __init__(self, exit_code: int, title: str, hints: Tuple[str, ...]) -> None:
        self.exit_code = exit_code
        self.title = title
        self.hints = hints


class DeployError(Exception):
    kind: ErrorKind = ErrorKind.GENERIC

    def __init__(
        self,
        message: str,
        hints: Optional[Sequence[str]] = None,
        kind: Optional[ErrorKind] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind
        self.hints: List[str] = list(hints) if hints is not None else list(self.kind.hints)


class InputError(DeployError):
    kind = ErrorKind.INPUT


class PreflightError(DeployError):
    kind = ErrorKind.ENVIRONMENT


class NetworkError(DeployError):
    kind = ErrorKind.NETWORK


class DirectoryError(DeployError):
    kind = ErrorKind.DIRECTORY


class WebServerError(DeployError):
    kind = ErrorKind.WEBSERVER_CONFIG


class CertificateWarning(DeployError):
    kind = ErrorKind.CERTIFICATE


# ----------------------------------------------------------------
# Deployment Data
# ----------------------------------------------------------------
@dataclass(frozen=True)
class DeploymentRequest:
    subdomain: str
    repo_exists: bool = False
    repo_visibility: Optional[str] = None
    repo_url: Optional[str] = None
    git_user: Optional[str] = None
    git_token: Optional[str] = field(default=None, repr=False)
    enable_https: bool = False
    email: Optional[str] = None
    backup_project: bool = False
    backup_site_config: bool = False
    backup_certificate: bool = False

    @property
    def safe_name(self) -> str:
        return safe_name(self.subdomain)

    @property
    def is_private(self) -> bool:
        return self.repo_exists and self.repo_visibility == "private"


@dataclass(frozen=True)
class SiteArtifacts:
    project_dir: Path
    nginx_conf: Path
    enabled_link: Path
    access_log: Path
    error_log: Path
    certificate_dir: Path


@dataclass(frozen=True)
class DeploymentResult:
    request: DeploymentRequest
    artifacts: SiteArtifacts
    backups: Tuple[Path, ...] = ()
    repo_cloned: bool = False
    clone_strategy: Optional[str] = None
    certificate_ok: Optional[bool] = None
    http_ok: bool = False
    https_ok: Optional[bool] = None

    @property
    def succeeded(self) -> bool:
        if not self.http_ok:
            return False
        return not self.request.enable_https or bool(self.https_ok)

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1


class Owner(NamedTuple):
    user: str
    uid: int
    gid: int


def safe_name(subdomain: str) -> str:
    """Filesystem-safe form of a subdomain, used for every derived path."""
    return subdomain.replace("/", "_")


def site_artifacts(config: Config, subdomain: str) -> SiteArtifacts:
    name = safe_name(subdomain)
    return SiteArtifacts(
        project_dir=config.WEB_ROOT / name,
        nginx_conf=config.NGINX_SITES_AVAILABLE / f"{name}.conf",
        enabled_link=config.NGINX_SITES_ENABLED / f"{name}.conf",
        access_log=config.NGINX_LOG_DIR / f"{name}_access.log",
        error_log=config.NGINX_LOG_DIR / f"{name}_error.log",
        certificate_dir=config.LETSENCRYPT_DIR / "live" / subdomain,
    )


# ----------------------------------------------------------------
# Console Helpers
# ----------------------------------------------------------------
def create_header() -> Panel:
    term_width, _ = shutil.get_terminal_size((80, 24))
    fonts: List[str] = ["slant", "small", "mini"]
    font_to_use: str = fonts[0]
    if term_width < 40:
        font_to_use = fonts[2]
    elif term_width < 60:
        font_to_use = fonts[1]
    try:
        fig = pyfiglet.Figlet(font=font_to_use, width=min(term_width - 10, 120))
        ascii_art = fig.renderText(APP_NAME)
    except pyfiglet.FigletError:
        ascii_art = f"  {APP_NAME}  "
    ascii_lines = [line for line in ascii_art.splitlines() if line.strip()]
    colors = NordColors.get_frost_gradient(len(ascii_lines))
    combined_text = Text()
    for i, line in enumerate(ascii_lines):
        color = colors[i % len(colors)]
        combined_text.append(Text(line, style=f"bold {color}"))
        if i < len(ascii_lines) - 1:
            combined_text.append("\n")
    return Panel(
        combined_text,
        border_style=NordColors.FROST_1,
        padding=(1, 2),
        title=Text(f"v{VERSION}", style=f"bold {NordColors.SNOW_STORM_2}"),
        title_align="right",
        subtitle=Text("nginx + git + Let's Encrypt", style=NordColors.SNOW_STORM_1),
        subtitle_align="center",
        box=box.ROUNDED,
    )


def print_message(text: str, style: str = NordColors.FROST_2, prefix: str = "•") -> None:
    console.print(f"[{style}]{prefix} {escape(text)}[/{style}]")


def print_error(message: str) -> None:
    print_message(message, NordColors.RED, "✗")


def print_success(message: str) -> None:
    print_message(message, NordColors.GREEN, "✓")


def print_warning(message: str) -> None:
    print_message(message, NordColors.YELLOW, "⚠")


def print_step(message: str) -> None:
    print_message(message, NordColors.FROST_2, "→")


def print_section(title: str) -> None:
    console.print()
    console.print(f"[bold {NordColors.FROST_3}]{title}[/]")
    console.print(f"[{NordColors.FROST_3}]{'─' * len(title)}[/]")


def display_panel(title: str, message: str, style: str = NordColors.FROST_2) -> None:
    panel = Panel(
        message,
        title=title,
        border_style=style,
        padding=(1, 2),
        box=box.ROUNDED,
    )
    console.print(panel)


def show_error(error: DeployError, log_file: Optional[Path] = None, fatal: bool = True) -> None:
    """Render a DeployError with the remediation hints of its kind."""
    style = NordColors.RED if fatal else NordColors.YELLOW
    lines = [f"[bold]{escape(error.message)}[/bold]"]
    if error.hints:
        lines.append("")
        lines.append("Suggested fixes:")
        lines.extend(f"  • {escape(hint)}" for hint in error.hints)
    if fatal:
        lines.append("")
        lines.append("Next steps:")
        lines.append("  • Fix the issue above and re-run the script; completed steps are safe to repeat.")
        if log_file:
            lines.append(f"  • Full details are in {escape(str(log_file))}")
    title = error.kind.title if fatal else f"{error.kind.title} (continuing)"
    display_panel(title, "\n".join(lines), style)
    if fatal:
        logger.error(f"{error.kind.name}: {error.message}")
    else:
        logger.warning(f"{error.kind.name}: {error.message}")


# ----------------------------------------------------------------
# Logging Setup
# ----------------------------------------------------------------
def setup_logger(log_file: Path, verbose: bool = False) -> logging.Logger:
    logger.setLevel(logging.DEBUG)
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()

    console_handler = RichHandler(console=console, rich_tracebacks=True, show_path=False)
    console_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    logger.addHandler(console_handler)

    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
    except OSError as e:
        logger.warning(f"Could not open log file {log_file}: {e}")
        return logger
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(
        logging.Formatter("[%(asctime)s] [%(levelname)s] %(message)s", "%Y-%m-%d %H:%M:%S")
    )
    logger.addHandler(file_handler)

    try:
        # Secure the log file
        os.chmod(log_file, 0o600)
    except OSError as e:
        logger.warning(f"Could not set permissions on log file {log_file}: {e}")
    return logger


# ----------------------------------------------------------------
# Command Execution
# ----------------------------------------------------------------
def redact(text: str) -> str:
    return CREDENTIAL_PATTERN.sub(r"\1:***@", text)


def command_env(**extra: str) -> Dict[str, str]:
    env = dict(os.environ)
    env.update(extra)
    return env


def git_env(**extra: str) -> Dict[str, str]:
    return command_env(GIT_TERMINAL_PROMPT="0", **extra)


def run_command(
    cmd: Sequence[str],
    env: Optional[Mapping[str, str]] = None,
    timeout: Optional[int] = None,
) -> Tuple[int, str, str]:
    """
    Run a command without a terminal attached and return (returncode, stdout, stderr).
    A missing executable is reported as 127 and a timeout as 124.
    """
    printable = redact(" ".join(cmd))
    logger.debug(f"Running: {printable}")
    try:
        result = subprocess.run(
            list(cmd),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            env=dict(env) if env is not None else None,
            timeout=timeout,
        )
    except FileNotFoundError:
        logger.debug(f"Command not found: {cmd[0]}")
        return 127, "", f"{cmd[0]}: command not found"
    except subprocess.TimeoutExpired:
        logger.debug(f"Command timed out after {timeout}s: {printable}")
        return 124, "", f"Command timed out after {timeout} seconds"
    if result.returncode != 0:
        logger.debug(f"Exit {result.returncode}: {redact(result.stderr.strip())}")
    return result.returncode, result.stdout.strip(), result.stderr.strip()


def command_exists(name: str) -> bool:
    return shutil.which(name) is not None


def service_is_active(name: str) -> bool:
    returncode, _, _ = run_command(["systemctl", "is-active", "--quiet", name])
    return returncode == 0


def port_status(port: int) -> Tuple[bool, Optional[str]]:
    """
    Check whether a TCP port is listening and, when ss can tell, which process holds it.
    Returns (in_use, process_name).
    """
    returncode, stdout, _ = run_command(["ss", "-H", "-tlnp"])
    if returncode == 0:
        for line in stdout.splitlines():
            fields = line.split()
            if len(fields) >= 4 and fields[3].rsplit(":", 1)[-1] == str(port):
                match = SS_PROCESS_PATTERN.search(line)
                return True, match.group(1) if match else None
        return False, None

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.settimeout(1)
        return sock.connect_ex(("127.0.0.1", port)) == 0, None


def read_memory_mb(meminfo: Path = Path("/proc/meminfo")) -> Optional[int]:
    try:
        with open(meminfo) as f:
            for line in f:
                if line.startswith("MemTotal:"):
                    return int(line.split()[1]) // 1024
    except (OSError, ValueError, IndexError):
        return None
    return None


# ----------------------------------------------------------------
# Prompting
# ----------------------------------------------------------------
def normalize_yes_no(answer: Any) -> Optional[bool]:
    if isinstance(answer, bool):
        return answer
    value = str(answer).strip().lower()
    if value in YES_ANSWERS:
        return True
    if value in NO_ANSWERS:
        return False
    return None


class Prompter:
    """Source of operator answers. Each question carries a stable key."""

    def ask(self, key: str, prompt: str, password: bool = False) -> str:
        raise NotImplementedError

    def confirm(self, key: str, prompt: str) -> bool:
        raise NotImplementedError

    def persist_history(self) -> None:
        """Called once preflight has passed and the host may be written to."""


def get_prompt_style(color: str = NordColors.FROST_2) -> PtStyle:
    return PtStyle.from_dict({"prompt": f"bold {color}"})


def default_history_file() -> Path:
    user = os.environ.get("SUDO_USER")
    home = Path(os.path.expanduser(f"~{user}" if user else "~"))
    return home / ".subdomain_deploy" / "history"


class ConsolePrompter(Prompter):
    """Interactive answers with history, auto-suggestion and completion of fixed choices."""

    attempts: int = 3
    completions: Dict[str, List[str]] = {
        "repo_exists": ["yes", "no"],
        "repo_visibility": ["public", "private"],
        "enable_https": ["yes", "no"],
    }

    def __init__(self, history_file: Optional[Path] = None) -> None:
        self.history_file = history_file
        self.history: History = InMemoryHistory()
        if history_file is not None and history_file.is_file():
            self.history = FileHistory(str(history_file))

    def persist_history(self) -> None:
        if self.history_file is None or isinstance(self.history, FileHistory):
            return
        try:
            self.history_file.parent.mkdir(parents=True, exist_ok=True)
            self.history_file.touch(exist_ok=True)
        except OSError as e:
            logger.debug(f"Prompt history disabled: {e}")
            return
        user = os.environ.get("SUDO_USER")
        if user:
            # history lives in the invoking user's home, not root's
            try:
                entry = pwd.getpwnam(user)
                for path in (self.history_file.parent, self.history_file):
                    os.chown(path, entry.pw_uid, entry.pw_gid)
            except (KeyError, OSError) as e:
                logger.debug(f"Could not hand prompt history to {user}: {e}")
        self.history = FileHistory(str(self.history_file))

    def ask(self, key: str, prompt: str, password: bool = False) -> str:
        if password:
            # never recorded in history
            return pt_prompt(f"{prompt}: ", is_password=True, style=get_prompt_style())
        words = self.completions.get(key)
        return pt_prompt(
            f"{prompt}: ",
            history=self.history,
            auto_suggest=AutoSuggestFromHistory(),
            completer=WordCompleter(words, ignore_case=True) if words else None,
            style=get_prompt_style(),
        )

    def confirm(self, key: str, prompt: str) -> bool:
        for _ in range(self.attempts):
            answer = pt_prompt(
                f"{prompt} (y/n): ",
                completer=WordCompleter(["yes", "no"], ignore_case=True),
                style=get_prompt_style(NordColors.YELLOW),
            )
            decision = normalize_yes_no(answer)
            if decision is not None:
                return decision
            print_warning("Please answer y/yes or n/no.")
        print_warning("No valid answer given; treating it as 'no'.")
        return False


class AnswerFilePrompter(Prompter):
    """Answers taken from a mapping, for unattended runs."""

    def __init__(self, answers: Mapping[str, Any]) -> None:
        self.answers = dict(answers)
        self.assume_yes = bool(self.answers.get("assume_yes", False))

    def ask(self, key: str, prompt: str, password: bool = False) -> str:
        value = self.answers.get(key)
        if value is None:
            return ""
        if isinstance(value, bool):
            return "yes" if value else "no"
        shown = "********" if password else value
        print_step(f"{prompt}: {shown}")
        return str(value)

    def confirm(self, key: str, prompt: str) -> bool:
        if key not in self.answers:
            decision = self.assume_yes
        else:
            decision = bool(normalize_yes_no(self.answers[key]))
        print_step(f"{prompt} {'yes' if decision else 'no'}")
        return decision


def load_answers(path: Path) -> Dict[str, Any]:
    try:
        with open(path) as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        raise InputError(f"Could not read answers file {path}: {e}")
    if not isinstance(data, dict):
        raise InputError(f"Answers file {path} must contain a JSON object.")
    return data


# ----------------------------------------------------------------
# Validation
# ----------------------------------------------------------------
def validate_subdomain(value: str) -> str:
    subdomain = value.strip()
    if not subdomain:
        raise InputError("Subdomain cannot be empty.")
    if len(subdomain) > 253:
        raise InputError("Subdomain is too long (maximum 253 characters).")
    if subdomain[0] in ".-" or subdomain[-1] in ".-":
        raise InputError("Subdomain cannot start or end with a dot or hyphen.")
    if ".." in subdomain:
        raise InputError("Subdomain cannot contain consecutive dots.")
    if not SUBDOMAIN_PATTERN.match(subdomain):
        raise InputError(
            f"Invalid subdomain: {subdomain}",
            hints=["Use letters, digits, dots and hyphens only, e.g. app.example.com"],
        )
    for label in subdomain.split("."):
        if len(label) > 63:
            raise InputError(f"Label '{label[:20]}...' is longer than 63 characters.")
        if label.startswith("-") or label.endswith("-"):
            raise InputError(f"Label '{label}' cannot start or end with a hyphen.")
    return subdomain


def validate_repo_url(value: str) -> str:
    url = value.strip()
    if not url:
        raise InputError("Repository URL cannot be empty.")
    if not URL_SCHEME_PATTERN.match(url):
        raise InputError(
            f"Repository URL must start with http:// or https://: {url}",
            hints=["SSH URLs (git@host:owner/repo.git) are not supported; use the HTTPS clone URL."],
        )
    return url


def is_recognized_git_url(url: str, known_hosts: Sequence[str]) -> bool:
    if url.endswith(".git"):
        return True
    return any(host in url for host in known_hosts)


def validate_email(value: str) -> Optional[str]:
    email = value.strip()
    if not email:
        return None
    if not EMAIL_PATTERN.match(email):
        raise InputError(f"Invalid email address: {email}")
    return email


def validate_token(value: str) -> str:
    token = value.strip()
    if not token:
        raise InputError(
            "An access token is required for private repositories.",
            hints=["Create a personal access token with read access to the repository."],
        )
    return token


def parse_yes_no(value: str, question: str) -> bool:
    decision = normalize_yes_no(value)
    if decision is None:
        raise InputError(f"Invalid answer for '{question}': {value!r}. Answer y/yes or n/no.")
    return decision


def parse_visibility(value: str) -> str:
    visibility = value.strip().lower()
    if visibility not in ("public", "private"):
        raise InputError(f"Repository type must be 'public' or 'private', got {value!r}.")
    return visibility


# ----------------------------------------------------------------
# Preflight Checks
# ----------------------------------------------------------------
class CheckResult(NamedTuple):
    name: str
    passed: bool
    detail: str
    soft: bool = False


@dataclass
class PreflightReport:
    checks: List[CheckResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.checks)

    @property
    def passed(self) -> int:
        return sum(1 for check in self.checks if check.passed)

    @property
    def failures(self) -> List[CheckResult]:
        return [check for check in self.checks if not check.passed]

    @property
    def ok(self) -> bool:
        return not self.failures


PREFLIGHT_HINTS: Dict[str, str] = {
    "Root privileges": "Run the script with sudo.",
    "Internet connectivity": "Check the network configuration and DNS resolver.",
    "Package manager": "Use a Debian or Ubuntu based system with apt-get.",
    "Disk space": "Free at least 1 GB on the root filesystem.",
}


def detect_package_manager() -> Optional[str]:
    for manager in PACKAGE_MANAGERS:
        if command_exists(manager):
            return manager
    return None


def check_root() -> CheckResult:
    if os.geteuid() == 0:
        return CheckResult("Root privileges", True, "running as root")
    return CheckResult("Root privileges", False, "must be run as root")


def check_connectivity(config: Config) -> CheckResult:
    returncode, _, _ = run_command(
        ["ping", "-c", "1", "-W", "5", config.CONNECTIVITY_HOST], timeout=OPERATION_TIMEOUT
    )
    if returncode == 0:
        return CheckResult("Internet connectivity", True, f"{config.CONNECTIVITY_HOST} reachable")
    return CheckResult("Internet connectivity", False, f"cannot reach {config.CONNECTIVITY_HOST}")


def check_package_manager() -> CheckResult:
    manager = detect_package_manager()
    if manager:
        return CheckResult("Package manager", True, manager)
    return CheckResult("Package manager", False, "none of apt-get, dnf, yum, pacman found")


def check_disk_space(config: Config, path: str = "/") -> CheckResult:
    free_kb = shutil.disk_usage(path).free // 1024
    detail = f"{free_kb // 1024} MB free"
    return CheckResult("Disk space", free_kb >= config.MIN_FREE_DISK_KB, detail)


def check_http_port(prompter: Prompter) -> CheckResult:
    in_use, process = port_status(80)
    if not in_use:
        return CheckResult("Port 80", True, "free", soft=True)
    if process == "nginx":
        return CheckResult("Port 80", True, "held by nginx", soft=True)
    holder = process or "another process"
    print_warning(f"Port 80 is in use by {holder}.")
    if not prompter.confirm("confirm_port_80", "Continue anyway?"):
        raise PreflightError(
            f"Aborted: port 80 is in use by {holder}.",
            hints=["Stop the service holding port 80, or re-run and choose to continue."],
        )
    return CheckResult("Port 80", True, f"in use by {holder} (accepted)", soft=True)


def check_memory(config: Config) -> CheckResult:
    memory_mb = read_memory_mb()
    if memory_mb is None:
        return CheckResult("Memory", True, "unknown")
    if memory_mb < config.LOW_MEMORY_MB:
        print_warning(f"Low memory: {memory_mb} MB (at least {config.LOW_MEMORY_MB} MB recommended).")
        return CheckResult("Memory", True, f"{memory_mb} MB (low)")
    return CheckResult("Memory", True, f"{memory_mb} MB")


def check_existing_nginx() -> CheckResult:
    if command_exists("nginx"):
        return CheckResult("Existing nginx", True, "already installed")
    return CheckResult("Existing nginx", True, "will be installed")


def check_conflicting_servers(config: Config, prompter: Prompter) -> CheckResult:
    running = [name for name in config.CONFLICTING_SERVERS if service_is_active(name)]
    if not running:
        return CheckResult("Conflicting web servers", True, "none running", soft=True)
    print_warning(f"Conflicting web servers running: {', '.join(running)}")
    if not prompter.confirm("confirm_conflicting_servers", "Continue anyway?"):
        raise PreflightError(
            f"Aborted: conflicting web servers running ({', '.join(running)}).",
            hints=[f"Stop and disable them: systemctl disable --now {' '.join(running)}"],
        )
    return CheckResult("Conflicting web servers", True, f"{', '.join(running)} (accepted)", soft=True)


def print_preflight_report(report: PreflightReport) -> None:
    table = Table(
        title=f"Preflight Checks: {report.passed}/{report.total} passed",
        box=box.ROUNDED,
        title_style=f"bold {NordColors.FROST_2}",
    )
    table.add_column("Check", style=f"bold {NordColors.FROST_2}")
    table.add_column("Status", justify="center")
    table.add_column("Details", style=NordColors.SNOW_STORM_1)
    for check in report.checks:
        status = (
            f"[{NordColors.GREEN}]✓ PASS[/]" if check.passed else f"[{NordColors.RED}]✗ FAIL[/]"
        )
        table.add_row(check.name, status, check.detail)
    console.print(table)


def run_preflight_checks(config: Config, prompter: Prompter) -> PreflightReport:
    """
    Run every host check in order. Hard failures are collected and raised together
    once all checks have run; soft checks ask the operator before continuing.
    Nothing on the host is modified here.
    """
    print_section("Preflight Checks")
    report = PreflightReport()
    report.checks.append(check_root())
    report.checks.append(check_connectivity(config))
    report.checks.append(check_package_manager())
    report.checks.append(check_disk_space(config))
    report.checks.append(check_http_port(prompter))
    report.checks.append(check_memory(config))
    report.checks.append(check_existing_nginx())
    report.checks.append(check_conflicting_servers(config, prompter))
    print_preflight_report(report)

    if not report.ok:
        failed = report.failures
        raise PreflightError(
            f"{len(failed)} preflight check(s) failed: {', '.join(c.name for c in failed)}",
            hints=[PREFLIGHT_HINTS.get(c.name, c.detail) for c in failed],
        )
    print_success(f"All preflight checks passed ({report.passed}/{report.total}).")
    return report


def show_system_info() -> None:
    try:
        os_name = platform.freedesktop_os_release().get("PRETTY_NAME", platform.system())
    except OSError:
        os_name = platform.system()
    memory_mb = read_memory_mb()
    free_gb = shutil.disk_usage("/").free / (1024 ** 3)

    table = Table(box=box.SIMPLE, show_header=False)
    table.add_column("Property", style=f"bold {NordColors.FROST_2}")
    table.add_column("Value", style=NordColors.SNOW_STORM_1)
    table.add_row("Operating system", os_name)
    table.add_row("Kernel", platform.release())
    table.add_row("Architecture", platform.machine())
    table.add_row("Memory", f"{memory_mb} MB" if memory_mb is not None else "unknown")
    table.add_row("Free disk on /", f"{free_gb:.1f} GB")
    console.print(Panel(table, title="System Information", border_style=NordColors.FROST_3))


# ----------------------------------------------------------------
# Input Collection
# ----------------------------------------------------------------
def collect_request(config: Config, prompter: Prompter) -> DeploymentRequest:
    """Ask every question up front; execution never prompts."""
    print_section("Deployment Details")
    subdomain = validate_subdomain(
        prompter.ask("subdomain", "Subdomain to deploy (e.g. app.example.com)")
    )
    artifacts = site_artifacts(config, subdomain)
    if artifacts.nginx_conf.exists():
        print_warning(f"{subdomain} is already configured ({artifacts.nginx_conf}).")
        if not prompter.confirm("confirm_existing_site", "Update the existing configuration?"):
            raise InputError(
                "Deployment cancelled; the existing configuration was left untouched.",
                hints=["Re-run and confirm the update, or choose a different subdomain."],
            )

    repo_exists = parse_yes_no(
        prompter.ask("repo_exists", "Does a git repository exist for this project? (y/n)"),
        "repository exists",
    )
    visibility = repo_url = git_user = git_token = None
    if repo_exists:
        visibility = parse_visibility(
            prompter.ask("repo_visibility", "Is the repository public or private?")
        )
        repo_url = validate_repo_url(prompter.ask("repo_url", "Repository URL"))
        if not is_recognized_git_url(repo_url, config.KNOWN_GIT_HOSTS):
            print_warning(f"{repo_url} does not look like a git repository URL.")
            if not prompter.confirm("confirm_repo_url", "Use this URL anyway?"):
                raise InputError("Deployment cancelled; repository URL not confirmed.")
        if visibility == "private":
            git_user = prompter.ask(
                "git_user", "Git username (leave empty for token-only access)"
            ).strip() or None
            git_token = validate_token(
                prompter.ask("git_token", "Personal access token", password=True)
            )
            if len(git_token) < config.MIN_TOKEN_LENGTH:
                print_warning("The token is unusually short.")
                if not prompter.confirm("confirm_short_token", "Use this token anyway?"):
                    raise InputError("Deployment cancelled; token not confirmed.")

    enable_https = parse_yes_no(
        prompter.ask("enable_https", "Enable HTTPS with a Let's Encrypt certificate? (y/n)"),
        "enable HTTPS",
    )
    email = None
    if enable_https:
        email = validate_email(
            prompter.ask("email", "Email for certificate notices (optional)")
        )
        if email is None:
            print_warning("No email given; the certificate will be registered without one.")

    backup_project = False
    if artifacts.project_dir.exists():
        backup_project = prompter.confirm(
            "backup_project", f"{artifacts.project_dir} exists. Back it up first?"
        )
    backup_site_config = False
    if artifacts.nginx_conf.exists():
        backup_site_config = prompter.confirm(
            "backup_site_config", "Back up the current site configuration first?"
        )
    backup_certificate = False
    if enable_https and (artifacts.certificate_dir / "fullchain.pem").exists():
        backup_certificate = prompter.confirm(
            "backup_certificate", f"A certificate for {subdomain} exists. Back it up first?"
        )

    request = DeploymentRequest(
        subdomain=subdomain,
        repo_exists=repo_exists,
        repo_visibility=visibility,
        repo_url=repo_url,
        git_user=git_user,
        git_token=git_token,
        enable_https=enable_https,
        email=email,
        backup_project=backup_project,
        backup_site_config=backup_site_config,
        backup_certificate=backup_certificate,
    )
    logger.info(f"Deployment request: {request}")
    return request


# ----------------------------------------------------------------
# Backups
# ----------------------------------------------------------------
def backup_timestamp() -> str:
    return datetime.now().strftime("%Y%m%d-%H%M%S-%f")


def create_backup(config: Config, category: str, sources: Mapping[str, Path]) -> Path:
    """
    Snapshot the given paths into <backup root>/<category>-<timestamp>/<label>.
    Missing sources are skipped.
    """
    if category not in BACKUP_CATEGORIES:
        raise ValueError(f"Unknown backup category: {category}")
    backup_dir = config.BACKUP_ROOT / f"{category}-{backup_timestamp()}"
    try:
        backup_dir.mkdir(parents=True)
        for label, source in sources.items():
            target = backup_dir / label
            if source.is_dir() and not source.is_symlink():
                shutil.copytree(source, target, symlinks=True)
            elif source.exists() or source.is_symlink():
                shutil.copy2(source, target, follow_symlinks=False)
    except OSError as e:
        raise DirectoryError(f"Backup to {backup_dir} failed: {e}")
    print_success(f"Backup created: {backup_dir}")
    logger.info(f"Backup of {', '.join(str(s) for s in sources.values())} in {backup_dir}")
    return backup_dir


def list_backups(config: Config) -> List[Path]:
    """All snapshot directories, oldest first."""
    if not config.BACKUP_ROOT.is_dir():
        return []
    found: List[Tuple[str, Path]] = []
    for entry in config.BACKUP_ROOT.iterdir():
        match = BACKUP_NAME_PATTERN.match(entry.name)
        if match and entry.is_dir():
            found.append((match.group("stamp"), entry))
    return [path for _, path in sorted(found)]


def prune_backups(config: Config) -> List[Path]:
    backups = list_backups(config)
    excess = backups[: max(0, len(backups) - config.MAX_BACKUPS)]
    for old in excess:
        shutil.rmtree(old)
        logger.info(f"Pruned old backup {old}")
    return excess


# ----------------------------------------------------------------
# Directory Manager
# ----------------------------------------------------------------
def resolve_owner(config: Config) -> Owner:
    user = os.environ.get("SUDO_USER") or "root"
    try:
        uid = pwd.getpwnam(user).pw_uid
    except KeyError:
        user, uid = "root", 0
    try:
        gid = grp.getgrnam(config.WEB_GROUP).gr_gid
    except KeyError:
        logger.warning(f"Group {config.WEB_GROUP} not found; using gid 0")
        gid = 0
    return Owner(user, uid, gid)


def set_path_owner(path: Path, owner: Owner) -> None:
    try:
        os.chown(path, owner.uid, owner.gid, follow_symlinks=False)
    except OSError as e:
        logger.warning(f"Could not change ownership of {path}: {e}")


def normalize_tree_permissions(root: Path, owner: Owner) -> None:
    """Directories 755, files 644, everything owned by the invoking user and web group."""
    for current, _, files in os.walk(root):
        os.chmod(current, 0o755)
        set_path_owner(Path(current), owner)
        for name in files:
            path = Path(current) / name
            if not path.is_symlink():
                os.chmod(path, 0o644)
            set_path_owner(path, owner)


def prepare_project_directory(config: Config, result: DeploymentResult) -> DeploymentResult:
    print_section("Project Directory")
    project_dir = result.artifacts.project_dir
    backups = result.backups
    if project_dir.exists() or project_dir.is_symlink():
        if not project_dir.is_dir():
            raise DirectoryError(f"{project_dir} exists but is not a directory.")
        print_warning(f"Project directory already exists: {project_dir}")
        if result.request.backup_project:
            backups += (create_backup(config, "project", {project_dir.name: project_dir}),)
    else:
        try:
            project_dir.mkdir(parents=True)
        except OSError as e:
            raise DirectoryError(f"Could not create {project_dir}: {e}")
        print_success(f"Created {project_dir}")

    os.chmod(project_dir, 0o755)
    owner = resolve_owner(config)
    set_path_owner(project_dir, owner)
    if not project_dir.is_dir() or not os.access(project_dir, os.W_OK):
        raise DirectoryError(f"{project_dir} is not a writable directory.")
    print_success(f"Document root ready: {project_dir} ({owner.user}:{config.WEB_GROUP})")
    return replace(result, backups=backups)


def reset_directory(path: Path) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.exists():
        shutil.rmtree(path)
    path.mkdir(parents=True, mode=0o755)


def remove_directory(path: Path) -> None:
    if path.exists():
        shutil.rmtree(path, ignore_errors=True)
        logger.info(f"Removed incomplete directory {path}")


# ----------------------------------------------------------------
# Package Installer
# ----------------------------------------------------------------
def install_packages(config: Config) -> List[str]:
    """Refresh the index and install whichever required tools are missing."""
    print_section("Required Packages")
    manager = detect_package_manager()
    missing = [tool for tool in config.REQUIRED_PACKAGES if not command_exists(tool)]
    if manager is None:
        raise PreflightError("No supported package manager found.")

    if manager != "apt-get":
        if missing:
            raise PreflightError(
                f"Missing required tools: {', '.join(missing)}",
                hints=[f"Install them with: {INSTALL_COMMANDS[manager]} {' '.join(missing)}"],
            )
        print_success("All required tools are already installed.")
        return []

    apt_env = command_env(DEBIAN_FRONTEND="noninteractive")
    with console.status(f"[bold {NordColors.FROST_2}]Updating package index..."):
        returncode, _, stderr = run_command(["apt-get", "update", "-y"], env=apt_env)
    if returncode != 0:
        raise PreflightError(f"Package index update failed: {stderr}")
    print_success("Package index updated")

    for tool in config.REQUIRED_PACKAGES:
        if tool not in missing:
            print_success(f"{tool} already installed")
            continue
        with console.status(f"[bold {NordColors.FROST_2}]Installing {tool}..."):
            returncode, _, stderr = run_command(["apt-get", "install", "-y", tool], env=apt_env)
        if returncode != 0:
            raise PreflightError(
                f"Failed to install {tool}: {stderr}",
                hints=[f"Try manually: apt-get install -y {tool}"],
            )
        print_success(f"Installed {tool}")
    return missing


def install_required_packages(config: Config, result: DeploymentResult) -> DeploymentResult:
    install_packages(config)
    return result


# ----------------------------------------------------------------
# Repository Fetcher
# ----------------------------------------------------------------
_credential_dirs: Set[str] = set()


def repository_host(url: str) -> str:
    parts = urlsplit(url)
    if not parts.hostname:
        raise InputError(f"Cannot determine the host of {url}")
    return f"{parts.hostname}:{parts.port}" if parts.port else parts.hostname


def build_authenticated_url(url: str, user: Optional[str], token: str, placeholder: str) -> str:
    parts = urlsplit(url)
    login = quote(user or placeholder, safe="")
    netloc = f"{login}:{quote(token, safe='')}@{repository_host(url)}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


@contextmanager
def temporary_netrc(host: str, login: str, password: str) -> Iterator[str]:
    """Yield a throwaway HOME holding a .netrc for one host; removed on exit."""
    home = tempfile.mkdtemp(prefix=TEMP_PREFIX)
    _credential_dirs.add(home)
    try:
        netrc_path = os.path.join(home, ".netrc")
        fd = os.open(netrc_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "w") as f:
            f.write(f"machine {host}\nlogin {login}\npassword {password}\n")
        yield home
    finally:
        shutil.rmtree(home, ignore_errors=True)
        _credential_dirs.discard(home)


def git_ls_remote(url: str) -> bool:
    returncode, _, _ = run_command(["git", "ls-remote", url], env=git_env())
    return returncode == 0


def git_clone(url: str, destination: Path, env: Optional[Mapping[str, str]] = None) -> bool:
    returncode, _, _ = run_command(
        ["git", "-c", "credential.helper=", "clone", "--depth=1", url, str(destination)],
        env=env if env is not None else git_env(),
    )
    return returncode == 0


def clone_anonymous(config: Config, request: DeploymentRequest, destination: Path) -> bool:
    return git_clone(request.repo_url, destination)


def clone_with_embedded_url(config: Config, request: DeploymentRequest, destination: Path) -> bool:
    url = build_authenticated_url(
        request.repo_url, request.git_user, request.git_token, config.PLACEHOLDER_GIT_USER
    )
    return git_clone(url, destination)


def clone_with_netrc(config: Config, request: DeploymentRequest, destination: Path) -> bool:
    host = urlsplit(request.repo_url).hostname or ""
    login = request.git_user or config.PLACEHOLDER_GIT_USER
    with temporary_netrc(host, login, request.git_token) as home:
        return git_clone(request.repo_url, destination, env=git_env(HOME=home))


class CloneStrategy(NamedTuple):
    name: str
    clone: Callable[[Config, DeploymentRequest, Path], bool]


PUBLIC_STRATEGIES: Tuple[CloneStrategy, ...] = (CloneStrategy("anonymous", clone_anonymous),)
PRIVATE_STRATEGIES: Tuple[CloneStrategy, ...] = (
    CloneStrategy("embedded-url", clone_with_embedded_url),
    CloneStrategy("netrc-file", clone_with_netrc),
)


def show_private_repo_debug(config: Config, request: DeploymentRequest) -> None:
    table = Table(box=box.SIMPLE, show_header=False, title="Repository access details")
    table.add_column("Field", style=f"bold {NordColors.FROST_2}")
    table.add_column("Value", style=NordColors.SNOW_STORM_1)
    table.add_row("URL", request.repo_url or "")
    table.add_row("Host", urlsplit(request.repo_url or "").hostname or "unknown")
    table.add_row("Username", request.git_user or f"(placeholder: {config.PLACEHOLDER_GIT_USER})")
    table.add_row("Token length", str(len(request.git_token or "")))
    console.print(table)


def fetch_repository(config: Config, result: DeploymentResult) -> DeploymentResult:
    request = result.request
    if not request.repo_exists:
        return result
    print_section("Repository")
    project_dir = result.artifacts.project_dir

    if request.is_private:
        check_url = build_authenticated_url(
            request.repo_url, request.git_user, request.git_token, config.PLACEHOLDER_GIT_USER
        )
        strategies = PRIVATE_STRATEGIES
    else:
        check_url = request.repo_url
        strategies = PUBLIC_STRATEGIES

    print_step(f"Checking access to {request.repo_url}")
    if not git_ls_remote(check_url):
        if request.is_private:
            show_private_repo_debug(config, request)
        raise NetworkError(f"Cannot access repository {request.repo_url}")
    print_success("Repository is reachable")

    for strategy in strategies:
        reset_directory(project_dir)
        with console.status(f"[bold {NordColors.FROST_2}]Cloning ({strategy.name})..."):
            cloned = strategy.clone(config, request, project_dir)
        if cloned:
            break
        print_warning(f"Clone via {strategy.name} failed")
    else:
        remove_directory(project_dir)
        raise NetworkError(
            f"Failed to clone {request.repo_url}",
            hints=list(ErrorKind.NETWORK.hints)
            + [f"The incomplete directory {project_dir} was removed."],
        )

    if request.is_private:
        # keep the token out of .git/config
        returncode, _, stderr = run_command(
            ["git", "-C", str(project_dir), "remote", "set-url", "origin", request.repo_url]
        )
        if returncode != 0:
            shutil.rmtree(project_dir / ".git", ignore_errors=True)
            print_warning(
                f"Could not reset the origin URL ({stderr.strip() or 'unknown error'}); "
                "removed repository metadata so the token is not left on disk"
            )
            logger.warning(f"Removed {project_dir / '.git'} after failing to reset origin")
    normalize_tree_permissions(project_dir, resolve_owner(config))
    print_success(f"Repository cloned into {project_dir} via {strategy.name}")
    return replace(result, repo_cloned=True, clone_strategy=strategy.name)


# ----------------------------------------------------------------
# Site Configurator
# ----------------------------------------------------------------
def render_index_page(subdomain: str, project_dir: Path) -> str:
    return (
        '<!doctype html><html><head><meta charset="utf-8">'
        f"<title>Welcome to {subdomain}</title></head><body>"
        f"<h1>Deployment successful for {subdomain}</h1>"
        f"<p>Document root: {project_dir}</p></body></html>\n"
    )


def render_server_block(subdomain: str, artifacts: SiteArtifacts) -> str:
    return f"""server {{
    listen 80;
    listen [::]:80;

    server_name {subdomain};
    root {artifacts.project_dir};
    index index.html index.htm index.php;

    access_log {artifacts.access_log};
    error_log {artifacts.error_log};

    location / {{
        try_files $uri $uri/ =404;
    }}

    location ~ /\\.git {{
        deny all;
    }}

    # PHP-FPM (uncomment after installing php-fpm)
    # location ~ \\.php$ {{
    #     include snippets/fastcgi-php.conf;
    #     fastcgi_pass unix:/run/php/php-fpm.sock;
    # }}
}}
"""


def ensure_landing_page(request: DeploymentRequest, artifacts: SiteArtifacts, owner: Owner) -> bool:
    index = artifacts.project_dir / "index.html"
    if index.exists():
        return False
    index.write_text(render_index_page(request.subdomain, artifacts.project_dir))
    os.chmod(index, 0o644)
    set_path_owner(index, owner)
    print_success(f"Landing page written to {index}")
    return True


def enable_site(conf: Path, link: Path) -> bool:
    """Point sites-enabled at the site definition. Returns False when already correct."""
    link.parent.mkdir(parents=True, exist_ok=True)
    if link.is_symlink():
        if os.readlink(link) == str(conf):
            return False
        link.unlink()
    elif link.exists():
        link.unlink()
    os.symlink(conf, link)
    return True


def check_nginx_config() -> None:
    returncode, stdout, stderr = run_command(["nginx", "-t"])
    if returncode != 0:
        raise WebServerError(f"nginx configuration test failed:\n{stderr or stdout}")


def reload_nginx() -> str:
    action = "reload" if service_is_active("nginx") else "start"
    returncode, _, stderr = run_command(["systemctl", action, "nginx"])
    if returncode != 0:
        raise WebServerError(f"Failed to {action} nginx: {stderr}", kind=ErrorKind.WEBSERVER_RELOAD)
    return action


def configure_site(config: Config, result: DeploymentResult) -> DeploymentResult:
    print_section("Web Server Configuration")
    request, artifacts = result.request, result.artifacts
    backups = result.backups

    ensure_landing_page(request, artifacts, resolve_owner(config))

    if artifacts.nginx_conf.exists() and request.backup_site_config:
        backups += (
            create_backup(config, "site-config", {artifacts.nginx_conf.name: artifacts.nginx_conf}),
        )

    artifacts.nginx_conf.parent.mkdir(parents=True, exist_ok=True)
    artifacts.access_log.parent.mkdir(parents=True, exist_ok=True)
    artifacts.nginx_conf.write_text(render_server_block(request.subdomain, artifacts))
    print_success(f"Site definition written to {artifacts.nginx_conf}")

    if enable_site(artifacts.nginx_conf, artifacts.enabled_link):
        print_success(f"Site enabled: {artifacts.enabled_link}")
    else:
        print_step("Site already enabled")

    check_nginx_config()
    print_success("nginx configuration test passed")
    action = reload_nginx()
    print_success(f"nginx {action}ed")
    return replace(result, backups=backups)


# ----------------------------------------------------------------
# Certificate Manager
# ----------------------------------------------------------------
def install_certbot_snap() -> bool:
    steps: List[List[str]] = []
    if not command_exists("snap"):
        steps.append(["apt-get", "install", "-y", "snapd"])
        steps.append(["systemctl", "enable", "--now", "snapd.socket"])
    steps += [
        ["snap", "install", "core"],
        ["snap", "refresh", "core"],
        ["snap", "install", "--classic", "certbot"],
        ["ln", "-sf", "/snap/bin/certbot", "/usr/bin/certbot"],
    ]
    for cmd in steps:
        returncode, _, stderr = run_command(cmd)
        if returncode != 0:
            logger.warning(f"'{' '.join(cmd)}' failed: {stderr}")
            return False
    return command_exists("certbot")


def install_certbot() -> bool:
    if command_exists("certbot"):
        print_success("certbot already installed")
        return True
    with console.status(f"[bold {NordColors.FROST_2}]Installing certbot..."):
        returncode, _, _ = run_command(
            ["apt-get", "install", "-y", "certbot", "python3-certbot-nginx"],
            env=command_env(DEBIAN_FRONTEND="noninteractive"),
        )
        if returncode == 0 and command_exists("certbot"):
            print_success("certbot installed from packages")
            return True
        print_warning("Package install of certbot failed; trying snap")
        installed = install_certbot_snap()
    if installed:
        print_success("certbot installed from snap")
    return installed


def resolve_addresses(hostname: str) -> List[str]:
    try:
        _, _, addresses = socket.gethostbyname_ex(hostname)
    except OSError:
        return []
    return addresses


def get_public_ip(config: Config) -> Optional[str]:
    try:
        response = requests.get(config.PUBLIC_IP_URL, timeout=config.PROBE_TIMEOUT)
        response.raise_for_status()
    except requests.RequestException as e:
        logger.debug(f"Public IP lookup failed: {e}")
        return None
    return response.text.strip() or None


def check_certificate_prerequisites(config: Config, subdomain: str) -> Tuple[List[str], List[str]]:
    """
    Returns (blockers, advisories). Blockers stop the certificate request,
    advisories are only shown.
    """
    blockers: List[str] = []
    advisories: List[str] = []

    addresses = resolve_addresses(subdomain)
    if not addresses:
        blockers.append(f"{subdomain} does not resolve in DNS")
    else:
        public_ip = get_public_ip(config)
        if public_ip is None:
            advisories.append("Could not determine this server's public IP")
        elif public_ip not in addresses:
            advisories.append(
                f"{subdomain} resolves to {', '.join(addresses)} but this server is {public_ip}"
            )

    in_use, process = port_status(443)
    if in_use and process != "nginx":
        advisories.append(f"Port 443 is in use by {process or 'another process'}")

    if not service_is_active("nginx"):
        blockers.append("nginx is not running")
    if run_command(["nginx", "-t"])[0] != 0:
        blockers.append("nginx configuration test fails")
    return blockers, advisories


def certbot_command(subdomain: str, email: Optional[str]) -> List[str]:
    cmd = ["certbot", "--nginx", "-d", subdomain]
    cmd += ["--email", email] if email else ["--register-unsafely-without-email"]
    cmd += ["--agree-tos", "--non-interactive", "--redirect"]
    return cmd


def setup_certificate(config: Config, result: DeploymentResult) -> DeploymentResult:
    request = result.request
    if not request.enable_https:
        return result
    print_section("SSL Certificate")
    backups = result.backups
    live_dir = result.artifacts.certificate_dir
    archive_dir = config.LETSENCRYPT_DIR / "archive" / request.subdomain

    try:
        if request.backup_certificate:
            backups += (
                create_backup(config, "certificate", {"live": live_dir, "archive": archive_dir}),
            )
        if not install_certbot():
            raise CertificateWarning("certbot could not be installed.")

        blockers, advisories = check_certificate_prerequisites(config, request.subdomain)
        for advisory in advisories:
            print_warning(advisory)
        if blockers:
            raise CertificateWarning(f"Certificate prerequisites not met: {'; '.join(blockers)}")

        with console.status(f"[bold {NordColors.FROST_2}]Requesting certificate..."):
            returncode, _, stderr = run_command(certbot_command(request.subdomain, request.email))
        if returncode != 0:
            raise CertificateWarning(
                f"certbot could not obtain a certificate for {request.subdomain}: {stderr}"
            )
    except DeployError as warning:
        show_error(warning, fatal=False)
        return replace(result, backups=backups, certificate_ok=False)

    print_success(f"Certificate installed for {request.subdomain}; HTTP now redirects to HTTPS")
    return replace(result, backups=backups, certificate_ok=True)


# ----------------------------------------------------------------
# Verification & Reporting
# ----------------------------------------------------------------
def probe_url(url: str, timeout: int, verify: bool = True) -> bool:
    """Any HTTP response counts as reachable."""
    try:
        with warnings.catch_warnings():
            if not verify:
                warnings.simplefilter("ignore", InsecureRequestWarning)
            requests.get(url, timeout=timeout, verify=verify, allow_redirects=False)
    except requests.RequestException as e:
        logger.debug(f"Probe of {url} failed: {e}")
        return False
    return True


def verify_deployment(config: Config, result: DeploymentResult) -> DeploymentResult:
    print_section("Verification")
    subdomain = result.request.subdomain
    http_ok = probe_url(f"http://{subdomain}", config.PROBE_TIMEOUT)
    (print_success if http_ok else print_warning)(
        f"http://{subdomain} {'responds' if http_ok else 'is not reachable'}"
    )
    https_ok = None
    if result.request.enable_https:
        https_ok = probe_url(f"https://{subdomain}", config.PROBE_TIMEOUT, verify=False)
        (print_success if https_ok else print_warning)(
            f"https://{subdomain} {'responds' if https_ok else 'is not reachable'}"
        )
    return replace(result, http_ok=http_ok, https_ok=https_ok)


def _status(flag: Optional[bool]) -> str:
    if flag is None:
        return f"[{NordColors.POLAR_NIGHT_4}]not requested[/]"
    if flag:
        return f"[{NordColors.GREEN}]✓ working[/]"
    return f"[{NordColors.RED}]✗ failed[/]"


def show_deployment_summary(config: Config, result: DeploymentResult) -> None:
    request, artifacts = result.request, result.artifacts
    table = Table(title="Deployment Summary", box=box.ROUNDED, title_style=f"bold {NordColors.FROST_2}")
    table.add_column("Item", style=f"bold {NordColors.FROST_2}")
    table.add_column("Value", style=NordColors.SNOW_STORM_1)
    table.add_row("Subdomain", request.subdomain)
    table.add_row("Site name", request.safe_name)
    if request.repo_exists:
        table.add_row("Repository", f"{request.repo_url} ({request.repo_visibility})")
        table.add_row("Clone", f"via {result.clone_strategy}" if result.repo_cloned else "not cloned")
    else:
        table.add_row("Repository", "none (landing page)")
    table.add_row("nginx", _status(service_is_active("nginx")))
    table.add_row("HTTP", _status(result.http_ok))
    table.add_row("HTTPS", _status(result.https_ok))
    if request.enable_https:
        table.add_row("Certificate", _status(result.certificate_ok))
    table.add_row("Document root", str(artifacts.project_dir))
    table.add_row("Site definition", str(artifacts.nginx_conf))
    table.add_row("Enabled link", str(artifacts.enabled_link))
    table.add_row("Access log", str(artifacts.access_log))
    table.add_row("Error log", str(artifacts.error_log))
    if request.enable_https:
        table.add_row("Certificate dir", str(artifacts.certificate_dir))
    table.add_row("Script log", str(config.LOG_FILE))
    console.print(table)


def show_backup_info(config: Config, result: DeploymentResult) -> None:
    if not result.backups:
        return
    print_section("Backups")
    for backup in result.backups:
        contents = ", ".join(sorted(p.name for p in backup.iterdir())) if backup.exists() else "?"
        print_step(f"{backup}  [{contents}]")
    console.print(
        f"[{NordColors.SNOW_STORM_1}]Restore with: cp -a <backup>/<item> <original location>. "
        f"The newest {config.MAX_BACKUPS} snapshots in {config.BACKUP_ROOT} are kept.[/]"
    )


def show_next_steps(result: DeploymentResult) -> None:
    request, artifacts = result.request, result.artifacts
    lines = [
        f"• Upload site files to {artifacts.project_dir}",
        "• Service status:     systemctl status nginx",
        f"• Follow errors:      tail -f {artifacts.error_log}",
        "• Test configuration: nginx -t",
    ]
    if result.repo_cloned:
        lines.append(f"• Update the site:    git -C {artifacts.project_dir} pull")
    if request.enable_https:
        lines.append("• Renewal dry run:    certbot renew --dry-run")
    display_panel("Next Steps", "\n".join(lines), NordColors.FROST_3)


def show_troubleshooting(result: DeploymentResult) -> None:
    request = result.request
    lines: List[str] = []
    if not result.http_ok:
        lines += [
            f"• Check that {request.subdomain} points at this server: dig +short {request.subdomain}",
            "• Open the firewall: ufw allow 'Nginx Full'",
            "• Check nginx: systemctl status nginx && nginx -t",
        ]
    if request.enable_https and not result.https_ok:
        lines += [
            f"• Request the certificate again: certbot --nginx -d {request.subdomain}",
            "• Make sure port 443 is open and not used by another service",
        ]
    display_panel("Troubleshooting", "\n".join(lines), NordColors.ORANGE)


def report_deployment(config: Config, result: DeploymentResult) -> None:
    print_section("Report")
    show_deployment_summary(config, result)
    show_backup_info(config, result)
    show_next_steps(result)
    if not result.succeeded:
        show_troubleshooting(result)
        display_panel(
            "Deployment Incomplete",
            f"{result.request.subdomain} is not fully reachable yet. See the troubleshooting notes above.",
            NordColors.RED,
        )
        return
    scheme = "https" if result.request.enable_https else "http"
    display_panel(
        "Deployment Complete",
        f"🎉 {result.request.subdomain} is live at {scheme}://{result.request.subdomain}",
        NordColors.GREEN,
    )


# ----------------------------------------------------------------
# Orchestration
# ----------------------------------------------------------------
DEPLOYMENT_STEPS: Tuple[Callable[[Config, DeploymentResult], DeploymentResult], ...] = (
    prepare_project_directory,
    install_required_packages,
    fetch_repository,
    configure_site,
    setup_certificate,
    verify_deployment,
)


def execute_deployment(config: Config, request: DeploymentRequest) -> DeploymentResult:
    result = DeploymentResult(request=request, artifacts=site_artifacts(config, request.subdomain))
    for step in DEPLOYMENT_STEPS:
        logger.info(f"Step: {step.__name__}")
        result = step(config, result)
    prune_backups(config)
    return result


def run_deployment(config: Config, prompter: Prompter) -> int:
    console.print(create_header())
    run_preflight_checks(config, prompter)
    prompter.persist_history()
    show_system_info()
    request = collect_request(config, prompter)
    result = execute_deployment(config, request)
    report_deployment(config, result)
    logger.info(f"Deployment finished with exit code {result.exit_code}")
    return result.exit_code


# ----------------------------------------------------------------
# Signal Handling & Cleanup
# ----------------------------------------------------------------
def cleanup() -> None:
    for path in list(_credential_dirs):
        shutil.rmtree(path, ignore_errors=True)
        _credential_dirs.discard(path)


def signal_handler(sig: int, frame: Any) -> None:
    try:
        sig_name = signal.Signals(sig).name
    except ValueError:
        sig_name = f"signal {sig}"
    print_warning(f"Process interrupted by {sig_name}")
    cleanup()
    sys.exit(128 + sig)


# ----------------------------------------------------------------
# Main Entry Point
# ----------------------------------------------------------------
@click.command()
@click.option(
    "--answers",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="JSON file with answers for an unattended run.",
)
@click.option(
    "--log-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=DEFAULT_LOG_FILE,
    show_default=True,
    help="Where to write the detailed log.",
)
@click.option("--verbose", is_flag=True, help="Show debug logging on the console.")
@click.version_option(VERSION, prog_name=APP_NAME)
def main(answers: Optional[Path], log_file: Path, verbose: bool) -> None:
    """Deploy a subdomain with nginx, an optional git repository and Let's Encrypt."""
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)
    atexit.register(cleanup)

    config = Config(LOG_FILE=log_file)
    setup_logger(config.LOG_FILE, verbose)
    logger.debug(f"Configuration: {config.to_dict()}")
    try:
        if answers:
            prompter: Prompter = AnswerFilePrompter(load_answers(answers))
        else:
            prompter = ConsolePrompter(default_history_file())
        exit_code = run_deployment(config, prompter)
    except DeployError as error:
        show_error(error, config.LOG_FILE)
        exit_code = error.kind.exit_code
    except Exception as e:
        print_error(f"Unexpected error: {e}")
        logger.exception("Unexpected error")
        console.print_exception()
        exit_code = 1
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
