import os
import re
import sys
import shutil
import subprocess
from dataclasses import dataclass
from typing import Callable, List, Optional

from cursor_agent_mcp.config import AGENT_NAME, DEFAULT_MODEL

WSL_KINDS = {"wsl-sh", "wsl-bash"}
PROBE_TIMEOUT = 10.0

_DRIVE_PREFIX = re.compile(r"^([A-Za-z]):")


@dataclass
class ShellChoice:
    shell: str
    args: List[str]
    kind: str  # bash | wsl-sh | wsl-bash | env-bash


@dataclass
class CommandLine:
    argv: List[str]

    @property
    def display(self) -> str:
        return " ".join(self.argv)


def run_probe(argv: List[str]) -> Optional[str]:
    """Run a short probe command. Returns its stdout, or None when it failed."""
    try:
        completed = subprocess.run(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            text=True,
            encoding="utf-8",
            errors="replace",
            timeout=PROBE_TIMEOUT,
        )
    except (OSError, subprocess.SubprocessError):
        return None
    if completed.returncode != 0:
        return None
    return completed.stdout


def to_unix_path(path: str, kind: str) -> str:
    # WSL mounts drives under /mnt/c, Git Bash under /c
    prefix = "/mnt/" if kind in WSL_KINDS else "/"
    unix_path = path.replace("\\", "/")
    return _DRIVE_PREFIX.sub(lambda m: f"{prefix}{m.group(1).lower()}", unix_path, count=1)


class ExecutableResolver:
    """Locate the agent executable.

    Strategies are tried in priority order and any failure moves on to the
    next one. When nothing is found the literal name is returned so that the
    launch itself reports the real OS error.
    """

    def __init__(
        self,
        override: Optional[str] = None,
        home: Optional[str] = None,
        which: Callable[[str], Optional[str]] = shutil.which,
        exists: Callable[[str], bool] = os.path.exists,
    ):
        self.override = override
        self.home = home or os.path.expanduser("~")
        self.which = which
        self.exists = exists

    def home_candidates(self) -> List[str]:
        bin_dir = os.path.join(self.home, ".local", "bin")
        return [
            os.path.join(bin_dir, AGENT_NAME),
            os.path.join(bin_dir, f"{AGENT_NAME}.cmd"),
            os.path.join(bin_dir, f"{AGENT_NAME}.exe"),
        ]

    def _from_override(self) -> Optional[str]:
        if self.override and self.exists(self.override):
            return self.override
        return None

    def _from_path(self) -> Optional[str]:
        return self.which(AGENT_NAME)

    def _from_home(self) -> Optional[str]:
        for candidate in self.home_candidates():
            if self.exists(candidate):
                return candidate
        return None

    def resolve(self) -> str:
        for strategy in (self._from_override, self._from_path, self._from_home):
            try:
                found = strategy()
            except (OSError, ValueError):
                continue
            if found:
                return found
        return AGENT_NAME


class ShellSelector:
    """Pick an interpreter able to run the agent's launcher script."""

    FALLBACK = ShellChoice("/usr/bin/env", ["bash", "-c"], "env-bash")

    def __init__(
        self,
        platform: str = sys.platform,
        exists: Callable[[str], bool] = os.path.exists,
        probe: Callable[[List[str]], Optional[str]] = run_probe,
    ):
        self.platform = platform
        self.exists = exists
        self.probe = probe

    def _git_bash(self) -> Optional[ShellChoice]:
        output = self.probe(["where", "bash"])
        if not output:
            return None
        for line in output.split("\n"):
            path = line.replace("\r", "").strip()
            if not path or not self.exists(path):
                continue
            # System32 and WindowsApps hold the WSL launchers, not Git Bash
            if "System32" in path or "WindowsApps" in path:
                continue
            return ShellChoice(path, ["-c"], "bash")
        return None

    def _wsl(self, interpreter: str, kind: str) -> Optional[ShellChoice]:
        if self.probe(["wsl", "test", "-f", interpreter]) is None:
            return None
        return ShellChoice("wsl", [interpreter, "-c"], kind)

    def _local(self, interpreter: str, kind: str) -> Optional[ShellChoice]:
        if self.exists(interpreter):
            return ShellChoice(interpreter, ["-c"], kind)
        return None

    def select(self) -> ShellChoice:
        if self.platform == "win32":
            strategies = [
                self._git_bash,
                lambda: self._wsl("/bin/sh", "wsl-sh"),
                lambda: self._wsl("/bin/bash", "wsl-bash"),
            ]
        else:
            strategies = [
                lambda: self._local("/bin/sh", "wsl-sh"),
                lambda: self._local("/bin/bash", "wsl-bash"),
            ]
        for strategy in strategies:
            choice = strategy()
            if choice is not None:
                return choice
        return ShellChoice(self.FALLBACK.shell, list(self.FALLBACK.args), self.FALLBACK.kind)


class CommandBuilder:
    def __init__(
        self,
        resolver: Optional[ExecutableResolver] = None,
        shell_selector: Optional[ShellSelector] = None,
        model: str = DEFAULT_MODEL,
        force: bool = True,
        platform: str = sys.platform,
        home: Optional[str] = None,
    ):
        self.resolver = resolver or ExecutableResolver(home=home)
        self.shell_selector = shell_selector or ShellSelector(platform=platform)
        self.model = model or DEFAULT_MODEL
        self.force = force
        self.platform = platform
        self.home = home or os.path.expanduser("~")

    def agent_args(self, query: str) -> List[str]:
        args = ["-p", query, "--model", self.model]
        if self.force:
            args.append("-f")
        return args

    def needs_shell(self, agent_path: str) -> bool:
        # On Windows the home-installed agent is a bash script
        return self.platform == "win32" and bool(self.home) and self.home in agent_path

    def _inline_command(self, unix_path: str, query: str) -> str:
        escaped = query.replace('"', '\\"')
        parts = [f'"{unix_path}"', "-p", f'"{escaped}"', "--model", self.model]
        if self.force:
            parts.append("-f")
        return " ".join(parts)

    def build(self, query: str) -> CommandLine:
        agent_path = self.resolver.resolve()
        if not self.needs_shell(agent_path):
            return CommandLine([agent_path] + self.agent_args(query))

        choice = self.shell_selector.select()
        unix_path = to_unix_path(agent_path, choice.kind)
        if choice.kind == "bash":
            # Git Bash runs the script as an argument, avoiding shebang lookup
            return CommandLine([choice.shell, unix_path] + self.agent_args(query))
        return CommandLine([choice.shell] + choice.args + [self._inline_command(unix_path, query)])
