"""
System capabilities used by provisioning stages.

Stages never call subprocess or touch the filesystem directly; they go through a
SystemEnvironment. ShellEnvironment is the real machine. Tests substitute a
recording fake that implements the same primitives.
"""

import datetime
import logging
import os
import shutil
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

import requests

logger = logging.getLogger("server_setup.system")

PathLike = Union[str, Path]
OPERATION_TIMEOUT: int = 1800  # apt upgrades can be slow
DOWNLOAD_TIMEOUT: int = 60


class SystemEnvironment(ABC):
    """Primitive operations plus the package/service/cron helpers built on them."""

    # ----------------------------------------------------------------
    # Primitives
    # ----------------------------------------------------------------
    @abstractmethod
    def run(
        self,
        cmd: Sequence[str],
        check: bool = True,
        capture_output: bool = False,
        input_text: Optional[str] = None,
        user: Optional[str] = None,
        cwd: Optional[PathLike] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> subprocess.CompletedProcess:
        """Run a command; raises CalledProcessError when check is set and it fails."""

    @abstractmethod
    def write_file(self, path: PathLike, content: str, mode: Optional[int] = None) -> None:
        """Create or replace a file."""

    @abstractmethod
    def append_file(self, path: PathLike, content: str) -> None:
        """Append to a file, creating it if missing."""

    @abstractmethod
    def read_file(self, path: PathLike) -> str:
        """Return a file's text content."""

    @abstractmethod
    def exists(self, path: PathLike) -> bool:
        """True if the path exists."""

    @abstractmethod
    def make_dirs(self, path: PathLike, mode: Optional[int] = None) -> None:
        """mkdir -p, optionally setting the mode."""

    @abstractmethod
    def chmod(self, path: PathLike, mode: int) -> None:
        """Change a path's mode."""

    @abstractmethod
    def copy_file(self, src: PathLike, dest: PathLike) -> None:
        """Copy a file, preserving metadata."""

    @abstractmethod
    def remove(self, path: PathLike) -> None:
        """Remove a file; missing files are ignored."""

    @abstractmethod
    def symlink(self, target: PathLike, link: PathLike) -> None:
        """Create or replace a symlink (ln -sf)."""

    @abstractmethod
    def download(self, url: str, dest: PathLike) -> None:
        """Fetch url into dest."""

    @abstractmethod
    def is_root(self) -> bool:
        """True if running with root privileges."""

    # ----------------------------------------------------------------
    # Helpers
    # ----------------------------------------------------------------
    def chown(self, path: PathLike, owner: str, recursive: bool = False) -> None:
        """Change ownership; owner is "user" or "user:group"."""
        cmd = ["chown"]
        if recursive:
            cmd.append("-R")
        self.run(cmd + [owner, str(path)])

    def backup_file(self, path: PathLike) -> Optional[Path]:
        """Copy a file to <file>.bak.<timestamp>; returns None if it does not exist."""
        path = Path(path)
        if not self.exists(path):
            logger.warning(f"Cannot backup non-existent file: {path}")
            return None
        timestamp = datetime.datetime.now().strftime("%Y%m%d_%H%M%S")
        backup_path = path.with_name(f"{path.name}.bak.{timestamp}")
        self.copy_file(path, backup_path)
        logger.debug(f"Backed up {path} to {backup_path}")
        return backup_path

    def update_packages(self, upgrade: bool = True) -> None:
        self.run(["apt-get", "update"], env={"DEBIAN_FRONTEND": "noninteractive"})
        if upgrade:
            self.run(
                ["apt-get", "upgrade", "-y"], env={"DEBIAN_FRONTEND": "noninteractive"}
            )

    def install_packages(self, packages: Sequence[str]) -> None:
        """Install packages with apt-get in one transaction."""
        if not packages:
            return
        logger.info(f"Installing packages: {', '.join(packages)}")
        self.run(
            ["apt-get", "install", "-y"] + list(packages),
            env={"DEBIAN_FRONTEND": "noninteractive"},
        )

    def install_deb(self, path: PathLike) -> None:
        self.run(["dpkg", "-i", str(path)])

    def enable_service(self, name: str) -> None:
        self.run(["systemctl", "enable", name])

    def start_service(self, name: str) -> None:
        self.run(["systemctl", "start", name])

    def restart_service(self, name: str) -> None:
        self.run(["systemctl", "restart", name])

    def reload_service(self, name: str) -> None:
        self.run(["systemctl", "reload", name])

    def user_exists(self, name: str) -> bool:
        result = self.run(["id", name], check=False, capture_output=True)
        return result.returncode == 0

    def user_groups(self, name: str) -> List[str]:
        result = self.run(["id", "-nG", name], check=False, capture_output=True)
        if result.returncode != 0:
            return []
        return (result.stdout or "").split()

    def install_cron_job(self, entry: str, marker: str) -> None:
        """
        Add a root crontab entry, replacing any existing line containing marker.
        Duplicate lines are collapsed so re-running never stacks jobs.
        """
        current = self.run(["crontab", "-l"], check=False, capture_output=True)
        lines = (current.stdout or "").splitlines() if current.returncode == 0 else []

        kept: List[str] = []
        for line in lines:
            if marker in line or line in kept:
                continue
            kept.append(line)
        kept.append(entry)

        self.run(["crontab", "-"], input_text="\n".join(kept) + "\n")
        logger.info(f"Cron job installed: {entry}")


class ShellEnvironment(SystemEnvironment):
    """The local machine."""

    def __init__(self, timeout: int = OPERATION_TIMEOUT) -> None:
        self.timeout = timeout

    def run(
        self,
        cmd: Sequence[str],
        check: bool = True,
        capture_output: bool = False,
        input_text: Optional[str] = None,
        user: Optional[str] = None,
        cwd: Optional[PathLike] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> subprocess.CompletedProcess:
        """Execute a system command with robust error handling."""
        full_cmd = list(cmd)
        if user:
            full_cmd = ["sudo", "-u", user] + full_cmd
        command_env = os.environ.copy()
        if env:
            command_env.update(env)

        logger.debug(f"Running command: {' '.join(full_cmd)}")
        try:
            return subprocess.run(
                full_cmd,
                env=command_env,
                check=check,
                text=True,
                input=input_text,
                capture_output=capture_output,
                cwd=str(cwd) if cwd else None,
                timeout=self.timeout,
            )
        except subprocess.CalledProcessError as e:
            logger.error(f"Command failed: {' '.join(full_cmd)}")
            if e.stderr:
                logger.error(f"Stderr: {e.stderr.strip()}")
            raise
        except subprocess.TimeoutExpired:
            logger.error(
                f"Command timed out after {self.timeout} seconds: {' '.join(full_cmd)}"
            )
            raise

    def write_file(self, path: PathLike, content: str, mode: Optional[int] = None) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        if mode is not None:
            os.chmod(path, mode)
        logger.debug(f"Wrote {path}")

    def append_file(self, path: PathLike, content: str) -> None:
        with open(path, "a") as f:
            f.write(content)

    def read_file(self, path: PathLike) -> str:
        return Path(path).read_text()

    def exists(self, path: PathLike) -> bool:
        return Path(path).exists()

    def make_dirs(self, path: PathLike, mode: Optional[int] = None) -> None:
        path = Path(path)
        path.mkdir(parents=True, exist_ok=True)
        if mode is not None:
            os.chmod(path, mode)

    def chmod(self, path: PathLike, mode: int) -> None:
        os.chmod(path, mode)

    def copy_file(self, src: PathLike, dest: PathLike) -> None:
        shutil.copy2(src, dest)

    def remove(self, path: PathLike) -> None:
        Path(path).unlink(missing_ok=True)

    def symlink(self, target: PathLike, link: PathLike) -> None:
        link = Path(link)
        if link.is_symlink() or link.exists():
            link.unlink()
        link.symlink_to(target)

    def download(self, url: str, dest: PathLike) -> None:
        """Stream url to dest; a partial file is removed on failure."""
        dest = Path(dest)
        logger.info(f"Downloading {url} to {dest}...")
        try:
            with requests.get(url, stream=True, timeout=DOWNLOAD_TIMEOUT) as response:
                response.raise_for_status()
                with open(dest, "wb") as f:
                    for chunk in response.iter_content(chunk_size=8192):
                        if chunk:
                            f.write(chunk)
        except (requests.RequestException, OSError):
            if dest.exists():
                dest.unlink()
            raise
        logger.info(f"Download complete: {dest}")

    def is_root(self) -> bool:
        return os.geteuid() == 0
