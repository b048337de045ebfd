import subprocess
from pathlib import Path
from typing import Dict, List, Sequence, Tuple
from unittest import mock

import pytest

from server_setup.system import SystemEnvironment


class FakeEnvironment(SystemEnvironment):
    """Records every command and file operation instead of touching the machine."""

    def __init__(self, root: bool = True) -> None:
        self.root = root
        self.commands: List[List[str]] = []
        self.calls: List[dict] = []
        self.files: Dict[Path, str] = {}
        self.modes: Dict[Path, int] = {}
        self.dirs: List[Path] = []
        self.symlinks: Dict[Path, Path] = {}
        self.downloads: List[Tuple[str, Path]] = []
        self.removed: List[Path] = []
        self.responses: Dict[Tuple[str, ...], subprocess.CompletedProcess] = {}
        self.failing: List[Tuple[str, ...]] = []
        self.wp_installed = False

    def respond(self, cmd: Sequence[str], stdout: str = "", returncode: int = 0) -> None:
        self.responses[tuple(cmd)] = subprocess.CompletedProcess(list(cmd), returncode, stdout, "")

    def fail_on(self, cmd: Sequence[str]) -> None:
        self.failing.append(tuple(cmd))

    def ran(self, *prefix: str) -> bool:
        return any(tuple(cmd[: len(prefix)]) == prefix for cmd in self.commands)

    def run(
        self,
        cmd,
        check=True,
        capture_output=False,
        input_text=None,
        user=None,
        cwd=None,
        env=None,
    ) -> subprocess.CompletedProcess:
        cmd = list(cmd)
        self.commands.append(cmd)
        self.calls.append({"cmd": cmd, "user": user, "input": input_text, "env": env})
        if any(tuple(cmd[: len(prefix)]) == prefix for prefix in self.failing):
            raise subprocess.CalledProcessError(1, cmd)
        if cmd == ["crontab", "-"]:
            self.files[Path("crontab")] = input_text or ""
        if cmd == ["crontab", "-l"] and Path("crontab") in self.files:
            return subprocess.CompletedProcess(cmd, 0, self.files[Path("crontab")], "")
        if cmd[0] == "wp":
            return self._wp_cli(cmd)
        if tuple(cmd) in self.responses:
            return self.responses[tuple(cmd)]
        return subprocess.CompletedProcess(cmd, 0, "", "")

    def _wp_cli(self, cmd: List[str]) -> subprocess.CompletedProcess:
        """Just enough wp-cli: it refuses to overwrite core files or wp-config.php."""
        path = next(Path(arg.split("=", 1)[1]) for arg in cmd if arg.startswith("--path="))
        action = tuple(cmd[1:3])
        if action == ("core", "download"):
            if self.exists(path / "wp-includes" / "version.php"):
                raise subprocess.CalledProcessError(1, cmd)
            self.files[path / "wp-includes" / "version.php"] = "<?php\n"
        elif action == ("config", "create"):
            if self.exists(path / "wp-config.php") and "--force" not in cmd:
                raise subprocess.CalledProcessError(1, cmd)
            self.files[path / "wp-config.php"] = "<?php\n"
        elif action == ("core", "is-installed"):
            return subprocess.CompletedProcess(cmd, 0 if self.wp_installed else 1, "", "")
        elif action == ("core", "install"):
            self.wp_installed = True
        return subprocess.CompletedProcess(cmd, 0, "", "")

    def write_file(self, path, content, mode=None) -> None:
        self.files[Path(path)] = content
        if mode is not None:
            self.modes[Path(path)] = mode

    def append_file(self, path, content) -> None:
        self.files[Path(path)] = self.files.get(Path(path), "") + content

    def read_file(self, path) -> str:
        try:
            return self.files[Path(path)]
        except KeyError:
            raise FileNotFoundError(str(path)) from None

    def exists(self, path) -> bool:
        return Path(path) in self.files or Path(path) in self.dirs

    def make_dirs(self, path, mode=None) -> None:
        self.dirs.append(Path(path))

    def chmod(self, path, mode) -> None:
        self.modes[Path(path)] = mode

    def copy_file(self, src, dest) -> None:
        self.files[Path(dest)] = self.files.get(Path(src), "")

    def remove(self, path) -> None:
        self.removed.append(Path(path))
        self.files.pop(Path(path), None)

    def symlink(self, target, link) -> None:
        self.symlinks[Path(link)] = Path(target)

    def download(self, url, dest) -> None:
        self.downloads.append((url, Path(dest)))
        self.files[Path(dest)] = ""

    def is_root(self) -> bool:
        return self.root

    @property
    def crontab(self) -> str:
        return self.files.get(Path("crontab"), "")


@pytest.fixture
def system():
    return FakeEnvironment()


@pytest.fixture(autouse=True)
def log_dir(tmp_path, monkeypatch):
    path = tmp_path / "logs"
    monkeypatch.setenv("SERVER_SETUP_LOG_DIR", str(path))
    return path


class FakeResponse:
    def __init__(self, status_code: int) -> None:
        self.status_code = status_code


@pytest.fixture
def make_session():
    """Build a mock session whose post() yields status codes or raises exceptions, in order."""

    def factory(*outcomes):
        session = mock.Mock()
        session.post.side_effect = [
            o if isinstance(o, Exception) else FakeResponse(o) for o in outcomes
        ]
        return session

    return factory
