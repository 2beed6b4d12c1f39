"""
Runner configuration.

Environment variables are read once, in ``RunnerConfig.from_env()``. Everything
else receives an explicit ``RunnerConfig``.
"""
import os
import shlex
import sys
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .browser.models import EngineKind, SessionOptions, safe_name

ENV_PREFIX = "SCENARIO_RUNNER_"
BROWSERS_PATH_ENV = "PLAYWRIGHT_BROWSERS_PATH"

DEFAULT_INSTALL_TIMEOUT = 300.0
DEFAULT_PROBE_TIMEOUT = 30.0
DEFAULT_KILL_GRACE = 5.0
DEFAULT_RUN_TIMEOUT = 1800.0


def _default_install_commands() -> List[List[str]]:
    return [
        [sys.executable, "-m", "playwright", "install", "{engine}"],
        ["npx", "playwright", "install", "{engine}"],
    ]


def _default_test_command() -> List[str]:
    return [sys.executable, "-m", "pytest"]


def _env_flag(value: Optional[str], default: bool) -> bool:
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() not in ("0", "false", "no", "off")


@dataclass
class RunnerConfig:
    """Configuration shared by the provisioner, lifecycle manager and HTTP surface."""
    engine: EngineKind = field(default_factory=EngineKind.default)
    headless: bool = True
    browsers_path: Optional[Path] = None
    viewport_width: int = 1280
    viewport_height: int = 720
    results_dir: Path = Path("test-results")
    logs_dir: Path = Path("logs")
    record_video: bool = False
    install_timeout: float = DEFAULT_INSTALL_TIMEOUT
    probe_timeout: float = DEFAULT_PROBE_TIMEOUT
    kill_grace: float = DEFAULT_KILL_GRACE
    install_with_deps: bool = False
    install_commands: List[List[str]] = field(default_factory=_default_install_commands)
    test_command: List[str] = field(default_factory=_default_test_command)
    run_timeout: Optional[float] = DEFAULT_RUN_TIMEOUT
    run_idle_timeout: Optional[float] = None

    def __post_init__(self):
        self.engine = EngineKind.parse(self.engine)
        self.results_dir = Path(self.results_dir)
        self.logs_dir = Path(self.logs_dir)
        if self.browsers_path is not None:
            self.browsers_path = Path(self.browsers_path)
        if self.viewport_width <= 0 or self.viewport_height <= 0:
            raise ValueError(
                f"Invalid viewport {self.viewport_width}x{self.viewport_height}"
            )
        if not self.test_command:
            raise ValueError("test_command must not be empty")

    @property
    def screenshots_dir(self) -> Path:
        return self.results_dir / "screenshots"

    @property
    def videos_dir(self) -> Path:
        return self.results_dir / "videos"

    def ensure_directories(self):
        for directory in (self.results_dir, self.screenshots_dir, self.videos_dir, self.logs_dir):
            directory.mkdir(parents=True, exist_ok=True)

    def session_options(self, scenario_id: Optional[str] = None) -> SessionOptions:
        video_dir = None
        if self.record_video:
            video_dir = self.videos_dir / safe_name(scenario_id) if scenario_id else self.videos_dir
        return SessionOptions(
            headless=self.headless,
            viewport_width=self.viewport_width,
            viewport_height=self.viewport_height,
            video_dir=video_dir,
        )

    def install_argvs(self, engine: EngineKind) -> List[List[str]]:
        """Installer command lines for an engine, primary first."""
        argvs = []
        for template in self.install_commands:
            argv = [part.replace("{engine}", engine.value) for part in template]
            if self.install_with_deps:
                argv.append("--with-deps")
            argvs.append(argv)
        return argvs

    def install_env(self) -> Dict[str, str]:
        """Environment overlay for installer subprocesses."""
        overlay = {"PLAYWRIGHT_SKIP_BROWSER_DOWNLOAD": "false"}
        if self.browsers_path is not None:
            overlay[BROWSERS_PATH_ENV] = str(self.browsers_path)
        return overlay

    @contextmanager
    def driver_environment(self):
        """
        Expose the install-path override to a Playwright driver while it starts.

        The driver process copies the environment at spawn time, so the
        override only needs to be visible for the duration of ``start()``.
        """
        if self.browsers_path is None:
            yield
            return
        previous = os.environ.get(BROWSERS_PATH_ENV)
        os.environ[BROWSERS_PATH_ENV] = str(self.browsers_path)
        try:
            yield
        finally:
            if previous is None:
                os.environ.pop(BROWSERS_PATH_ENV, None)
            else:
                os.environ[BROWSERS_PATH_ENV] = previous

    def to_dict(self) -> Dict[str, Any]:
        return {
            "engine": self.engine.value,
            "headless": self.headless,
            "browsers_path": str(self.browsers_path) if self.browsers_path else None,
            "viewport_width": self.viewport_width,
            "viewport_height": self.viewport_height,
            "results_dir": str(self.results_dir),
            "logs_dir": str(self.logs_dir),
            "record_video": self.record_video,
            "install_timeout": self.install_timeout,
            "probe_timeout": self.probe_timeout,
            "kill_grace": self.kill_grace,
            "install_with_deps": self.install_with_deps,
            "test_command": self.test_command,
            "run_timeout": self.run_timeout,
            "run_idle_timeout": self.run_idle_timeout,
        }

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "RunnerConfig":
        env = os.environ if environ is None else environ
        kwargs: Dict[str, Any] = {}

        engine = env.get(f"{ENV_PREFIX}BROWSER") or env.get("BROWSER")
        if engine:
            kwargs["engine"] = EngineKind.parse(engine)
        kwargs["headless"] = _env_flag(env.get("HEADLESS"), True)
        if env.get(BROWSERS_PATH_ENV):
            kwargs["browsers_path"] = Path(env[BROWSERS_PATH_ENV])

        viewport = env.get(f"{ENV_PREFIX}VIEWPORT")
        if viewport:
            try:
                width, height = viewport.lower().split("x", 1)
                kwargs["viewport_width"] = int(width)
                kwargs["viewport_height"] = int(height)
            except ValueError:
                raise ValueError(f"Invalid {ENV_PREFIX}VIEWPORT '{viewport}', expected WIDTHxHEIGHT")

        if env.get(f"{ENV_PREFIX}RESULTS_DIR"):
            kwargs["results_dir"] = Path(env[f"{ENV_PREFIX}RESULTS_DIR"])
        if env.get(f"{ENV_PREFIX}LOGS_DIR"):
            kwargs["logs_dir"] = Path(env[f"{ENV_PREFIX}LOGS_DIR"])
        kwargs["record_video"] = _env_flag(env.get(f"{ENV_PREFIX}RECORD_VIDEO"), False)
        kwargs["install_with_deps"] = _env_flag(env.get(f"{ENV_PREFIX}INSTALL_WITH_DEPS"), False)

        for key, name in (
            ("install_timeout", "INSTALL_TIMEOUT"),
            ("probe_timeout", "PROBE_TIMEOUT"),
            ("run_timeout", "RUN_TIMEOUT"),
            ("run_idle_timeout", "RUN_IDLE_TIMEOUT"),
        ):
            raw = env.get(f"{ENV_PREFIX}{name}")
            if raw:
                kwargs[key] = float(raw)

        if env.get(f"{ENV_PREFIX}TEST_COMMAND"):
            kwargs["test_command"] = shlex.split(env[f"{ENV_PREFIX}TEST_COMMAND"])

        return cls(**kwargs)
