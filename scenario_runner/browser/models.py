"""
Browser session data models.
"""
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional, List, Dict, Any, Union


class EngineKind(Enum):
    CHROMIUM = "chromium"
    FIREFOX = "firefox"
    WEBKIT = "webkit"

    @classmethod
    def default(cls) -> "EngineKind":
        return list(cls)[0]

    @classmethod
    def parse(cls, value: Union[str, "EngineKind", None]) -> "EngineKind":
        if value is None or value == "":
            return cls.default()
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            supported = ", ".join(e.value for e in cls)
            raise ValueError(f"Unsupported browser engine '{value}' (supported: {supported})")


class SessionState(Enum):
    UNINITIALIZED = "uninitialized"
    PROVISIONING = "provisioning"
    READY = "ready"
    IN_USE = "in_use"
    TEARING_DOWN = "tearing_down"
    CLOSED = "closed"


# Provisioning may re-enter itself once when the engine has to be installed
ALLOWED_TRANSITIONS: Dict[SessionState, frozenset] = {
    SessionState.UNINITIALIZED: frozenset({SessionState.PROVISIONING, SessionState.CLOSED}),
    SessionState.PROVISIONING: frozenset({
        SessionState.PROVISIONING, SessionState.READY, SessionState.CLOSED,
    }),
    SessionState.READY: frozenset({SessionState.IN_USE, SessionState.TEARING_DOWN}),
    SessionState.IN_USE: frozenset({SessionState.TEARING_DOWN}),
    SessionState.TEARING_DOWN: frozenset({SessionState.CLOSED}),
    SessionState.CLOSED: frozenset(),
}

LIVE_STATES = frozenset({SessionState.READY, SessionState.IN_USE})


def safe_name(value: str) -> str:
    """Turn a scenario name or label into something usable as a file name."""
    return re.sub(r"\W", "-", value).strip("-") or "scenario"


@dataclass
class SessionOptions:
    """Per-session launch options."""
    headless: bool = True
    viewport_width: int = 1280
    viewport_height: int = 720
    video_dir: Optional[Path] = None
    timeout_ms: int = 30000
    navigation_timeout_ms: int = 15000

    def to_dict(self) -> Dict[str, Any]:
        return {
            "headless": self.headless,
            "viewport_width": self.viewport_width,
            "viewport_height": self.viewport_height,
            "video_dir": str(self.video_dir) if self.video_dir else None,
            "timeout_ms": self.timeout_ms,
            "navigation_timeout_ms": self.navigation_timeout_ms,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionOptions":
        data = data.copy()
        if data.get("video_dir"):
            data["video_dir"] = Path(data["video_dir"])
        return cls(**data)


@dataclass
class EvidenceRecord:
    """A screenshot captured for a scenario."""
    scenario_id: str
    label: str
    file_path: str
    url: str = ""
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())

    @property
    def filename(self) -> str:
        return Path(self.file_path).name

    def to_dict(self) -> dict:
        return {
            "scenario_id": self.scenario_id,
            "label": self.label,
            "filename": self.filename,
            "file_path": self.file_path,
            "url": self.url,
            "created_at": self.created_at,
        }


class InstallOutcome(Enum):
    ALREADY_AVAILABLE = "already_available"
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"


@dataclass
class InstallationRecord:
    """Result of one provisioning attempt. Not persisted."""
    engine: EngineKind
    outcome: InstallOutcome
    elapsed_seconds: float = 0.0
    command: List[str] = field(default_factory=list)
    exit_code: Optional[int] = None
    output_tail: str = ""

    @property
    def succeeded(self) -> bool:
        return self.outcome in (InstallOutcome.ALREADY_AVAILABLE, InstallOutcome.SUCCESS)

    def to_dict(self) -> dict:
        return {
            "engine": self.engine.value,
            "outcome": self.outcome.value,
            "succeeded": self.succeeded,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "command": self.command,
            "exit_code": self.exit_code,
            "output_tail": self.output_tail,
        }
