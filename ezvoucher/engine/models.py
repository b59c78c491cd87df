import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable

LogCallback = Callable[..., Awaitable[None]]
StatusCallback = Callable[[str, str, str], Awaitable[None]]


@dataclass
class FileTask:
    sequence_number: int
    source_path: Path
    label: str

    @property
    def file_name(self) -> str:
        return self.source_path.name

    def as_variables(self) -> dict[str, str]:
        return {
            "file_number": str(self.sequence_number),
            "file_path": str(self.source_path.resolve()),
            "file_name": self.file_name,
            "label": self.label,
        }


@dataclass(frozen=True)
class Credentials:
    username: str
    password: str = field(repr=False)

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> "Credentials | None":
        env = os.environ if env is None else env
        username = env.get("D365_USERNAME", "").strip()
        password = env.get("D365_PASSWORD", "").strip()
        if not username or not password:
            return None
        return cls(username=username, password=password)

    def __bool__(self) -> bool:
        return bool(self.username and self.password)


@dataclass
class WorkflowResult:
    success: bool
    message: str
    completed_at: datetime = field(default_factory=datetime.now)
    success_count: int | None = None
    fail_count: int | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, message: str, **details) -> "WorkflowResult":
        return cls(success=True, message=message, details=details)

    @classmethod
    def fail(cls, message: str, **details) -> "WorkflowResult":
        return cls(success=False, message=message, details=details)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": self.success,
            "message" if self.success else "error": self.message,
            "completedAt": self.completed_at.isoformat(),
        }
        if self.success_count is not None:
            data["successCount"] = self.success_count
        if self.fail_count is not None:
            data["failCount"] = self.fail_count
        data.update(self.details)
        return data


@dataclass
class ActionResult:
    action: str
    target: str
    success: bool
    tier: str | None = None
    method: str | None = None
    duration_ms: int = 0
    error: str | None = None
