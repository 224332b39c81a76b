"""Common data models for probe suites and runs."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence


class HarnessError(RuntimeError):
    """Base class for errors raised out of the harness public API."""


class SuiteSetupError(HarnessError):
    """Raised when a suite's setup hook fails; the whole suite is aborted."""

    def __init__(self, suite_name: str, cause: BaseException) -> None:
        super().__init__(f"Suite '{suite_name}' setup failed: {cause}")
        self.suite_name = suite_name
        self.cause = cause


class UnknownSuiteError(HarnessError, KeyError):
    """Raised when a suite name is not present in the orchestrator registry."""

    def __init__(self, suite_name: str, known: Sequence[str]) -> None:
        message = f"Test suite '{suite_name}' not found. Available suites: {', '.join(known)}"
        super().__init__(message)
        self.suite_name = suite_name
        self.known = tuple(known)

    def __str__(self) -> str:
        return self.args[0]


@dataclass(frozen=True)
class ProbeResult:
    success: bool
    message: str
    duration_ms: int = 0
    data: Optional[Dict[str, Any]] = None
    error: Optional[BaseException] = None

    def with_duration(self, duration_ms: int) -> "ProbeResult":
        return replace(self, duration_ms=max(0, int(duration_ms)))

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "success": self.success,
            "message": self.message,
            "duration_ms": self.duration_ms,
        }
        if self.data is not None:
            payload["data"] = self.data
        if self.error is not None:
            payload["error"] = {"type": type(self.error).__name__, "message": str(self.error)}
        return payload


ProbeFn = Callable[[], Awaitable[ProbeResult]]
Hook = Callable[[], Awaitable[None]]


@dataclass(frozen=True)
class ProbeCase:
    name: str
    run: ProbeFn
    timeout_ms: Optional[int] = None
    skip: bool = False


@dataclass(frozen=True)
class ProbeSuite:
    """A named, ordered group of probes covering one functional area."""

    name: str
    cases: Sequence[ProbeCase]
    title: str = ""
    setup: Optional[Hook] = None
    teardown: Optional[Hook] = None

    @property
    def label(self) -> str:
        return self.title or self.name

    def active_cases(self) -> List[ProbeCase]:
        return [case for case in self.cases if not case.skip]


SuiteRunResult = List[ProbeResult]
RunResults = Dict[str, SuiteRunResult]


@dataclass(frozen=True)
class RunConfig:
    base_url: str = "http://localhost:3000"
    api_base_path: str = "/api"
    default_timeout_ms: int = 30000
    retry_count: int = 3
    concurrent: bool = True
    retry_initial_delay_ms: int = 1000
    retry_max_delay_ms: int = 10000
    retry_failed_results: bool = True
    request_timeout_s: float = 15.0
    auth_token: Optional[str] = "test-token"
    sync_poll_window_ms: int = 3000
    sync_poll_interval_ms: int = 250
    environment: str = "development"
    extra_headers: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.default_timeout_ms <= 0:
            raise ValueError("default_timeout_ms must be positive")
        if self.retry_count < 1:
            raise ValueError("retry_count must be at least 1")
        if self.retry_initial_delay_ms < 0 or self.retry_max_delay_ms < 0:
            raise ValueError("retry delays must not be negative")

    @property
    def api_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/{self.api_base_path.strip('/')}".rstrip("/")

    def replace(self, **changes: Any) -> "RunConfig":
        return replace(self, **changes)

    def backoff_ms(self, attempt: int) -> int:
        """Delay before the attempt following ``attempt`` (1-based), capped."""
        delay = self.retry_initial_delay_ms * (2 ** max(0, attempt - 1))
        return min(delay, self.retry_max_delay_ms)
