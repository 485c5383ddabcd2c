"""Execution reporting for resource orchestration."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

APPLIED = 'applied'
FAILED = 'failed'
BLOCKED = 'blocked'
UNCHANGED = 'unchanged'

SUCCESS = 'success'
PARTIAL = 'partial'
CANCELLED = 'cancelled'


@dataclass
class ResourceResult:
    """Final status of one resource in a run."""
    address: str
    action: str  # create, update, replace, delete, noop
    status: str  # applied, failed, blocked, unchanged
    message: str = ''
    duration: float = 0.0
    attempts: int = 0

    def to_dict(self) -> dict:
        d = {
            'address': self.address,
            'action': self.action,
            'status': self.status,
        }
        if self.message:
            d['message'] = self.message
        if self.duration:
            d['duration'] = round(self.duration, 3)
        if self.attempts:
            d['attempts'] = self.attempts
        return d


@dataclass
class ExecutionReport:
    """Collects per-resource results for an apply or destroy run."""
    operation: str  # apply, destroy, refresh
    results: list[ResourceResult] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    cancelled: bool = False

    def start(self):
        """Mark run start."""
        self.started_at = datetime.now()

    def finish(self, cancelled: bool = False):
        """Mark run end."""
        self.finished_at = datetime.now()
        self.cancelled = cancelled

    def record(self, address: str, action: str, status: str, message: str = '',
               duration: float = 0.0, attempts: int = 0):
        """Record (or overwrite) the result for a resource."""
        result = ResourceResult(address, action, status, message, duration, attempts)
        for i, existing in enumerate(self.results):
            if existing.address == address:
                self.results[i] = result
                return
        self.results.append(result)

    def get(self, address: str) -> Optional[ResourceResult]:
        for result in self.results:
            if result.address == address:
                return result
        return None

    def status_of(self, address: str) -> Optional[str]:
        result = self.get(address)
        return result.status if result else None

    def _with_status(self, status: str) -> list[str]:
        return [r.address for r in self.results if r.status == status]

    @property
    def applied(self) -> list[str]:
        return self._with_status(APPLIED)

    @property
    def failed(self) -> list[str]:
        return self._with_status(FAILED)

    @property
    def blocked(self) -> list[str]:
        return self._with_status(BLOCKED)

    @property
    def unchanged(self) -> list[str]:
        return self._with_status(UNCHANGED)

    @property
    def outcome(self) -> str:
        if self.cancelled:
            return CANCELLED
        if self.failed or self.blocked:
            return PARTIAL
        return SUCCESS

    @property
    def success(self) -> bool:
        return self.outcome == SUCCESS

    @property
    def duration(self) -> float:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return 0.0

    def to_dict(self) -> dict:
        return {
            'operation': self.operation,
            'outcome': self.outcome,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'duration': round(self.duration, 3),
            'summary': {
                APPLIED: len(self.applied),
                FAILED: len(self.failed),
                BLOCKED: len(self.blocked),
                UNCHANGED: len(self.unchanged),
            },
            'resources': [r.to_dict() for r in self.results],
        }

    def write_json(self, path: Path):
        """Write the report as JSON."""
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w', encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)

    def format_summary(self) -> str:
        """One line per resource, for terminal output."""
        marks = {APPLIED: '+', FAILED: '!', BLOCKED: '-', UNCHANGED: '='}
        lines = [f"{self.operation}: {self.outcome} ({self.duration:.1f}s)"]
        for r in self.results:
            line = f"  {marks.get(r.status, '?')} {r.address} [{r.action}] {r.status}"
            if r.message:
                line += f": {r.message}"
            lines.append(line)
        return '\n'.join(lines)
