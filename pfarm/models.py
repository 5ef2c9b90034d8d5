from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from typing import Any

TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def format_ts(dt: datetime) -> str:
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.strftime(TS_FORMAT)


def utc_now() -> str:
    return format_ts(datetime.now(timezone.utc))


@dataclass(frozen=True)
class ProxyRecord:
    """Persisted state of one managed proxy endpoint."""

    id: str
    unit_ref: str
    port: int
    country: str | None = None
    city: str | None = None
    exit_ip: str | None = None
    healthy: bool = False
    restarts: int = 0
    created_at: str = field(default_factory=utc_now)
    notes: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProxyRecord":
        missing = [k for k in ("id", "unit_ref", "port") if data.get(k) in (None, "")]
        if missing:
            raise ValueError(f"proxy record is missing {', '.join(missing)}")
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values["port"] = int(values["port"])
        values["restarts"] = int(values.get("restarts") or 0)
        values["healthy"] = bool(values.get("healthy", False))
        return cls(**values)


@dataclass(frozen=True)
class CreateProxyOptions:
    country: str | None = None
    city: str | None = None
    notes: str | None = None
    port: int | None = None  # pre-allocated by the caller


@dataclass(frozen=True)
class UnitSpec:
    """Everything the runtime needs to create one tunnel container."""

    name: str
    image: str
    environment: dict[str, str]
    labels: dict[str, str]
    port_bindings: dict[str, tuple[str, int]]  # "1080/tcp" -> (host ip, host port)
    cap_add: list[str] = field(default_factory=list)
    devices: list[str] = field(default_factory=list)
    volumes: dict[str, dict[str, str]] = field(default_factory=dict)
    restart_policy: str = "unless-stopped"


@dataclass(frozen=True)
class UnitInfo:
    id: str
    name: str
    labels: dict[str, str]
    created_at: str
    running: bool


@dataclass(frozen=True)
class HealthResult:
    proxy_id: str
    healthy: bool
    exit_ip: str | None = None
    error: str | None = None  # ProxyNotFound | ProbeTimeout | NoResponse
    detail: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class BatchResult:
    created: list[ProxyRecord] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"created": [p.to_dict() for p in self.created], "errors": list(self.errors)}


@dataclass
class ReconcileReport:
    adopted: list[str] = field(default_factory=list)
    dropped_missing: list[str] = field(default_factory=list)
    dropped_duplicates: list[str] = field(default_factory=list)
    orphans_removed: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.adopted or self.dropped_missing or self.dropped_duplicates or self.orphans_removed)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class HealReport:
    reconcile: ReconcileReport | None = None
    checked: int = 0
    unhealthy: list[str] = field(default_factory=list)
    rotated: list[str] = field(default_factory=list)
    recovered: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["reconcile"] = self.reconcile.to_dict() if self.reconcile else None
        return out
