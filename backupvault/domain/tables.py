from __future__ import annotations

from dataclasses import dataclass
import heapq
import json
from pathlib import Path
from typing import Any, Iterable, Literal

from backupvault.core.errors import ConfigurationError


Tier = Literal["critical", "high", "medium", "low"]
Frequency = Literal["hourly", "daily", "weekly"]
Domain = Literal["operational", "health", "financial", "communications"]

TIER_ORDER: dict[str, int] = {"critical": 0, "high": 1, "medium": 2, "low": 3}
_FREQUENCIES = {"hourly", "daily", "weekly"}
_DOMAINS = {"operational", "health", "financial", "communications"}


@dataclass(frozen=True)
class TableSpec:
    # Static per-table backup configuration, loaded once at startup.
    name: str
    tier: Tier
    pii: bool = False
    pii_fields: tuple[str, ...] = ()
    frequency: Frequency = "daily"
    retention_years: int = 3
    domain: Domain = "operational"
    depends_on: tuple[str, ...] = ()
    subject_fields: tuple[str, ...] = ()
    primary_key: str = "id"
    timestamp_columns: tuple[str, ...] = ("updated_at", "created_at")
    soft_delete_column: str | None = "deleted_at"

    @property
    def tier_rank(self) -> int:
        return TIER_ORDER[self.tier]


DEFAULT_TABLES: tuple[TableSpec, ...] = (
    TableSpec(
        name="organizations",
        tier="critical",
        frequency="hourly",
        retention_years=7,
    ),
    TableSpec(
        name="profiles",
        tier="critical",
        pii=True,
        pii_fields=("email", "full_name", "phone", "whatsapp_number"),
        frequency="hourly",
        retention_years=5,
        depends_on=("organizations",),
        subject_fields=("id",),
    ),
    TableSpec(
        name="pets",
        tier="critical",
        pii=True,
        pii_fields=("name", "owner_id", "emergency_contact", "medical_notes"),
        frequency="hourly",
        retention_years=7,
        domain="health",
        depends_on=("organizations", "profiles"),
        subject_fields=("owner_id",),
    ),
    TableSpec(
        name="appointments",
        tier="critical",
        pii=True,
        pii_fields=("notes", "service_notes", "metadata"),
        frequency="hourly",
        retention_years=7,
        domain="health",
        depends_on=("organizations", "profiles", "pets"),
        subject_fields=("customer_id",),
    ),
    TableSpec(
        name="ai_conversations",
        tier="high",
        pii=True,
        pii_fields=("conversation_data", "customer_phone"),
        frequency="daily",
        retention_years=2,
        domain="communications",
        depends_on=("organizations", "profiles"),
        subject_fields=("customer_id",),
    ),
    TableSpec(
        name="ai_sentiment_analysis",
        tier="medium",
        frequency="daily",
        retention_years=2,
        depends_on=("ai_conversations",),
    ),
    TableSpec(
        name="ai_message_templates",
        tier="medium",
        frequency="daily",
        retention_years=5,
        depends_on=("organizations",),
    ),
    TableSpec(
        name="petshop_settings",
        tier="medium",
        frequency="daily",
        retention_years=3,
        depends_on=("organizations",),
    ),
    TableSpec(
        name="performance_alert_history",
        tier="low",
        frequency="weekly",
        retention_years=1,
        depends_on=("organizations",),
        timestamp_columns=("created_at",),
        soft_delete_column=None,
    ),
)


def _spec_from_dict(payload: dict[str, Any]) -> TableSpec:
    # Map catalog JSON entries onto TableSpec with tuple coercion for list fields.
    try:
        name = str(payload["name"])
        tier = str(payload["tier"])
    except KeyError as exc:
        raise ConfigurationError(f"table catalog entry missing field: {exc.args[0]}") from exc
    if tier not in TIER_ORDER:
        raise ConfigurationError(f"table {name}: unknown tier {tier}")
    frequency = str(payload.get("frequency", "daily"))
    if frequency not in _FREQUENCIES:
        raise ConfigurationError(f"table {name}: unknown frequency {frequency}")
    domain = str(payload.get("domain", "operational"))
    if domain not in _DOMAINS:
        raise ConfigurationError(f"table {name}: unknown domain {domain}")
    pii_fields = tuple(payload.get("pii_fields", ()))
    return TableSpec(
        name=name,
        tier=tier,  # type: ignore[arg-type]
        pii=bool(payload.get("pii", bool(pii_fields))),
        pii_fields=pii_fields,
        frequency=frequency,  # type: ignore[arg-type]
        retention_years=int(payload.get("retention_years", 3)),
        domain=domain,  # type: ignore[arg-type]
        depends_on=tuple(payload.get("depends_on", ())),
        subject_fields=tuple(payload.get("subject_fields", ())),
        primary_key=str(payload.get("primary_key", "id")),
        timestamp_columns=tuple(payload.get("timestamp_columns", ("updated_at", "created_at"))),
        soft_delete_column=payload.get("soft_delete_column", "deleted_at"),
    )


def validate_catalog(specs: Iterable[TableSpec]) -> tuple[TableSpec, ...]:
    # Reject duplicates, dangling dependencies and cycles before any job runs.
    specs = tuple(specs)
    names = [spec.name for spec in specs]
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        raise ConfigurationError(f"duplicate tables in catalog: {', '.join(duplicates)}")
    known = set(names)
    for spec in specs:
        missing = [dep for dep in spec.depends_on if dep not in known]
        if missing:
            raise ConfigurationError(f"table {spec.name} depends on unknown tables: {', '.join(missing)}")
        if spec.pii and not spec.pii_fields:
            raise ConfigurationError(f"table {spec.name} is flagged PII without pii_fields")
    restore_order(specs)
    return specs


def load_catalog(path: str | Path | None = None) -> tuple[TableSpec, ...]:
    # Load the table catalog from JSON when configured, otherwise use the built-in default.
    if path is None:
        return validate_catalog(DEFAULT_TABLES)
    try:
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise ConfigurationError(f"unable to read table catalog {path}: {exc}") from exc
    entries = payload.get("tables", payload) if isinstance(payload, dict) else payload
    if not isinstance(entries, list):
        raise ConfigurationError("table catalog must be a list of table entries")
    return validate_catalog(_spec_from_dict(entry) for entry in entries)


def capture_order(specs: Iterable[TableSpec]) -> list[TableSpec]:
    # Capture critical tables first so they reach the worker pool before lower tiers.
    return sorted(specs, key=lambda spec: (spec.tier_rank, spec.name))


def restore_order(specs: Iterable[TableSpec], subset: Iterable[str] | None = None) -> list[str]:
    """Return table names with parents before children.

    Kahn's algorithm over the declared ``depends_on`` edges; ties are broken by
    tier then name so the order is stable across runs. Dependencies outside
    ``subset`` are ignored, which lets selective restores order only what they
    touch.
    """
    by_name = {spec.name: spec for spec in specs}
    wanted = set(by_name) if subset is None else set(subset)
    unknown = wanted - set(by_name)
    if unknown:
        raise ConfigurationError(f"unknown tables: {', '.join(sorted(unknown))}")
    indegree = {name: 0 for name in wanted}
    children: dict[str, list[str]] = {name: [] for name in wanted}
    for name in wanted:
        for dep in by_name[name].depends_on:
            if dep in wanted:
                indegree[name] += 1
                children[dep].append(name)
    ready = [(by_name[name].tier_rank, name) for name, degree in indegree.items() if degree == 0]
    heapq.heapify(ready)
    ordered: list[str] = []
    while ready:
        _, name = heapq.heappop(ready)
        ordered.append(name)
        for child in children[name]:
            indegree[child] -= 1
            if indegree[child] == 0:
                heapq.heappush(ready, (by_name[child].tier_rank, child))
    if len(ordered) != len(wanted):
        cyclic = sorted(name for name, degree in indegree.items() if degree > 0)
        raise ConfigurationError(f"table dependency cycle: {', '.join(cyclic)}")
    return ordered
