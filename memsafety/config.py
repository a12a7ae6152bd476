"""Engine policy configuration."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Union

from memsafety.diagnostics import DiagnosticSeverity, ViolationKind
from memsafety.errors import ConfigError

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class EngineConfig:
    """
    Policy switches of one simulation run.

    Attributes
    ----------
    report_indeterminate_reads : flag reads of indeterminate or moved-out content
    report_rebind_attempts     : warn when an assignment looks like a reference rebind
    report_reference_collapse  : emit an informational note on reference collapse
    exact_arity_precedence     : exact-arity overloads win over default-filled ones
    suppressed_kinds           : violation kinds kept out of the diagnostic list
    severity_overrides         : per-kind severity replacing the default table
    """
    report_indeterminate_reads: bool = False
    report_rebind_attempts: bool = False
    report_reference_collapse: bool = False
    exact_arity_precedence: bool = True
    suppressed_kinds: FrozenSet[ViolationKind] = frozenset()
    severity_overrides: Mapping[ViolationKind, DiagnosticSeverity] = field(
        default_factory=dict
    )

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "EngineConfig":
        """
        Build a config from a plain mapping (e.g. decoded JSON).

        Kind names may be given in display form (``"DoubleFree"``) or member
        form (``"DOUBLE_FREE"``); severities by value (``"warning"``).
        """
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigError(
                f"unknown configuration key(s): {', '.join(sorted(unknown))}"
            ).with_hint(f"valid keys: {', '.join(sorted(known))}")

        kwargs: Dict[str, Any] = {}
        for key in ("report_indeterminate_reads", "report_rebind_attempts",
                    "report_reference_collapse", "exact_arity_precedence"):
            if key in data:
                value = data[key]
                if not isinstance(value, bool):
                    raise ConfigError(f"{key} must be a boolean, got {value!r}")
                kwargs[key] = value

        if "suppressed_kinds" in data:
            kwargs["suppressed_kinds"] = frozenset(
                _parse_kinds(data["suppressed_kinds"])
            )
        if "severity_overrides" in data:
            overrides: Dict[ViolationKind, DiagnosticSeverity] = {}
            for name, sev in dict(data["severity_overrides"]).items():
                kind = _parse_kind(name)
                try:
                    overrides[kind] = DiagnosticSeverity(sev)
                except ValueError as exc:
                    raise ConfigError(f"unknown severity {sev!r} for {name}") from exc
            kwargs["severity_overrides"] = overrides
        return cls(**kwargs)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "EngineConfig":
        """Load a JSON configuration file."""
        p = Path(path)
        try:
            data = json.loads(p.read_text(encoding="utf-8"))
        except OSError as exc:
            raise ConfigError(f"cannot read config {p}: {exc}", cause=exc) from exc
        except json.JSONDecodeError as exc:
            raise ConfigError(f"invalid JSON in {p}: {exc}", cause=exc) from exc
        if not isinstance(data, dict):
            raise ConfigError(f"config {p} must contain a JSON object")
        _log.debug("Loaded engine config from %s", p)
        return cls.from_mapping(data)

    def with_suppressed(self, kinds: Iterable[Union[str, ViolationKind]]) -> "EngineConfig":
        """Return a copy with additional suppressed kinds."""
        extra = frozenset(_parse_kinds(kinds))
        return EngineConfig(
            report_indeterminate_reads=self.report_indeterminate_reads,
            report_rebind_attempts=self.report_rebind_attempts,
            report_reference_collapse=self.report_reference_collapse,
            exact_arity_precedence=self.exact_arity_precedence,
            suppressed_kinds=self.suppressed_kinds | extra,
            severity_overrides=dict(self.severity_overrides),
        )


def _parse_kind(name: Union[str, ViolationKind]) -> ViolationKind:
    if isinstance(name, ViolationKind):
        return name
    try:
        return ViolationKind.parse(name)
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc


def _parse_kinds(names: Iterable[Union[str, ViolationKind]]) -> Iterable[ViolationKind]:
    if isinstance(names, str):
        names = [names]
    return [_parse_kind(n) for n in names]


__all__ = ["EngineConfig"]
