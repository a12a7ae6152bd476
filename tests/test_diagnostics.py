# tests/test_diagnostics.py
"""
Tests for diagnostic records, the reporter sink and engine configuration.
"""

import json

import pytest

from memsafety.config import EngineConfig
from memsafety.diagnostics import (
    VIOLATION_TABLE,
    DiagnosticReporter,
    DiagnosticSeverity,
    ViolationKind,
)
from memsafety.errors import ConfigError, MalformedOperationError, MemSafetyError


class TestViolationKind:

    def test_every_kind_has_table_entry(self):
        assert set(VIOLATION_TABLE) == set(ViolationKind)

    def test_parse_both_forms(self):
        assert ViolationKind.parse("DoubleFree") is ViolationKind.DOUBLE_FREE
        assert ViolationKind.parse("DOUBLE_FREE") is ViolationKind.DOUBLE_FREE
        with pytest.raises(ValueError):
            ViolationKind.parse("Nope")


class TestReporter:

    def test_operation_index_stamp(self):
        rep = DiagnosticReporter()
        assert rep.operation_index == -1
        rep.begin_operation()
        rep.begin_operation()
        diag = rep.report(ViolationKind.DOUBLE_FREE, (3,), "twice")
        assert diag.operation_index == 1
        assert diag.severity == DiagnosticSeverity.ERROR
        assert diag.cwe == 415

    def test_emission_order_and_queries(self, reporter):
        reporter.report(ViolationKind.LEAK, (1,), "leak")
        reporter.begin_operation()
        reporter.report(ViolationKind.DOUBLE_FREE, (2,), "df")
        assert [d.violation_kind for d in reporter.diagnostics] == [
            ViolationKind.LEAK, ViolationKind.DOUBLE_FREE,
        ]
        assert len(reporter.by_operation(1)) == 1
        assert reporter.error_count == 1
        assert reporter.warning_count == 1
        assert reporter.count() == 2
        assert reporter.since(1)[0].violation_kind == ViolationKind.DOUBLE_FREE

    def test_suppression(self, reporter):
        rep = DiagnosticReporter(suppressed_kinds={ViolationKind.LEAK})
        rep.report(ViolationKind.LEAK, (1,), "leak")
        assert rep.diagnostics == []
        assert len(rep.suppressed) == 1

    def test_severity_override(self):
        rep = DiagnosticReporter(
            severity_overrides={ViolationKind.LEAK: DiagnosticSeverity.ERROR}
        )
        assert rep.report(ViolationKind.LEAK, (), "leak").severity == DiagnosticSeverity.ERROR

    def test_to_dict_shape(self, reporter):
        diag = reporter.report(ViolationKind.OUT_OF_BOUNDS, (4, 5), "oob", index=3)
        data = diag.to_dict()
        assert data["violationKind"] == "OutOfBounds"
        assert data["operationIndex"] == 0
        assert data["involvedIds"] == [4, 5]
        assert data["evidence"] == {"index": 3}
        assert json.loads(diag.to_json_str()) == data

    def test_str(self, reporter):
        diag = reporter.report(ViolationKind.DOUBLE_FREE, (1,), "released twice")
        assert str(diag) == "op 0: error: released twice [DoubleFree]"

    def test_summary(self, reporter):
        reporter.report(ViolationKind.LEAK, (1,), "leak")
        text = reporter.summary()
        assert text.startswith("1 diagnostic(s)")
        assert "Leak: 1" in text


class TestEngineConfig:

    def test_defaults(self):
        config = EngineConfig()
        assert not config.report_indeterminate_reads
        assert config.exact_arity_precedence
        assert config.suppressed_kinds == frozenset()

    def test_from_mapping(self):
        config = EngineConfig.from_mapping({
            "report_rebind_attempts": True,
            "suppressed_kinds": ["Leak", "DOUBLE_FREE"],
            "severity_overrides": {"IndeterminateRead": "error"},
        })
        assert config.report_rebind_attempts
        assert config.suppressed_kinds == {ViolationKind.LEAK, ViolationKind.DOUBLE_FREE}
        assert config.severity_overrides[ViolationKind.INDETERMINATE_READ] == DiagnosticSeverity.ERROR

    def test_unknown_key(self):
        with pytest.raises(ConfigError) as exc_info:
            EngineConfig.from_mapping({"colour": True})
        assert "valid keys" in exc_info.value.hint

    def test_config_error_family(self):
        with pytest.raises(MalformedOperationError):
            EngineConfig.from_mapping({"report_rebind_attempts": "yes"})

    def test_unknown_kind(self):
        with pytest.raises(ConfigError):
            EngineConfig.from_mapping({"suppressed_kinds": ["Bogus"]})

    def test_from_file(self, tmp_path):
        path = tmp_path / "policy.json"
        path.write_text(json.dumps({"report_indeterminate_reads": True}), encoding="utf-8")
        assert EngineConfig.from_file(path).report_indeterminate_reads

    def test_from_file_invalid_json(self, tmp_path):
        path = tmp_path / "policy.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(ConfigError):
            EngineConfig.from_file(path)

    def test_with_suppressed(self):
        config = EngineConfig(report_rebind_attempts=True).with_suppressed(["Leak"])
        assert config.report_rebind_attempts
        assert ViolationKind.LEAK in config.suppressed_kinds


class TestErrors:

    def test_code_in_message(self):
        err = MalformedOperationError("bad record")
        assert str(err).startswith("[MS-3001]")
        assert err.to_dict()["code"] == "MS-3001"

    def test_config_error_code(self):
        assert ConfigError("x").code.code == "MS-3501"
        assert isinstance(ConfigError("x"), MemSafetyError)
