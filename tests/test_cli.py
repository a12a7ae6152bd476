# tests/test_cli.py
"""
Tests for the memtrace command-line interface (memtrace/main.py).
"""

import json

import pytest

import memsafety
from memtrace.main import EXIT_ERROR, EXIT_INFRA, EXIT_OK, main

DANGLING = """
    let p: int*
    push F
    let b: int = 1
    p = &b
    pop
    read *p
"""

DOUBLE_FREE = """
    let h: int* = new int
    delete h
    delete h
"""

CLEAN = """
    let x: int = 1
    let r: int& = x
    r = 2
"""


class TestRun:

    def test_clean_trace(self, trace_file, capsys):
        path = trace_file(CLEAN)
        assert main(["run", str(path)]) == EXIT_OK
        assert capsys.readouterr().out == ""

    def test_text_format(self, trace_file, capsys):
        path = trace_file(DANGLING)
        assert main(["run", str(path)]) == EXIT_ERROR
        out = capsys.readouterr().out
        assert out.startswith(f"{path}:6: error: ")
        assert out.rstrip().endswith("[DanglingAccess]")

    def test_json_format(self, trace_file, capsys):
        path = trace_file(DOUBLE_FREE)
        assert main(["run", str(path), "--format", "json"]) == EXIT_ERROR
        records = [json.loads(ln) for ln in capsys.readouterr().out.splitlines()]
        assert len(records) == 1
        assert records[0]["violationKind"] == "DoubleFree"
        assert records[0]["line"] == 3
        assert records[0]["file"] == str(path)
        assert records[0]["cwe"] == 415

    def test_summary_format(self, trace_file, capsys):
        path = trace_file(DOUBLE_FREE)
        main(["run", str(path), "-f", "summary"])
        out = capsys.readouterr().out
        assert "1 diagnostic(s)" in out
        assert "DoubleFree: 1" in out

    def test_leak_scan_at_end_of_trace(self, trace_file, capsys):
        path = trace_file("let h: int* = new int\n")
        # Leak is a warning, so the exit code stays 0
        assert main(["run", str(path)]) == EXIT_OK
        assert "[Leak]" in capsys.readouterr().out

    def test_no_leak_scan(self, trace_file, capsys):
        path = trace_file("let h: int* = new int\n")
        assert main(["run", str(path), "--no-leak-scan"]) == EXIT_OK
        assert capsys.readouterr().out == ""

    def test_explicit_end_is_not_scanned_twice(self, trace_file, capsys):
        path = trace_file("let h: int* = new int\nend\n")
        main(["run", str(path), "-f", "json"])
        assert len(capsys.readouterr().out.splitlines()) == 1

    def test_suppress(self, trace_file, capsys):
        path = trace_file(DOUBLE_FREE)
        assert main(["run", str(path), "--suppress", "DoubleFree", "-f", "summary"]) == EXIT_OK
        assert "(1 suppressed)" in capsys.readouterr().out

    def test_report_indeterminate(self, trace_file, capsys):
        path = trace_file("let a: int = 1\nlet b: int = 0\nmove a -> b\nread a\n")
        assert main(["run", str(path)]) == EXIT_OK
        assert capsys.readouterr().out == ""
        assert main(["run", str(path), "--report-indeterminate"]) == EXIT_OK
        assert "[IndeterminateRead]" in capsys.readouterr().out

    def test_config_file(self, trace_file, tmp_path, capsys):
        path = trace_file("fn f(int a)\nfn f(int a, int b = 0)\ncall f(1)\n")
        config = tmp_path / "policy.json"
        config.write_text(json.dumps({"exact_arity_precedence": False}))
        assert main(["run", str(path), "-c", str(config)]) == EXIT_ERROR
        assert "[OverloadAmbiguous]" in capsys.readouterr().out

    def test_bad_config(self, trace_file, tmp_path):
        path = trace_file(CLEAN)
        config = tmp_path / "policy.json"
        config.write_text(json.dumps({"bogus": True}))
        assert main(["run", str(path), "-c", str(config)]) == EXIT_INFRA

    def test_unknown_suppressed_kind(self, trace_file):
        path = trace_file(CLEAN)
        assert main(["run", str(path), "--suppress", "NoSuchKind"]) == EXIT_INFRA

    def test_output_file(self, trace_file, tmp_path, capsys):
        path = trace_file(DOUBLE_FREE)
        out_path = tmp_path / "out" / "diag.txt"
        assert main(["run", str(path), "-o", str(out_path)]) == EXIT_ERROR
        assert capsys.readouterr().out == ""
        assert "[DoubleFree]" in out_path.read_text(encoding="utf-8")

    def test_color_always(self, trace_file, capsys):
        path = trace_file(DOUBLE_FREE)
        main(["run", str(path), "--color", "always"])
        assert "\x1b[" in capsys.readouterr().out


class TestRunFailures:

    def test_missing_file(self, tmp_path):
        assert main(["run", str(tmp_path / "absent.mt")]) == EXIT_INFRA

    def test_syntax_error(self, trace_file, capsys):
        path = trace_file("let x: int = 1\nlet = 2\n")
        assert main(["run", str(path)]) == EXIT_INFRA
        err = capsys.readouterr().err
        assert "trace.mt:2" in err
        assert "^" in err

    def test_trace_error(self, trace_file, capsys):
        path = trace_file("pop\n")
        assert main(["run", str(path)]) == EXIT_INFRA
        assert "global frame" in capsys.readouterr().err

    def test_undeclared_name(self, trace_file, capsys):
        path = trace_file("read y\n")
        assert main(["run", str(path)]) == EXIT_INFRA
        assert "'y' is not declared" in capsys.readouterr().err


class TestOtherCommands:

    def test_check(self, trace_file, capsys):
        path = trace_file(DANGLING)
        assert main(["check", str(path)]) == EXIT_OK
        assert "6 statement(s) OK" in capsys.readouterr().out

    def test_check_syntax_error(self, trace_file):
        path = trace_file("read\n")
        assert main(["check", str(path)]) == EXIT_INFRA

    def test_kinds(self, capsys):
        assert main(["kinds"]) == EXIT_OK
        out = capsys.readouterr().out
        assert "DoubleFree" in out
        assert "CWE-415" in out
        assert "17 violation kind(s)." in out

    def test_info(self, capsys):
        assert main(["info"]) == EXIT_OK
        info = json.loads(capsys.readouterr().out)
        assert info["version"] == memsafety.__version__
        assert "DanglingAccess" in info["violation_kinds"]

    def test_no_command(self):
        assert main([]) == EXIT_INFRA

    def test_version(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["--version"])
        assert exc_info.value.code == 0
        assert memsafety.__version__ in capsys.readouterr().out
