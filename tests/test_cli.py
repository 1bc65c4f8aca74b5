"""
Tests for the command-line entry point.
"""

import json

from taebaek import BANNER, run_cli


class TestRunCli:
    def test_compiles_file(self, tmp_path, capsys):
        source = tmp_path / "source.tb"
        output = tmp_path / "output.bin"
        source.write_bytes(b"& x for x : 1 2 Hi")
        assert run_cli([str(source), "-o", str(output)]) == 0
        assert output.read_bytes() == b"HiHi"
        captured = capsys.readouterr()
        assert BANNER in captured.out
        assert "Compilation finished." in captured.out

    def test_literal_source(self, tmp_path, capsys):
        output = tmp_path / "out.bin"
        assert run_cli(["-source", "Abc", "-o", str(output)]) == 0
        assert output.read_bytes() == b"Abc"

    def test_empty_source_prints_no_banner(self, tmp_path, capsys):
        output = tmp_path / "out.bin"
        assert run_cli(["-source", "   ", "-o", str(output)]) == 0
        assert BANNER not in capsys.readouterr().out
        assert output.read_bytes() == b""

    def test_missing_source_file(self, tmp_path, capsys):
        assert run_cli([str(tmp_path / "missing.tb"), "-o", str(tmp_path / "out.bin")]) == 1
        assert "Failed to read" in capsys.readouterr().err

    def test_recoverable_errors_still_succeed(self, tmp_path, capsys):
        output = tmp_path / "out.bin"
        assert run_cli(["-source", "+ y 1 ok", "-o", str(output)]) == 0
        assert "error[UndeclaredVariable]" in capsys.readouterr().err
        assert output.read_bytes() == b"ok"

    def test_fatal_error_exits_nonzero(self, tmp_path, capsys):
        output = tmp_path / "out.bin"
        assert run_cli(["-source", "Kept fail", "-o", str(output)]) == 1
        captured = capsys.readouterr()
        assert "error[MalformedKeyword]" in captured.err
        assert "Compilation stopped." in captured.out
        assert output.read_bytes() == b"Kept"

    def test_step_limit_flag(self, tmp_path, capsys):
        output = tmp_path / "out.bin"
        assert run_cli(["-source", "& x for x : 1 9 A", "--max-steps", "5", "-o", str(output)]) == 1
        assert "error[StepLimitExceeded]" in capsys.readouterr().err

    def test_report_json(self, tmp_path, capsys):
        output = tmp_path / "out.bin"
        assert run_cli(["-source", "& x : x 4", "--report-json", "-o", str(output)]) == 0
        report = json.loads(capsys.readouterr().err)
        assert report["variables"] == {"x": 4}
        assert report["fatal"] is None

    def test_unwritable_output(self, tmp_path, capsys):
        assert run_cli(["-source", "A", "-o", str(tmp_path)]) == 1
        assert "Failed to write" in capsys.readouterr().err

    def test_failed_import_still_finishes(self, tmp_path, capsys, monkeypatch):
        monkeypatch.delenv("TAEBAEK_EXT_PATH", raising=False)
        output = tmp_path / "out.bin"
        missing = tmp_path / "nowhere"
        assert run_cli(["-source", "import plug ok", "--ext-path", str(missing), "-o", str(output)]) == 0
        assert "error[ExtensionNotFound]" in capsys.readouterr().err
        assert output.read_bytes() == b"ok"
