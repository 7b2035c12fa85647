import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from confvet import __version__
from confvet.cli._output import (
    format_build_report,
    format_finding,
    format_lint_json,
    format_lint_text,
    format_rule_text,
    format_rulesets_text,
)
from confvet.cli.main import cli
from confvet.core._types import BuildStatus, FailureKind
from confvet.core.diagnostic import Diagnostic
from confvet.core.identity import rule_id
from confvet.core.rule import Rule
from confvet.lint.runner import DocumentResult, LintFinding, LintReport, RuleFailure
from confvet.rulesets.registry import BuildReport, RuleBuildResult
from tests._plugins import NO_FOO, REQUIRE_BAR, make_ruleset

NO_FOO_ID = rule_id("no_foo")
RULE = Rule(
    id="1f0e4",
    name="no_foo",
    short="Attribute 'foo' is not allowed",
    long="Long explanation.",
    link="https://example.com/no_foo",
)


@pytest.fixture
def cfg_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.delenv("CONFVET_CONFIG_DIR", raising=False)
    monkeypatch.delenv("CONFVET_LOG_LEVEL", raising=False)
    path = tmp_path / ".confvet.toml"
    path.write_text(f'config_dir = "{tmp_path / "confvet.d"}"\ncall_timeout = 10.0\n')
    return path


@pytest.fixture
def invoke(cfg_file: Path):
    runner = CliRunner()

    def _invoke(*args: str):
        return runner.invoke(cli, ["--config", str(cfg_file), "--no-color", *args])

    return _invoke


@pytest.fixture
def installed(invoke, make_repo) -> Path:
    repo = make_repo({"no_foo": NO_FOO, "require_bar": REQUIRE_BAR})
    result = invoke("ruleset", "add", str(repo))
    assert result.exit_code == 0, result.output
    return repo


def _finding(path: str = "main.tf", line: int = 3, column: int = 3) -> LintFinding:
    return LintFinding(
        path=path,
        ruleset="example",
        rule=RULE,
        diagnostic=Diagnostic.at(
            line,
            column,
            suggestion="remove it",
            remediation="sed -i '/foo/d' main.tf",
            metadata={"severity": "error"},
        ),
        line_text="  foo = true",
    )


class TestOutput:
    def test_finding_block(self) -> None:
        text = format_finding(_finding(), no_color=True)
        lines = text.splitlines()
        assert lines[0] == "Error[1f0e4]: Attribute 'foo' is not allowed"
        assert lines[1] == "  --> main.tf:3:3"
        assert "3 |   foo = true" in lines
        assert "  |   ^" in lines
        assert "  = additional information:" in lines
        assert any("• name:" in line and "no_foo" in line for line in lines)
        assert any("• link:" in line and "https://example.com/no_foo" in line for line in lines)
        assert any("• suggestion:" in line and "remove it" in line for line in lines)
        assert any("• remediation:" in line and "`sed -i '/foo/d' main.tf`" in line for line in lines)
        assert any("• severity:" in line and "error" in line for line in lines)
        assert lines[-1] == (
            "For more information about this error, try running "
            "`confvet rule describe example 1f0e4`."
        )

    def test_finding_color(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("NO_COLOR", raising=False)
        assert "\033[" in format_finding(_finding())
        monkeypatch.setenv("NO_COLOR", "1")
        assert "\033[" not in format_finding(_finding())

    def test_lint_text_summary(self) -> None:
        failure = RuleFailure("main.tf", "example", RULE, FailureKind.TIMEOUT, "too slow")
        report = LintReport(
            results=[
                DocumentResult("main.tf", findings=[_finding()], failures=[failure]),
                DocumentResult("bad.json", error="JSONDecodeError: boom"),
            ],
            elapsed=0.5,
        )
        text = format_lint_text(report, no_color=True)
        assert "[timeout] example/[1f0e4] no_foo: too slow" in text
        assert "bad.json: JSONDecodeError: boom" in text
        assert "Linted 1 file(s) in 0.50s (average 250.00ms/file)" in text
        assert "1 finding, 1 rule failure, 1 skipped document" in text

    def test_lint_text_clean(self) -> None:
        report = LintReport(results=[DocumentResult("main.tf")], elapsed=0.01)
        assert "No problems found." in format_lint_text(report, no_color=True)

    def test_lint_json(self) -> None:
        failure = RuleFailure("main.tf", "example", RULE, FailureKind.CONNECTION, "gone")
        report = LintReport(results=[DocumentResult("main.tf", findings=[_finding()], failures=[failure])])
        data = json.loads(format_lint_json(report))
        assert data["version"] == __version__
        f = data["findings"][0]
        assert f["filepath"] == "main.tf"
        assert f["rule"]["id"] == "1f0e4"
        assert f["line"] == "  foo = true"
        assert f["location"]["start"] == {"line": 3, "column": 3}
        assert f["metadata"] == {"severity": "error"}
        assert data["failures"] == [
            {"filepath": "main.tf", "ruleset": "example", "rule": "1f0e4", "kind": "connection", "message": "gone"}
        ]
        assert data["summary"]["findings"] == 1

    def test_rule_text(self) -> None:
        text = format_rule_text(RULE, no_color=True)
        assert text.splitlines() == [
            "[1f0e4] no_foo",
            "",
            "Attribute 'foo' is not allowed",
            "",
            "Long explanation.",
            "",
            "Enabled: true | Link: https://example.com/no_foo",
        ]

    def test_rulesets_table(self) -> None:
        text = format_rulesets_text([make_ruleset("example", RULE)], no_color=True)
        header, rule_line, row = text.splitlines()
        assert header.split() == ["Name", "Version", "Repository", "Enabled", "Rules"]
        assert set(rule_line.replace(" ", "")) == {"-"}
        assert row.split() == ["example", "0.1.0", "/src/example", "true", "1"]

    def test_rulesets_empty(self) -> None:
        assert "No rulesets installed" in format_rulesets_text([], no_color=True)

    def test_build_report(self) -> None:
        report = BuildReport(
            ruleset="example",
            results=[
                RuleBuildResult("no_foo", "1f0e4", BuildStatus.OK, rule=RULE),
                RuleBuildResult("broken", "2a2a2", BuildStatus.BUILD_FAILED, error="exit 1", log=b"Traceback\nSyntaxError"),
                RuleBuildResult("later", "3b3b3", BuildStatus.SKIPPED, error="aborted"),
            ],
            aborted=True,
        )
        text = format_build_report(report, no_color=True)
        assert "ok  [1f0e4] no_foo" in text
        assert "build_failed  broken: exit 1" in text
        assert "SyntaxError" in text
        assert "1 rule built, 1 failed (aborted after consecutive failures)" in text


class TestCLI:
    def test_version(self) -> None:
        result = CliRunner().invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert f"confvet {__version__}" in result.output

    def test_help(self) -> None:
        result = CliRunner().invoke(cli, ["-h"])
        assert result.exit_code == 0
        for command in ("lint", "ruleset", "rule"):
            assert command in result.output

    def test_invalid_config(self, tmp_path: Path) -> None:
        bad = tmp_path / ".confvet.toml"
        bad.write_text("call_timeout = -1\n")
        result = CliRunner().invoke(cli, ["--config", str(bad), "ruleset", "list"])
        assert result.exit_code == 2
        assert "Error: invalid config" in result.output

    def test_list_empty(self, invoke) -> None:
        result = invoke("ruleset", "list")
        assert result.exit_code == 0
        assert "No rulesets installed" in result.output

    def test_add_and_list(self, invoke, installed) -> None:
        result = invoke("ruleset", "list")
        assert result.exit_code == 0
        assert "example" in result.output
        assert str(installed) in result.output

        result = invoke("ruleset", "list", "example")
        assert result.exit_code == 0
        assert "Ruleset: example 0.1.0 :: 2 rules :: enabled" in result.output
        assert "no_foo" in result.output
        assert "require_bar" in result.output

    def test_add_output(self, invoke, make_repo) -> None:
        result = invoke("ruleset", "add", str(make_repo({"no_foo": NO_FOO})))
        assert result.exit_code == 0, result.output
        assert "Compiled 1 rule(s)" in result.output
        assert "Added ruleset example v0.1.0" in result.output

    def test_add_twice(self, invoke, installed) -> None:
        result = invoke("ruleset", "add", str(installed))
        assert result.exit_code == 2
        assert "already added" in result.output

    def test_list_json(self, invoke, installed) -> None:
        result = invoke("--format", "json", "ruleset", "list")
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["total"] == 1
        assert data["rulesets"][0] == {
            "name": "example",
            "version": "0.1.0",
            "repository": str(installed),
            "enabled": True,
            "rule_count": 2,
        }

        result = invoke("--format", "json", "ruleset", "list", "example")
        data = json.loads(result.output)
        assert [r["name"] for r in data["rules"]] == ["no_foo", "require_bar"]

    def test_list_unknown(self, invoke) -> None:
        result = invoke("ruleset", "list", "nope")
        assert result.exit_code == 2
        assert "ruleset 'nope' not found" in result.output

    def test_describe(self, invoke, installed) -> None:
        result = invoke("rule", "describe", "example", NO_FOO_ID)
        assert result.exit_code == 0
        assert result.output.splitlines()[0] == f"[{NO_FOO_ID}] no_foo"
        assert "Enabled: true | Link: https://example.com/rules/no_foo" in result.output

    def test_describe_unknown_rule(self, invoke, installed) -> None:
        result = invoke("rule", "describe", "example", "zzzzz")
        assert result.exit_code == 2
        assert "rule 'zzzzz' not found" in result.output

    def test_rule_disable_enable(self, invoke, installed) -> None:
        assert invoke("rule", "disable", "example", NO_FOO_ID).exit_code == 0
        assert "Enabled: false" in invoke("rule", "describe", "example", NO_FOO_ID).output
        assert invoke("rule", "enable", "example", NO_FOO_ID).exit_code == 0
        assert "Enabled: true" in invoke("rule", "describe", "example", NO_FOO_ID).output

    def test_ruleset_disable_enable(self, invoke, installed) -> None:
        result = invoke("ruleset", "disable", "example")
        assert result.exit_code == 0
        assert "Ruleset example disabled" in result.output
        assert ":: disabled" in invoke("ruleset", "list", "example").output
        invoke("ruleset", "enable", "example")
        assert ":: enabled" in invoke("ruleset", "list", "example").output

    def test_update_up_to_date(self, invoke, installed) -> None:
        result = invoke("ruleset", "update")
        assert result.exit_code == 0
        assert "All rulesets are up to date." in result.output

    def test_update_newer(self, invoke, installed, make_repo) -> None:
        make_repo({"no_foo": NO_FOO, "require_bar": REQUIRE_BAR}, version="0.2.0")
        result = invoke("ruleset", "update", "example")
        assert result.exit_code == 0, result.output
        assert "Updated ruleset example 0.1.0 -> 0.2.0" in result.output

    def test_remove(self, invoke, installed) -> None:
        result = invoke("ruleset", "remove", "example")
        assert result.exit_code == 0
        assert "No rulesets installed" in invoke("ruleset", "list").output


class TestLintCommand:
    def test_finding_exits_1(self, invoke, installed, tmp_path: Path) -> None:
        doc = tmp_path / "main.tf"
        doc.write_text('bar = 1\n\n  foo = true\n')
        result = invoke("lint", str(doc))
        assert result.exit_code == 1
        assert f"Error[{NO_FOO_ID}]: Attribute 'foo' is not allowed" in result.output
        assert f"--> {doc}:3:3" in result.output
        assert f"`confvet rule describe example {NO_FOO_ID}`" in result.output
        assert "Linted 1 file(s)" in result.output

    def test_clean_exits_0(self, invoke, installed, tmp_path: Path) -> None:
        doc = tmp_path / "main.tf"
        doc.write_text("bar = 1\n")
        result = invoke("lint", str(doc))
        assert result.exit_code == 0, result.output
        assert "No problems found." in result.output

    def test_disabled_rule_not_reported(self, invoke, installed, tmp_path: Path) -> None:
        invoke("rule", "disable", "example", NO_FOO_ID)
        doc = tmp_path / "main.tf"
        doc.write_text("bar = 1\nfoo = 2\n")
        assert invoke("lint", str(doc)).exit_code == 0

    def test_directory_argument(self, invoke, installed, tmp_path: Path) -> None:
        docs = tmp_path / "docs"
        docs.mkdir()
        (docs / "a.tf").write_text("foo = 1\nbar = 2\n")
        (docs / "b.tf").write_text("bar = 2\n")
        (docs / "c.txt").write_text("foo = 1\n")
        result = invoke("lint", str(docs))
        assert result.exit_code == 1
        assert "Linted 2 file(s)" in result.output
        assert result.output.count("Error[") == 1

    def test_json(self, cfg_file: Path, installed, tmp_path: Path) -> None:
        doc = tmp_path / "main.tf"
        doc.write_text("foo = 1\nbar = 2\n")
        result = CliRunner().invoke(cli, ["--config", str(cfg_file), "--format", "json", "lint", str(doc)])
        assert result.exit_code == 1
        data = json.loads(result.stdout)
        assert [f["rule"]["name"] for f in data["findings"]] == ["no_foo"]
        assert data["findings"][0]["location"]["start"] == {"line": 1, "column": 1}
        assert data["summary"]["linted"] == 1

    def test_missing_path_exits_2(self, invoke, tmp_path: Path) -> None:
        result = invoke("lint", str(tmp_path / "absent.tf"))
        assert result.exit_code == 2
        assert "Error: could not open path" in result.output

    def test_no_rulesets(self, invoke, tmp_path: Path) -> None:
        doc = tmp_path / "main.tf"
        doc.write_text("foo = 1\n")
        result = invoke("lint", str(doc))
        assert result.exit_code == 0
        assert "No enabled rulesets" in result.output
