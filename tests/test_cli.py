"""
命令行测试
"""
import json

import pytest
from click.testing import CliRunner

from stepflow.cli import cli

from conftest import EXAMPLES_DIR


PIPELINE = str(EXAMPLES_DIR / "document_pipeline.yaml")


@pytest.fixture
def runner():
    return CliRunner()


def write_workflow(path, content):
    path.write_text(content, encoding="utf-8")
    return str(path)


class TestValidateCommand:
    """validate 命令测试类"""

    def test_valid_workflow(self, runner):
        result = runner.invoke(cli, ["validate", PIPELINE])

        assert result.exit_code == 0
        assert "'document-processing' is valid" in result.output

    def test_invalid_workflow(self, runner, tmp_path):
        """测试无效工作流以退出码 2 结束"""
        path = write_workflow(tmp_path / "bad.yaml", "start: A\nstates:\n  A: {type: transform, next: Nowhere}\n")

        result = runner.invoke(cli, ["validate", path])

        assert result.exit_code == 2
        assert "Nowhere" in result.output


class TestRunCommand:
    """run 命令测试类"""

    def test_run_pipeline_with_history(self, runner):
        result = runner.invoke(cli, [
            "run", PIPELINE,
            "--input", json.dumps({"document": {"id": "doc-123"}}),
            "--history"
        ])

        assert result.exit_code == 0
        assert "[succeeded] ClassifyDocument -> CheckConfidence" in result.output
        assert "[caught] LoadExtractionConfig error=TaskFailed -> ExtractData" in result.output
        assert '"status": "succeeded"' in result.output

    def test_run_input_from_file(self, runner, tmp_path):
        workflow = write_workflow(
            tmp_path / "wf.yaml",
            "start: Shape\n"
            "states:\n"
            "  Shape: {type: transform, expression: '{total: $.a + $.b}', result_path: '$.sum', next: Done}\n"
            "  Done: {type: succeed}\n"
        )
        input_file = tmp_path / "input.json"
        input_file.write_text(json.dumps({"a": 1, "b": 2}), encoding="utf-8")

        result = runner.invoke(cli, ["run", workflow, "--input", f"@{input_file}"])

        assert result.exit_code == 0
        assert '"total": 3' in result.output

    def test_run_failing_workflow_exits_nonzero(self, runner, tmp_path):
        workflow = write_workflow(
            tmp_path / "fail.yaml",
            "start: Stop\nstates:\n  Stop: {type: fail, error: Rejected}\n"
        )

        result = runner.invoke(cli, ["run", workflow])

        assert result.exit_code == 1
        assert '"error": "Rejected"' in result.output

    def test_run_rejects_bad_input(self, runner):
        result = runner.invoke(cli, ["run", PIPELINE, "--input", "{not json"])
        assert result.exit_code == 2
