"""
Stepflow CLI
"""
import asyncio
import json
import logging
import sys

import click
from dotenv import load_dotenv

from .config import RuntimeSettings
from .core.parser import WorkflowParser
from .exceptions import WorkflowParseError, WorkflowValidationError
from .models.execution import ExecutionStatus


def _load_input(value):
    """解析 --input：JSON 文本或 @文件路径"""
    if value is None:
        return {}
    if value.startswith("@"):
        with open(value[1:], "r", encoding="utf-8") as f:
            value = f.read()
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"Input is not valid JSON: {e}", param_hint="--input")


def _parse_workflow(workflow_file):
    try:
        return WorkflowParser().parse_file(workflow_file)
    except (WorkflowParseError, WorkflowValidationError) as e:
        click.echo(f"Invalid workflow: {workflow_file}", err=True)
        for error in getattr(e, "errors", None) or [str(e)]:
            click.echo(f"  - {error}", err=True)
        sys.exit(2)


@click.group()
@click.option('--log-level', default=None, help='Logging level (default: LOG_LEVEL or INFO)')
@click.pass_context
def cli(ctx, log_level):
    """Stepflow state machine runtime CLI"""
    settings = RuntimeSettings.from_env()
    logging.basicConfig(
        level=getattr(logging, (log_level or settings.log_level).upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    ctx.obj = settings


@cli.command()
@click.argument('workflow_file', type=click.Path(exists=True, dir_okay=False))
def validate(workflow_file):
    """Validate a workflow document"""
    workflow = _parse_workflow(workflow_file)
    click.echo(f"Workflow '{workflow.name or workflow.id}' is valid ({len(workflow.states)} states)")
    for name in workflow.root_result_states():
        click.echo(f"Warning: state {name} replaces the whole document with its result", err=True)


@cli.command()
@click.argument('workflow_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--input', 'input_value', default=None, help='Initial document as JSON, or @path to a JSON file')
@click.option('--history', is_flag=True, help='Print the execution history')
@click.pass_obj
def run(settings, workflow_file, input_value, history):
    """Run a workflow from file and print the final document"""
    from .api.app import build_controller

    workflow = _parse_workflow(workflow_file)
    input_data = _load_input(input_value)

    async def _run():
        controller = build_controller(settings)
        return await controller.execute(workflow, input_data)

    execution = asyncio.run(_run())

    if history:
        for record in execution.history:
            line = f"[{record.status.value}] {record.state_name}"
            if record.attempts > 1:
                line += f" (attempts={record.attempts}, backoff={list(record.backoff_delays)})"
            if record.error:
                line += f" error={record.error['error']}"
            if record.next_state:
                line += f" -> {record.next_state}"
            click.echo(line)

    click.echo(json.dumps(execution.to_dict(), indent=2, ensure_ascii=False, default=str))
    if execution.status != ExecutionStatus.SUCCEEDED:
        sys.exit(1)


@cli.command()
@click.option('--host', default=None, help='Host to bind to (default: API_HOST)')
@click.option('--port', default=None, type=int, help='Port to bind to (default: API_PORT)')
@click.option('--reload', is_flag=True, help='Enable auto-reload')
@click.pass_obj
def serve(settings, host, port, reload):
    """Start the API server"""
    import uvicorn

    host = host or settings.api_host
    port = port or settings.api_port
    click.echo(f"Starting API server on {host}:{port}")
    uvicorn.run(
        "stepflow.api.server:app",
        host=host,
        port=port,
        reload=reload or settings.api_reload
    )


def main():
    """Main entry point"""
    load_dotenv()
    cli()


if __name__ == '__main__':
    main()
