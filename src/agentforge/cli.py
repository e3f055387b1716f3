"""
AgentForge CLI
"""
import click
import asyncio
import dataclasses
import json
import logging
from pathlib import Path
from typing import Dict, List, Optional

from .config import RuntimeSettings, SUPPORTED_PROVIDERS
from .core.engine import WorkflowGraphExecutor
from .core.parser import WorkflowParser
from .core.templates import get_template, list_templates
from .exceptions import AgentForgeError
from .integrations.artifact_store import InMemoryArtifactStore
from .integrations.model_client import build_model_client
from .models.artifacts import TargetEnvironment
from .models.execution import ExecutionStatus
from .models.workflow import DecisionOption
from .pipeline.cache import ResponseCache
from .pipeline.step_pipeline import AgentStepPipeline


def _configure_logging(level: str):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def _parse_decisions(values: List[str]):
    """--decide 参数：`node:option` 绑定到节点，单独的 `option` 按出现顺序使用"""
    by_node: Dict[str, List[str]] = {}
    queue: List[str] = []
    for value in values:
        node_id, sep, option_id = value.partition(':')
        if sep:
            by_node.setdefault(node_id.strip(), []).append(option_id.strip())
        else:
            queue.append(value.strip())
    return by_node, queue


class ScriptedDecisions:
    """命令行人工决策：优先使用预置答案，没有时交互式询问"""

    def __init__(self, values: List[str], interactive: bool = True):
        self.by_node, self.queue = _parse_decisions(values)
        self.interactive = interactive

    async def __call__(self, node_id: str, question: str, options: List[DecisionOption]) -> str:
        if self.by_node.get(node_id):
            answer = self.by_node[node_id].pop(0)
        elif self.queue:
            answer = self.queue.pop(0)
        elif self.interactive:
            choices = [o.id for o in options]
            click.echo(f"\n{question}")
            for option in options:
                click.echo(f"  [{option.id}] {option.label or option.id}")
            answer = await asyncio.to_thread(
                click.prompt, "Choose an option", type=click.Choice(choices)
            )
        else:
            raise click.ClickException(f"No answer provided for decision node {node_id}")

        click.echo(f"Decision on {node_id}: {answer}")
        return answer


@click.group()
@click.option('--env-file', type=click.Path(dir_okay=False), default=None, help='Path to a .env file')
@click.option('--log-level', default=None, help='Logging level (defaults to LOG_LEVEL)')
@click.pass_context
def cli(ctx, env_file, log_level):
    """AgentForge multi-agent code generation CLI"""
    try:
        settings = RuntimeSettings.from_env(env_file)
    except AgentForgeError as e:
        raise click.ClickException(e.message)
    _configure_logging(log_level or settings.log_level)
    ctx.obj = settings


@cli.command()
@click.option('--host', default=None, help='Host to bind to (defaults to API_HOST)')
@click.option('--port', default=None, type=int, help='Port to bind to (defaults to API_PORT)')
@click.option('--reload', is_flag=True, help='Enable auto-reload')
@click.pass_obj
def serve(settings: RuntimeSettings, host, port, reload):
    """Start the API server"""
    import uvicorn

    host = host or settings.api_host
    port = port or settings.api_port
    click.echo(f"Starting API server on {host}:{port}")
    uvicorn.run(
        "agentforge.api:app",
        host=host,
        port=port,
        reload=reload
    )


@cli.command()
def templates():
    """List built-in workflow templates"""
    for item in list_templates():
        click.echo(f"{item['id']:<16} {item['node_count']:>2} nodes  {item['description']}")


@cli.command()
@click.argument('workflow_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--dump', is_flag=True, help='Print the normalized graph as JSON')
def validate(workflow_file, dump):
    """Validate a workflow graph file"""
    parser = WorkflowParser()
    try:
        graph = parser.parse_file(Path(workflow_file))
    except AgentForgeError as e:
        click.echo(f"Invalid workflow: {e.message}", err=True)
        for error in e.details.get("errors", []):
            click.echo(f"  - {error}", err=True)
        raise SystemExit(1)

    _, warnings = graph.validate()
    click.echo(f"Workflow '{graph.name or graph.id}' is valid: {len(graph.nodes)} nodes, {len(graph.edges)} edges")
    for warning in warnings:
        click.echo(f"  warning: {warning}")
    if dump:
        click.echo(json.dumps(parser.dump(graph), indent=2, ensure_ascii=False))


@cli.command()
@click.option('--input', '-i', 'input_text', required=True, help='The user request')
@click.option('--template', '-t', default=None, help='Built-in template name')
@click.option('--file', '-f', 'workflow_file', type=click.Path(exists=True, dir_okay=False),
              default=None, help='Workflow graph file (YAML or JSON)')
@click.option('--provider', type=click.Choice(SUPPORTED_PROVIDERS), default=None,
              help='Model provider for every step')
@click.option('--model', default=None, help='Model id for every step')
@click.option('--target', type=click.Choice([t.value for t in TargetEnvironment]), default=None,
              help='Target runtime environment')
@click.option('--strict', is_flag=True, help='Fail when generated code stays invalid after correction')
@click.option('--decide', '-d', multiple=True,
              help='Decision answer, either OPTION (used in order) or NODE:OPTION')
@click.option('--no-input', 'no_input', is_flag=True, help='Never prompt for decisions')
@click.option('--mock-response', multiple=True, help='Scripted model response (implies --provider mock)')
@click.option('--output-dir', '-o', type=click.Path(file_okay=False), default=None,
              help='Write generated artifacts to this directory')
@click.pass_obj
def run(settings: RuntimeSettings, input_text, template, workflow_file, provider, model, target,
        strict, decide, no_input, mock_response, output_dir):
    """Run a workflow from a template or a graph file"""
    if (template is None) == (workflow_file is None):
        raise click.UsageError("Provide exactly one of --template or --file")

    try:
        graph = get_template(template) if template else WorkflowParser().parse_file(Path(workflow_file))
    except AgentForgeError as e:
        raise click.ClickException(e.message)

    if mock_response:
        provider = "mock"
    if provider or model:
        settings = settings.with_provider(provider, model)
    if target:
        settings = dataclasses.replace(settings, target_environment=TargetEnvironment(target))

    decisions = ScriptedDecisions(list(decide), interactive=not no_input)
    state, store = asyncio.run(_execute(
        settings, graph, input_text, decisions, strict, list(mock_response) or None
    ))

    for node_id, output in state.node_outputs.items():
        click.echo(f"\n=== {node_id} ===")
        click.echo(output)

    if output_dir and store.list():
        root = Path(output_dir)
        for artifact in store.list():
            destination = root / artifact.path
            destination.parent.mkdir(parents=True, exist_ok=True)
            destination.write_text(artifact.content, encoding='utf-8')
        click.echo(f"\nWrote {len(store.list())} file(s) to {root}")

    stats = state.statistics(len(graph.nodes))
    click.echo(
        f"\nSteps: {stats['successful_nodes']} succeeded, {stats['failed_nodes']} failed "
        f"in {stats['total_duration']:.1f}s ({stats['progress']:.0f}% of nodes visited)"
    )
    click.echo(f"\nStatus: {state.status.value}")
    if state.status == ExecutionStatus.ERROR:
        raise click.ClickException(state.last_error or "Workflow failed")


async def _execute(settings: RuntimeSettings, graph, input_text: str, decisions,
                   strict: bool, mock_responses: Optional[List[str]]):
    model_client = build_model_client(settings, mock_responses=mock_responses)
    store = InMemoryArtifactStore()
    pipeline = AgentStepPipeline(
        model_client,
        settings=settings,
        cache=ResponseCache(settings.cache_ttl_seconds, settings.cache_max_entries),
        artifact_store=store,
        strict=strict or None
    )

    def on_log(message: str, level: str):
        if level in ("warning", "error"):
            click.echo(f"[{level}] {message}", err=True)
        else:
            click.echo(f"- {message}")

    executor = WorkflowGraphExecutor(
        graph,
        on_agent_execute=pipeline.as_agent_callback(),
        on_human_decision=decisions,
        on_log=on_log
    )
    state = await executor.start(input_text)
    return state, store


def main():
    """Main entry point"""
    cli()


if __name__ == '__main__':
    main()
