"""
Command-line interface for graphrunner.

Usage:
    graphrunner run graph.json --prompt "Summarize https://example.com"
    graphrunner run graph.json --model anthropic/claude-sonnet-4-20250514 --output state.json
    graphrunner run graph.json --from-node summarize --initial state.json
    graphrunner validate graph.json

Input nodes ask their questions on the terminal; press enter to accept
the default shown in brackets.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from graphrunner.config import RunnerConfig
from graphrunner.graph.input_broker import NeededInput, ProvidedInput
from graphrunner.graph.model import Graph
from graphrunner.graph.run_state import NodeStatus, RunState
from graphrunner.observability import configure_logging
from graphrunner.tools.catalog import get_tool_spec


def _load_graph(path: str) -> Graph:
    with open(path, encoding="utf-8") as f:
        return Graph.model_validate(json.load(f))


def _graph_errors(graph: Graph) -> list[str]:
    errors = graph.validate()
    for node in graph.nodes:
        for tool in node.tools:
            tool_type = tool if isinstance(tool, str) else tool.type
            if get_tool_spec(tool_type) is None:
                errors.append(f"Node '{node.id}' uses unsupported tool '{tool_type}'")
    return errors


async def collect_terminal_input(needed: list[NeededInput]) -> list[ProvidedInput]:
    """Ask each pending question on the terminal."""
    provided = []
    for request in needed:
        question = request.prompt or request.name
        suffix = f" [{request.default}]" if request.default not in (None, "") else ""
        answer = await asyncio.to_thread(input, f"[{request.node_id}] {question}{suffix}: ")
        value: Any = answer if answer.strip() else request.default
        provided.append(ProvidedInput.answer(request, value))
    return provided


async def _run_graph(args: argparse.Namespace) -> RunState:
    from graphrunner.llm.activities import ModelStepActivities
    from graphrunner.llm.litellm import LiteLLMImageModel, model_for_node
    from graphrunner.runtime.activities import RetryPolicy
    from graphrunner.runtime.client import GraphWorkflowClient
    from graphrunner.runtime.host import GraphExecutionHost
    from graphrunner.tools.catalog import DEFAULT_IMAGE_MODEL
    from graphrunner.tools.files import FileStore

    config = RunnerConfig()
    if args.model:
        config.model = args.model

    graph = _load_graph(args.graph)
    initial = None
    if args.initial:
        initial = RunState.model_validate_json(Path(args.initial).read_text(encoding="utf-8"))

    activities = ModelStepActivities(
        model=lambda kind, step: model_for_node(
            step.node, config.model, config.generation_args, config.api_key, config.api_base
        ),
        image_model=LiteLLMImageModel(config.image_model or DEFAULT_IMAGE_MODEL),
        file_store=FileStore(config.files_root),
    )
    host = GraphExecutionHost(
        activities,
        start_to_close_timeout=config.activity_timeout,
        retry_policy=RetryPolicy(maximum_attempts=config.max_attempts),
    )
    client = GraphWorkflowClient(host, collect_input=collect_terminal_input)
    try:
        return await client.run_workflow(
            graph,
            prompt=args.prompt,
            from_node=args.from_node,
            initial=initial,
        )
    finally:
        await host.shutdown()


def cmd_run(args: argparse.Namespace) -> int:
    if args.from_node and not args.initial:
        print("--from-node requires --initial", file=sys.stderr)
        return 2
    try:
        state = asyncio.run(_run_graph(args))
    except (OSError, ValidationError, json.JSONDecodeError) as e:
        print(f"Cannot load input: {e}", file=sys.stderr)
        return 1

    payload = state.model_dump_json(indent=2)
    if args.output:
        Path(args.output).write_text(payload, encoding="utf-8")
        print(f"Run state written to {args.output}")
    else:
        print(payload)

    if state.error:
        print(f"Run failed: {state.error}", file=sys.stderr)
        return 1
    failed = [nid for nid, status in state.status.items() if status == NodeStatus.ERROR]
    if failed:
        print(f"Failed nodes: {', '.join(failed)}", file=sys.stderr)
        return 1
    return 0


def cmd_validate(args: argparse.Namespace) -> int:
    try:
        graph = _load_graph(args.graph)
    except (OSError, ValidationError, json.JSONDecodeError) as e:
        print(f"Invalid graph file: {e}", file=sys.stderr)
        return 1

    errors = _graph_errors(graph)
    if errors:
        for error in errors:
            print(f"  - {error}")
        return 1
    print(f"OK: {len(graph.nodes)} node(s), {len(graph.edges)} edge(s)")
    return 0


def register_commands(subparsers: argparse._SubParsersAction) -> None:
    run_parser = subparsers.add_parser("run", help="Run a graph to completion")
    run_parser.add_argument("graph", help="Path to a graph JSON file")
    run_parser.add_argument("--prompt", help="User prompt visible to every node")
    run_parser.add_argument("--model", help="Default model (overrides configuration)")
    run_parser.add_argument("--from-node", help="Resume from this node of the --initial state")
    run_parser.add_argument("--initial", help="Run state JSON of the run to resume")
    run_parser.add_argument("--output", "-o", help="Write the final run state here instead of stdout")
    run_parser.set_defaults(func=cmd_run)

    validate_parser = subparsers.add_parser("validate", help="Check a graph file")
    validate_parser.add_argument("graph", help="Path to a graph JSON file")
    validate_parser.set_defaults(func=cmd_validate)


def main():
    parser = argparse.ArgumentParser(
        prog="graphrunner",
        description="Run LLM node graphs",
    )
    parser.add_argument("--log-level", default="WARNING", help="Log level (default: WARNING)")
    parser.add_argument(
        "--log-format",
        default="auto",
        choices=["auto", "json", "human"],
        help="Log output format",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    register_commands(subparsers)

    args = parser.parse_args()
    configure_logging(level=args.log_level.upper(), format=args.log_format)

    if hasattr(args, "func"):
        sys.exit(args.func(args))


if __name__ == "__main__":
    main()
