"""
Command-line interface for flowsim.

Usage:
    flowsim run workflow.json --input '{"amount": 8500}'
    flowsim validate workflow.json
    flowsim info workflow.json
    flowsim variables workflow.json approval_1
"""

import argparse
import asyncio
import json
import sys
from typing import Any

from flowsim.config import SimulatorConfig
from flowsim.graph.errors import GraphStructureError
from flowsim.graph.store import GraphStore
from flowsim.graph.transfer import WorkflowImportError, load_document
from flowsim.observability import configure_logging
from flowsim.schemas.execution import RunResult


def register_commands(subparsers: argparse._SubParsersAction) -> None:
    """Register the workflow commands with the main CLI."""

    run_parser = subparsers.add_parser(
        "run",
        help="Simulate a workflow",
        description="Simulate an exported workflow document against a payload.",
    )
    run_parser.add_argument("workflow", type=str, help="Path to the workflow JSON document")
    run_parser.add_argument(
        "--input",
        "-i",
        type=str,
        help="Input payload as JSON (defaults to the start node's development input)",
    )
    run_parser.add_argument(
        "--json",
        action="store_true",
        help="Print the full run result as JSON",
    )
    run_parser.add_argument(
        "--max-steps",
        type=int,
        help="Step budget for the run",
    )
    run_parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Show simulator logs",
    )
    run_parser.set_defaults(func=cmd_run)

    validate_parser = subparsers.add_parser(
        "validate",
        help="Validate a workflow",
        description="Report structural and configuration problems.",
    )
    validate_parser.add_argument("workflow", type=str, help="Path to the workflow JSON document")
    validate_parser.add_argument("--json", action="store_true", help="Output as JSON")
    validate_parser.set_defaults(func=cmd_validate)

    info_parser = subparsers.add_parser(
        "info",
        help="Show workflow details",
        description="Show nodes, edges and categories of a workflow.",
    )
    info_parser.add_argument("workflow", type=str, help="Path to the workflow JSON document")
    info_parser.add_argument("--json", action="store_true", help="Output as JSON")
    info_parser.set_defaults(func=cmd_info)

    variables_parser = subparsers.add_parser(
        "variables",
        help="List variables a node can reference",
    )
    variables_parser.add_argument("workflow", type=str, help="Path to the workflow JSON document")
    variables_parser.add_argument("node_id", type=str, help="Node to inspect")
    variables_parser.add_argument("--json", action="store_true", help="Output as JSON")
    variables_parser.set_defaults(func=cmd_variables)


def _load_store(path: str, config: SimulatorConfig | None = None) -> GraphStore | None:
    try:
        document = load_document(path)
        store = GraphStore(config=config)
        store.import_document(document)
    except (WorkflowImportError, GraphStructureError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return None
    return store


def summarize(result: RunResult) -> str:
    """One line per log entry, the way the run looked."""
    lines = []
    for entry in result.log:
        marker = "✓" if entry.success else "✗"
        loop = f" [#{entry.loop_index}]" if entry.loop_index is not None else ""
        line = f"  {marker} {entry.node_label} ({entry.node_type}){loop} {entry.duration_ms}ms"
        if entry.error_message:
            line += f" - {entry.error_message}"
        lines.append(line)
        for warning in entry.warnings:
            lines.append(f"      ⚠ {warning}")
    return "\n".join(lines)


def cmd_run(args: argparse.Namespace) -> int:
    """Simulate a workflow document."""
    config = SimulatorConfig()
    if args.max_steps:
        config.max_steps = args.max_steps
    configure_logging(level="INFO" if args.verbose else config.log_level, format="auto")

    payload: Any = None
    if args.input:
        try:
            payload = json.loads(args.input)
        except json.JSONDecodeError as e:
            print(f"Error parsing --input JSON: {e}", file=sys.stderr)
            return 1

    store = _load_store(args.workflow, config)
    if store is None:
        return 1

    result = asyncio.run(store.run_simulation(payload))

    if args.json:
        print(result.model_dump_json(indent=2))
        return 0 if result.success else 1

    print("=" * 60)
    print(f"Run: {result.run_id}")
    print("=" * 60)
    print(summarize(result))
    print("=" * 60)
    status_str = "SUCCESS" if result.success else f"FAILED ({result.status})"
    print(f"Status: {status_str}")
    print(f"Steps executed: {result.steps_executed}")
    if result.error:
        print(f"Error: {result.error}")
    return 0 if result.success else 1


def cmd_validate(args: argparse.Namespace) -> int:
    """Validate a workflow document."""
    store = _load_store(args.workflow)
    if store is None:
        return 1

    report = store.validate_workflow()
    if args.json:
        print(report.model_dump_json(indent=2))
        return 0 if report.valid else 1

    for issue in report.issues:
        where = f" ({issue.node_label})" if issue.node_label else ""
        print(f"  [{issue.severity}] {issue.category}: {issue.message}{where}")
        if issue.suggestion:
            print(f"      → {issue.suggestion}")
    summary = report.summary
    print(
        f"{summary.error_count} error(s), {summary.warning_count} warning(s), "
        f"{summary.info_count} info"
    )
    print("✓ Workflow is valid" if report.valid else "✗ Workflow has errors")
    return 0 if report.valid else 1


def cmd_info(args: argparse.Namespace) -> int:
    """Show workflow details."""
    store = _load_store(args.workflow)
    if store is None:
        return 1

    info = {
        "nodes": [
            {
                "id": n.id,
                "type": str(n.type),
                "label": n.label,
                "parent_id": n.parent_id,
            }
            for n in store.nodes
        ],
        "edges": [
            {
                "id": e.id,
                "source": e.source,
                "target": e.target,
                "source_handle": e.source_handle,
            }
            for e in store.edges
        ],
        "categories": [c.id for c in store.categories],
        "active_category_id": store.active_category_id,
        "global_variables": [v.name for v in store.global_variables],
    }
    if args.json:
        print(json.dumps(info, indent=2))
        return 0

    print(f"Nodes: {len(info['nodes'])}")
    for node in info["nodes"]:
        parent = f" in {node['parent_id']}" if node["parent_id"] else ""
        print(f"  - {node['id']} [{node['type']}] {node['label']}{parent}")
    print(f"Edges: {len(info['edges'])}")
    for edge in info["edges"]:
        handle = f" ({edge['source_handle']})" if edge["source_handle"] else ""
        print(f"  - {edge['source']}{handle} → {edge['target']}")
    print(f"Active category: {info['active_category_id']}")
    return 0


def cmd_variables(args: argparse.Namespace) -> int:
    """List the variables a node can reference."""
    store = _load_store(args.workflow)
    if store is None:
        return 1
    if store.get_node(args.node_id) is None:
        print(f"Error: node '{args.node_id}' not found", file=sys.stderr)
        return 1

    options = store.available_variables(args.node_id)
    if args.json:
        print(json.dumps([o.model_dump() for o in options], indent=2, default=str))
        return 0
    for option in options:
        owner = f" ({option.node_label})" if option.node_label else ""
        print(f"  {{{{{option.path}}}}}  [{option.source}]{owner}")
    return 0


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="flowsim",
        description="flowsim - compose and simulate workflow graphs",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    register_commands(subparsers)

    args = parser.parse_args(argv)
    if hasattr(args, "func"):
        sys.exit(args.func(args))


if __name__ == "__main__":
    main()
