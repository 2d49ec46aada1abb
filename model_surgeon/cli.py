# model_surgeon/cli.py
"""
cli.py

Rich console CLI:
- inspect: architecture tree and LoRA adapters of a model
- compare: align two models and show eager weight-diff metrics
- diff:    full diff of one tensor between two models
- verify:  whole-file integrity checks of a single container
- edit:    apply surgery operations in order and save the result
- version: show the package version.
"""
from __future__ import annotations

import argparse
import asyncio
import os
from dataclasses import replace
from typing import List, Optional, Tuple

from rich.console import Console
from rich.panel import Panel

from model_surgeon import __version__
from model_surgeon.analysis.tree import count_parameters
from model_surgeon.analysis.verifier import STAGES, ContainerVerifier
from model_surgeon.config import EngineConfig
from model_surgeon.engine.engine import ModelEngine
from model_surgeon.errors import SurgeonError
from model_surgeon.logging import configure_logging
from model_surgeon.reporting import console as reporter
from model_surgeon.reporting.json_reporter import write_json
from model_surgeon.surgery.session import OperationKind, SurgeryOperation

console = Console()


class _OperationAction(argparse.Action):
    """Collects surgery flags into one ordered list on ``namespace.operations``."""

    def __call__(self, parser, namespace, values, option_string=None):
        ops = list(getattr(namespace, "operations", None) or [])
        if isinstance(values, str):
            values = [values]
        ops.append((self.const, list(values)))
        setattr(namespace, "operations", ops)


def _build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--debug", action="store_true", help="Enable debug logging")
    common.add_argument("--json-out", type=str, default=None, help="Write the JSON result to this path")
    common.add_argument("--config", type=str, default=None, help="YAML engine configuration file")
    common.add_argument("--log-file", type=str, default=None, help="Also write logs to this file")

    p = argparse.ArgumentParser(
        prog="msurgeon",
        description="Model Surgeon: inspect, compare and edit SafeTensors models.",
        formatter_class=argparse.RawTextHelpFormatter,
    )
    sub = p.add_subparsers(dest="cmd", title="Available Commands", metavar="<command>")

    sp = sub.add_parser("inspect", parents=[common], help="Show the architecture tree of a model")
    sp.add_argument("path", help="Model file (.safetensors) or sharded index / directory")
    sp.add_argument("--depth", type=int, default=None, help="Collapse the tree below this depth")

    sp = sub.add_parser("compare", parents=[common], help="Align two models and diff matched weights")
    sp.add_argument("model_a")
    sp.add_argument("model_b")

    sp = sub.add_parser("diff", parents=[common], help="Diff one tensor between two models")
    sp.add_argument("model_a")
    sp.add_argument("model_b")
    sp.add_argument("tensor", help="Canonical tensor path, e.g. model.layers.0.mlp.up_proj.weight")

    sp = sub.add_parser("verify", parents=[common], help="Check integrity of a single container file")
    sp.add_argument("path")
    sp.add_argument(
        "--stage",
        nargs="+",
        choices=STAGES,
        metavar="STAGE",
        help=(
            f"Run only specific verification stages. Defaults to all stages.\n"
            f"Available stages: {', '.join(STAGES)}."
        ),
    )

    sp = sub.add_parser(
        "edit",
        parents=[common],
        help="Apply surgery operations (in the order given) and save",
    )
    sp.add_argument("path", help="Model to edit")
    sp.add_argument("output", help="Destination .safetensors file")
    sp.add_argument("--rename", nargs=2, metavar=("TARGET", "NEW_NAME"), action=_OperationAction,
                    const=OperationKind.RENAME_TENSOR, dest="operations")
    sp.add_argument("--remove", metavar="TARGET", action=_OperationAction,
                    const=OperationKind.REMOVE_TENSOR, dest="operations")
    sp.add_argument("--remove-lora", metavar="TARGET", action=_OperationAction,
                    const=OperationKind.REMOVE_LORA_ADAPTER, dest="operations")
    sp.add_argument("--rename-lora", nargs=2, metavar=("TARGET", "NEW_PREFIX"), action=_OperationAction,
                    const=OperationKind.RENAME_LORA_ADAPTER, dest="operations")
    sp.add_argument("--replace", metavar="TARGET", action=_OperationAction,
                    const=OperationKind.REPLACE_TENSOR, dest="operations",
                    help="Swap TARGET's subtree for the one in --replace-from")
    sp.add_argument("--replace-from", metavar="MODEL_B", default=None,
                    help="Source model for --replace")
    sp.add_argument("--no-metadata", action="store_true",
                    help="Do not record the applied operations in __metadata__")

    sub.add_parser("version", help="Show the version of model-surgeon")
    return p


def _load_config(args: argparse.Namespace) -> EngineConfig:
    if args.config:
        return EngineConfig.from_yaml(args.config)
    return EngineConfig()


def _check_paths(*paths: str) -> Optional[str]:
    for path in paths:
        if not os.path.exists(path):
            return path
    return None


def _to_operations(raw: List[Tuple[OperationKind, List[str]]]) -> List[SurgeryOperation]:
    ops = []
    for kind, values in raw:
        if kind in (OperationKind.RENAME_TENSOR, OperationKind.RENAME_LORA_ADAPTER):
            ops.append(SurgeryOperation(kind, values[0], new_name=values[1]))
        elif kind is OperationKind.REPLACE_TENSOR:
            ops.append(SurgeryOperation(kind, values[0], source_model="B"))
        else:
            ops.append(SurgeryOperation(kind, values[0]))
    return ops


async def _inspect(args: argparse.Namespace, config: EngineConfig):
    async with ModelEngine(config) as engine:
        loaded = await engine.open(args.path)
    reporter.render_model_summary(
        loaded.file_path, loaded.tensor_count, loaded.tree, loaded.lora_map, count_parameters(loaded.tree)
    )
    reporter.render_tree(loaded.tree, max_depth=args.depth)
    reporter.render_lora_map(loaded.lora_map)
    return loaded


async def _compare(args: argparse.Namespace, config: EngineConfig):
    async with ModelEngine(config) as engine:
        await engine.open(args.model_a)
        result = await engine.open_comparison(args.model_b)
    reporter.render_alignment(result.aligned_components)
    return result


async def _diff(args: argparse.Namespace, config: EngineConfig):
    # only the requested tensor is decoded
    config = replace(config, diff_element_limit=1)
    async with ModelEngine(config) as engine:
        await engine.open(args.model_a)
        await engine.open_comparison(args.model_b)
        result = await engine.request_tensor_diff(args.tensor)
    reporter.render_tensor_diff(result.path, result.metrics, result.preview_a, result.preview_b, result.shape)
    return result


async def _edit(args: argparse.Namespace, config: EngineConfig, operations: List[SurgeryOperation]):
    async with ModelEngine(config) as engine:
        await engine.open(args.path)
        if args.replace_from:
            await engine.open_comparison(args.replace_from)
        for op in operations:
            res = await engine.perform_surgery(op)
            console.print(
                f"[green]✓[/green] {op.kind.value} [cyan]{op.target_path}[/cyan]"
                f" ({res.pending_changes} pending)"
            )
        return await engine.save(args.output, preserve_metadata=not args.no_metadata)


def main(argv: Optional[list[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    if not args.cmd:
        parser.print_help()
        return 0

    if args.cmd == "version":
        console.print(f"Model Surgeon Version {__version__}")
        return 0

    configure_logging(debug=args.debug, log_file=args.log_file)

    try:
        config = _load_config(args)
        config.validate()
    except (OSError, ValueError) as e:
        console.print(f"[red]Invalid configuration:[/red] {e}")
        return 2

    if args.cmd == "verify":
        missing = _check_paths(args.path)
        if missing:
            console.print(f"[red]File not found:[/red] {missing}")
            return 2
        stages = args.stage or list(STAGES)
        console.print(f"[dim]Running stages: {', '.join(stages)}...[/dim]")
        try:
            rep = ContainerVerifier(args.path, max_header_bytes=config.max_header_bytes).run(stages)
        except OSError as e:
            console.print(f"[red]Error:[/red] {e}")
            return 2
        console.print(
            Panel(
                f"[bold]Result:[/bold] {'[green]OK[/green]' if rep.ok else '[red]FAILED[/red]'}",
                style="bold cyan",
            )
        )
        reporter.render_verification(rep)
        if args.json_out:
            write_json(rep, args.json_out)
            console.print(f"[dim]Wrote JSON report → {args.json_out}[/dim]")
        return 0 if rep.ok else 1

    if args.cmd == "inspect":
        paths = [args.path]
        run = _inspect(args, config)
    elif args.cmd == "compare":
        paths = [args.model_a, args.model_b]
        run = _compare(args, config)
    elif args.cmd == "diff":
        paths = [args.model_a, args.model_b]
        run = _diff(args, config)
    elif args.cmd == "edit":
        operations = _to_operations(getattr(args, "operations", None) or [])
        if not operations:
            console.print("[red]No surgery operations given[/red]")
            return 2
        needs_b = any(op.kind is OperationKind.REPLACE_TENSOR for op in operations)
        if needs_b and not args.replace_from:
            console.print("[red]--replace requires --replace-from MODEL_B[/red]")
            return 2
        paths = [args.path] + ([args.replace_from] if args.replace_from else [])
        run = _edit(args, config, operations)
    else:
        parser.print_help()
        return 1

    missing = _check_paths(*paths)
    if missing:
        run.close()
        console.print(f"[red]File not found:[/red] {missing}")
        return 2

    try:
        result = asyncio.run(run)
    except SurgeonError as e:
        console.print(f"[red]{type(e).__name__}:[/red] {e}")
        return 2
    except OSError as e:
        console.print(f"[red]I/O error:[/red] {e}")
        return 2

    if args.cmd == "edit":
        console.print(
            Panel(
                f"[bold]Saved[/bold] {result.output_path} ({result.bytes_written:,} bytes)",
                style="bold cyan",
            )
        )
    if args.json_out:
        write_json(result, args.json_out)
        console.print(f"[dim]Wrote JSON report → {args.json_out}[/dim]")
    return 0
