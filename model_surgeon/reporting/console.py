# model_surgeon/reporting/console.py
"""
Console rendering for trees, alignments, diffs and verification reports.
"""
from __future__ import annotations

from collections import defaultdict
from typing import Dict, Iterable, List, Optional

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.tree import Tree

from model_surgeon.analysis.alignment import (
    AlignedComponent,
    AlignmentStatus,
    sort_components,
    summarize_alignment,
)
from model_surgeon.analysis.base import Finding, VerificationReport
from model_surgeon.analysis.diff import DiffMetrics
from model_surgeon.analysis.lora import LoraAdapterMap
from model_surgeon.analysis.tree import ArchitectureNode, NodeKind

console = Console()

PASS = "[green]PASS[/green]"
FAIL = "[bold red]FAIL[/bold red]"

_STATUS_STYLE = {
    AlignmentStatus.MATCHED: "[green]matched[/green]",
    AlignmentStatus.ONLY_A: "[yellow]only A[/yellow]",
    AlignmentStatus.ONLY_B: "[cyan]only B[/cyan]",
}


def _fmt_shape(shape: Iterable[int]) -> str:
    return "[" + ", ".join(str(d) for d in shape) + "]"


def _node_label(node: ArchitectureNode) -> str:
    if node.kind is NodeKind.PARAMETER:
        info = node.tensor_info
        label = f"[cyan]{escape(node.name)}[/cyan] [yellow]{info.dtype}[/yellow] {_fmt_shape(info.shape)}"
    elif node.kind is NodeKind.BLOCK:
        label = f"[bold]{escape(node.name)}[/bold]"
    else:
        label = escape(node.name)
    if node.adapters:
        names = ", ".join(sorted(node.adapters))
        label += f" [magenta](LoRA: {names})[/magenta]"
    return label


def render_tree(tree: ArchitectureNode, *, max_depth: Optional[int] = None) -> None:
    """Print the architecture tree; ``max_depth`` collapses deeper levels."""
    root = Tree(f"[bold magenta]{tree.name}[/bold magenta]")
    stack = [(tree, root, 0)]
    while stack:
        node, branch, depth = stack.pop()
        if max_depth is not None and depth >= max_depth:
            if node.children:
                branch.add(f"[dim]… {len(node.children)} children[/dim]")
            continue
        for child in node.children:
            stack.append((child, branch.add(_node_label(child)), depth + 1))
    console.print(root)


def render_lora_map(lora_map: LoraAdapterMap) -> None:
    if not lora_map:
        return
    t = Table(title="LoRA Adapters", box=box.ROUNDED, title_style="bold magenta")
    t.add_column("Module", style="cyan", no_wrap=True)
    t.add_column("Adapter")
    t.add_column("A shape", justify="right")
    t.add_column("B shape", justify="right")
    t.add_column("Rank", justify="right")
    t.add_column("Alpha", justify="right")
    t.add_column("Scale", justify="right")
    for module in sorted(lora_map):
        for pair in lora_map[module]:
            t.add_row(
                module,
                pair.adapter_name,
                _fmt_shape(pair.a_shape),
                _fmt_shape(pair.b_shape),
                "?" if pair.rank is None else str(pair.rank),
                "?" if pair.alpha is None else f"{pair.alpha:g}",
                "?" if pair.scale is None else f"{pair.scale:g}",
            )
    console.print(t)


def render_model_summary(file_path: str, tensor_count: int, tree: ArchitectureNode,
                         lora_map: LoraAdapterMap, parameter_count: int) -> None:
    t = Table(title="Model Surgeon Summary", box=box.SIMPLE_HEAVY)
    t.add_column("Field", style="bold")
    t.add_column("Value")
    t.add_row("Path", file_path)
    t.add_row("Tensors", str(tensor_count))
    t.add_row("Parameters", f"{parameter_count:,}")
    t.add_row("Top-level components", ", ".join(c.name for c in tree.children))
    t.add_row("LoRA modules", str(len(lora_map)))
    console.print(t)


def _fmt_metric(value: Optional[float], fmt: str = ".6f") -> str:
    return "-" if value is None else format(value, fmt)


def render_alignment(components: List[AlignedComponent]) -> None:
    """Alignment table with eager diff metrics where they were computed."""
    t = Table(title="Architecture Alignment", box=box.ROUNDED, title_style="bold magenta")
    t.add_column("Component", style="cyan", no_wrap=True)
    t.add_column("Status", justify="center")
    t.add_column("Shape", justify="center")
    t.add_column("Cosine", justify="right")
    t.add_column("L2", justify="right")
    t.add_column("Max |Δ|", justify="right")
    for c in sort_components(components):
        m = c.diff_metrics
        shape = "" if c.shape_mismatch is None else ("[bold red]mismatch[/bold red]" if c.shape_mismatch else "ok")
        t.add_row(
            escape(c.path),
            _STATUS_STYLE[c.status],
            shape,
            _fmt_metric(m.cosine_similarity if m else None),
            _fmt_metric(m.l2_norm_diff if m else None, ".4g"),
            _fmt_metric(m.max_abs_diff if m else None, ".4g"),
        )
    console.print(t)

    summary = summarize_alignment(components)
    console.print(
        f"matched={summary['matched']}  only A={summary['onlyA']}  "
        f"only B={summary['onlyB']}  shape mismatches={summary['shapeMismatch']}"
    )


def render_tensor_diff(path: str, metrics: DiffMetrics, preview_a: List[float],
                       preview_b: List[float], shape) -> None:
    t = Table(title=f"Tensor Diff: {path}", box=box.ROUNDED, title_style="bold magenta")
    t.add_column("Metric", style="bold")
    t.add_column("Value", justify="right")
    t.add_row("Shape", _fmt_shape(shape))
    t.add_row("Cosine similarity", f"{metrics.cosine_similarity:.6f}")
    t.add_row("L2 norm of difference", f"{metrics.l2_norm_diff:.6g}")
    t.add_row("Max |Δ|", f"{metrics.max_abs_diff:.6g}")
    t.add_row("Mean |Δ|", f"{metrics.mean_abs_diff:.6g}")
    console.print(t)

    if preview_a or preview_b:
        p = Table(title="Preview", box=box.SIMPLE, show_lines=False)
        p.add_column("#", justify="right")
        p.add_column("A", justify="right")
        p.add_column("B", justify="right")
        for i in range(max(len(preview_a), len(preview_b))):
            a = f"{preview_a[i]:.6g}" if i < len(preview_a) else ""
            b = f"{preview_b[i]:.6g}" if i < len(preview_b) else ""
            p.add_row(str(i), a, b)
        console.print(p)


# --- verification ---------------------------------------------------------------


def _render_tensor_bounds_table(title: str, findings: List[Finding]) -> None:
    table = Table(title=title, box=box.ROUNDED, show_lines=False, title_style="bold magenta")
    table.add_column("Status", justify="center", width=8)
    table.add_column("Tensor Name", style="cyan", no_wrap=True)
    table.add_column("Start", justify="right")
    table.add_column("End", justify="right")
    table.add_column("Dtype", style="yellow")
    table.add_column("Shape", style="green")
    for f in sorted(findings, key=lambda f: f.context.get("start", 0)):
        ctx = f.context
        table.add_row(
            PASS if f.ok else FAIL,
            f.name.split(":", 1)[1],
            str(ctx.get("start", "N/A")),
            str(ctx.get("end", "N/A")),
            ctx.get("dtype", "N/A"),
            ctx.get("shape", "N/A"),
        )
    console.print(table)


def _render_check_table(title: str, findings: List[Finding]) -> None:
    table = Table(title=title, box=box.ROUNDED, show_lines=False, title_style="bold magenta")
    table.add_column("Status", justify="center", width=8)
    table.add_column("Check", style="cyan", no_wrap=True)
    table.add_column("Details")
    for f in findings:
        table.add_row(PASS if f.ok else FAIL, f.name.split(":", 1)[-1].replace("_", " ").title(), f.details)
    console.print(table)


def render_verification(rep: VerificationReport) -> None:
    """Summary, grouped findings and rejection reasons."""
    t = Table(title="Container Verification", box=box.SIMPLE_HEAVY)
    t.add_column("Field", style="bold")
    t.add_column("Value")
    t.add_row("Path", rep.file_path)
    t.add_row("Size (bytes)", str(rep.file_size))
    t.add_row("SHA-256", rep.sha256_hex)
    for k, v in rep.metadata.items():
        t.add_row(k, escape(str(v)))
    t.add_row("Result", PASS if rep.ok else FAIL)
    console.print(t)

    groups: Dict[str, List[Finding]] = defaultdict(list)
    for f in rep.findings:
        groups[f.group].append(f)
    for group in ("structural_integrity", "tensor_bounds", "overall_result"):
        if group not in groups:
            continue
        title = group.replace("_", " ").title()
        if group == "tensor_bounds":
            _render_tensor_bounds_table(title, groups[group])
        else:
            _render_check_table(title, groups[group])

    if rep.rejections:
        rt = Table(title="Rejection Reasons", box=box.SIMPLE_HEAVY)
        rt.add_column("Stage", style="bold")
        rt.add_column("Code")
        rt.add_column("Reason")
        for r in rep.rejections:
            rt.add_row(r.stage, r.code, r.reason)
        console.print(rt)
