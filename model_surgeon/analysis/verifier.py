# model_surgeon/analysis/verifier.py
"""
Whole-file integrity verification of a single container.

Unlike header loading, this maps the entire file so it can hash it and check
that every tensor extent lies inside the data region, that extents do not
overlap, and that together they cover the region without gaps.
"""
from __future__ import annotations

import hashlib
from typing import Iterable, Sequence

from loguru import logger

from model_surgeon.analysis.base import VerificationReport
from model_surgeon.config import MAX_HEADER_BYTES
from model_surgeon.errors import SurgeonError
from model_surgeon.formats.safetensors import ParsedHeader, parse_header_view
from model_surgeon.io.file_reader import LocalFileSource
from model_surgeon.observability import Timer

STAGES = ("sha256", "structure")


class ContainerVerifier:
    """Runs the requested verification stages over one container file."""

    def __init__(self, path: str, *, max_header_bytes: int = MAX_HEADER_BYTES):
        self.path = path
        self.src = LocalFileSource(path)
        self.max_header_bytes = max_header_bytes

    def run(self, stages: Iterable[str] = STAGES) -> VerificationReport:
        """
        Run the selected stages and return the report.

        Args:
            stages: Any of ``"sha256"`` and ``"structure"``.
        """
        stages = list(stages)
        unknown = [s for s in stages if s not in STAGES]
        if unknown:
            raise ValueError(f"Unknown verification stage(s): {', '.join(unknown)}")

        with self.src.map() as mf:
            mv = mf.view
            report = VerificationReport(
                file_path=self.path,
                file_size=mf.size,
                sha256_hex="not_run",
                metadata={},
            )

            if "sha256" in stages:
                with Timer("sha256") as t_hash:
                    report.sha256_hex = hashlib.sha256(mv).hexdigest()
                report.stages_run.append("sha256")
                logger.debug("SHA256 computed in {ms:.2f}ms", ms=t_hash.duration_ms)

            if "structure" in stages:
                with Timer("structure") as t_core:
                    self._check_structure(mv, report)
                report.stages_run.append("structure")
                logger.debug("Structure checks completed in {ms:.2f}ms", ms=t_core.duration_ms)

            return report

    def _check_structure(self, mv: memoryview, report: VerificationReport) -> None:
        file_size = report.file_size
        try:
            header = parse_header_view(
                mv, file_size=file_size, path=self.path, max_header_bytes=self.max_header_bytes
            )
        except SurgeonError as e:
            report.add("structural_integrity:header", False, e.message)
            report.reject("header", e.code, e.message)
            return

        report.metadata.update(
            {
                "header_length": header.header_length,
                "n_tensors": len(header.tensors),
                "data_start": header.data_start,
                "user_metadata": dict(header.metadata),
            }
        )
        report.add(
            "structural_integrity:header",
            True,
            f"header_length={header.header_length}",
            start=0,
            end=header.data_start,
        )
        # the parser already rejects any entry whose extent disagrees with dtype * shape
        report.add(
            "structural_integrity:size_consistency",
            True,
            "Every extent equals element count times dtype size",
        )
        self._check_layout(header, file_size, report)

    def _check_layout(self, header: ParsedHeader, file_size: int, report: VerificationReport) -> None:
        data_start = header.data_start
        entries: Sequence = sorted(
            header.tensors.items(), key=lambda kv: (kv[1].data_offsets[0], kv[1].data_offsets[1])
        )

        ok_bounds = True
        ok_order = True
        gap_bytes = 0
        prev_end = data_start
        for name, record in entries:
            begin, end = record.data_offsets
            abs_b = data_start + begin
            abs_e = data_start + end
            in_file = abs_e <= file_size
            ok_bounds = ok_bounds and in_file
            if abs_b < prev_end:
                ok_order = False
            elif abs_b > prev_end:
                gap_bytes += abs_b - prev_end
            report.add(
                f"tensor_bounds:{name}",
                in_file,
                f"[{abs_b},{abs_e})",
                start=abs_b,
                end=abs_e,
                dtype=record.dtype,
                shape=str(list(record.shape)),
            )
            prev_end = max(prev_end, abs_e)

        report.add("structural_integrity:non_overlapping", ok_order, "Tensor extents do not overlap")
        report.add("structural_integrity:bounds", ok_bounds, "All tensor extents lie within the file")
        if not ok_bounds:
            report.reject("layout", "SHORT_READ", "A tensor extent runs past the end of the file")
        if not ok_order:
            report.reject("layout", "INVALID_OFFSETS", "Tensor extents overlap")

        trailing = file_size - prev_end
        coverage_ok = gap_bytes == 0 and trailing == 0
        if coverage_ok:
            details = "Tensor extents cover the data region exactly."
        else:
            details = f"{gap_bytes} bytes of gaps between tensors, {max(trailing, 0)} trailing bytes."
        report.add(
            "overall_result:data_coverage", coverage_ok, details, gaps=gap_bytes, trailing=max(trailing, 0)
        )
