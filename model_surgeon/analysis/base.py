# model_surgeon/analysis/base.py
"""
Verification report model: individual findings plus the reasons a container was rejected.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List


@dataclass
class Finding:
    """One integrity check. ``name`` is ``group:subject`` (e.g. ``tensor_bounds:w``)."""

    name: str
    ok: bool
    details: str = ""
    context: Dict[str, Any] = field(default_factory=dict)

    @property
    def group(self) -> str:
        return self.name.split(":", 1)[0]


@dataclass
class RejectionReason:
    stage: str  # "header", "layout", ...
    code: str
    reason: str


@dataclass
class VerificationReport:
    """Everything ``ContainerVerifier.run`` learned about one file."""

    file_path: str
    file_size: int
    sha256_hex: str
    metadata: Dict[str, Any]
    findings: List[Finding] = field(default_factory=list)
    rejections: List[RejectionReason] = field(default_factory=list)
    stages_run: List[str] = field(default_factory=list)

    def add(self, name: str, ok: bool, details: str = "", **context: Any) -> None:
        self.findings.append(Finding(name=name, ok=ok, details=details, context=context))

    def reject(self, stage: str, code: str, reason: str) -> None:
        self.rejections.append(RejectionReason(stage=stage, code=code, reason=reason))

    def failed(self) -> List[Finding]:
        return [f for f in self.findings if not f.ok]

    @property
    def ok(self) -> bool:
        return not self.rejections and all(f.ok for f in self.findings)
