"""Stage output parsers: raw toolchain output -> diagnostics + StageArtifact.

Parsers take ``(StageContext, SandboxResult)`` and return a ParsedStage.
They raise ParseFailureError when output cannot be interpreted; the adapter
turns that into a failed StageRecord.
"""

from compilerhub.parsers.common import ParsedStage, UnitCollector
from compilerhub.parsers.diagnostics import has_errors, parse_diagnostics

__all__ = [
    "ParsedStage",
    "UnitCollector",
    "has_errors",
    "parse_diagnostics",
]
