"""
Installation report — final status, versions and artifact paths.

Written as JSON next to the command ledger after every run (successful
or not).  Writes are atomic (temp file, then rename) so a crashed run
never leaves a truncated report.  ``--resume`` reads it back to skip
steps that already succeeded.
"""

from __future__ import annotations

import json
import logging
import tempfile
from pathlib import Path

from oqs_installer.core.models.pipeline import PipelineRun, StepStatus

logger = logging.getLogger(__name__)


def write_report(run: PipelineRun, path: Path) -> Path:
    """Serialise a pipeline run to ``path`` atomically."""
    path.parent.mkdir(parents=True, exist_ok=True)
    content = json.dumps(run.model_dump(mode="json"), indent=2, ensure_ascii=False) + "\n"

    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=".report_", suffix=".tmp")
    tmp = Path(tmp_path)
    try:
        with open(fd, "w", encoding="utf-8") as f:
            f.write(content)
        tmp.replace(path)
    except Exception:
        tmp.unlink(missing_ok=True)
        raise

    logger.debug("Installation report written to %s", path)
    return path


def load_report(path: Path) -> PipelineRun | None:
    """Read a previous report; None when missing or unreadable."""
    if not path.is_file():
        return None
    try:
        return PipelineRun.model_validate_json(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning("Cannot read installation report %s: %s", path, e)
        return None


def resumable_steps(previous: PipelineRun | None, pipeline_name: str) -> set[str]:
    """Steps that succeeded in the previous run of the same pipeline."""
    if previous is None or previous.pipeline != pipeline_name:
        return set()
    return {s.name for s in previous.steps if s.status == StepStatus.SUCCEEDED}


def format_summary(run: PipelineRun, report_path: Path | None = None) -> list[str]:
    """Human-readable lines describing a finished run."""
    lines = [f"Run {run.run_id}: {run.status.value}"]

    for step in run.steps:
        marker = {
            StepStatus.SUCCEEDED: "✓",
            StepStatus.FAILED: "✗",
            StepStatus.ROLLED_BACK: "↺",
            StepStatus.RUNNING: "…",
        }.get(step.status, "·")
        suffix = " (resumed)" if step.resumed else ""
        timing = f" {step.duration_ms / 1000:.1f}s" if step.duration_ms else ""
        lines.append(f"  {marker} {step.name}{timing}{suffix}")

    artifacts = run.artifacts
    if artifacts:
        lines.append("")
        lines.append("Artifacts:")
        for key in sorted(artifacts):
            lines.append(f"  {key}: {_describe(artifacts[key])}")

    if run.cleanup_warnings:
        lines.append("")
        lines.append("Cleanup warnings:")
        lines.extend(f"  {w}" for w in run.cleanup_warnings)

    if run.log_file:
        lines.append("")
        lines.append(f"Log file: {run.log_file}")
    if report_path is not None:
        lines.append(f"Report:   {report_path}")
    return lines


def _describe(value: object) -> str:
    if isinstance(value, dict):
        for key in ("path", "install_prefix", "private_key", "unit_path"):
            if key in value:
                extra = value.get("commit") or value.get("version_ref") or ""
                return f"{value[key]}" + (f" ({extra})" if extra else "")
        return json.dumps(value, ensure_ascii=False)
    return str(value)
