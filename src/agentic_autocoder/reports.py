"""Run reports: one JSON file per run under the reports directory."""

import json
from pathlib import Path
from typing import Optional

from agentic_autocoder.constants import DEFAULT_REPORTS_DIR
from agentic_autocoder.session import RunResult


def write_run_report(result: RunResult, output_dir: Optional[Path] = None) -> Path:
    """
    Write a structured run report to disk.

    Report format: JSON with request, status, plan, results, error and timing.
    Filename: {run_id}_{timestamp}.json
    """
    if output_dir is None:
        output_dir = Path(DEFAULT_REPORTS_DIR)
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    end_time = result.end_time or result.start_time
    timestamp = end_time.strftime("%Y%m%d_%H%M%S")
    report_path = output_dir / f"{result.run_id}_{timestamp}.json"

    report_path.write_text(json.dumps(result.to_dict(), indent=2))

    return report_path
