"""Minimal observation surface for run reports.

Read-only. No model calls, no LangGraph, no interactivity.
"""

import json
from pathlib import Path
from typing import List, Optional

from agentic_autocoder.constants import DEFAULT_REPORTS_DIR


def find_reports(run_id: str, reports_dir: Path) -> List[dict]:
    """Find all run reports for a run_id, most recent first."""
    reports = []

    if not reports_dir.exists():
        return reports

    for f in reports_dir.glob(f"{run_id}_*.json"):
        try:
            data = json.loads(f.read_text())
            data["_report_file"] = str(f)
            reports.append(data)
        except (json.JSONDecodeError, IOError):
            pass

    reports.sort(key=lambda r: r.get("start_time", ""), reverse=True)
    return reports


def format_duration(seconds: float) -> str:
    """Format duration in human-readable form."""
    if seconds < 1:
        return f"{seconds*1000:.0f}ms"
    elif seconds < 60:
        return f"{seconds:.1f}s"
    else:
        mins = int(seconds // 60)
        secs = seconds % 60
        return f"{mins}m {secs:.0f}s"


def print_summary(run_id: str, reports_dir: Optional[Path] = None) -> None:
    """
    Print a human-readable summary of a run.

    Goal: see what was planned, what ran and where it stopped at a glance.
    """
    if reports_dir is None:
        reports_dir = Path(DEFAULT_REPORTS_DIR)

    reports = find_reports(run_id, reports_dir)

    print("=" * 60)
    print(f"RUN SUMMARY: {run_id}")
    print("=" * 60)
    print()

    if not reports:
        print("No run reports found.")
        print()
        print(f"Searched: {reports_dir}")
        return

    latest = reports[0]
    print("LATEST RUN")
    print("-" * 40)
    print(f"  Status:      {latest['status']}")
    print(f"  Duration:    {format_duration(latest.get('duration_seconds') or 0)}")
    print(f"  Time:        {latest['start_time'][:19]}")
    print(f"  Request:     {latest['request'][:60]}")
    print()

    plan = latest.get("plan")
    if plan:
        print("STEPS")
        print("-" * 40)
        icons = {"completed": "✓", "failed": "✗", "in-progress": "…", "pending": "·"}
        for i, step in enumerate(plan["steps"]):
            icon = icons.get(step["status"], "?")
            print(f"  {icon} {i + 1}. {step['description'][:60]}")
        print()

    results = latest.get("results") or []
    if results:
        print(f"OPERATIONS ({len(results)})")
        print("-" * 40)
        for entry in results[:10]:
            icon = "✓" if entry["succeeded"] else "✗"
            print(f"  {icon} {entry['description'][:60]}")
        if len(results) > 10:
            print(f"  ... and {len(results) - 10} more")
        print()

    if latest.get("error"):
        print("  Error:")
        for line in latest["error"].strip().split("\n")[:3]:
            print(f"    {line[:60]}")
        print()

    if len(reports) > 1:
        print("HISTORY")
        print("-" * 40)
        for r in reports[:5]:
            status_icon = "✓" if r["status"] == "SUCCESS" else "✗"
            print(f"    {status_icon} {r['start_time'][:16]} - {r['status']}")
        if len(reports) > 5:
            print(f"    ... and {len(reports) - 5} more")
        print()

    print("VERDICT")
    print("-" * 40)
    if latest["status"] == "SUCCESS":
        print("  ✓ COMPLETE - All steps executed")
    else:
        print("  ✗ FAILED - Run stopped before completing the plan")
    print()
