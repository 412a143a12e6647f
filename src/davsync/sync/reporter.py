"""Sync pass report formatting.

Provides human-readable and machine-readable output for a pass:

- ``format_pass_summary`` -- one-line status message for observers.
- ``format_pass_report`` -- multi-line report for the CLI.
- ``result_to_json`` -- structured dict for scripting.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .models import SyncPassResult


def format_pass_summary(result: SyncPassResult) -> str:
    """Format the status message published at the end of a pass.

    Example::

        Sync complete: 2 uploaded, 1 downloaded, 40 unchanged
        Sync complete: 1 uploaded, 0 downloaded, 3 unchanged, 1 conflicts (saved both versions)
    """
    message = (
        f"Sync complete: {result.uploaded} uploaded, "
        f"{result.downloaded} downloaded, {result.unchanged} unchanged"
    )
    if result.conflicts:
        message += (
            f", {result.conflict_count} conflicts (saved both versions)"
        )
    return message


def format_pass_report(result: SyncPassResult) -> str:
    """Format a complete pass report as human-readable text.

    The conflict section is only included when conflicts occurred.
    """
    lines: list[str] = []

    root = result.remote_root or "/"
    lines.append(f"Sync report for remote folder '{root}'")
    lines.append(f"Started: {result.started_at.isoformat()}")
    if result.completed_at:
        lines.append(f"Completed: {result.completed_at.isoformat()}")
    lines.append("")
    lines.append(format_pass_summary(result))

    if result.conflicts:
        lines.append("")
        lines.append("Conflicts (remote copy saved beside local file):")
        for path in result.conflicts:
            lines.append(f"  {path}")

    return "\n".join(lines)


def result_to_json(result: SyncPassResult) -> dict[str, Any]:
    """Convert a pass result to a JSON-serialisable dict."""
    return {
        "remote_root": result.remote_root,
        "started_at": result.started_at.isoformat(),
        "completed_at": (
            result.completed_at.isoformat() if result.completed_at else None
        ),
        "summary": {
            "uploaded": result.uploaded,
            "downloaded": result.downloaded,
            "unchanged": result.unchanged,
            "conflicts": result.conflict_count,
        },
        "conflicts": list(result.conflicts),
        "message": format_pass_summary(result),
    }
