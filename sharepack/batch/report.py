"""Human-readable output for a finished batch: text report and forum links."""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from sharepack.core.models import BatchResult, WorkItem


@dataclass(frozen=True)
class ItemReportRow:
    name: str
    final_phase: str
    outcome: str
    reason: Optional[str] = None
    url: Optional[str] = None


def build_rows(result: BatchResult) -> List[ItemReportRow]:
    """One row per item: the last phase it reached and how that phase ended."""
    rows = []
    for item in result.items:
        phase = item.last_phase
        outcome = item.outcome(phase) if phase else None
        rows.append(ItemReportRow(
            name=item.name,
            final_phase=phase.value if phase else "none",
            outcome=outcome.status.value if outcome else "pending",
            reason=outcome.reason if outcome else None,
            url=item.final_url,
        ))
    return rows


def format_text_report(result: BatchResult) -> str:
    lines = [f"Batch {'cancelled' if result.cancelled else 'finished'} in {result.elapsed:.1f}s: {result.get_summary()}"]
    for row in build_rows(result):
        line = f"  {row.name}: {row.final_phase} {row.outcome}"
        if row.reason:
            line += f" ({row.reason})"
        if row.url:
            line += f" -> {row.url}"
        lines.append(line)
    warnings = [(item.name, w) for item in result.items for w in item.warnings]
    if warnings:
        lines.append("Warnings:")
        lines.extend(f"  {name}: {warning}" for name, warning in warnings)
    return "\n".join(lines)


def format_version_date(last_updated: int, build_id: Optional[str]) -> str:
    if not last_updated or last_updated <= 0:
        return "Unknown"
    dt = datetime.fromtimestamp(last_updated, tz=timezone.utc)
    return f"{dt:%b %d, %Y - %H:%M:%S} UTC [Build {build_id}]"


def format_forum_link(item: WorkItem, url: str) -> str:
    """BBCode block for one uploaded item; a plain link when there is no build info."""
    if not item.build_id:
        return f"[url={url}]{item.name}[/url]"

    version = format_version_date(item.last_updated, item.build_id)
    depot_lines = [f"{depot} [Manifest {manifest}]" for depot, (manifest, _size) in item.depots.items()]
    depots = "\n".join(depot_lines) if depot_lines else "No depot info"
    return (
        f"[url={url}][color=white][b]{item.name} [{item.platform}] [Branch: {item.branch}] "
        f"(Clean Steam Files)[/b][/color][/url]\n"
        f"[size=85][color=white][b]Version:[/b] [i]{version}[/i][/color][/size]\n\n"
        f"[spoiler=\"[color=white]Depots & Manifests[/color]\"][code=text]{depots}[/code][/spoiler]"
        f"[color=white][b]Uploaded version:[/b] [i]{version}[/i][/color]"
    )


def format_forum_links(result: BatchResult) -> str:
    blocks = [format_forum_link(item, item.final_url) for item in result.items if item.final_url]
    return "\n\n".join(blocks)
