"""Human-readable run report rendered from the terminal event stream."""

import os
from collections import defaultdict
from datetime import timedelta
from pathlib import Path

from jinja2 import Environment, FileSystemLoader

from .scheduler import RunSummary, TaskEvent


class RunReport:
    """Collect terminal events and render a status and timing report.

    Args:
        template_name: Jinja2 template file under ``humgen/template``
    """

    def __init__(self, template_name: str = "run_summary.txt.j2") -> None:
        self.template_name = template_name
        self.events: list[TaskEvent] = []

    def __call__(self, event: TaskEvent) -> None:
        self.events.append(event)

    def stage_timing(self) -> list[dict[str, object]]:
        """Aggregate elapsed time per stage, executed instances only."""
        elapsed: dict[str, list[timedelta]] = defaultdict(list)
        for e in self.events:
            if e.elapsed is not None and not e.cached:
                elapsed[e.node_name].append(e.elapsed)
        return [
            {
                "stage": k,
                "n": len(v),
                "total": sum(v, timedelta()),
                "max": max(v),
            }
            for k, v in elapsed.items()
        ]

    def render(self, summary: RunSummary) -> str:
        """Render the report for a finished run."""
        table = summary.status_table()
        stages = list(dict.fromkeys(s for row in table.values() for s in row))
        return (
            Environment(
                loader=FileSystemLoader(
                    str(Path(__file__).parent.parent.joinpath("template")),
                    encoding="utf8",
                ),
                trim_blocks=True,
                lstrip_blocks=True,
            )
            .get_template(self.template_name)
            .render({
                "succeeded": summary.succeeded,
                "aborted": summary.aborted,
                "n_executed": summary.n_executed,
                "n_cached": summary.n_cached,
                "stages": stages,
                "table": table,
                "timing": self.stage_timing(),
                "failures": [
                    (e.key or "-", e.node_name, e.error)
                    for e in self.events
                    if e.error
                ],
                "starved": summary.starved,
            })
            + os.linesep
        )

    def write(self, summary: RunSummary, path: str | os.PathLike[str]) -> Path:
        p = Path(path).resolve()
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(self.render(summary), encoding="utf-8")
        return p
