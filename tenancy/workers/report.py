"""Per-job outcome tally shared by the provision, migrate and validate jobs."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

Echo = Callable[[str], None]


@dataclass
class JobReport:
    """Counts plus one line per processed unit.

    Lines are passed to ``echo`` as they are recorded so long jobs show
    progress; the CLI wires ``click.echo`` in, workers leave it unset.
    """

    job: str
    echo: Echo | None = None
    processed: int = 0
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    lines: list[str] = field(default_factory=list)
    errors: list[tuple[str, str]] = field(default_factory=list)
    run_id: int | None = None
    totals: dict[str, int] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.failed == 0

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1

    def note(self, line: str) -> None:
        self.lines.append(line)
        if self.echo is not None:
            self.echo(line)

    def success(self, line: str) -> None:
        self.processed += 1
        self.succeeded += 1
        self.note(line)

    def skip(self, line: str) -> None:
        self.processed += 1
        self.skipped += 1
        self.note(line)

    def failure(self, unit: str, line: str, *errors: str) -> None:
        self.processed += 1
        self.failed += 1
        self.errors.extend((unit, error) for error in errors)
        self.note(line)

    def summary_lines(self) -> list[str]:
        lines = [
            "",
            "=" * 60,
            f"{self.job.upper()} SUMMARY",
            "=" * 60,
            f"Processed: {self.processed}",
            f"Succeeded: {self.succeeded}",
            f"Skipped:   {self.skipped}",
            f"Failed:    {self.failed}",
        ]
        lines.extend(f"{name}: {value}" for name, value in self.totals.items())
        if self.run_id is not None:
            lines.append(f"Run id:    {self.run_id}")
        if self.errors:
            lines.append("")
            lines.append("Errors:")
            lines.extend(f"  {unit}: {error}" for unit, error in self.errors)
        return lines

    def as_dict(self) -> dict:
        """Plain summary, used as the ARQ job result."""
        return {
            "job": self.job,
            "run_id": self.run_id,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "skipped": self.skipped,
            "failed": self.failed,
            "errors": [{"unit": unit, "error": error} for unit, error in self.errors],
            **self.totals,
        }
