"""Per-unit build status table and the error log written when a unit failed."""

from datetime import datetime, timezone
from pathlib import Path
import time
import traceback

import click
from attrs import define, field
from attrs.validators import in_

from .models import BuildFlavor

STEPS = ("generate", "build", "compose", "verify")
STATUSES = ("success", "failed", "skipped", "warning")

STATUS_ICONS = {
    "success": "✅",
    "failed": "❌",
    "skipped": "⏭️ ",
    "warning": "⚠️ ",
}


@define(slots=True)
class UnitStatus:
    package: str
    product: str
    flavor: BuildFlavor
    generate: str = field(default="skipped", validator=in_(STATUSES))
    build: str = field(default="skipped", validator=in_(STATUSES))
    compose: str = field(default="skipped", validator=in_(STATUSES))
    verify: str = field(default="skipped", validator=in_(STATUSES))

    @property
    def label(self) -> str:
        if self.package == self.product:
            return f"{self.package} [{self.flavor.value}]"
        return f"{self.package}/{self.product} [{self.flavor.value}]"

    @property
    def failed(self) -> bool:
        return any(getattr(self, step) == "failed" for step in STEPS)

    @property
    def has_warning(self) -> bool:
        return any(getattr(self, step) == "warning" for step in STEPS)


@define(frozen=True, slots=True)
class UnitError:
    package: str
    product: str
    flavor: BuildFlavor
    step: str = field(validator=in_(STEPS))
    error: BaseException
    occurred_at: datetime = field(factory=lambda: datetime.now(timezone.utc))


def format_duration(seconds: float) -> str:
    whole = int(seconds)
    hours, remainder = divmod(whole, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    if minutes:
        return f"{minutes}m {secs}s"
    if secs:
        return f"{secs}s"
    return f"{int(seconds * 1000)}ms"


@define(slots=True)
class BuildSummary:
    units: list[UnitStatus] = field(factory=list)
    errors: list[UnitError] = field(factory=list)
    started: float = field(factory=time.monotonic)

    def add_unit(self, package: str, product: str, flavor: BuildFlavor) -> UnitStatus:
        status = UnitStatus(package=package, product=product, flavor=flavor)
        self.units.append(status)
        return status

    def record_failure(self, status: UnitStatus, step: str, error: BaseException) -> None:
        setattr(status, step, "failed")
        self.errors.append(
            UnitError(
                package=status.package,
                product=status.product,
                flavor=status.flavor,
                step=step,
                error=error,
            )
        )

    def unit(self, package: str, product: str, flavor: BuildFlavor) -> UnitStatus | None:
        return next(
            (
                u
                for u in self.units
                if (u.package, u.product, u.flavor) == (package, product, flavor)
            ),
            None,
        )

    @property
    def failed(self) -> bool:
        return bool(self.errors) or any(u.failed for u in self.units)

    @property
    def exit_code(self) -> int:
        return 1 if self.failed else 0

    def print_table(self) -> None:
        if not self.units:
            return
        click.echo("\n📊 Build Summary:")
        click.echo("─" * 80)
        for unit in self.units:
            icons = {step: STATUS_ICONS[getattr(unit, step)] for step in STEPS}
            click.echo(
                f"{click.style(unit.label, fg='cyan')}: "
                f"Gen {icons['generate']} | Build {icons['build']} | "
                f"Compose {icons['compose']} | Verify {icons['verify']}"
            )

        failed = sum(1 for u in self.units if u.failed)
        warnings = sum(1 for u in self.units if u.has_warning and not u.failed)
        successful = len(self.units) - failed
        click.echo("─" * 80)
        parts = [
            f"Total: {len(self.units)}",
            click.style(f"✅ {successful} successful", fg="green"),
        ]
        if warnings:
            parts.append(click.style(f"⚠️  {warnings} with warnings", fg="yellow"))
        if failed:
            parts.append(click.style(f"❌ {failed} failed", fg="red"))
        parts.append(
            click.style(
                f"⏱️  {format_duration(time.monotonic() - self.started)}", fg="blue"
            )
        )
        click.echo(" | ".join(parts))

    def write_error_log(self, directory: Path) -> Path | None:
        """Writes `prebuild-errors-<timestamp>.log`; nothing is written without errors."""
        if not self.errors:
            return None
        now = datetime.now(timezone.utc)
        directory.mkdir(parents=True, exist_ok=True)
        log_path = directory / f"prebuild-errors-{now.strftime('%Y-%m-%dT%H-%M-%S-%f')}.log"

        lines = [
            "Prebuild Errors Log",
            f"Generated: {now.isoformat()}",
            f"Total Errors: {len(self.errors)}",
            "=" * 80,
        ]
        for unit_error in self.errors:
            stack = "".join(
                traceback.format_exception(
                    type(unit_error.error), unit_error.error, unit_error.error.__traceback__
                )
            )
            lines.extend(
                [
                    "",
                    f"Package: {unit_error.package}",
                    f"Product: {unit_error.product}",
                    f"Flavor: {unit_error.flavor.value}",
                    f"Step: {unit_error.step}",
                    f"Time: {unit_error.occurred_at.isoformat()}",
                    "-" * 80,
                    f"Error: {unit_error.error}",
                    "",
                    "Stack trace:",
                    stack.rstrip(),
                    "=" * 80,
                ]
            )
        log_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return log_path
