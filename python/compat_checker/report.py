"""
Console and Markdown rendering of verification results.

Rendering goes through a rich Console. In Markdown mode colors are turned
off, tables use the Markdown box style, and per-version details are wrapped
in collapsible ``<details>`` blocks for pasting into issues.
"""

import html
from typing import TextIO

from rich import box
from rich.console import Console
from rich.table import Table
from rich.text import Text

from .orchestrator import PackageReport
from .verify import VerifyResult, VerifyStatus

STATUS_STYLES = {
    VerifyStatus.OK: "green",
    VerifyStatus.WARN: "yellow",
    VerifyStatus.FAIL: "bold red",
}

STATUS_EMOJI = {
    VerifyStatus.OK: ":white_check_mark:",
    VerifyStatus.WARN: ":warning:",
    VerifyStatus.FAIL: ":x:",
}


class Printer:
    """Writes headings, lists and tables to a stream.

    Args:
        stream: Output stream (defaults to stdout)
        markdown: Emit Markdown instead of colored terminal output
    """

    def __init__(self, stream: TextIO | None = None, *, markdown: bool = False):
        self.markdown = markdown
        self.console = Console(
            file=stream,
            color_system=None if markdown else "auto",
            highlight=False,
            emoji=False,
            soft_wrap=markdown,
            width=200 if markdown else None,
        )
        self._last: str | None = None

    def _break(self, element: str) -> None:
        if element == "li" and self._last == "li":
            return
        if self._last is not None:
            self.console.print()
        self._last = element

    def heading(self, text: str, level: int = 1) -> None:
        self._break(f"h{level}")
        if self.markdown:
            self.console.print(Text(f"{'#' * level} {text}"))
        else:
            self.console.print(Text(text, style="bold"))

    def body(self, text: str, style: str | None = None) -> None:
        self._break("body")
        self.console.print(Text(text, style=style or ""))

    def li(self, text: str, indent: int = 0, style: str | None = None) -> None:
        self._break("li")
        self.console.print(Text(f"{'    ' * indent} * {text}", style=style or ""))

    def hr(self) -> None:
        self._break("hr")
        self.console.print(Text("---"))

    def begin_details(self, summary: str) -> None:
        if not self.markdown:
            return
        self._break("details")
        self.console.print(
            Text(f"<details>\n<summary>{html.escape(summary)}</summary>")
        )

    def end_details(self) -> None:
        if not self.markdown:
            return
        self.console.print(Text("\n</details>"))

    def status_cell(self, status: VerifyStatus) -> Text:
        if self.markdown:
            return Text(f"{STATUS_EMOJI[status]} {status.value}")
        return Text(status.value, style=STATUS_STYLES[status])

    def table(self, table: Table) -> None:
        self._break("table")
        if self.markdown:
            table.box = box.MARKDOWN
            table.show_edge = True
        self.console.print(table)


def status_table(printer: Printer, report: PackageReport) -> Table:
    """Binaries x versions status matrix, important binaries in bold."""
    table = Table(box=box.SQUARE, header_style="bold", border_style="grey50")
    table.add_column("")
    for version in report.versions:
        table.add_column(version)
    for row in report.ordered_rows():
        label = Text(f"{row.role.value}: {row.name}")
        if row.important and not printer.markdown:
            label.stylize("bold")
        elif row.important:
            label = Text(f"**{label.plain}**")
        cells = [printer.status_cell(row.status(v)) for v in report.versions]
        table.add_row(label, *cells)
    return table


def print_result_details(
    printer: Printer, result: VerifyResult, indent: int = 0
) -> None:
    """List the problems of one cell."""
    if result.error is not None:
        printer.li(f"Error: {result.error}", indent, style="red")
    for lib in result.missing_libraries:
        printer.li(f"Missing library: {lib}", indent, style="red")
    for ref in result.missing_references:
        printer.li(f"Missing symbol: {ref}", indent, style="red")
    for ref in result.no_version_references:
        printer.li(f"No version info: {ref}", indent, style="yellow")
    for ref in result.indirect_references:
        printer.li(f"Indirectly referencing: {ref}", indent, style="yellow")


def print_package_report(
    printer: Printer, report: PackageReport, *, details: bool = False
) -> None:
    printer.heading(f"Compatibility of {report.entry.label}", 2)
    printer.table(status_table(printer, report))
    if not details:
        return
    for version in report.versions:
        problems = [
            row.results[version]
            for row in report.ordered_rows()
            if row.results[version].status is not VerifyStatus.OK
        ]
        if not problems:
            continue
        printer.begin_details(f"Details for version {version}")
        printer.heading(f"On version {version}", 3)
        for result in problems:
            printer.li(f"{result.binary}: {result.status.value}")
            print_result_details(printer, result, indent=1)
        printer.end_details()


def print_package_summary(printer: Printer, report: PackageReport) -> None:
    """One line per package with the package status on each version."""
    cells = ", ".join(
        f"{v}: {report.version_status(v).value}" for v in report.versions
    )
    printer.li(f"{report.entry.label}: {cells}")
