import os
import json
from typing import List, Any, Dict
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()

STATUS_STYLES = {"Active": "green", "Overdue": "red", "Returned": "dim"}

def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode

def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()

def _days_text(view: Any) -> str:
    if view.returned_on:
        return f"{view.elapsed_days}d elapsed"
    if view.remaining_days > 0:
        rest = f"{view.remaining_days}d left"
    elif view.remaining_days == 0:
        rest = "due today"
    else:
        rest = f"{abs(view.remaining_days)}d overdue"
    return f"{view.elapsed_days}d elapsed · {rest}"

def print_loans_result(views: List[Any]) -> None:
    """Print loans in the current output mode.
    - plain: '#id [Status] Title -> Name (due YYYY-MM-DD, ...)' lines, or 'No loans found.'
    - json: JSON array of loan dicts
    - rich: Rich table
    """
    mode = get_output_mode()

    if not views:
        print("No loans found.")
        return

    if mode == "json":
        print(json.dumps([v.to_dict() for v in views], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📚 Loans", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Book", style="white")
        table.add_column("Member", style="white")
        table.add_column("Due", no_wrap=True)
        table.add_column("Status")
        table.add_column("Days")
        for v in views:
            style = STATUS_STYLES.get(v.status.value, "white")
            table.add_row(str(v.id), v.book_title or str(v.book_id), v.user_name or str(v.user_id),
                          v.due_on.isoformat(), f"[{style}]{v.status.value}[/]", _days_text(v))
        _console.print(table)
    else:
        for v in views:
            print(f"#{v.id} [{v.status.value}] {v.book_title or v.book_id} -> {v.user_name or v.user_id} "
                  f"(due {v.due_on.isoformat()}, {_days_text(v)})")

def print_loan_result(view: Any) -> None:
    print_loans_result([view])

def print_summary_result(scope: str, entity_id: int, summary: Dict[str, Any]) -> None:
    """Print a loan summary in the current output mode."""
    mode = get_output_mode()

    if mode == "json":
        print(json.dumps(summary, ensure_ascii=False))
    elif mode == "rich":
        content = (
            f"[bold]Active:[/] {summary['Active']}\n"
            f"[bold]Overdue:[/] {summary['Overdue']}\n"
            f"[bold]Returned:[/] {summary['Returned']}\n"
            f"[bold]Total:[/] {summary['total']}\n"
            f"[bold]Deletable:[/] {'yes' if summary['deletable'] else 'no'}"
        )
        _console.print(Panel.fit(content, title=f"📊 {scope.title()} {entity_id}", border_style="blue"))
    else:
        print(f"Active: {summary['Active']}")
        print(f"Overdue: {summary['Overdue']}")
        print(f"Returned: {summary['Returned']}")
        print(f"Total: {summary['total']}")
        print(f"Deletable: {'yes' if summary['deletable'] else 'no'}")
