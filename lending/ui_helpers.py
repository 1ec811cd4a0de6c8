import json
import os
from typing import Any, Dict, List, Sequence

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LENDING_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def print_records(records: Sequence[Any], columns: List[str], title: str, empty_message: str) -> None:
    """Print model objects according to the current output mode.

    - plain: one ``col=value`` line per record, or ``empty_message``
    - json: JSON array of the records' ``to_dict()``
    - rich: Rich table limited to ``columns``
    """
    mode = get_output_mode()

    if not records:
        print(empty_message)
        return

    rows = [r.to_dict() for r in records]
    if mode == "json":
        print(json.dumps(rows, ensure_ascii=False))
    elif mode == "rich":
        table = Table(title=title, show_lines=True, header_style="bold cyan")
        for col in columns:
            table.add_column(col.replace("_", " ").title(), no_wrap=(col.endswith("id")))
        for row in rows:
            table.add_row(*("" if row.get(col) is None else str(row.get(col)) for col in columns))
        _console.print(table)
    else:
        for row in rows:
            print(" ".join(f"{col}={row.get(col)}" for col in columns))


def print_record(record: Any, title: str) -> None:
    print_mapping(record.to_dict(), title)


def print_mapping(data: Dict[str, Any], title: str) -> None:
    mode = get_output_mode()

    if mode == "json":
        print(json.dumps(data, ensure_ascii=False, default=str))
    elif mode == "rich":
        content = "\n".join(f"[bold]{k.replace('_', ' ').title()}:[/] {v}" for k, v in data.items())
        _console.print(Panel.fit(content, title=title, border_style="blue"))
    else:
        for key, value in data.items():
            print(f"{key.replace('_', ' ').title()}: {value}")


def print_error(kind: str, message: str) -> None:
    if get_output_mode() == "json":
        print(json.dumps({"kind": kind, "detail": message}, ensure_ascii=False))
    else:
        print(f"Error ({kind}): {message}")
