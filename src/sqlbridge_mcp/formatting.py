"""Shared formatting utilities for MCP tool responses.

JSON is the default response format; these helpers render the same
payloads as markdown for human readers.
"""

import json
from typing import Any

# Cells wider than this are cut in markdown tables
MAX_CELL_WIDTH = 80

# =============================================================================
# Markdown Formatting Utilities
# =============================================================================


def _cell(value: Any) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, dict | list):
        text = json.dumps(value, default=str)
    else:
        text = str(value)
    text = text.replace("|", "\\|").replace("\n", " ")
    if len(text) > MAX_CELL_WIDTH:
        text = text[: MAX_CELL_WIDTH - 3] + "..."
    return text


def format_table_markdown(columns: list[str], rows: list[dict[str, Any]]) -> str:
    """Render rows as a markdown table; columns keep their given order."""
    if not columns:
        return "_No columns_"
    lines = [
        "| " + " | ".join(_cell(col) for col in columns) + " |",
        "| " + " | ".join("---" for _ in columns) + " |",
    ]
    for row in rows:
        lines.append("| " + " | ".join(_cell(row.get(col)) for col in columns) + " |")
    return "\n".join(lines)


def format_records_markdown(title: str, records: list[dict[str, Any]]) -> str:
    """Format introspection records (schemas, tables, columns, ...) as markdown.

    Args:
        title: Section heading, e.g. "Tables in public"
        records: Normalized records; all share the same keys

    Returns:
        Markdown heading plus a table, or a short note when empty
    """
    if not records:
        return f"## {title}\n\nNone found"
    return f"## {title} ({len(records)})\n\n" + format_table_markdown(
        list(records[0].keys()), records
    )


def format_outcome_markdown(outcome: dict[str, Any]) -> str:
    """Format an execution outcome as markdown.

    Args:
        outcome: Outcome dict (as returned by Outcome.to_dict())

    Returns:
        Status header, one section per statement, and the error if any
    """
    status = "Succeeded" if outcome["success"] else "Failed"
    lines = [
        f"# Query {status}",
        "",
        f"- **Statements**: {outcome['executed_statements']}/{outcome['total_statements']}",
        f"- **Transaction**: {outcome['transaction']}",
        f"- **Attempts**: {outcome['attempts']}",
        f"- **Time**: {outcome['execution_time_ms']:.1f} ms",
    ]
    if outcome.get("partial"):
        lines.append("- **Partial**: earlier statements were applied and not rolled back")

    for number, result in enumerate(outcome["results"], 1):
        lines.append("")
        lines.append(f"## Statement {number} ({result['kind']})")
        lines.append("")
        lines.append(f"```sql\n{result['statement']}\n```")
        lines.append("")
        if result["columns"]:
            lines.append(format_table_markdown(result["columns"], result["rows"]))
            lines.append("")
            summary = f"{result['row_count']} row(s)"
            if result["truncated"]:
                summary += f", truncated at {result['applied_limit']}"
            lines.append(summary)
        else:
            lines.append(f"{result['affected_rows']} row(s) affected")

    error = outcome.get("error")
    if error:
        lines.append("")
        lines.append(format_error_markdown(error))

    return "\n".join(lines)


def format_error_markdown(error: dict[str, Any]) -> str:
    """Format an error object ({kind, message, retryable, ...}) as markdown."""
    lines = [
        f"## Error: {error['kind']}",
        "",
        error["message"],
        "",
        f"- **Retryable**: {'yes' if error.get('retryable') else 'no'}",
    ]
    if error.get("statement_index") is not None:
        lines.append(f"- **Statement**: #{error['statement_index'] + 1}")
    if error.get("statement"):
        lines.append("")
        lines.append(f"```sql\n{error['statement']}\n```")
    return "\n".join(lines)


def format_pool_stats_markdown(stats: dict[str, Any]) -> str:
    """Format pool health snapshot as markdown."""
    return "\n".join(
        [
            f"## Pool: {stats['engine']} ({stats['health']})",
            "",
            f"- **DSN**: {stats['dsn']}",
            f"- **Connections**: {stats['connections']} "
            f"({stats['active_connections']} active, {stats['idle_connections']} idle)",
            f"- **Limits**: min {stats['min_connections']}, max {stats['max_connections']}",
            f"- **Waiting**: {stats['wait_queue_size']}",
            f"- **Utilization**: {stats['utilization_percent']}%",
        ]
    )
