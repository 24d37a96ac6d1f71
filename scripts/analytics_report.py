"""
Homebrew Analytics Report Formatting

Turns raw (dimension, count) rows from an analytics backend into the ranked
count/percentage tables published on formulae.brew.sh, either as JSON objects
or as a plain text table.
"""

import re
import shutil
from datetime import date, timedelta
from typing import Any, Iterable

# Dimension values with control characters can't be rendered in JSON or text output
INVALID_DIMENSION_RE = re.compile(r"[\x00-\x1f\x7f]")

MACOS_VERSIONS = [
    (re.compile(r"^10\.4$"), "Mac OS X Tiger (10.4)"),
    (re.compile(r"^10\.5$"), "Mac OS X Leopard (10.5)"),
    (re.compile(r"^10\.6$"), "Mac OS X Snow Leopard (10.6)"),
    (re.compile(r"^10\.7$"), "Mac OS X Lion (10.7)"),
    (re.compile(r"^10\.8$"), "OS X Mountain Lion (10.8)"),
    (re.compile(r"^10\.9$"), "OS X Mavericks (10.9)"),
    (re.compile(r"^10\.10$"), "OS X Yosemite (10.10)"),
    (re.compile(r"^10\.11(\.|$)"), "OS X El Capitan (10.11)"),
    (re.compile(r"^10\.12(\.|$)"), "macOS Sierra (10.12)"),
    (re.compile(r"^10\.13(\.|$)"), "macOS High Sierra (10.13)"),
    (re.compile(r"^10\.14(\.|$)"), "macOS Mojave (10.14)"),
    (re.compile(r"^10\.15(\.|$)"), "macOS Catalina (10.15)"),
    # Big Sur reported itself as 10.16 to software built against older SDKs
    (re.compile(r"^(10\.16|11)(\.|$)"), "macOS Big Sur (11)"),
    (re.compile(r"^12(\.|$)"), "macOS Monterey (12)"),
    (re.compile(r"^13(\.|$)"), "macOS Ventura (13)"),
    (re.compile(r"^14(\.|$)"), "macOS Sonoma (14)"),
    (re.compile(r"^15(\.|$)"), "macOS Sequoia (15)"),
    (re.compile(r"^26(\.|$)"), "macOS Tahoe (26)"),
]
NORMALIZED_MACOS_VERSIONS = {name for _, name in MACOS_VERSIONS}

UBUNTU_LTS_RE = re.compile(r"Ubuntu(-Server)? (14|16|18|20|22|24)\.04")
UBUNTU_RE = re.compile(r"Ubuntu(-Server)? (\d+\.\d+)\.\d+ ?(LTS)?$")


class AnalyticsError(Exception):
    """Base class for errors reported to the user."""


class NoDataError(AnalyticsError):
    """A query returned no usable rows."""


def format_count(count: int | str) -> str:
    """Format a count with thousands separators, e.g. 1234567 -> 1,234,567."""
    return f"{int(count):,}"


def formatted_count_to_i(formatted_count: str) -> int:
    return int(formatted_count.replace(",", ""))


def format_percent(percent: float) -> str:
    """Format a percentage with two decimals, dropping a trailing .00."""
    formatted = f"{percent:.2f}"
    if formatted.endswith(".00"):
        formatted = formatted[:-3]
    return formatted


def parse_count(value: Any) -> int:
    """Parse a raw backend count (int, float or numeric string)."""
    if value is None:
        return 0
    if isinstance(value, str):
        value = value.replace(",", "").strip()
        if not value:
            return 0
        return int(float(value)) if "." in value else int(value)
    return int(value)


def format_dimension(dimension: str, key: str) -> str:
    """
    Normalize a dimension value for display.

    Only OS versions are rewritten: macOS version numbers become marketing names
    and Ubuntu point releases collapse into their release. Anything unrecognised
    is returned unchanged.
    """
    dimension = dimension.rstrip("\r\n")
    if key != "os_version":
        return dimension
    if dimension in NORMALIZED_MACOS_VERSIONS:
        return dimension

    version = re.sub(r"^Intel ?", "", dimension)
    version = re.sub(r"^macOS ?", "", version)
    for pattern, name in MACOS_VERSIONS:
        if pattern.search(version):
            return name

    match = UBUNTU_LTS_RE.search(version)
    if match:
        return f"Ubuntu {match.group(2)}.04 LTS"
    match = UBUNTU_RE.search(version)
    if match:
        return f"Ubuntu {match.group(2)} {match.group(3) or ''}".strip()

    return dimension


def is_valid_dimension(dimension: str | None) -> bool:
    """Whether a raw dimension value is non-blank and printable."""
    if dimension is None:
        return False
    dimension = dimension.rstrip("\r\n")
    return bool(dimension.strip()) and not INVALID_DIMENSION_RE.search(dimension)


def aggregate(rows: Iterable[tuple[str, Any]], dimension_key: str) -> tuple[list[dict[str, Any]], int]:
    """
    Aggregate raw rows into ranked report items.

    Rows with blank or unprintable dimensions are dropped. Rows whose normalized
    dimensions are equal are merged. Items are ranked by descending count, with
    ties kept in the order they were first seen.

    Returns the items and the total count. Raises NoDataError if no rows remain.
    """
    counts: dict[str, int] = {}
    for name, count in rows:
        if not is_valid_dimension(name):
            continue
        dimension = format_dimension(name, dimension_key)
        counts[dimension] = counts.get(dimension, 0) + parse_count(count)

    if not counts:
        raise NoDataError("No data found!")

    total_count = sum(counts.values())
    ranked = sorted(counts.items(), key=lambda item: -item[1])

    items = []
    for number, (dimension, count) in enumerate(ranked, start=1):
        percent = (count / total_count) * 100 if total_count else 0.0
        items.append({
            "number": number,
            dimension_key: dimension,
            "count": format_count(count),
            "percent": format_percent(percent),
        })
    return items, total_count


def report_header(category: str, total_items: int, total_count: int,
                  days_ago: int, today: date) -> dict[str, Any]:
    """Fields shared by every report: category, totals and date range."""
    return {
        "category": category,
        "total_items": total_items,
        "start_date": (today - timedelta(days=days_ago)).isoformat(),
        "end_date": today.isoformat(),
        "total_count": total_count,
    }


def build_report(category: str, items: list[dict[str, Any]], total_count: int,
                 days_ago: int, today: date, formula: str | None = None) -> dict[str, Any]:
    """Build the standard `items` report."""
    report = report_header(category, len(items), total_count, days_ago, today)
    if formula:
        report["formula"] = formula
    report["items"] = items
    return report


def build_core_formulae_report(category: str, items: list[dict[str, Any]], total_count: int,
                               days_ago: int, today: date, dimension_key: str) -> dict[str, Any]:
    """
    Build the `formulae` report used for per-formula pages.

    Items are grouped by lowercase formula name (the first word of the
    dimension, which may carry install options). Tap formulae are dropped.
    """
    formulae: dict[str, list[dict[str, str]]] = {}
    for item in items:
        name = item[dimension_key]
        if "/" in name:
            continue
        formula_name = name.split()[0].lower()
        formulae.setdefault(formula_name, []).append({
            dimension_key: name,
            "count": item["count"],
        })

    report = report_header(category, len(items), total_count, days_ago, today)
    report["formulae"] = dict(sorted(formulae.items()))
    return report


def render_text(report: dict[str, Any], dimension_key: str, days_ago: int,
                width: int | None = None) -> str:
    """Render an `items` report as a fixed-width text table."""
    if width is None:
        width = shutil.get_terminal_size().columns
    items = report["items"]
    total_count = format_count(report["total_count"])
    total_percent = "100"

    number_width = len(str(len(items)))
    count_width = max([len(total_count)] + [len(item["count"]) for item in items])
    percent_width = max([len(total_percent)] + [len(item["percent"]) for item in items])
    dimension_width = max(width - number_width - count_width - percent_width - 10, 10)

    title = f"{report['category']} events in the last {days_ago} days"
    if report.get("formula"):
        title += f" for {report['formula']}"

    rule = "=" * width
    lines = [title, rule]
    for item in items:
        dimension = item[dimension_key][:dimension_width]
        lines.append(
            f"{item['number']:>{number_width}} | {dimension:<{dimension_width}} | "
            f"{item['count']:>{count_width}} | {item['percent']:>{percent_width}}%"
        )
    lines.append(rule)
    total = f"{'Total':<{dimension_width + number_width + 3}}"
    lines.append(f"{total} | {total_count:>{count_width}} | {total_percent:>{percent_width}}%")
    lines.append(rule)
    return "\n".join(lines)
