"""
Homebrew Analytics Query Builders

Builds backend queries for each analytics category:
- Google Analytics Reporting API v4 report requests
- Flux queries for the InfluxDB v2 HTTP API
- SQL queries for InfluxDB 3 Flight SQL
"""

from dataclasses import dataclass
from typing import Any, Iterator, Sequence

# Google Analytics
GA_PAGE_SIZE = 10_000
GA_BATCH_SIZE = 5  # batchGet accepts at most 5 report requests

# InfluxDB
INFLUXDB_COUNTS_BUCKET = "analytics_counts"

# Placeholder OS versions reported by old clients
EXCLUDED_OS_VERSIONS = ("Intel", "Intel 10.90", "(not set)")


@dataclass(frozen=True)
class Category:
    """An analytics event type and where each backend stores it."""

    name: str
    measurement: str
    field: str
    tag: str
    dimension_key: str
    ga_event_category: str | None = None
    description: str = ""

    @property
    def influx_only(self) -> bool:
        return self.ga_event_category is None

    @property
    def is_os_version(self) -> bool:
        return self.dimension_key == "os_version"


def _environment_category(name: str, measurement: str, tag: str, description: str) -> Category:
    return Category(name, measurement, tag, tag, tag, description=description)


CATEGORIES: dict[str, Category] = {
    category.name: category
    for category in [
        Category("install", "formula_install", "package", "pkg", "formula", "install",
                 "Show the number of specifically requested installations or installation "
                 "as dependencies of the formula. This is the default."),
        Category("install-on-request", "formula_install_on_request", "package", "pkg", "formula",
                 "install_on_request",
                 "Show the number of specifically requested installations of the formula."),
        Category("build-error", "build_error", "package", "pkg", "formula", "BuildError",
                 "Show the number of build errors for the formulae."),
        Category("cask-install", "cask_install", "package", "pkg", "cask", "cask_install",
                 "Show the number of installations of casks."),
        Category("os-version", "os_versions", "os_name_and_version", "os", "os_version", "install",
                 "Output OS versions."),
        _environment_category("homebrew-devcmdrun-developer", "homebrew_devcmdrun_developer",
                              "devcmdrun_developer", "Output devcmdrun/HOMEBREW_DEVELOPER."),
        _environment_category("homebrew-os-arch-ci", "homebrew_os_arch_ci",
                              "os_arch_ci", "Output OS/Architecture/CI."),
        _environment_category("homebrew-prefixes", "homebrew_prefixes",
                              "prefix", "Output Homebrew prefixes."),
        _environment_category("homebrew-versions", "homebrew_versions",
                              "version", "Output Homebrew versions."),
        _environment_category("brew-command-run", "brew_command_run",
                              "command", "Output `brew` commands run."),
        _environment_category("brew-command-run-options", "brew_command_run_options",
                              "command_options", "Output `brew` commands run with options."),
        _environment_category("brew-test-bot-test", "brew_test_bot_test",
                              "test_step", "Output `brew test-bot` test steps."),
    ]
}

PACKAGE_CATEGORIES = [name for name, category in CATEGORIES.items() if not category.influx_only]
ENVIRONMENT_CATEGORIES = [name for name, category in CATEGORIES.items() if category.influx_only]


def chunked(items: Sequence[Any], size: int) -> Iterator[list[Any]]:
    """Yield successive lists of at most `size` items."""
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


# =============================================================================
# Google Analytics
# =============================================================================

def _ga_filter(dimension: str, operator: str, expression: str, negate: bool = False) -> dict[str, Any]:
    ga_filter: dict[str, Any] = {
        "dimensionName": dimension,
        "operator": operator,
        "expressions": [expression],
    }
    if negate:
        ga_filter["not"] = True
    return ga_filter


def build_ga_report_request(category: Category, view_id: str, days_ago: int,
                            formula: str | None = None, core_only: bool = False) -> dict[str, Any]:
    """Build a Reporting API v4 ReportRequest for a category."""
    if category.influx_only:
        raise ValueError(f"{category.name} is not available in Google Analytics")

    clauses = [
        {"filters": [_ga_filter("ga:eventCategory", "EXACT", category.ga_event_category)]},
    ]

    if formula:
        clauses.append({
            "operator": "OR",
            "filters": [
                _ga_filter("ga:eventAction", "EXACT", formula),
                _ga_filter("ga:eventAction", "BEGINS_WITH", f"{formula} "),
            ],
        })

    if core_only:
        clauses.append({
            "operator": "OR",
            "filters": [_ga_filter("ga:eventAction", "PARTIAL", "/", negate=True)],
        })

    if category.is_os_version:
        clauses.append({
            "operator": "AND",
            "filters": [
                _ga_filter("ga:operatingSystemVersion", "EXACT", version, negate=True)
                for version in EXCLUDED_OS_VERSIONS
            ],
        })
        dimension = "ga:operatingSystemVersion"
    else:
        dimension = "ga:eventAction"

    return {
        "viewId": view_id,
        "dateRanges": [{"startDate": f"{days_ago}daysAgo", "endDate": "today"}],
        "dimensions": [{"name": dimension}],
        "metrics": [{"expression": "ga:totalEvents"}],
        "orderBys": [{"fieldName": "ga:totalEvents", "sortOrder": "DESCENDING"}],
        "dimensionFilterClauses": clauses,
        "pageSize": GA_PAGE_SIZE,
        "samplingLevel": "LARGE",
    }


# =============================================================================
# InfluxDB (Flux)
# =============================================================================

def flux_string(value: str) -> str:
    """Quote a value as a Flux string literal."""
    escaped = value.replace("\\", "\\\\").replace('"', '\\"').replace("${", "\\${")
    return f'"{escaped}"'


def build_flux_query(category: Category, days_ago: int,
                     formula: str | None = None, core_only: bool = False) -> str:
    """Build a Flux query summing a category's counts per tag value."""
    tag = category.tag
    lines = []
    if formula or core_only:
        lines += ['import "strings"', ""]

    lines += [
        f"from(bucket: {flux_string(INFLUXDB_COUNTS_BUCKET)})",
        f"  |> range(start: -{days_ago}d, stop: now())",
        f"  |> filter(fn: (r) => r._measurement == {flux_string(category.measurement)}"
        f" and r._field == {flux_string(category.field)})",
    ]

    if formula:
        lines.append(
            f"  |> filter(fn: (r) => r.{tag} == {flux_string(formula)}"
            f" or strings.hasPrefix(v: r.{tag}, prefix: {flux_string(formula + ' ')}))"
        )
    if core_only:
        lines.append(f'  |> filter(fn: (r) => not strings.containsStr(v: r.{tag}, substr: "/"))')
    if category.is_os_version:
        excluded = ", ".join(flux_string(version) for version in EXCLUDED_OS_VERSIONS)
        lines.append(f"  |> filter(fn: (r) => not contains(value: r.{tag}, set: [{excluded}]))")

    lines += [
        f"  |> group(columns: [{flux_string(tag)}])",
        '  |> sum(column: "_value")',
    ]
    return "\n".join(lines) + "\n"


# =============================================================================
# InfluxDB 3 (Flight SQL)
# =============================================================================

def sql_identifier(name: str) -> str:
    """Quote a column or table name for SQL."""
    return '"' + name.replace('"', '""') + '"'


def sql_string(value: str) -> str:
    """Quote a value as a SQL string literal."""
    return "'" + value.replace("'", "''") + "'"


def build_sql_query(category: Category, days_ago: int,
                    formula: str | None = None, core_only: bool = False) -> str:
    """
    Build a Flight SQL query returning `dimension` and `count` columns.

    The `analytics` database holds one row per event, so events are counted
    per tag value rather than summing a field.
    """
    tag = sql_identifier(category.tag)
    conditions = [f"time >= now() - INTERVAL '{int(days_ago)} days'"]

    if formula:
        conditions.append(
            f"({tag} = {sql_string(formula)} OR starts_with({tag}, {sql_string(formula + ' ')}))"
        )
    if core_only:
        conditions.append(f"strpos({tag}, '/') = 0")
    if category.is_os_version:
        excluded = ", ".join(sql_string(version) for version in EXCLUDED_OS_VERSIONS)
        conditions.append(f"{tag} NOT IN ({excluded})")

    where = "\n  AND ".join(conditions)
    return (
        f'SELECT {tag} AS dimension, COUNT(*) AS "count"\n'
        f"FROM {sql_identifier(category.measurement)}\n"
        f"WHERE {where}\n"
        f"GROUP BY {tag}\n"
        f'ORDER BY "count" DESC'
    )
