#!/usr/bin/env python3
"""
Homebrew Formula Analytics

Queries Homebrew's analytics (Google Analytics, InfluxDB or InfluxDB Flight SQL)
for formula, cask and environment counts and prints them as JSON or a text table.
The top 10,000 formulae will be shown.

Usage:
    formula-analytics --influx --install --json --days-ago=30
"""

import argparse
import csv
import io
import json
import os
import sys
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Any, Mapping, Sequence

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from analytics_queries import (
    CATEGORIES,
    ENVIRONMENT_CATEGORIES,
    GA_BATCH_SIZE,
    PACKAGE_CATEGORIES,
    Category,
    build_flux_query,
    build_ga_report_request,
    build_sql_query,
    chunked,
)
from analytics_report import (
    AnalyticsError,
    NoDataError,
    aggregate,
    build_core_formulae_report,
    build_report,
    render_text,
)

# Google Analytics
API_SCOPE = "https://www.googleapis.com/auth/analytics.readonly"
ANALYTICS_VIEW_ID_LINUX = "120391035"
ANALYTICS_VIEW_ID_MACOS = "120682403"
CREDENTIALS_PATH = Path.home() / ".homebrew_analytics.json"
FIRST_GOOGLE_ANALYTICS_DATE = date(2016, 4, 21)

# InfluxDB
INFLUXDB_HOST = "https://eu-central-1-1.aws.cloud2.influxdata.com"
INFLUXDB_ORG = "d81a3e6d582d485f"
INFLUXDB_DATABASE = "analytics"
FIRST_INFLUXDB_ANALYTICS_DATE = date(2023, 3, 27)
INFLUXDB_RETENTION_DAYS = 365

DEFAULT_DAYS_AGO = 30
REQUEST_TIMEOUT = 60
USER_AGENT = "homebrew-formula-analytics/1.0"

GOOGLE_ANALYTICS = "google-analytics"
INFLUXDB = "influxdb"
FLIGHT_SQL = "flight-sql"


class ConfigurationError(AnalyticsError):
    """Missing credentials or analytics disabled."""


class QueryError(AnalyticsError):
    """The analytics backend rejected or failed a query."""


@dataclass
class Config:
    """Settings read from the environment, passed explicitly to each backend."""

    influxdb_token: str | None = None
    influxdb_host: str = INFLUXDB_HOST
    influxdb_org: str = INFLUXDB_ORG
    influxdb_database: str = INFLUXDB_DATABASE
    credentials_path: Path = field(default_factory=lambda: CREDENTIALS_PATH)
    no_analytics: bool = False


def load_config(environ: Mapping[str, str] | None = None) -> Config:
    """Build a Config from environment variables."""
    if environ is None:
        environ = os.environ
    credentials = environ.get("HOMEBREW_ANALYTICS_CREDENTIALS")
    return Config(
        influxdb_token=environ.get("HOMEBREW_INFLUXDB_TOKEN") or None,
        influxdb_host=environ.get("HOMEBREW_INFLUXDB_HOST") or INFLUXDB_HOST,
        influxdb_org=environ.get("HOMEBREW_INFLUXDB_ORG") or INFLUXDB_ORG,
        influxdb_database=environ.get("HOMEBREW_INFLUXDB_DATABASE") or INFLUXDB_DATABASE,
        credentials_path=Path(credentials).expanduser() if credentials else CREDENTIALS_PATH,
        no_analytics=bool(environ.get("HOMEBREW_NO_ANALYTICS")),
    )


def warn(message: str) -> None:
    """Print a warning to stderr."""
    print(f"⚠️  {message}", file=sys.stderr)


# =============================================================================
# Command line
# =============================================================================

def positive_int(value: str) -> int:
    """Parse a `--days-ago` value, which must be at least 1."""
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid number of days: {value!r}")
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1: {value!r}")
    return number


def build_parser() -> argparse.ArgumentParser:
    """Build the `formula-analytics` argument parser."""
    parser = argparse.ArgumentParser(
        prog="formula-analytics",
        description="Query Homebrew's analytics for formula information. "
                    "The top 10,000 formulae will be shown.",
    )
    parser.add_argument(
        "--days-ago",
        type=positive_int,
        default=DEFAULT_DAYS_AGO,
        help="Query from the specified days ago until the present. The default is 30 days.",
    )

    package_group = parser.add_mutually_exclusive_group()
    for name in PACKAGE_CATEGORIES:
        package_group.add_argument(
            f"--{name}",
            dest="categories",
            action="append_const",
            const=name,
            help=CATEGORIES[name].description,
        )
    for name in ENVIRONMENT_CATEGORIES:
        parser.add_argument(
            f"--{name}",
            dest="categories",
            action="append_const",
            const=name,
            help=f"{CATEGORIES[name].description} Requires --influx or --flight-sql.",
        )

    output_group = parser.add_mutually_exclusive_group()
    output_group.add_argument("--json", action="store_true", help="Output JSON.")
    output_group.add_argument(
        "--all-core-formulae-json",
        action="store_true",
        help="Output a different JSON format containing the JSON data for all "
             "Homebrew/homebrew-core formulae.",
    )
    output_group.add_argument(
        "--setup",
        action="store_true",
        help="Check the backend client libraries are installed and exit without running a query.",
    )

    backend_group = parser.add_mutually_exclusive_group()
    backend_group.add_argument(
        "--linux",
        action="store_true",
        help="Read analytics from Homebrew on Linux's Google Analytics account.",
    )
    backend_group.add_argument(
        "--influx", "--influxdb",
        dest="influx",
        action="store_true",
        help="Read analytics from InfluxDB instead of Google Analytics.",
    )
    backend_group.add_argument(
        "--flight-sql",
        action="store_true",
        help="Read analytics from InfluxDB using Flight SQL.",
    )

    parser.add_argument("formula", nargs="?", help="Only show results for this formula.")
    return parser


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse and validate arguments; invalid combinations exit before any query."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.influx:
        args.backend = INFLUXDB
    elif args.flight_sql:
        args.backend = FLIGHT_SQL
    else:
        args.backend = GOOGLE_ANALYTICS

    args.categories = args.categories or ["install"]
    if args.backend == GOOGLE_ANALYTICS:
        influx_only = [name for name in args.categories if CATEGORIES[name].influx_only]
        if influx_only:
            parser.error(f"argument --{influx_only[0]}: requires --influx or --flight-sql")
    if args.formula and args.all_core_formulae_json:
        parser.error("a formula cannot be combined with --all-core-formulae-json")

    return args


def clamp_days_ago(days_ago: int, first_date: date, today: date,
                   retention_days: int | None = None) -> int:
    """Limit `days_ago` to the range the backend actually has data for."""
    max_days_ago = (today - first_date).days
    if days_ago > max_days_ago:
        warn(f"Analytics started {first_date.isoformat()}. `--days-ago` set to maximum value.")
        days_ago = max_days_ago
    if retention_days is not None and days_ago > retention_days:
        warn(f"Analytics are only retained for {retention_days} days, "
             f"setting `--days-ago={retention_days}`.")
        days_ago = retention_days
    return days_ago


# =============================================================================
# Google Analytics
# =============================================================================

def create_ga_service(config: Config) -> Any:
    """Create an Analytics Reporting API service authorized with a service account."""
    from google.oauth2.service_account import Credentials
    from googleapiclient.discovery import build

    if not config.credentials_path.exists():
        raise ConfigurationError(
            f"No Google Analytics credentials found at {config.credentials_path}!"
        )
    credentials = Credentials.from_service_account_file(
        str(config.credentials_path), scopes=[API_SCOPE]
    )
    return build("analyticsreporting", "v4", credentials=credentials, cache_discovery=False)


def query_google_analytics(service: Any, categories: list[Category], view_id: str,
                           days_ago: int, formula: str | None = None,
                           core_only: bool = False) -> list[list[tuple[str, str]]]:
    """Run one report per category and return each report's rows."""
    report_requests = [
        build_ga_report_request(category, view_id, days_ago, formula, core_only)
        for category in categories
    ]

    reports = []
    for batch in chunked(report_requests, GA_BATCH_SIZE):
        try:
            response = service.reports().batchGet(body={"reportRequests": batch}).execute()
        except Exception as e:
            raise QueryError(f"Google Analytics query failed: {e}") from e
        reports.extend(response.get("reports", []))

    results = []
    for report in reports:
        rows = report.get("data", {}).get("rows", []) or []
        results.append([
            (row["dimensions"][0], row["metrics"][0]["values"][0])
            for row in rows
        ])
    return results


# =============================================================================
# InfluxDB (Flux over HTTP)
# =============================================================================

def create_influxdb_session(config: Config) -> requests.Session:
    """Create an HTTP session for the InfluxDB v2 query API."""
    session = requests.Session()
    retries = Retry(
        total=3, connect=3, read=3, backoff_factor=0.4,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods=["POST"],
    )
    adapter = HTTPAdapter(max_retries=retries)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    session.headers.update({
        "User-Agent": USER_AGENT,
        "Accept": "application/csv",
    })
    if config.influxdb_token:
        session.headers["Authorization"] = f"Token {config.influxdb_token}"
    return session


def parse_flux_csv(text: str, tag: str) -> list[tuple[str, str]]:
    """
    Extract (tag value, summed count) rows from a Flux CSV response.

    Tables are separated by blank lines and each starts with its own header.
    InfluxDB reports failures inside a successful response as an `error` table,
    which raises QueryError.
    """
    rows = []
    header = None
    for record in csv.reader(io.StringIO(text)):
        if not record:
            header = None
            continue
        if header is None or record == header:
            header = record
            continue

        row = dict(zip(header, record))
        if "error" in header:
            raise QueryError(f"InfluxDB query failed: {row.get('error') or 'unknown error'}")
        value = row.get("_value")
        if value is None:
            continue
        rows.append((row.get(tag) or "", value))
    return rows


def query_influxdb(session: requests.Session, config: Config, category: Category,
                   days_ago: int, formula: str | None = None,
                   core_only: bool = False) -> list[tuple[str, str]]:
    """Run a category's Flux query and return its rows."""
    query = build_flux_query(category, days_ago, formula, core_only)
    url = f"{config.influxdb_host.rstrip('/')}/api/v2/query"
    try:
        response = session.post(
            url,
            params={"org": config.influxdb_org},
            json={
                "query": query,
                "type": "flux",
                "dialect": {"header": True, "annotations": [], "delimiter": ","},
            },
            timeout=REQUEST_TIMEOUT,
        )
    except requests.RequestException as e:
        raise QueryError(f"InfluxDB query for {category.measurement} failed: {e}") from e

    if response.status_code != 200:
        raise QueryError(
            f"InfluxDB query for {category.measurement} failed: "
            f"HTTP {response.status_code} {response.text.strip()}"
        )
    response.encoding = "utf-8"
    return parse_flux_csv(response.text, category.tag)


# =============================================================================
# InfluxDB 3 (Flight SQL)
# =============================================================================

def create_flight_sql_client(config: Config) -> Any:
    """Create an InfluxDB 3 client for Flight SQL queries."""
    from influxdb_client_3 import InfluxDBClient3

    return InfluxDBClient3(
        host=config.influxdb_host,
        org=config.influxdb_org,
        database=config.influxdb_database,
        token=config.influxdb_token or "",
    )


def query_flight_sql(client: Any, category: Category, days_ago: int,
                     formula: str | None = None, core_only: bool = False) -> list[tuple[str, Any]]:
    """Run a category's SQL query and return its rows."""
    query = build_sql_query(category, days_ago, formula, core_only)
    try:
        table = client.query(query=query, language="sql")
    except Exception as e:
        raise QueryError(f"Flight SQL query for {category.measurement} failed: {e}") from e
    return [(row.get("dimension") or "", row.get("count")) for row in table.to_pylist()]


# =============================================================================
# Main
# =============================================================================

def setup_backend(backend: str, config: Config) -> None:
    """Make sure the backend's client can be constructed, without querying."""
    try:
        if backend == GOOGLE_ANALYTICS:
            import google.oauth2.service_account  # noqa: F401
            import googleapiclient.discovery  # noqa: F401
        elif backend == INFLUXDB:
            create_influxdb_session(config).close()
        else:
            create_flight_sql_client(config).close()
    except ImportError as e:
        raise ConfigurationError(f"The {backend} client library is not installed: {e}") from e


def fetch_rows(args: argparse.Namespace, config: Config, categories: list[Category],
               days_ago: int) -> list[list[tuple[str, Any]]]:
    """Query the selected backend, returning rows for each category in order."""
    core_only = args.all_core_formulae_json

    if args.backend == GOOGLE_ANALYTICS:
        service = create_ga_service(config)
        view_id = ANALYTICS_VIEW_ID_LINUX if args.linux else ANALYTICS_VIEW_ID_MACOS
        return query_google_analytics(service, categories, view_id, days_ago,
                                      args.formula, core_only)

    if args.backend == INFLUXDB:
        with create_influxdb_session(config) as session:
            return [
                query_influxdb(session, config, category, days_ago, args.formula, core_only)
                for category in categories
            ]

    client = create_flight_sql_client(config)
    try:
        return [
            query_flight_sql(client, category, days_ago, args.formula, core_only)
            for category in categories
        ]
    finally:
        client.close()


def format_output(args: argparse.Namespace, category: Category, rows: list[tuple[str, Any]],
                  days_ago: int, today: date) -> str:
    """Aggregate one category's rows and render them in the requested format."""
    if args.backend == GOOGLE_ANALYTICS:
        category_name = category.ga_event_category
    else:
        category_name = category.measurement

    items, total_count = aggregate(rows, category.dimension_key)

    if args.all_core_formulae_json:
        report = build_core_formulae_report(category_name, items, total_count, days_ago,
                                            today, category.dimension_key)
        return json.dumps(report, indent=2, ensure_ascii=False)

    report = build_report(category_name, items, total_count, days_ago, today, args.formula)
    if args.json:
        return json.dumps(report, indent=2, ensure_ascii=False)
    return render_text(report, category.dimension_key, days_ago)


def run(args: argparse.Namespace, config: Config, today: date) -> int:
    if args.setup:
        setup_backend(args.backend, config)
        print(f"✅ {args.backend} client is ready", file=sys.stderr)
        return 0

    if config.no_analytics:
        raise ConfigurationError("HOMEBREW_NO_ANALYTICS is set!")

    if args.backend == GOOGLE_ANALYTICS:
        days_ago = clamp_days_ago(args.days_ago, FIRST_GOOGLE_ANALYTICS_DATE, today)
    else:
        if not config.influxdb_token:
            raise ConfigurationError("No InfluxDB credentials found in HOMEBREW_INFLUXDB_TOKEN!")
        days_ago = clamp_days_ago(args.days_ago, FIRST_INFLUXDB_ANALYTICS_DATE, today,
                                  INFLUXDB_RETENTION_DAYS)

    categories = [CATEGORIES[name] for name in args.categories]
    results = fetch_rows(args, config, categories, days_ago)

    outputs = []
    for category, rows in zip(categories, results):
        try:
            outputs.append(format_output(args, category, rows, days_ago, today))
        except NoDataError:
            warn(f"No {category.name} data found!")

    if outputs:
        print("\n\n".join(outputs))
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    config = load_config()
    try:
        return run(args, config, date.today())
    except AnalyticsError as e:
        print(f"❌ {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
