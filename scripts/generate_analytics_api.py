#!/usr/bin/env python3
"""
Generate analytics API data files for formulae.brew.sh.

Runs `formula-analytics` for every category and day range in parallel and writes
the results under _data/analytics/ with matching Jekyll wrappers under
api/analytics/ in the output directory.

Usage:
    generate-analytics-api [--output-dir DIR] [--flight-sql]
"""

import argparse
import os
import shutil
import subprocess
import sys
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Sequence, TypeVar

from analytics_report import AnalyticsError

CATEGORIES = [
    "build-error", "install", "install-on-request",
    "core-build-error", "core-install", "core-install-on-request",
    "cask-install", "core-cask-install", "os-version",
    "homebrew-devcmdrun-developer", "homebrew-os-arch-ci",
    "homebrew-prefixes", "homebrew-versions",
    "brew-command-run", "brew-command-run-options", "brew-test-bot-test",
]
DAYS = ["30", "90", "365"]
MAX_RETRIES = 3

DATA_DIR = Path("_data") / "analytics"
API_DIR = Path("api") / "analytics"
SCRIPTS_DIR = Path(__file__).resolve().parent
FORMULA_ANALYTICS_COMMAND = (sys.executable, "-m", "formula_analytics")

T = TypeVar("T")


class FormulaAnalyticsError(AnalyticsError):
    """`formula-analytics` exited unsuccessfully."""

    def __init__(self, args: Sequence[str], output: str):
        self.args_used = list(args)
        self.output = output
        super().__init__(f"`formula-analytics {' '.join(args)}` failed: {output}")


@dataclass(frozen=True)
class RetryPolicy:
    """How often to retry and how long to wait: base ** (first_exponent + retry) seconds."""

    max_attempts: int = MAX_RETRIES + 1
    base: float = 4
    first_exponent: int = 2
    retry_on: tuple[type[BaseException], ...] = (Exception,)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def delay(self, retry: int) -> float:
        return self.base ** (self.first_exponent + retry)


def retry_with_backoff(operation: Callable[[], T], policy: RetryPolicy = RetryPolicy(),
                       sleep: Callable[[float], None] = time.sleep,
                       on_retry: Callable[[int, BaseException], None] | None = None) -> T:
    """
    Call `operation` until it succeeds or the policy's attempts run out.

    Failures that aren't in `policy.retry_on` propagate immediately. Once
    `policy.max_attempts` attempts have failed, the last error is re-raised.
    """
    attempt = 1
    while True:
        try:
            return operation()
        except policy.retry_on as e:
            if attempt >= policy.max_attempts:
                raise
            # Give InfluxDB some more breathing room.
            sleep(policy.delay(attempt - 1))
            if on_retry:
                on_retry(attempt, e)
            attempt += 1


def child_environment() -> dict[str, str]:
    """Environment for `formula-analytics` runs, with these scripts importable from a checkout."""
    env = dict(os.environ)
    python_path = env.get("PYTHONPATH")
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(SCRIPTS_DIR), python_path]))
    return env


def run_formula_analytics(args: Sequence[str],
                          command: Sequence[str] = FORMULA_ANALYTICS_COMMAND) -> str:
    """Run `formula-analytics` and return its output; stderr passes through."""
    print(f"formula-analytics {' '.join(args)}")
    result = subprocess.run([*command, *args], stdout=subprocess.PIPE, text=True,
                            env=child_environment())
    if result.returncode != 0:
        raise FormulaAnalyticsError(args, result.stdout)
    return result.stdout


def analytics_json_template(category_name: str, data_source: str | None = None) -> str:
    """Jekyll wrapper that serves a data file through the analytics_json layout."""
    data_source_line = f"{data_source}: true" if data_source else ""
    return (
        "---\n"
        "layout: analytics_json\n"
        f"category: {category_name}\n"
        f"{data_source_line}\n"
        "---\n"
        "{{ content }}\n"
    )


@dataclass(frozen=True)
class AnalyticsTask:
    """One `formula-analytics` invocation and where its output goes."""

    category_name: str
    data_source: str | None
    days: str
    args: tuple[str, ...]

    @property
    def path_suffix(self) -> Path:
        if self.data_source:
            return Path(self.category_name) / self.data_source
        return Path(self.category_name)

    @property
    def filename(self) -> str:
        return f"{self.days}d.json"


def plan_tasks(categories: Sequence[str] = CATEGORIES, days: Sequence[str] = DAYS,
               backend_args: Sequence[str] = ("--influx",)) -> list[AnalyticsTask]:
    """Expand categories and day ranges into the list of tasks to run."""
    tasks = []
    for category in categories:
        if category.startswith("core-"):
            category_name = category.removeprefix("core-")
            data_source = "homebrew-cask" if category_name == "cask-install" else "homebrew-core"
            category_args = ["--all-core-formulae-json", f"--{category_name}"]
        else:
            category_name = category
            data_source = None
            category_args = [f"--{category}", "--json"]

        for day_range in days:
            # Per-formula build errors are only published for 30 days
            if day_range != "30" and category_name == "build-error" and data_source:
                continue
            args = (*category_args, *backend_args, f"--days-ago={day_range}")
            tasks.append(AnalyticsTask(category_name, data_source, day_range, args))
    return tasks


def generate_task(task: AnalyticsTask, data_dir: Path, api_dir: Path,
                  command: Sequence[str] = FORMULA_ANALYTICS_COMMAND,
                  policy: RetryPolicy = RetryPolicy(retry_on=(FormulaAnalyticsError,)),
                  sleep: Callable[[float], None] = time.sleep) -> None:
    """Run one task with retries and write its data and API files."""
    def on_retry(attempt: int, error: BaseException) -> None:
        print(f"⏳ Retrying {' '.join(task.args)} ({attempt}/{policy.max_attempts - 1})...")

    output = retry_with_backoff(
        lambda: run_formula_analytics(task.args, command),
        policy,
        sleep=sleep,
        on_retry=on_retry,
    )
    (data_dir / task.path_suffix / task.filename).write_text(output, encoding="utf-8")
    (api_dir / task.path_suffix / task.filename).write_text(
        analytics_json_template(task.category_name, task.data_source), encoding="utf-8"
    )


def generate(output_dir: Path, backend_args: Sequence[str] = ("--influx",),
             command: Sequence[str] = FORMULA_ANALYTICS_COMMAND,
             policy: RetryPolicy = RetryPolicy(retry_on=(FormulaAnalyticsError,)),
             sleep: Callable[[float], None] = time.sleep) -> list[AnalyticsTask]:
    """Regenerate every analytics data file under `output_dir`."""
    run_formula_analytics(["--setup", *backend_args], command)

    data_dir = output_dir / DATA_DIR
    api_dir = output_dir / API_DIR
    for directory in (data_dir, api_dir):
        shutil.rmtree(directory, ignore_errors=True)
        directory.mkdir(parents=True)

    tasks = plan_tasks(backend_args=backend_args)
    for task in tasks:
        (data_dir / task.path_suffix).mkdir(parents=True, exist_ok=True)
        (api_dir / task.path_suffix).mkdir(parents=True, exist_ok=True)

    with ThreadPoolExecutor(max_workers=len(tasks)) as executor:
        futures = {
            executor.submit(generate_task, task, data_dir, api_dir, command, policy, sleep): task
            for task in tasks
        }
        for future in as_completed(futures):
            future.result()

    print(f"✅ Generated {len(tasks)} analytics files in {output_dir}")
    return tasks


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="generate-analytics-api",
        description="Generates analytics API data files for formulae.brew.sh. "
                    "The generated files are written to the current directory.",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=Path("."),
        help="Directory to write _data/analytics and api/analytics into.",
    )
    parser.add_argument(
        "--flight-sql",
        action="store_true",
        help="Query InfluxDB using Flight SQL instead of Flux.",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    backend_args = ("--flight-sql",) if args.flight_sql else ("--influx",)
    print("🚀 Generating analytics API")
    try:
        generate(args.output_dir, backend_args)
    except AnalyticsError as e:
        print(f"❌ {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
