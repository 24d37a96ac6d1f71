import pytest

from analytics_queries import (
    CATEGORIES,
    ENVIRONMENT_CATEGORIES,
    PACKAGE_CATEGORIES,
    build_flux_query,
    build_ga_report_request,
    build_sql_query,
    chunked,
    flux_string,
    sql_string,
)


def test_categories():
    assert PACKAGE_CATEGORIES == ["install", "install-on-request", "build-error",
                                  "cask-install", "os-version"]
    assert "homebrew-versions" in ENVIRONMENT_CATEGORIES
    assert CATEGORIES["cask-install"].dimension_key == "cask"
    assert CATEGORIES["build-error"].ga_event_category == "BuildError"
    assert CATEGORIES["homebrew-prefixes"].influx_only
    assert CATEGORIES["homebrew-prefixes"].tag == "prefix"
    assert not CATEGORIES["install"].influx_only


def test_chunked():
    assert list(chunked([1, 2, 3, 4, 5, 6, 7], 5)) == [[1, 2, 3, 4, 5], [6, 7]]
    assert list(chunked([], 5)) == []


def test_ga_report_request():
    request = build_ga_report_request(CATEGORIES["install-on-request"], "123", 90)

    assert request["viewId"] == "123"
    assert request["dateRanges"] == [{"startDate": "90daysAgo", "endDate": "today"}]
    assert request["dimensions"] == [{"name": "ga:eventAction"}]
    assert request["metrics"] == [{"expression": "ga:totalEvents"}]
    assert request["pageSize"] == 10_000
    assert request["dimensionFilterClauses"] == [{
        "filters": [{
            "dimensionName": "ga:eventCategory",
            "operator": "EXACT",
            "expressions": ["install_on_request"],
        }],
    }]


def test_ga_report_request_filters():
    request = build_ga_report_request(CATEGORIES["install"], "123", 30,
                                      formula="wget", core_only=True)
    formula_clause, core_clause = request["dimensionFilterClauses"][1:]

    assert formula_clause["operator"] == "OR"
    assert [f["expressions"] for f in formula_clause["filters"]] == [["wget"], ["wget "]]
    assert core_clause["filters"][0]["not"] is True
    assert core_clause["filters"][0]["operator"] == "PARTIAL"


def test_ga_report_request_os_version():
    request = build_ga_report_request(CATEGORIES["os-version"], "123", 30)

    assert request["dimensions"] == [{"name": "ga:operatingSystemVersion"}]
    exclusions = request["dimensionFilterClauses"][-1]
    assert exclusions["operator"] == "AND"
    assert [f["expressions"][0] for f in exclusions["filters"]] == ["Intel", "Intel 10.90", "(not set)"]


def test_ga_report_request_rejects_influx_only_category():
    with pytest.raises(ValueError):
        build_ga_report_request(CATEGORIES["homebrew-versions"], "123", 30)


def test_flux_query():
    query = build_flux_query(CATEGORIES["install"], 30)

    assert query == (
        'from(bucket: "analytics_counts")\n'
        "  |> range(start: -30d, stop: now())\n"
        '  |> filter(fn: (r) => r._measurement == "formula_install" and r._field == "package")\n'
        '  |> group(columns: ["pkg"])\n'
        '  |> sum(column: "_value")\n'
    )


def test_flux_query_filters():
    query = build_flux_query(CATEGORIES["install"], 30, formula="wget", core_only=True)

    assert query.startswith('import "strings"\n')
    assert 'r.pkg == "wget" or strings.hasPrefix(v: r.pkg, prefix: "wget ")' in query
    assert 'not strings.containsStr(v: r.pkg, substr: "/")' in query


def test_flux_query_os_version():
    query = build_flux_query(CATEGORIES["os-version"], 7)

    assert 'r._measurement == "os_versions" and r._field == "os_name_and_version"' in query
    assert 'not contains(value: r.os, set: ["Intel", "Intel 10.90", "(not set)"])' in query
    assert 'group(columns: ["os"])' in query


def test_flux_string_escapes():
    assert flux_string('a"b\\c') == '"a\\"b\\\\c"'


def test_sql_query():
    query = build_sql_query(CATEGORIES["homebrew-versions"], 365)

    assert query == (
        'SELECT "version" AS dimension, COUNT(*) AS "count"\n'
        'FROM "homebrew_versions"\n'
        "WHERE time >= now() - INTERVAL '365 days'\n"
        'GROUP BY "version"\n'
        'ORDER BY "count" DESC'
    )


def test_sql_query_counts_events_for_environment_categories():
    query = build_sql_query(CATEGORIES["homebrew-prefixes"], 30)

    assert 'SELECT "prefix" AS dimension, COUNT(*) AS "count"' in query
    assert 'SUM("prefix")' not in query
    assert 'GROUP BY "prefix"' in query


def test_sql_query_os_version():
    query = build_sql_query(CATEGORIES["os-version"], 7)

    assert 'FROM "os_versions"' in query
    assert "INTERVAL '7 days'" in query
    assert "\"os\" NOT IN ('Intel', 'Intel 10.90', '(not set)')" in query
    assert 'GROUP BY "os"' in query


def test_sql_query_filters():
    query = build_sql_query(CATEGORIES["cask-install"], 30, formula="o'brien", core_only=True)

    assert "(\"pkg\" = 'o''brien' OR starts_with(\"pkg\", 'o''brien '))" in query
    assert "strpos(\"pkg\", '/') = 0" in query


def test_sql_string_escapes():
    assert sql_string("it's") == "'it''s'"
