"""Prometheus exposition text parser.

Best-effort and line-oriented: each non-empty, non-comment line is
``metric_name{label="value",...} value``. Lines that do not split or whose
value is not numeric are skipped, since exposition output varies across
instance versions. Parsing never fails the whole document.
"""

from __future__ import annotations

from collections import defaultdict

from caddy_fleet.models import PrometheusSnapshot

PROCESS_START_METRIC = "process_start_time_seconds"


def extract_label(series: str, label: str) -> str:
    """Return the value of *label* in a series name, or ``""``.

    Scans for ``label="`` and then the next ``"``.
    """
    pattern = f'{label}="'
    start = series.find(pattern)
    if start == -1:
        return ""
    start += len(pattern)
    end = series.find('"', start)
    if end == -1:
        return ""
    return series[start:end]


def _split_line(line: str) -> tuple[str, float] | None:
    """Split a sample line into (series, value), or None if malformed."""
    parts = line.split(None, 1)
    if len(parts) != 2:
        return None
    series, rest = parts
    # Value may be followed by an optional timestamp
    value_token = rest.split()[0]
    try:
        return series, float(value_token)
    except ValueError:
        return None


def _accumulate_histogram(target: dict[str, float], series: str, value: float) -> None:
    """Fold one histogram/summary sample into ``total`` and ``count``.

    Bucket and quantile series are ignored; a plain sample replaces ``total``.
    """
    metric_name = series.split("{", 1)[0]
    if metric_name.endswith("_bucket"):
        return
    if metric_name.endswith("_sum"):
        target["total"] = target.get("total", 0.0) + value
    elif metric_name.endswith("_count"):
        target["count"] = target.get("count", 0.0) + value
    elif 'quantile="' not in series:
        target["total"] = value


def parse_exposition(text: str) -> PrometheusSnapshot:
    """Parse exposition *text* into a PrometheusSnapshot.

    Extracted:
    - ``requests_total``: sum of every ``*requests*_total`` sample
    - ``requests_by_code`` / ``requests_by_host``: totals summed per
      ``code`` / ``host`` label value
    - ``response_sizes`` / ``request_durations``: ``"total"`` (sum of the
      histogram ``_sum`` series, or the plain sample) and ``"count"``
    - ``process_start_time``: from ``process_start_time_seconds`` if present
    """
    requests_total = 0.0
    by_code: dict[str, float] = defaultdict(float)
    by_host: dict[str, float] = defaultdict(float)
    response_sizes: dict[str, float] = {}
    request_durations: dict[str, float] = {}
    process_start: float | None = None

    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue

        sample = _split_line(line)
        if sample is None:
            continue
        series, value = sample
        metric_name = series.split("{", 1)[0]

        if metric_name == PROCESS_START_METRIC:
            process_start = value
        elif "requests" in series and metric_name.endswith("_total"):
            requests_total += value
            if 'code="' in series:
                by_code[extract_label(series, "code")] += value
            if 'host="' in series:
                by_host[extract_label(series, "host")] += value
        elif "response_size" in series:
            _accumulate_histogram(response_sizes, series, value)
        elif "request_duration" in series:
            _accumulate_histogram(request_durations, series, value)

    return PrometheusSnapshot(
        requests_total=requests_total,
        requests_by_code=dict(by_code),
        requests_by_host=dict(by_host),
        response_sizes=response_sizes,
        request_durations=request_durations,
        process_start_time=process_start,
    )
