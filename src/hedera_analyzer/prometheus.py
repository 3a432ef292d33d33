"""Prometheus metrics. All setters are no-op until `Metrics.enabled` is set."""

from prometheus_client import Counter
from prometheus_client import Histogram

_http_requests = Counter(
    'hedera_analyzer_http_requests_total',
    'Total number of mirror node requests',
    ['datasource'],
)
_http_errors = Counter(
    'hedera_analyzer_http_errors_total',
    'Number of failed mirror node requests by status (0 for network errors)',
    ['datasource', 'status'],
)
_http_time = Histogram(
    'hedera_analyzer_http_request_seconds',
    'Time spent in mirror node requests',
    ['datasource'],
)
_holders_processed = Counter(
    'hedera_analyzer_holders_processed_total',
    'Number of holders whose transactions were fetched',
    ['token'],
)
_transfers_found = Counter(
    'hedera_analyzer_transfers_found_total',
    'Number of unique transfers found',
    ['token'],
)
_runs = Counter(
    'hedera_analyzer_runs_total',
    'Number of finished analysis runs by status',
    ['status'],
)


class Metrics:
    enabled = False

    @staticmethod
    def set_http_request(datasource: str, duration: float) -> None:
        if not Metrics.enabled:
            return
        _http_requests.labels(datasource=datasource).inc()
        _http_time.labels(datasource=datasource).observe(duration)

    @staticmethod
    def set_http_error(datasource: str, status: int) -> None:
        if not Metrics.enabled:
            return
        _http_errors.labels(datasource=datasource, status=str(status)).inc()

    @staticmethod
    def set_holders_processed(token_id: str, count: int = 1) -> None:
        if not Metrics.enabled:
            return
        _holders_processed.labels(token=token_id).inc(count)

    @staticmethod
    def set_transfers_found(token_id: str, count: int) -> None:
        if not Metrics.enabled or not count:
            return
        _transfers_found.labels(token=token_id).inc(count)

    @staticmethod
    def set_run_finished(status: str) -> None:
        if not Metrics.enabled:
            return
        _runs.labels(status=status).inc()
