from prometheus_client import Counter, Histogram, Info
import logging

logger = logging.getLogger("experiment_engine")


class MetricsLogger:
    def __init__(self):
        self.logger = logging.getLogger("experiment_engine.metrics")

    def log_error(self, error_type: str, error_message: str, context: dict = None):
        """Log an error with context"""
        if context is None:
            context = {}
        self.logger.error(f"{error_type}: {error_message}", extra=context)

    def log_info(self, message: str, context: dict = None):
        """Log info with context"""
        if context is None:
            context = {}
        self.logger.info(message, extra=context)


metrics_logger = MetricsLogger()

# Metrics
ASSIGNMENTS_TOTAL = Counter(
    'experiment_assignments_total',
    'Total number of visitor assignments',
    ['experiment_id', 'variant_id']
)

VISITS_TOTAL = Counter(
    'experiment_visits_total',
    'Total number of recorded visits',
    ['experiment_id', 'bot']
)

SAMPLES_TOTAL = Counter(
    'experiment_metric_samples_total',
    'Total number of appended metric samples',
    ['experiment_id']
)

ANALYSES_TOTAL = Counter(
    'experiment_analyses_total',
    'Total number of significance analyses',
    ['outcome']
)

ANALYSIS_LATENCY = Histogram(
    'experiment_analysis_latency_seconds',
    'Significance analysis latency in seconds'
)

IMPLEMENTED_CHANGES_TOTAL = Counter(
    'experiment_implemented_changes_total',
    'Winning variant changes handed to the code-change service',
    ['status']
)

SYSTEM_INFO = Info('experiment_engine_system', 'Experiment engine system information')


def set_system_info(version: str, environment: str):
    """Set system information metrics"""
    SYSTEM_INFO.info({
        'version': version,
        'environment': environment
    })
