from .experiment import (
    AllocationEntry,
    Experiment,
    ExperimentCreate,
    ExperimentMetrics,
    ExperimentStatus,
    ExperimentUpdate,
    MetricDirection,
    VariantConfig,
)
from .variant import ChangeType, Variant, VariantChange, VariantStatus, VariantType
from .session import (
    AssignmentRequest,
    AssignmentResponse,
    VariantSessionCounts,
    VisitContext,
    VisitorSession,
)
from .sample import MetricSample, SampleCreate, SampleQuery
from .analysis import AnalysisResult, DataReadiness, TTestResult, VariantStatistics, WinnerInfo
from .implementation import (
    ChangeOutcome,
    ChangeRequest,
    ChangeResult,
    ImplementationRecord,
    ImplementationStatus,
    RollbackRequest,
    StopOptions,
    StopResult,
)
from .views import ExperimentDetail, ExperimentStatusView, VariantView
