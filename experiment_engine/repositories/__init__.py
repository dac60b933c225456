from .base import (
    ExperimentRepository,
    ImplementationRepository,
    Repositories,
    SampleRepository,
    SessionRepository,
    VariantRepository,
)
from .memory import in_memory_repositories
