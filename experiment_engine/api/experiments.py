from datetime import datetime
from typing import Dict, List, Literal, Optional

from fastapi import APIRouter, Body, Depends, Query, Request

from ..models.analysis import AnalysisResult
from ..models.experiment import AllocationEntry, Experiment, ExperimentCreate, ExperimentUpdate
from ..models.implementation import ImplementationRecord, StopOptions, StopResult
from ..models.sample import MetricSample, MetricTrendPoint, SampleCreate
from ..models.session import AssignmentRequest, AssignmentResponse, VariantSessionCounts
from ..models.views import ExperimentDetail, ExperimentStatusView
from ..services.experiment_service import ExperimentService

router = APIRouter()


def get_experiment_service(request: Request) -> ExperimentService:
    return request.app.state.experiment_service


@router.post("/experiments", response_model=ExperimentDetail, status_code=201)
async def create_experiment(
    experiment: ExperimentCreate,
    service: ExperimentService = Depends(get_experiment_service)
):
    """Create an experiment with its variants."""
    return await service.create_experiment(experiment)


@router.get("/experiments", response_model=List[Experiment])
async def list_experiments(
    site_id: str,
    status: Optional[str] = None,
    service: ExperimentService = Depends(get_experiment_service)
):
    """List the experiments of a site with optional status filter."""
    return await service.list_experiments(site_id, status)


@router.get("/experiments/{experiment_id}", response_model=ExperimentDetail)
async def get_experiment(
    experiment_id: str,
    service: ExperimentService = Depends(get_experiment_service)
):
    return await service.get_experiment(experiment_id)


@router.patch("/experiments/{experiment_id}", response_model=Experiment)
async def update_experiment(
    experiment_id: str,
    experiment_update: ExperimentUpdate,
    service: ExperimentService = Depends(get_experiment_service)
):
    return await service.update_experiment(experiment_id, experiment_update)


@router.post("/experiments/{experiment_id}/start", response_model=Experiment)
async def start_experiment(
    experiment_id: str,
    service: ExperimentService = Depends(get_experiment_service)
):
    return await service.start_experiment(experiment_id)


@router.post("/experiments/{experiment_id}/pause", response_model=Experiment)
async def pause_experiment(
    experiment_id: str,
    service: ExperimentService = Depends(get_experiment_service)
):
    return await service.pause_experiment(experiment_id)


@router.post("/experiments/{experiment_id}/stop", response_model=StopResult)
async def stop_experiment(
    experiment_id: str,
    options: Optional[StopOptions] = Body(None),
    service: ExperimentService = Depends(get_experiment_service)
):
    """Stop an experiment and implement the winning variant."""
    return await service.stop_experiment(experiment_id, options)


@router.get("/experiments/{experiment_id}/status", response_model=ExperimentStatusView)
async def get_experiment_status(
    experiment_id: str,
    service: ExperimentService = Depends(get_experiment_service)
):
    return await service.get_status(experiment_id)


@router.put("/experiments/{experiment_id}/allocation", response_model=Experiment)
async def update_allocation(
    experiment_id: str,
    allocation: List[AllocationEntry],
    service: ExperimentService = Depends(get_experiment_service)
):
    return await service.update_allocation(experiment_id, allocation)


@router.post("/experiments/{experiment_id}/assign", response_model=AssignmentResponse)
async def assign_variant(
    experiment_id: str,
    assignment: AssignmentRequest,
    service: ExperimentService = Depends(get_experiment_service)
):
    """Assign a visitor to a variant of a running experiment."""
    variant_id = await service.assign_variant(experiment_id, assignment.visitor_id, assignment.context)
    return AssignmentResponse(
        experiment_id=experiment_id,
        visitor_id=assignment.visitor_id,
        variant_id=variant_id
    )


@router.post("/experiments/{experiment_id}/samples", response_model=MetricSample, status_code=201)
async def record_sample(
    experiment_id: str,
    sample: SampleCreate,
    service: ExperimentService = Depends(get_experiment_service)
):
    return await service.record_sample(experiment_id, sample.variant_id, sample.timestamp, sample.metrics)


@router.get("/experiments/{experiment_id}/samples", response_model=List[MetricSample])
async def query_samples(
    experiment_id: str,
    variant_id: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    sort: Literal["asc", "desc"] = "desc",
    limit: Optional[int] = Query(None, gt=0),
    service: ExperimentService = Depends(get_experiment_service)
):
    return await service.query_samples(
        experiment_id,
        variant_id=variant_id,
        start_date=start_date,
        end_date=end_date,
        sort=sort,
        limit=limit
    )


@router.get("/experiments/{experiment_id}/trends", response_model=Dict[str, List[MetricTrendPoint]])
async def metric_trends(
    experiment_id: str,
    metric: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    limit: Optional[int] = Query(None, gt=0),
    service: ExperimentService = Depends(get_experiment_service)
):
    """Per-variant time series of a metric, oldest point first."""
    return await service.get_metric_trends(
        experiment_id, metric, start_date=start_date, end_date=end_date, limit=limit
    )


@router.get("/experiments/{experiment_id}/analysis", response_model=AnalysisResult)
async def get_analysis(
    experiment_id: str,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    service: ExperimentService = Depends(get_experiment_service)
):
    """Significance analysis of the primary metric."""
    return await service.get_analysis(experiment_id, start_date, end_date)


@router.get("/experiments/{experiment_id}/sessions", response_model=Dict[str, VariantSessionCounts])
async def sessions_per_variant(
    experiment_id: str,
    service: ExperimentService = Depends(get_experiment_service)
):
    return await service.sessions_per_variant(experiment_id)


@router.get("/experiments/{experiment_id}/implementations", response_model=List[ImplementationRecord])
async def list_implementations(
    experiment_id: str,
    service: ExperimentService = Depends(get_experiment_service)
):
    return await service.list_implementations(experiment_id)


@router.post("/implementations/{implementation_id}/rollback", response_model=ImplementationRecord)
async def rollback_implementation(
    implementation_id: str,
    service: ExperimentService = Depends(get_experiment_service)
):
    return await service.rollback_implementation(implementation_id)
