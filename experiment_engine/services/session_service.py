import logging
from datetime import datetime
from typing import Dict, Optional, Union

from ..core.errors import NotFound
from ..core.monitoring import VISITS_TOTAL
from ..models.session import VariantSessionCounts, VisitContext, VisitorSession
from ..repositories.base import SessionRepository
from .experiment_definition import ExperimentDefinitionService

logger = logging.getLogger(__name__)

BOT_PATTERNS = (
    'bot', 'crawler', 'spider', 'slurp', 'baiduspider',
    'yandex', 'googlebot', 'bingbot', 'semrushbot',
    'ahrefsbot', 'mj12bot', 'dotbot', 'rogerbot'
)


def is_bot(user_agent: Optional[str]) -> bool:
    """Detect crawler traffic from a user agent string."""
    if not user_agent:
        return False
    lower_user_agent = user_agent.lower()
    return any(pattern in lower_user_agent for pattern in BOT_PATTERNS)


class VisitorSessionStore:
    """Keeps the first-seen assignment of every visitor of an experiment."""

    def __init__(self, sessions: SessionRepository, definitions: ExperimentDefinitionService):
        self.sessions = sessions
        self.definitions = definitions

    async def record_visit(
        self,
        experiment_id: str,
        visitor_id: str,
        assigned_variant_id: str,
        context: Union[VisitContext, Dict, None] = None
    ) -> VisitorSession:
        """
        Create the visitor's session or register another visit to it.

        An existing session keeps its variant whatever ``assigned_variant_id``
        says; only last_seen, visit_count and newly supplied context change.
        """
        experiment = await self.definitions.get(experiment_id)
        if assigned_variant_id not in experiment.variants:
            raise NotFound("Variant", assigned_variant_id)

        if not isinstance(context, VisitContext):
            context = VisitContext.model_validate(context or {})
        fields = context.supplied_fields()
        if "is_bot" not in fields and context.user_agent:
            fields["is_bot"] = is_bot(context.user_agent)

        session = await self.sessions.upsert_visit(
            experiment_id, visitor_id, assigned_variant_id, fields, datetime.utcnow()
        )
        VISITS_TOTAL.labels(experiment_id=experiment_id, bot=str(session.is_bot).lower()).inc()

        if session.variant_id != assigned_variant_id:
            logger.debug(
                f"Visitor {visitor_id} keeps variant {session.variant_id} "
                f"(offered {assigned_variant_id}) in experiment {experiment_id}"
            )
        return session

    async def get_session(self, experiment_id: str, visitor_id: str) -> Optional[VisitorSession]:
        return await self.sessions.get(experiment_id, visitor_id)

    async def sessions_per_variant(self, experiment_id: str) -> Dict[str, VariantSessionCounts]:
        """Human traffic per variant; variants without sessions report zeros."""
        experiment = await self.definitions.get(experiment_id)
        counts = await self.sessions.counts_per_variant(experiment_id)
        return {
            variant_id: counts.get(variant_id, VariantSessionCounts())
            for variant_id in experiment.variants
        }

    async def session_count(self, experiment_id: str, include_bots: bool = False) -> int:
        return await self.sessions.count(experiment_id, include_bots=include_bots)
