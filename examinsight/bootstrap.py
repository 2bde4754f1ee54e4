"""
Builds the long-lived service objects once per process and tears them down on shutdown.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.engine import Engine

from .core.cache import KeyValueStore, MemoryStore, RedisStore
from .core.config import Settings, get_settings
from .core.database import init_db, make_engine, make_session_factory
from .services.ai_client import CoachModel, OpenAICoachModel, UnconfiguredCoachModel
from .services.ai_coach import AICoach, AICoachCache
from .services.orchestrator import SnapshotOrchestrator
from .services.repository import AnalyticsRepository, SqlAnalyticsRepository

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    store: KeyValueStore
    repository: AnalyticsRepository
    orchestrator: SnapshotOrchestrator
    coach_cache: AICoachCache
    coach: AICoach
    engine: Optional[Engine] = None

    def close(self) -> None:
        self.orchestrator.shutdown()
        self.coach_cache.shutdown()
        self.repository.close()
        self.store.close()
        if self.engine is not None:
            self.engine.dispose()
        logger.info("Services closed")


def create_services(
    settings: Settings = None,
    store: KeyValueStore = None,
    repository: AnalyticsRepository = None,
    model: CoachModel = None,
) -> Services:
    settings = settings or get_settings()

    if store is None:
        store = RedisStore(settings.REDIS_URL) if settings.USE_REDIS else MemoryStore()
        logger.info(f"Key-value store: {'redis' if settings.USE_REDIS else 'memory'}")

    engine = None
    if repository is None:
        engine = make_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)
        init_db(engine)
        repository = SqlAnalyticsRepository(make_session_factory(engine))
        logger.info("Database initialized")

    if model is None:
        if settings.OPENAI_API_KEY is not None:
            model = OpenAICoachModel.from_settings(settings)
        else:
            logger.warning("OPENAI_API_KEY not set; coaching commentary will use fallback text")
            model = UnconfiguredCoachModel()

    orchestrator = SnapshotOrchestrator.from_settings(settings, repository, store)
    coach_cache = AICoachCache.from_settings(settings, store, model)
    return Services(
        settings=settings,
        store=store,
        repository=repository,
        orchestrator=orchestrator,
        coach_cache=coach_cache,
        coach=AICoach(coach_cache),
        engine=engine,
    )
