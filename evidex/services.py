"""
Evidex Services

Builds the default collaborators and the orchestrator from settings.
Shared by the API lifespan and the command-line scripts.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from .analysis import (
    AnalysisOptions,
    AnalysisOrchestrator,
    InMemoryProgressNotifier,
    MitreMapper,
    ThreatScorer,
    TimelineBuilder,
    load_reference_data,
)
from .config import Settings, get_settings
from .parsers import ParserRegistry, create_default_registry
from .rules import PatternRuleEngine
from .storage import DatabaseManager, LocalStorage

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Wired application components."""
    settings: Settings
    db_manager: DatabaseManager
    storage: LocalStorage
    parsers: ParserRegistry
    rule_engine: PatternRuleEngine
    notifier: InMemoryProgressNotifier
    orchestrator: AnalysisOrchestrator

    def default_options(self, **overrides) -> AnalysisOptions:
        """AnalysisOptions seeded from the analysis config section."""
        config = self.settings.analysis
        values = {
            "map_to_mitre": config.map_to_mitre,
            "generate_timeline": config.generate_timeline,
            "max_events": config.max_events,
            "timeout_seconds": config.timeout_seconds,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return AnalysisOptions(**values)

    async def close(self):
        await self.db_manager.close()


async def create_services(settings: Optional[Settings] = None) -> Services:
    """
    Build and initialize all components.

    Args:
        settings: Settings to use; the cached settings if None

    Returns:
        Services with the database initialized and rules loaded
    """
    settings = settings or get_settings()

    db_manager = DatabaseManager(
        db_path=str(settings.resolve_path(settings.database.path)),
        echo=settings.database.echo,
    )
    await db_manager.init_db()

    storage = LocalStorage(
        uploads_path=str(settings.resolve_path(settings.storage.uploads_path)),
        analyses_path=str(settings.resolve_path(settings.storage.analyses_path)),
        db_manager=db_manager,
    )

    rule_engine = PatternRuleEngine(str(settings.resolve_path(settings.rules.rules_path)))
    rule_engine.reload()

    reference = load_reference_data(str(settings.resolve_path(settings.mitre.attack_json_path)))
    notifier = InMemoryProgressNotifier(max_analyses=settings.analysis.progress_history)
    parsers = create_default_registry(settings.parsers.max_line_length)

    orchestrator = AnalysisOrchestrator(
        storage=storage,
        parsers=parsers,
        rule_engine=rule_engine,
        notifier=notifier,
        scorer=ThreatScorer(),
        mapper=MitreMapper(reference),
        timeline_builder=TimelineBuilder(),
        notify_timeout=settings.analysis.notify_timeout_seconds,
    )

    logger.info(
        f"Services ready: {len(parsers.list_parsers())} parsers, "
        f"{rule_engine.rule_count} rules, {len(reference.techniques)} ATT&CK techniques"
    )

    return Services(
        settings=settings,
        db_manager=db_manager,
        storage=storage,
        parsers=parsers,
        rule_engine=rule_engine,
        notifier=notifier,
        orchestrator=orchestrator,
    )
