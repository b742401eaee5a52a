"""
Engine Orchestration Module

Wires every layer of the scenario tree engine into one backend object.

DESIGN PRINCIPLES:
==================
1. Layers communicate only through contracts and explicit constructor
   arguments; nothing is looked up globally
2. Authoring (catalog, conditions, trees) and runtime (log, projector,
   navigation) share no mutable state except through these references
3. One clock is injected everywhere that needs "now"

LAYER FLOW:
===========
1. Catalog: question identity and lifecycle
2. Conditions: content-addressed rule predicates
3. Trees: versioned node structure referencing both
4. Event log: append-only scenario history
5. Projector / replay: state derived from the log
6. Navigation: availability computed from state + tree
7. Scenarios: runtime actions tying it all together
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Mapping, Optional
import logging
import os

from .catalog.registry import QuestionCatalog
from .conditions.engine import ConditionEngine
from .conditions.store import ConditionStore
from .navigation.cache import AvailabilityCache, NavigationConfig
from .navigation.engine import NavigationEngine
from .observability import AuditExporter, configure_logging
from .scenarios.service import ScenarioService
from .storage import EventStoreConfig, create_event_store
from .temporal.clock import LogicalClock
from .temporal.event_log import ScenarioEventLog
from .tree.store import TreeStore


logger = logging.getLogger(__name__)


@dataclass
class BackendConfig:
    """Unified configuration for the entire backend."""
    storage: EventStoreConfig = None
    navigation: NavigationConfig = None
    log_level: str = "INFO"
    configure_logging: bool = False

    def __post_init__(self):
        self.storage = self.storage or EventStoreConfig()
        self.navigation = self.navigation or NavigationConfig()

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> BackendConfig:
        """
        SCENARIO_TREE_STORAGE      memory | file (default memory)
        SCENARIO_TREE_STORAGE_DIR  directory for the file store
        SCENARIO_TREE_CACHE_SECONDS availability cache refresh interval
        SCENARIO_TREE_LOG_LEVEL    root log level (default INFO)
        """
        env = os.environ if environ is None else environ
        backend_type = env.get("SCENARIO_TREE_STORAGE", "memory")
        storage_dir = env.get("SCENARIO_TREE_STORAGE_DIR")
        if backend_type == "file" and not storage_dir:
            storage_dir = os.path.join(os.getcwd(), "data", "events")
        raw_seconds = env.get("SCENARIO_TREE_CACHE_SECONDS", "300")
        try:
            seconds = float(raw_seconds)
        except ValueError as exc:
            raise ValueError(f"SCENARIO_TREE_CACHE_SECONDS is not a number: {raw_seconds!r}") from exc
        return cls(
            storage=EventStoreConfig(backend_type=backend_type, storage_dir=storage_dir),
            navigation=NavigationConfig(cache_refresh_seconds=seconds, enable_cache=seconds > 0),
            log_level=env.get("SCENARIO_TREE_LOG_LEVEL", "INFO"),
            configure_logging=True,
        )


class ScenarioTreeBackend:
    """
    Unified backend: authoring stores plus the runtime service.

    The catalog's usage probe is the service's count of open scenarios
    holding an answer, so archiving a question in use is refused.
    """

    def __init__(self, config: Optional[BackendConfig] = None, clock: Optional[LogicalClock] = None):
        self._config = config or BackendConfig()
        if self._config.configure_logging:
            configure_logging(self._config.log_level)
        self._clock = clock or LogicalClock.live()

        self.catalog = QuestionCatalog(clock=self._clock)
        self.conditions = ConditionStore()
        self.condition_engine = ConditionEngine(self.conditions)
        self.trees = TreeStore(self.catalog, self.conditions, clock=self._clock)

        self.event_log = ScenarioEventLog(create_event_store(self._config.storage), clock=self._clock)
        self.navigation = NavigationEngine(self.condition_engine)
        nav_config = self._config.navigation
        self.cache = (
            AvailabilityCache(nav_config.cache_refresh_seconds, clock=self._clock)
            if nav_config.enable_cache else None
        )
        self.scenarios = ScenarioService(
            self.catalog, self.trees, self.event_log, self.navigation,
            cache=self.cache, clock=self._clock,
        )
        self.catalog.set_usage_probe(self.scenarios.active_scenario_count)
        self.audit = AuditExporter(self.event_log)

        logger.info(
            "Scenario tree backend ready (storage=%s, cache=%s)",
            self._config.storage.backend_type,
            "off" if self.cache is None else f"{nav_config.cache_refresh_seconds:g}s",
        )

    @property
    def config(self) -> BackendConfig:
        return self._config

    @property
    def clock(self) -> LogicalClock:
        return self._clock
