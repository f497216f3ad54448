"""Difficulty-routed delegation to other retrievers."""

from __future__ import annotations

from dataclasses import replace
from typing import Mapping

from ragrouter.analysis import classify_difficulty
from ragrouter.errors import ConfigurationError
from ragrouter.metrics.observability import get_logger
from ragrouter.models import Difficulty, Granularity, Query, RagResponse, Strategy
from ragrouter.retrieval.base import Retriever, StrategyConfig

ROUTES: Mapping[Difficulty, tuple[Strategy, Granularity]] = {
    "easy": (Strategy.RETRIEVE_READ, "coarse"),
    "medium": (Strategy.HYBRID, "fine"),
    "hard": (Strategy.TWO_STAGE_RERANK, "adaptive"),
}


class AdaptiveRetriever:
    """Pick a delegate strategy, granularity and score threshold from query difficulty."""

    strategy = Strategy.ADAPTIVE
    name = "AdaptiveRetriever"
    uses_routing = False

    def __init__(self, delegates: Mapping[Strategy, Retriever], configs: Mapping[Strategy, StrategyConfig]) -> None:
        if Strategy.RETRIEVE_READ not in delegates:
            raise ConfigurationError("Adaptive retrieval needs a retrieve_read delegate")
        self._delegates = dict(delegates)
        self._configs = dict(configs)
        self._logger = get_logger("retrieval.adaptive")

    def plan(self, query: Query, config: StrategyConfig) -> tuple[Strategy, Query, StrategyConfig]:
        difficulty = query.difficulty or classify_difficulty(query.text)
        target, granularity = ROUTES[difficulty]
        if target not in self._delegates:
            target = Strategy.RETRIEVE_READ
        threshold = config.adaptive_thresholds.get(difficulty, config.score_threshold)
        template = self._configs.get(target) or StrategyConfig(strategy=target)
        delegate_config = template.merge(
            top_k=config.top_k,
            score_threshold=threshold,
            timeout_seconds=config.timeout_seconds,
        )
        delegate_query = query.with_updates(
            difficulty=difficulty,
            granularity=query.granularity or granularity,
        )
        return target, delegate_query, delegate_config

    async def retrieve(self, query: Query, config: StrategyConfig) -> RagResponse:
        target, delegate_query, delegate_config = self.plan(query, config)
        self._logger.info(
            "retrieval.adaptive.delegate",
            query_id=query.query_id,
            difficulty=delegate_query.difficulty,
            delegate=target.value,
            score_threshold=delegate_config.score_threshold,
        )
        response = await self._delegates[target].retrieve(delegate_query, delegate_config)
        debug = replace(
            response.debug_info,
            strategy_reasoning=(
                f"Adaptive routing: {delegate_query.difficulty} query delegated to {target.value} "
                f"(threshold {delegate_config.score_threshold}). {response.debug_info.strategy_reasoning}"
            ),
        )
        return response.with_updates(strategy=self.strategy, debug_info=debug)

    async def health_check(self) -> bool:
        return await self._delegates[Strategy.RETRIEVE_READ].health_check()
