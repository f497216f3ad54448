"""Wire production dependencies into a :class:`RagService`."""

from __future__ import annotations

from typing import Dict

import chromadb
from chromadb.api import ClientAPI

from ragrouter.analysis import QueryAnalyzer
from ragrouter.config import Settings, get_settings
from ragrouter.embeddings import ChromaVectorStore, EmbeddingConfig, EmbeddingProvider, HuggingFaceEmbeddingBackend
from ragrouter.fusion import EnsembleFuser
from ragrouter.graph import GraphStore, Neo4jGraphStore
from ragrouter.ingestion import ChunkingConfig, ChunkingService
from ragrouter.metrics.analytics import AnalyticsSink, InMemoryAnalyticsSink
from ragrouter.metrics.observability import configure_logging, get_logger
from ragrouter.models import Strategy
from ragrouter.retrieval import (
    AdaptiveRetriever,
    AugmentedRerankingRetriever,
    CrossEncoderReranker,
    DenseRetriever,
    FederatedRetriever,
    GraphRetriever,
    HybridRetriever,
    LexicalReranker,
    Reranker,
    Retriever,
    TwoStageRerankRetriever,
    default_strategy_configs,
)
from ragrouter.routing import DatabaseRouter, StoreKind
from ragrouter.services.rag import RagService


def build_chroma_client(settings: Settings) -> ClientAPI:
    if settings.chroma_host:
        return chromadb.HttpClient(
            host=settings.chroma_host,
            port=settings.chroma_port or 8000,
            ssl=settings.chroma_ssl,
        )
    if settings.is_test:
        return chromadb.EphemeralClient()
    return chromadb.PersistentClient(path=str(settings.chroma_persist_dir))


def build_rag_service(
    settings: Settings | None = None,
    *,
    chroma_client: ClientAPI | None = None,
    graph_store: GraphStore | None = None,
    embedding_provider: EmbeddingProvider | None = None,
    analytics: AnalyticsSink | None = None,
) -> RagService:
    settings = settings or get_settings()
    configure_logging(settings.log_level)
    logger = get_logger("bootstrap")

    provider = embedding_provider or HuggingFaceEmbeddingBackend(
        EmbeddingConfig(
            model=settings.embedding_model,
            dim=settings.embedding_dim,
            use_model=settings.use_model_embeddings,
            device=settings.embedding_device,
            normalize=True,
            query_instruction=settings.embedding_query_instruction,
        )
    )
    client = chroma_client or build_chroma_client(settings)
    store = ChromaVectorStore(provider, settings.chroma_collection, client=client)
    shards = [store]
    for name in settings.federated_collections_tuple:
        if name != settings.chroma_collection:
            shards.append(ChromaVectorStore(provider, name, client=client))

    if graph_store is None and settings.neo4j_uri:
        graph_store = Neo4jGraphStore(
            settings.neo4j_uri,
            settings.neo4j_user,
            settings.neo4j_password,
            database=settings.neo4j_database,
        )
    router = DatabaseRouter(
        {StoreKind.VECTOR: store, StoreKind.GRAPH: graph_store},
        default_policy=settings.router_default_policy,
    )

    reranker: Reranker
    if settings.use_cross_encoder:
        reranker = CrossEncoderReranker(settings.cross_encoder_model, device=settings.cross_encoder_device)
    else:
        reranker = LexicalReranker()

    retrievers: Dict[Strategy, Retriever] = {
        Strategy.RETRIEVE_READ: DenseRetriever(provider, store),
        Strategy.HYBRID: HybridRetriever(provider, store),
        Strategy.TWO_STAGE_RERANK: TwoStageRerankRetriever(provider, store, reranker),
        Strategy.AUGMENTED_RERANKING: AugmentedRerankingRetriever(provider, store, reranker),
        Strategy.FEDERATED: FederatedRetriever(provider, shards),
    }
    if graph_store is not None:
        retrievers[Strategy.GRAPH_RAG] = GraphRetriever(provider, store, router)
    configs = default_strategy_configs(settings)
    retrievers[Strategy.ADAPTIVE] = AdaptiveRetriever(dict(retrievers), configs)

    logger.info(
        "service.configured",
        environment=settings.environment,
        collection=settings.chroma_collection,
        shards=[shard.name for shard in shards],
        graph_store=graph_store.name if graph_store is not None else None,
        reranker=reranker.model_name,
        strategies=[strategy.value for strategy in retrievers],
    )
    return RagService(
        retrievers,
        analyzer=QueryAnalyzer(),
        router=router,
        fuser=EnsembleFuser(),
        analytics=analytics if analytics is not None else InMemoryAnalyticsSink(settings.analytics_max_records),
        configs=configs,
        settings=settings,
        store=store,
        chunker=ChunkingService(
            ChunkingConfig(
                coarse_chunk_size=settings.coarse_chunk_size,
                fine_chunk_size=settings.fine_chunk_size,
                chunk_overlap=settings.chunk_overlap,
            )
        ),
        graph_store=graph_store,
        embedding_provider=provider,
    )


__all__ = ["build_chroma_client", "build_rag_service"]
