"""
Marketplace Visual Search Backend Module

This module finds catalog items that look like an uploaded photo:
- Remote image embeddings with a local statistics fallback
- PostgreSQL storage of product image embeddings
- Brute-force cosine ranking with degraded fallback tiers
- REST API backend with FastAPI

Main components:
- embedder: Remote embedding provider and local fallback vectors
- vector_processor: Similarity scoring and tiered ranking
- database: PostgreSQL embedding store and product catalog join
- search_service: Request pipeline for search and embedding creation
- main: FastAPI web application and REST endpoints
- config: Configuration management and environment variables
"""

__version__ = "1.0.0"

from .embedder import RemoteEmbeddingProvider, EmbeddingProviderError, EmbeddingResult, fallback_embed
from .vector_processor import SimilarityRanker, RankingOutcome, RankingTier, cosine_similarity, rank
from .database import MarketplaceDatabase, EmbeddingStore, ProductCatalog, EmbeddingRecord, DatabaseConfig
from .search_service import VisualSearchService
from .config import Config

__all__ = [
    'RemoteEmbeddingProvider',
    'EmbeddingProviderError',
    'EmbeddingResult',
    'fallback_embed',
    'SimilarityRanker',
    'RankingOutcome',
    'RankingTier',
    'cosine_similarity',
    'rank',
    'MarketplaceDatabase',
    'EmbeddingStore',
    'ProductCatalog',
    'EmbeddingRecord',
    'DatabaseConfig',
    'VisualSearchService',
    'Config'
]
