"""
Visual search orchestration.

A request moves through a strict pipeline, each stage awaited before the next:

    Received -> Preprocessing -> Embedding(primary | fallback)
             -> Ranking(primary | approximate | random) -> Responded

Provider and ranking failures are absorbed into degraded results. Only bad
input (BadRequestError) and unexpected failures (InternalError and anything
unhandled) reach the caller.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, List, Optional, Union

from .database import EmbeddingRecord, EmbeddingStore, ValidationError
from .embedder import (
    DEFAULT_EMBEDDING_DIM,
    SOURCE_REMOTE,
    EmbeddingProviderError,
    EmbeddingResult,
    RemoteEmbeddingProvider,
    fallback_embed,
)
from .errors import BadRequestError, InternalError
from .preprocessing import PreprocessingError, preprocess_image
from .uploads import ImageUpload, StoredUpload, UploadStorage
from .vector_processor import DEFAULT_TOP_K, RankingOutcome, SimilarityRanker

logger = logging.getLogger(__name__)

EMPTY_STORE_HINT = "No embeddings found. Use POST /api/visual-search/add-embedding to add some images first."


def log_search_event(stage: str, outcome: str, **kwargs):
    """Log structured JSON event for pipeline stages that ran degraded"""
    log_data = {
        "ts": time.time(),
        "module": "visual_search",
        "stage": stage,
        "outcome": outcome,
        **kwargs
    }
    logger.warning(f"SEARCH_EVENT: {json.dumps(log_data)}")


@dataclass
class SearchOutcome:
    embedding: EmbeddingResult
    ranking: RankingOutcome

    @property
    def query_embedding_length(self) -> int:
        return len(self.embedding.vector)

    @property
    def degraded(self) -> bool:
        return self.embedding.degraded or self.ranking.degraded


@dataclass
class AddEmbeddingOutcome:
    record: EmbeddingRecord
    embedding: EmbeddingResult

    @property
    def embedding_length(self) -> int:
        return len(self.embedding.vector)


@dataclass
class RecordDiagnostics:
    id: Optional[int]
    product_id: Union[int, str]
    product_name: str
    image_url: str
    embedding_length: Union[int, str]
    is_array: bool
    has_product: bool


@dataclass
class StatusReport:
    total_embeddings: int
    embeddings: List[RecordDiagnostics] = field(default_factory=list)

    @property
    def message(self) -> str:
        if self.total_embeddings == 0:
            return EMPTY_STORE_HINT
        return f"Found {self.total_embeddings} embeddings in database"


def diagnose_record(record: EmbeddingRecord) -> RecordDiagnostics:
    is_array = isinstance(record.embedding, (list, tuple))
    return RecordDiagnostics(
        id=record.embedding_id,
        product_id=record.product["id"] if record.product else "missing",
        product_name=(record.product.get("name") or "N/A") if record.product else "N/A",
        image_url=record.image_url,
        embedding_length=len(record.embedding) if is_array else "not array",
        is_array=is_array,
        has_product=record.has_product,
    )


class VisualSearchService:
    """
    Orchestrates preprocessing, embedding and ranking for search requests,
    and embedding creation for catalog images.
    """

    def __init__(self,
                 provider: RemoteEmbeddingProvider,
                 store: EmbeddingStore,
                 storage: UploadStorage,
                 ranker: Optional[SimilarityRanker] = None,
                 embedding_dim: int = DEFAULT_EMBEDDING_DIM,
                 search_limit: int = DEFAULT_TOP_K):
        self.provider = provider
        self.store = store
        self.storage = storage
        self.ranker = ranker or SimilarityRanker(store, k=search_limit)
        self.embedding_dim = embedding_dim

    async def embed(self, image_bytes: bytes) -> EmbeddingResult:
        """Primary remote embedding, then the local fallback if it fails."""
        try:
            vector = await self.provider.embed(image_bytes)
            return EmbeddingResult(vector=vector, source=SOURCE_REMOTE)
        except EmbeddingProviderError as e:
            logger.info(f"Primary embedding failed, using fallback method: {e}")

        result = await asyncio.to_thread(fallback_embed, image_bytes, self.embedding_dim)
        log_search_event("embedding", "fallback", source=result.source, degraded=result.degraded)
        return result

    async def _preprocess(self, stored: StoredUpload) -> bytes:
        try:
            image_bytes = await asyncio.to_thread(stored.path.read_bytes)
            return await asyncio.to_thread(preprocess_image, image_bytes)
        except (OSError, PreprocessingError) as e:
            raise InternalError(f"Image preprocessing failed: {e}") from e

    def _discard(self, stored: StoredUpload):
        # Must not mask the exception that triggered the cleanup
        try:
            self.storage.delete(stored)
        except OSError as e:
            logger.error(f"Failed to remove upload {stored.path}: {e}")

    @staticmethod
    def _require_image(upload: Optional[ImageUpload]):
        if upload is None or not upload.data:
            raise BadRequestError("No image file provided")

    @staticmethod
    def _parse_product_id(product_id: Any) -> int:
        if product_id is None or str(product_id).strip() == "":
            raise BadRequestError("Product ID is required")
        try:
            return int(str(product_id).strip())
        except ValueError:
            raise BadRequestError(f"Invalid product ID: {product_id}")

    async def search(self, upload: Optional[ImageUpload]) -> SearchOutcome:
        """
        Find catalog items visually similar to the uploaded image.

        The uploaded file is removed on every exit path.
        """
        self._require_image(upload)
        stored = self.storage.save(upload)

        try:
            processed = await self._preprocess(stored)
            embedding = await self.embed(processed)
            logger.info(f"Query embedding length: {len(embedding.vector)} (source={embedding.source})")
            ranking = await self.ranker.rank(embedding.vector)
        finally:
            self._discard(stored)

        if ranking.degraded:
            log_search_event(
                "ranking", ranking.tier.value,
                results=len(ranking.results), embedding_source=embedding.source,
            )
        logger.info(f"Found {len(ranking.results)} similar images (tier={ranking.tier.value})")
        return SearchOutcome(embedding=embedding, ranking=ranking)

    async def add_embedding(self, upload: Optional[ImageUpload], product_id: Any) -> AddEmbeddingOutcome:
        """
        Embed an image and store it against a product.

        On success the upload is kept and referenced by the record's image URL;
        on any failure it is removed.
        """
        self._require_image(upload)
        stored = self.storage.save(upload)

        try:
            parsed_product_id = self._parse_product_id(product_id)
            processed = await self._preprocess(stored)
            embedding = await self.embed(processed)

            record = EmbeddingRecord(
                product_id=parsed_product_id,
                embedding=embedding.vector,
                image_url=stored.url,
            )
            try:
                await asyncio.to_thread(self.store.insert, record)
            except ValidationError as e:
                raise BadRequestError(str(e)) from e
        except Exception:
            self._discard(stored)
            raise

        return AddEmbeddingOutcome(record=record, embedding=embedding)

    async def check_status(self) -> StatusReport:
        """Diagnostic listing of stored records and their product linkage."""
        records = await asyncio.to_thread(self.store.all)
        return StatusReport(
            total_embeddings=len(records),
            embeddings=[diagnose_record(record) for record in records],
        )
