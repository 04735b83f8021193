"""
FastAPI backend for marketplace visual search.
Provides REST API endpoints for image similarity search, embedding creation and store diagnostics.
"""

from fastapi import FastAPI, UploadFile, File, Form
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel
from typing import List, Optional, Dict, Any, Union
import logging
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

from marketplace.config import Config
from marketplace.database import MarketplaceDatabase, DatabaseConfig, EmbeddingRecord, StorageError
from marketplace.embedder import RemoteEmbeddingProvider
from marketplace.errors import BadRequestError, InternalError
from marketplace.search_service import VisualSearchService, RecordDiagnostics
from marketplace.uploads import ImageUpload, UploadStorage
from marketplace.vector_processor import RankedMatch

# Configure logging
logging.basicConfig(level=Config.LOG_LEVEL)
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="Marketplace Visual Search API",
    description="Find visually similar catalog items from an uploaded photo",
    version="1.0.0"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, specify exact origins
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Global variables for services
search_service: Optional[VisualSearchService] = None
embedding_provider: Optional[RemoteEmbeddingProvider] = None


# Pydantic models for API responses
class ProductInfo(BaseModel):
    id: int
    name: Optional[str] = None
    price: Optional[float] = None
    image: Optional[str] = None

class EmbeddingRecordInfo(BaseModel):
    id: Optional[int] = None
    productId: Optional[int] = None
    embedding: List[float]
    imageUrl: str
    createdAt: Optional[str] = None
    updatedAt: Optional[str] = None

class SearchMatch(BaseModel):
    record: EmbeddingRecordInfo
    similarity: float
    product: Optional[ProductInfo] = None

class SearchResponse(BaseModel):
    success: bool
    results: List[SearchMatch]
    queryEmbeddingLength: int
    rankingTier: str
    embeddingSource: str
    degraded: bool
    message: Optional[str] = None

class AddEmbeddingData(BaseModel):
    record: EmbeddingRecordInfo
    embeddingLength: int

class AddEmbeddingResponse(BaseModel):
    success: bool
    message: str
    data: AddEmbeddingData

class EmbeddingDiagnostics(BaseModel):
    id: Optional[int] = None
    productId: Union[int, str]
    productName: str
    imageUrl: str
    embeddingLength: Union[int, str]
    isArray: bool
    hasProduct: bool

class CheckDatabaseResponse(BaseModel):
    success: bool
    totalEmbeddings: int
    embeddings: List[EmbeddingDiagnostics]
    message: str


# Startup and shutdown events
@app.on_event("startup")
async def startup_event():
    """Initialize services on startup."""
    global search_service, embedding_provider

    try:
        database = MarketplaceDatabase(DatabaseConfig())

        embedding_provider = RemoteEmbeddingProvider(
            token=Config.HUGGINGFACE_TOKEN,
            model_name=Config.EMBEDDING_MODEL,
            api_url=Config.EMBEDDING_API_URL,
            timeout=Config.EMBEDDING_TIMEOUT,
        )
        logger.info(f"Embedding API token configured: {bool(Config.HUGGINGFACE_TOKEN)}")

        storage = UploadStorage(Config.UPLOAD_DIR, Config.MAX_UPLOAD_SIZE)

        search_service = VisualSearchService(
            provider=embedding_provider,
            store=database.embeddings,
            storage=storage,
            embedding_dim=Config.EMBEDDING_DIM,
            search_limit=Config.DEFAULT_SEARCH_LIMIT,
        )

        logger.info("Application startup completed successfully")

    except Exception as e:
        logger.error(f"Error during startup: {e}")
        raise


@app.on_event("shutdown")
async def shutdown_event():
    """Close the embedding HTTP client."""
    if embedding_provider is not None:
        try:
            await embedding_provider.aclose()
        except Exception as e:
            logger.warning(f"Error while closing embedding client: {e}")


# Utility functions
async def read_upload(file: Optional[UploadFile],
                      max_size: int = Config.MAX_UPLOAD_SIZE) -> Optional[ImageUpload]:
    """
    Read an uploaded file into memory; a missing or empty file yields None.

    At most max_size + 1 bytes are read, enough for the size check to reject it.
    """
    if file is None:
        return None
    data = await file.read(max_size + 1)
    if not data:
        return None
    return ImageUpload(filename=file.filename, content_type=file.content_type, data=data)


def error_response(status_code: int, message: str, error: Optional[str] = None) -> JSONResponse:
    content: Dict[str, Any] = {"success": False, "message": message}
    if error:
        content["error"] = error
    return JSONResponse(status_code=status_code, content=content)


def format_record(record: EmbeddingRecord) -> EmbeddingRecordInfo:
    return EmbeddingRecordInfo(**record.to_dict())


def format_match(match: RankedMatch) -> SearchMatch:
    return SearchMatch(
        record=format_record(match.record),
        similarity=match.score,
        product=ProductInfo(**match.product) if match.product else None
    )


def format_diagnostics(item: RecordDiagnostics) -> EmbeddingDiagnostics:
    return EmbeddingDiagnostics(
        id=item.id,
        productId=item.product_id,
        productName=item.product_name,
        imageUrl=item.image_url,
        embeddingLength=item.embedding_length,
        isArray=item.is_array,
        hasProduct=item.has_product
    )


# API Endpoints

@app.post("/api/visual-search/search", response_model=SearchResponse)
async def search_similar_images(image: Optional[UploadFile] = File(None)):
    """Search for catalog items similar to the uploaded image."""
    try:
        upload = await read_upload(image)
        outcome = await search_service.search(upload)

        return SearchResponse(
            success=True,
            results=[format_match(match) for match in outcome.ranking.results],
            queryEmbeddingLength=outcome.query_embedding_length,
            rankingTier=outcome.ranking.tier.value,
            embeddingSource=outcome.embedding.source,
            degraded=outcome.degraded,
            message=outcome.ranking.message
        )

    except BadRequestError as e:
        logger.error(f"Rejected search request: {e}")
        return error_response(400, str(e))
    except InternalError as e:
        logger.error(f"Error in visual search: {e}")
        return error_response(500, "Error performing visual search", str(e))
    except Exception as e:
        logger.exception(f"Unexpected error in visual search: {e}")
        return error_response(500, "Error performing visual search", str(e))


@app.post("/api/visual-search/add-embedding", response_model=AddEmbeddingResponse)
async def add_image_embedding(
    image: Optional[UploadFile] = File(None),
    productId: Optional[str] = Form(None)
):
    """Add an image embedding for a product."""
    try:
        upload = await read_upload(image)
        outcome = await search_service.add_embedding(upload, productId)

        return AddEmbeddingResponse(
            success=True,
            message="Image embedding added successfully",
            data=AddEmbeddingData(
                record=format_record(outcome.record),
                embeddingLength=outcome.embedding_length
            )
        )

    except BadRequestError as e:
        logger.error(f"Rejected add-embedding request: {e}")
        return error_response(400, str(e))
    except (InternalError, StorageError) as e:
        logger.error(f"Error adding image embedding: {e}")
        return error_response(500, "Error adding image embedding", str(e))
    except Exception as e:
        logger.exception(f"Unexpected error adding image embedding: {e}")
        return error_response(500, "Error adding image embedding", str(e))


@app.get("/api/visual-search/check-database", response_model=CheckDatabaseResponse)
async def check_database():
    """List stored embeddings with their length and product linkage."""
    try:
        report = await search_service.check_status()

        return CheckDatabaseResponse(
            success=True,
            totalEmbeddings=report.total_embeddings,
            embeddings=[format_diagnostics(item) for item in report.embeddings],
            message=report.message
        )

    except Exception as e:
        logger.error(f"Error checking database: {e}")
        return error_response(500, "Error checking database", str(e))


# Serve stored upload images
upload_path = Path(Config.UPLOAD_DIR)
upload_path.mkdir(parents=True, exist_ok=True)
app.mount("/uploads", StaticFiles(directory=upload_path), name="uploads")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=Config.API_HOST, port=Config.API_PORT)
